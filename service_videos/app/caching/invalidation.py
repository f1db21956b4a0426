"""
Cache invalidation after writes to the system of record.

Invalidation is best effort: it runs after the write succeeded, it is not
atomic with the write, and a reader racing the two may re-populate a stale
entry. The TTL ceiling bounds how long such an entry can live.
"""

from dataclasses import dataclass, field
from typing import Dict, Mapping, Optional, Tuple, TYPE_CHECKING

from shared.logging import get_logger

from .keys import KindLike, ResourceKind, kind_name, namespace_prefix, resource_key
from .store import CacheStore

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.metrics import MetricsCollector


# Aggregate namespaces whose cached views may embed a resource of the key kind.
DEPENDENT_NAMESPACES: Mapping[str, Tuple[str, ...]] = {
    ResourceKind.VIDEO.value: (
        ResourceKind.VIDEOS_LIST.value,
        ResourceKind.SEARCH.value,
        ResourceKind.TRENDING.value,
    ),
    ResourceKind.RECOMMENDATIONS.value: (),
}


@dataclass
class InvalidationReport:
    """What an invalidation call removed."""

    kind: str
    resource_id: str
    direct_deleted: bool = False
    variants_deleted: int = 0
    swept: Dict[str, int] = field(default_factory=dict)

    @property
    def total_swept(self) -> int:
        return sum(self.swept.values())

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "id": self.resource_id,
            "direct_deleted": self.direct_deleted,
            "variants_deleted": self.variants_deleted,
            "swept": dict(self.swept),
        }


class CacheInvalidator:
    """Removes cache entries made stale by a mutation."""

    def __init__(
        self,
        store: CacheStore,
        *,
        metrics: Optional["MetricsCollector"] = None,
        dependents: Optional[Mapping[str, Tuple[str, ...]]] = None,
    ):
        self.store = store
        self.metrics = metrics
        self.dependents = dict(DEPENDENT_NAMESPACES if dependents is None else dependents)
        self.logger = get_logger("videos.cache.invalidation")

    async def invalidate(self, kind: KindLike, resource_id: str) -> InvalidationReport:
        """Drop the resource's own keys, then sweep dependent aggregates."""
        name = kind_name(kind)
        report = InvalidationReport(kind=name, resource_id=str(resource_id))

        direct_key = resource_key(name, resource_id)
        report.direct_deleted = await self.store.delete(direct_key)
        # Sub-segment variants such as recommendations:<user>:{"limit":"10"}
        report.variants_deleted = await self.store.delete_by_prefix(f"{direct_key}:")

        for namespace in self.dependents.get(name, ()):
            report.swept[namespace] = await self.store.delete_by_prefix(namespace_prefix(namespace))

        self._record(name, report.variants_deleted + int(report.direct_deleted))
        for namespace, count in report.swept.items():
            self._record(namespace, count)

        if not self.store.connected:
            self.logger.debug(
                "Cache invalidation skipped, store unavailable",
                kind=name,
                resource_id=str(resource_id),
            )
        else:
            self.logger.info("Cache invalidated", **report.to_dict())
        return report

    async def invalidate_namespace(self, kind: KindLike) -> int:
        """Sweep every key of one resource family."""
        name = kind_name(kind)
        count = await self.store.delete_by_prefix(namespace_prefix(name))
        self._record(name, count)
        self.logger.info("Cache namespace invalidated", kind=name, keys_count=count)
        return count

    async def invalidate_user_recommendations(self, user_id: str) -> InvalidationReport:
        """Drop cached recommendations after a feedback event."""
        return await self.invalidate(ResourceKind.RECOMMENDATIONS, user_id)

    def _record(self, cache_type: str, count: int) -> None:
        if self.metrics and count:
            self.metrics.increment_counter("cache_invalidations_total", count, cache_type=cache_type)
