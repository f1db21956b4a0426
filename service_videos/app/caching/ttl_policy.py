"""
TTL policy for cached resource kinds.
"""

from types import MappingProxyType
from typing import Dict, Mapping, Optional

from shared.logging import get_logger

from .keys import KindLike, ResourceKind, kind_name

DEFAULT_TTL = 300

DEFAULT_TTLS: Mapping[str, int] = MappingProxyType({
    ResourceKind.VIDEO.value: 1800,
    ResourceKind.VIDEOS_LIST.value: 3600,
    ResourceKind.TRENDING.value: 600,
    ResourceKind.SEARCH.value: 900,
    ResourceKind.RECOMMENDATIONS.value: 1800,
})


class TTLPolicy:
    """Immutable resource kind -> expiry table, fixed at startup."""

    def __init__(self, overrides: Optional[Mapping[str, int]] = None, default_ttl: int = DEFAULT_TTL):
        table: Dict[str, int] = dict(DEFAULT_TTLS)
        for kind, ttl in (overrides or {}).items():
            if int(ttl) <= 0:
                raise ValueError(f"TTL for {kind!r} must be positive, got {ttl!r}")
            table[kind_name(kind)] = int(ttl)
        if default_ttl <= 0:
            raise ValueError("default_ttl must be positive")

        self._table = MappingProxyType(table)
        self.default_ttl = default_ttl

        if overrides:
            get_logger("videos.cache.ttl").info("TTL overrides applied", overrides=dict(overrides))

    @property
    def table(self) -> Mapping[str, int]:
        return self._table

    def ttl_for(self, kind: KindLike, override: Optional[int] = None) -> int:
        """Expiry in seconds for ``kind``; a positive ``override`` wins."""
        if override is not None and override > 0:
            return int(override)
        return self._table.get(kind_name(kind), self.default_ttl)
