"""
Cache key derivation.

Keys are ``<kind>:<identity>[:<segment>...]``. The kind namespace is always
the first segment so a whole resource family can be swept by prefix.
"""

import json
from enum import Enum
from typing import Any, Iterable, Mapping, Optional, Union


class ResourceKind(str, Enum):
    """Cached resource families."""

    VIDEO = "video"
    VIDEOS_LIST = "videos-list"
    SEARCH = "search"
    TRENDING = "trending"
    RECOMMENDATIONS = "recommendations"


KindLike = Union[ResourceKind, str]

SEPARATOR = ":"


def kind_name(kind: KindLike) -> str:
    return kind.value if isinstance(kind, ResourceKind) else str(kind)


def namespace_prefix(kind: KindLike) -> str:
    """Prefix shared by every key of ``kind``."""
    return f"{kind_name(kind)}{SEPARATOR}"


def _normalize(value: Any) -> Any:
    # Query strings arrive as text, Python callers pass ints; both must agree.
    if isinstance(value, Enum):
        value = value.value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (list, tuple)):
        return [_normalize(item) for item in value]
    if isinstance(value, Mapping):
        return {str(k): _normalize(v) for k, v in value.items() if v is not None}
    return str(value)


def canonical_params(params: Optional[Mapping[str, Any]]) -> str:
    """Serialize a parameter mapping independent of insertion order."""
    normalized = _normalize(dict(params or {}))
    return json.dumps(normalized, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def resource_key(kind: KindLike, resource_id: Any, *segments: Any) -> str:
    """Key for a single resource fetched by id."""
    parts = [kind_name(kind), str(resource_id)]
    parts.extend(str(segment) for segment in segments)
    return SEPARATOR.join(parts)


def query_key(kind: KindLike, params: Optional[Mapping[str, Any]], *segments: Any) -> str:
    """Key for a parameterized list or search."""
    parts = [kind_name(kind), canonical_params(params)]
    parts.extend(str(segment) for segment in segments)
    return SEPARATOR.join(parts)


def derive_key(kind: KindLike, identity_or_params: Any) -> str:
    """Key for either an id or a parameter mapping."""
    if identity_or_params is None or isinstance(identity_or_params, Mapping):
        return query_key(kind, identity_or_params)
    return resource_key(kind, identity_or_params)


def request_key(
    kind: KindLike,
    identity: Optional[Mapping[str, Any]] = None,
    query: Optional[Mapping[str, Any]] = None,
) -> str:
    """Key for a normalized request descriptor.

    Identity values become segments in parameter-name order. The canonical
    query is appended when present, or when there is no identity at all, so
    ``trending`` with no parameters maps to ``trending:{}`` and a video by id
    maps to ``video:<id>``.
    """
    identity_values: Iterable[Any] = [
        identity[name] for name in sorted(identity or {}) if identity[name] is not None
    ]
    parts = [kind_name(kind)]
    parts.extend(str(value) for value in identity_values)

    query = {name: value for name, value in (query or {}).items() if value is not None}
    if query or len(parts) == 1:
        parts.append(canonical_params(query))
    return SEPARATOR.join(parts)
