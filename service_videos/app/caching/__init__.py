"""
Video service caching package.

Read-through caching for videos, video lists, search, trending and
recommendations. The store adapter degrades to a pass-through when Redis is
unreachable; explicit invalidation runs after writes, with TTL expiry as the
staleness ceiling.
"""

from .invalidation import CacheInvalidator, InvalidationReport
from .keys import ResourceKind, derive_key, request_key
from .middleware import RequestDescriptor, ResponseCache
from .read_through import CacheEntry, CacheReadResult, ReadThroughCache
from .store import CacheStore, ConnectionStatus, ConnectivityState
from .ttl_policy import TTLPolicy

__all__ = [
    "CacheEntry",
    "CacheInvalidator",
    "CacheReadResult",
    "CacheStore",
    "ConnectionStatus",
    "ConnectivityState",
    "InvalidationReport",
    "ReadThroughCache",
    "RequestDescriptor",
    "ResourceKind",
    "ResponseCache",
    "TTLPolicy",
    "derive_key",
    "request_key",
]
