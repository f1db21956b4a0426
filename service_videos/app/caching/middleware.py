"""
HTTP-layer integration of the read-through cache.

Route handlers are wrapped so that the request's resource identity and query
parameters select a cache slot. Hits short-circuit the handler and are marked
``cached: true`` with the time the entry was stored; misses run the handler
and store its payload. With the store unavailable the wrapper is a plain
pass-through.
"""

import functools
import inspect
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Collection, Dict, Mapping, Optional

from fastapi import BackgroundTasks, Request, Response
from fastapi.encoders import jsonable_encoder
from pydantic.fields import FieldInfo

from shared.logging import get_logger

from .keys import KindLike, kind_name, request_key
from .read_through import ReadThroughCache, format_iso

Handler = Callable[[], Awaitable[Any]]

_TRANSPORT_TYPES = (Request, Response, BackgroundTasks)


@dataclass(frozen=True)
class RequestDescriptor:
    """Normalized description of a cacheable request."""

    resource_kind: str
    identity_params: Mapping[str, Any] = field(default_factory=dict)
    query_params: Mapping[str, Any] = field(default_factory=dict)

    def cache_key(self) -> str:
        return request_key(self.resource_kind, self.identity_params, self.query_params)


def _declared_default(parameter: inspect.Parameter) -> Any:
    default = parameter.default
    if isinstance(default, FieldInfo):
        return default.default
    return default


def _as_body(payload: Any) -> Dict[str, Any]:
    # Cache markers are merged into the body, so it has to be an object.
    if isinstance(payload, Mapping):
        return dict(payload)
    return {"data": payload}


class ResponseCache:
    """Applies read-through caching to route handlers."""

    def __init__(self, read_through: ReadThroughCache):
        self.read_through = read_through
        self.logger = get_logger("videos.cache.middleware")

    async def serve(
        self,
        descriptor: RequestDescriptor,
        handler: Handler,
        ttl: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Serve ``descriptor`` from cache or from ``handler``."""
        if not self.read_through.store.connected:
            return {**_as_body(jsonable_encoder(await handler())), "cached": False}

        async def load() -> Any:
            return jsonable_encoder(await handler())

        key = descriptor.cache_key()
        result = await self.read_through.read(
            key,
            descriptor.resource_kind,
            load,
            ttl=self.read_through.ttl_policy.ttl_for(descriptor.resource_kind, ttl),
        )

        body = _as_body(result.value)
        if result.hit:
            self.logger.info("Cache HIT", key=key)
            body["cached"] = True
            body["cacheTimestamp"] = format_iso(result.cached_at) if result.cached_at else None
        else:
            self.logger.info("Cache MISS", key=key)
            body["cached"] = False
        return body

    def cached(
        self,
        kind: KindLike,
        *,
        identity: Collection[str] = (),
        ttl: Optional[int] = None,
        exclude: Collection[str] = (),
    ) -> Callable[[Callable[..., Awaitable[Any]]], Callable[..., Awaitable[Any]]]:
        """Decorate an async route handler with read-through caching.

        Handler arguments named in ``identity`` become key segments; the
        remaining arguments form the canonical query. Transport objects and
        names in ``exclude`` do not take part in the key, and neither do query
        arguments left at their declared default, so ``/trending`` and
        ``/trending?page=1`` share a slot.
        """
        resource_kind = kind_name(kind)
        identity_names = frozenset(identity)
        excluded = frozenset(exclude)

        def decorator(func: Callable[..., Awaitable[Any]]) -> Callable[..., Awaitable[Any]]:
            signature = inspect.signature(func)
            defaults = {
                name: _declared_default(parameter)
                for name, parameter in signature.parameters.items()
                if parameter.default is not inspect.Parameter.empty
            }

            @functools.wraps(func)
            async def wrapper(*args, **kwargs):
                bound = signature.bind_partial(*args, **kwargs)
                identity_params: Dict[str, Any] = {}
                query_params: Dict[str, Any] = {}
                for name, value in bound.arguments.items():
                    if name in excluded or isinstance(value, _TRANSPORT_TYPES):
                        continue
                    if name in identity_names:
                        identity_params[name] = value
                    elif name not in defaults or defaults[name] != value:
                        query_params[name] = value

                descriptor = RequestDescriptor(resource_kind, identity_params, query_params)
                return await self.serve(descriptor, lambda: func(*args, **kwargs), ttl=ttl)

            return wrapper

        return decorator
