"""
Redis-backed cache store adapter.

The adapter is the only component that talks to the key-value store and the
only place where store failures are translated into cache misses and no-ops.
Callers never see an exception from it; they see ``None``, ``False`` or ``0``.
"""

import asyncio
import json
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Awaitable, Callable, List, Optional, Tuple, TYPE_CHECKING

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError

from shared.errors import (
    CacheError,
    CacheSerializationError,
    StoreOperationError,
    StoreUnavailableError,
)
from shared.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - imported for typing only
    from shared.config import BaseConfig
    from shared.metrics import MetricsCollector


class ConnectionStatus(str, Enum):
    """Lifecycle of the store connection."""

    IDLE = "idle"
    CONNECTING = "connecting"
    READY = "ready"
    ERROR = "error"
    CLOSED = "closed"
    # Reconnect budget exhausted; stays here until the process restarts.
    DISABLED = "disabled"


@dataclass(frozen=True)
class ConnectivityState:
    """Snapshot of the shared store connection state."""

    connected: bool = False
    status: ConnectionStatus = ConnectionStatus.IDLE
    last_error: Optional[str] = None
    changed_at: float = field(default_factory=time.time)
    reconnect_attempts: int = 0

    def to_dict(self) -> dict:
        return {
            "connected": self.connected,
            "status": self.status.value,
            "last_error": self.last_error,
            "changed_at": self.changed_at,
            "reconnect_attempts": self.reconnect_attempts,
        }


StateListener = Callable[[ConnectivityState], None]

_GLOB_SPECIAL = frozenset("*?[]\\")


def _glob_escape(text: str) -> str:
    """Escape Redis glob metacharacters so a prefix matches literally."""
    return "".join(f"\\{char}" if char in _GLOB_SPECIAL else char for char in text)


class CacheStore:
    """Key-value cache adapter with availability degradation."""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        *,
        host: str = "localhost",
        port: int = 6379,
        db: int = 0,
        password: Optional[str] = None,
        connect_timeout: float = 5.0,
        operation_timeout: float = 1.0,
        max_reconnect_attempts: int = 3,
        backoff_step: float = 0.05,
        backoff_max: float = 0.5,
        metrics: Optional["MetricsCollector"] = None,
        client: Optional[redis.Redis] = None,
    ):
        self.redis_url = redis_url
        self.host = host
        self.port = port
        self.db = db
        self.password = password
        self.connect_timeout = connect_timeout
        self.operation_timeout = operation_timeout
        self.max_reconnect_attempts = max(0, max_reconnect_attempts)
        self.backoff_step = backoff_step
        self.backoff_max = backoff_max
        self.metrics = metrics
        self.logger = get_logger("videos.cache.store")

        self._client: Optional[redis.Redis] = client
        self._state = ConnectivityState()
        self._listeners: List[StateListener] = []
        self._reconnects_used = 0
        self._reconnect_task: Optional[asyncio.Task] = None

    @classmethod
    def from_config(
        cls,
        config: "BaseConfig",
        *,
        metrics: Optional["MetricsCollector"] = None,
        client: Optional[redis.Redis] = None,
    ) -> "CacheStore":
        """Build a store from service configuration."""
        return cls(
            config.redis_url,
            host=config.redis_host,
            port=config.redis_port,
            db=config.redis_db,
            password=config.redis_password,
            connect_timeout=config.cache_connect_timeout,
            operation_timeout=config.cache_operation_timeout,
            max_reconnect_attempts=config.cache_max_reconnect_attempts,
            backoff_step=config.cache_reconnect_backoff_step,
            backoff_max=config.cache_reconnect_backoff_max,
            metrics=metrics,
            client=client,
        )

    # ------------------------------------------------------------------
    # Connectivity
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectivityState:
        return self._state

    @property
    def connected(self) -> bool:
        return self._state.connected and self._client is not None

    def add_listener(self, listener: StateListener) -> None:
        """Observe every connectivity transition."""
        self._listeners.append(listener)

    def _transition(self, status: ConnectionStatus, error: Optional[str] = None) -> None:
        previous = self._state
        connected = status is ConnectionStatus.READY
        self._state = ConnectivityState(
            connected=connected,
            status=status,
            last_error=error if error is not None else (None if connected else previous.last_error),
            reconnect_attempts=self._reconnects_used,
        )

        if previous.status is not status:
            if status is ConnectionStatus.READY:
                self.logger.info("Cache store connected and ready", target=self._target())
            elif status is ConnectionStatus.CONNECTING:
                self.logger.info("Cache store connecting", target=self._target())
            elif status is ConnectionStatus.CLOSED:
                self.logger.info("Cache store connection closed")
            elif status is ConnectionStatus.DISABLED:
                self.logger.warning(
                    "Cache store unavailable, continuing without caching",
                    error=error,
                    reconnect_attempts=self._reconnects_used,
                )
            else:
                self.logger.warning("Cache store connection error", error=error)

        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception as exc:  # pragma: no cover
                self.logger.debug("Connectivity listener failed", error=str(exc))

    def _target(self) -> str:
        if self.redis_url:
            return self.redis_url.split("@")[-1]
        return f"{self.host}:{self.port}/{self.db}"

    def _build_client(self) -> redis.Redis:
        options = dict(
            encoding="utf-8",
            decode_responses=True,
            socket_connect_timeout=self.connect_timeout,
            socket_timeout=self.operation_timeout,
        )
        if self.redis_url:
            return redis.from_url(self.redis_url, **options)
        return redis.Redis(
            host=self.host,
            port=self.port,
            db=self.db,
            password=self.password,
            **options,
        )

    def _backoff(self, attempt: int) -> float:
        return min(attempt * self.backoff_step, self.backoff_max)

    async def _ping(self) -> Optional[str]:
        """Ping the store; return an error description or None on success."""
        try:
            if self._client is None:
                self._client = self._build_client()
            await asyncio.wait_for(self._client.ping(), timeout=self.connect_timeout)
            return None
        except asyncio.TimeoutError:
            return f"connect timed out after {self.connect_timeout}s"
        except (RedisError, OSError) as exc:
            return str(exc) or type(exc).__name__
        except Exception as exc:
            return f"{type(exc).__name__}: {exc}"

    async def connect(self) -> ConnectivityState:
        """Connect to the store.

        Never raises. On failure the adapter stays disconnected and every
        operation becomes a pass-through.
        """
        if self._state.status in (ConnectionStatus.READY, ConnectionStatus.DISABLED):
            return self._state
        if self._reconnect_task is not None and not self._reconnect_task.done():
            return self._state

        self._transition(ConnectionStatus.CONNECTING)
        error = await self._ping()
        while error is not None and self._reconnects_used < self.max_reconnect_attempts:
            self._reconnects_used += 1
            await asyncio.sleep(self._backoff(self._reconnects_used))
            error = await self._ping()

        if error is None:
            self._transition(ConnectionStatus.READY)
        else:
            self._transition(ConnectionStatus.DISABLED, error)
        return self._state

    async def _reconnect(self) -> None:
        while self._reconnects_used < self.max_reconnect_attempts:
            self._reconnects_used += 1
            await asyncio.sleep(self._backoff(self._reconnects_used))
            error = await self._ping()
            if error is None:
                self._transition(ConnectionStatus.READY)
                return
            self._state = replace(self._state, last_error=error, reconnect_attempts=self._reconnects_used)
        self._transition(ConnectionStatus.DISABLED, self._state.last_error)

    def _connection_lost(self, error: str) -> None:
        if self._state.status is ConnectionStatus.CLOSED:
            return
        self._transition(ConnectionStatus.ERROR, error)
        if self._reconnects_used >= self.max_reconnect_attempts:
            self._transition(ConnectionStatus.DISABLED, error)
            return
        if self._reconnect_task is None or self._reconnect_task.done():
            self._reconnect_task = asyncio.get_running_loop().create_task(self._reconnect())

    async def close(self) -> None:
        """Close the store connection."""
        if self._reconnect_task is not None and not self._reconnect_task.done():
            self._reconnect_task.cancel()
        if self._client is not None:
            try:
                await self._client.aclose()
            except Exception as exc:  # pragma: no cover
                self.logger.debug("Error closing cache store", error=str(exc))
        self._transition(ConnectionStatus.CLOSED)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def _report(self, error: CacheError) -> None:
        self.logger.warning(
            "Cache store operation failed",
            operation=error.operation,
            key=error.key,
            error_type=type(error).__name__,
            error=str(error),
        )
        if self.metrics:
            self.metrics.increment_counter("cache_errors_total", operation=error.operation)

    async def _execute(
        self,
        operation: str,
        key: Optional[str],
        command: Callable[[redis.Redis], Awaitable[Any]],
    ) -> Tuple[bool, Any]:
        """Run a store command; return (succeeded, result)."""
        if not self.connected:
            return False, None

        try:
            result = await asyncio.wait_for(command(self._client), timeout=self.operation_timeout)
            return True, result
        except asyncio.TimeoutError:
            self._report(StoreOperationError(
                operation, f"timed out after {self.operation_timeout}s", key,
            ))
        except (RedisConnectionError, OSError) as exc:
            error = StoreUnavailableError(operation, str(exc) or type(exc).__name__, key)
            self._report(error)
            self._connection_lost(str(error))
        except RedisError as exc:
            self._report(StoreOperationError(operation, str(exc), key))
        except Exception as exc:
            # Reply decoding and other client-side failures, e.g. UnicodeDecodeError.
            self._report(StoreOperationError(operation, f"{type(exc).__name__}: {exc}", key))
        return False, None

    async def get(self, key: str) -> Optional[Any]:
        """Return the decoded value for ``key`` or None."""
        ok, raw = await self._execute("get", key, lambda client: client.get(key))
        if not ok or raw is None:
            return None

        try:
            return json.loads(raw)
        except (TypeError, ValueError, RecursionError):
            self.logger.warning("Discarding malformed cache payload", key=key)
            return None

    async def set_with_expiry(self, key: str, value: Any, ttl_seconds: int) -> bool:
        """Store ``value`` under ``key`` for ``ttl_seconds``."""
        if not self.connected:
            return False

        ttl = int(ttl_seconds)
        if ttl <= 0:
            self._report(StoreOperationError("set", f"invalid ttl {ttl_seconds!r}", key))
            return False

        try:
            payload = json.dumps(value)
        except (TypeError, ValueError, RecursionError) as exc:
            self._report(CacheSerializationError("set", str(exc), key))
            return False

        ok, _ = await self._execute("set", key, lambda client: client.set(key, payload, ex=ttl))
        return ok

    async def delete(self, key: str) -> bool:
        ok, _ = await self._execute("delete", key, lambda client: client.delete(key))
        return ok

    async def delete_by_prefix(self, prefix: str) -> int:
        """Delete every key starting with ``prefix``; return how many went."""
        pattern = f"{_glob_escape(prefix)}*"
        ok, keys = await self._execute("keys", pattern, lambda client: client.keys(pattern))
        if not ok or not keys:
            return 0

        ok, deleted = await self._execute("delete", pattern, lambda client: client.delete(*keys))
        if not ok:
            return 0

        self.logger.debug("Cleared cache prefix", prefix=prefix, keys_count=deleted)
        return int(deleted)

    async def flush_all(self) -> bool:
        """Remove every entry from the cache database."""
        ok, _ = await self._execute("flush", None, lambda client: client.flushdb())
        if ok:
            self.logger.info("Cache flushed")
        return ok

    def health(self) -> dict:
        return {
            "connected": self.connected,
            "status": self._state.status.value,
            "last_error": self._state.last_error,
        }

    async def stats(self) -> dict:
        """Store statistics for admin endpoints."""
        stats = self.health()
        if not self.connected:
            return stats

        ok, size = await self._execute("dbsize", None, lambda client: client.dbsize())
        if ok:
            stats["keys_count"] = size
        ok, info = await self._execute("info", None, lambda client: client.info("memory"))
        if ok and isinstance(info, dict):
            stats["used_memory"] = info.get("used_memory_human")
        return stats
