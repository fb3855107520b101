"""Shared state store implementations.

Rate-limit windows, quota counters and cache entries all live behind the
narrow StateStore interface so the routing core can run in one process
(InMemoryStateStore) or across many (RedisStateStore) without changes.

Two concrete implementations:
- RedisStateStore: redis.asyncio with JSON serialisation, INCRBY + EXPIRE
  in a Lua script, SCAN for key listing and redis locks for per-key
  read-modify-write sections
- InMemoryStateStore: dict-backed with TTL and per-key asyncio locks, for
  tests and single-process deployments

The factory get_state_store() selects the implementation from settings.
"""

from __future__ import annotations

import asyncio
import fnmatch
import json
import time
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

import structlog

from airouter.config import Settings, get_settings
from airouter.exceptions import StateStoreError

log = structlog.get_logger(__name__)


@dataclass
class StoreResult:
    """Outcome of a best-effort state operation.

    Quota and cache code return this instead of raising so the router can
    degrade rather than fail the whole request.

    Attributes:
        ok: Whether the operation completed
        value: Operation result when ok
        error: Error message when not ok
    """

    ok: bool
    value: Any = None
    error: str | None = None

    @classmethod
    def success(cls, value: Any = None) -> StoreResult:
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: str) -> StoreResult:
        return cls(ok=False, error=error)


class StateStore(ABC):
    """Abstract interface all state stores must implement.

    TTLs are in seconds. ``None`` means the key never expires.
    """

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Return the stored value for key, or None if absent / expired."""

    @abstractmethod
    async def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        """Store value under key, replacing any previous value and TTL."""

    @abstractmethod
    async def increment(self, key: str, amount: int = 1, ttl: float | None = None) -> int:
        """Atomically add amount to an integer counter and return the new value.

        The TTL is applied only when the increment creates the key, so a
        counter keeps the expiry chosen when its window opened.
        """

    @abstractmethod
    async def expire(self, key: str, ttl: float) -> None:
        """Reset the TTL of an existing key (no-op if the key is absent)."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Delete key (no-op if it does not exist)."""

    @abstractmethod
    async def keys(self, pattern: str) -> list[str]:
        """Return all live keys matching a glob pattern."""

    @abstractmethod
    def lock(self, name: str, timeout: float = 10.0) -> Any:
        """Return an async context manager serialising work on ``name``."""

    @abstractmethod
    async def info(self) -> dict[str, Any]:
        """Return backend-specific info dict."""

    async def close(self) -> None:
        """Release any held connections."""


# ---------------------------------------------------------------------------
# Redis store
# ---------------------------------------------------------------------------

# INCRBY and set the TTL only when the increment created the key.
_LUA_INCR_WITH_TTL = """
local value = redis.call('INCRBY', KEYS[1], ARGV[1])
local ttl = tonumber(ARGV[2])
if ttl > 0 and value == tonumber(ARGV[1]) then
    redis.call('PEXPIRE', KEYS[1], ttl)
end
return value
"""


class RedisStateStore(StateStore):
    """State store backed by Redis.

    Values are JSON-serialised; counters are stored as plain integers so
    INCRBY works on them. The client is created lazily on first use so
    construction never blocks. Redis errors surface as StateStoreError.
    """

    def __init__(self, redis_url: str, *, key_prefix: str = "airouter:") -> None:
        self._redis_url = redis_url
        self._prefix = key_prefix
        self._client: Any = None  # redis.asyncio.Redis, set on first use

    def _get_client(self) -> Any:
        if self._client is None:
            import redis.asyncio as aioredis

            self._client = aioredis.from_url(
                self._redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._client

    def _k(self, key: str) -> str:
        return f"{self._prefix}{key}"

    async def get(self, key: str) -> Any | None:
        try:
            raw = await self._get_client().get(self._k(key))
        except Exception as exc:
            log.warning("state.redis.get_failed", key=key, error=str(exc))
            raise StateStoreError(f"get {key!r} failed: {exc}") from exc
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        try:
            serialised = json.dumps(value, default=str)
            client = self._get_client()
            if ttl is None:
                await client.set(self._k(key), serialised)
            else:
                await client.set(self._k(key), serialised, px=max(1, int(ttl * 1000)))
        except Exception as exc:
            log.warning("state.redis.set_failed", key=key, error=str(exc))
            raise StateStoreError(f"set {key!r} failed: {exc}") from exc

    async def increment(self, key: str, amount: int = 1, ttl: float | None = None) -> int:
        ttl_ms = 0 if ttl is None else max(1, int(ttl * 1000))
        try:
            value = await self._get_client().eval(
                _LUA_INCR_WITH_TTL, 1, self._k(key), amount, ttl_ms
            )
        except Exception as exc:
            log.warning("state.redis.increment_failed", key=key, error=str(exc))
            raise StateStoreError(f"increment {key!r} failed: {exc}") from exc
        return int(value)

    async def expire(self, key: str, ttl: float) -> None:
        try:
            await self._get_client().pexpire(self._k(key), max(1, int(ttl * 1000)))
        except Exception as exc:
            log.warning("state.redis.expire_failed", key=key, error=str(exc))
            raise StateStoreError(f"expire {key!r} failed: {exc}") from exc

    async def delete(self, key: str) -> None:
        try:
            await self._get_client().delete(self._k(key))
        except Exception as exc:
            log.warning("state.redis.delete_failed", key=key, error=str(exc))
            raise StateStoreError(f"delete {key!r} failed: {exc}") from exc

    async def keys(self, pattern: str) -> list[str]:
        try:
            found: list[str] = []
            async for key in self._get_client().scan_iter(match=self._k(pattern), count=100):
                found.append(key[len(self._prefix):])
            return found
        except Exception as exc:
            log.warning("state.redis.keys_failed", pattern=pattern, error=str(exc))
            raise StateStoreError(f"keys {pattern!r} failed: {exc}") from exc

    @asynccontextmanager
    async def _locked(self, name: str, timeout: float) -> AsyncIterator[None]:
        redis_lock = self._get_client().lock(self._k(f"lock:{name}"), timeout=timeout)
        try:
            await redis_lock.acquire()
        except Exception as exc:
            log.warning("state.redis.lock_failed", name=name, error=str(exc))
            raise StateStoreError(f"lock {name!r} failed: {exc}") from exc
        try:
            yield
        finally:
            try:
                await redis_lock.release()
            except Exception as exc:
                # Lock expired under us; the timeout bounds the damage
                log.warning("state.redis.unlock_failed", name=name, error=str(exc))

    def lock(self, name: str, timeout: float = 10.0) -> Any:
        return self._locked(name, timeout)

    async def info(self) -> dict[str, Any]:
        try:
            dbsize = await self._get_client().dbsize()
            return {
                "backend": "redis",
                "url": self._redis_url.split("@")[-1],
                "connected": True,
                "db_size": dbsize,
            }
        except Exception as exc:
            return {
                "backend": "redis",
                "url": self._redis_url.split("@")[-1],
                "connected": False,
                "error": str(exc),
            }

    async def close(self) -> None:
        """Close the Redis connection pool."""
        if self._client is not None:
            try:
                await self._client.aclose()
            except Exception as exc:
                log.warning("state.redis.close_failed", error=str(exc))
            self._client = None


# ---------------------------------------------------------------------------
# In-memory store (testing / single process)
# ---------------------------------------------------------------------------


class _Entry:
    """Single value stored by InMemoryStateStore."""

    __slots__ = ("value", "expires_at")

    def __init__(self, value: Any, expires_at: float | None) -> None:
        self.value = value
        self.expires_at = expires_at


class InMemoryStateStore(StateStore):
    """Dict-backed store with TTL support.

    Safe under concurrent coroutines: a store-wide asyncio.Lock guards the
    dict, and lock(name) hands out one asyncio.Lock per name for callers
    that need a read-modify-write section. Does NOT persist across process
    restarts.

    Args:
        time_source: Monotonic clock in seconds, injectable for tests
    """

    def __init__(self, *, time_source: Callable[[], float] = time.monotonic) -> None:
        self._data: dict[str, _Entry] = {}
        self._guard = asyncio.Lock()
        self._named_locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._now = time_source

    def _expiry(self, ttl: float | None) -> float | None:
        return None if ttl is None else self._now() + ttl

    def _live(self, key: str) -> _Entry | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        if entry.expires_at is not None and self._now() >= entry.expires_at:
            del self._data[key]
            return None
        return entry

    async def get(self, key: str) -> Any | None:
        async with self._guard:
            entry = self._live(key)
            return None if entry is None else entry.value

    async def set(self, key: str, value: Any, ttl: float | None = None) -> None:
        # Round-trip through JSON so callers see the same shapes as with Redis
        stored = json.loads(json.dumps(value, default=str))
        async with self._guard:
            self._data[key] = _Entry(stored, self._expiry(ttl))

    async def increment(self, key: str, amount: int = 1, ttl: float | None = None) -> int:
        async with self._guard:
            entry = self._live(key)
            if entry is None:
                self._data[key] = _Entry(amount, self._expiry(ttl))
                return amount
            entry.value = int(entry.value) + amount
            return entry.value

    async def expire(self, key: str, ttl: float) -> None:
        async with self._guard:
            entry = self._live(key)
            if entry is not None:
                entry.expires_at = self._expiry(ttl)

    async def delete(self, key: str) -> None:
        async with self._guard:
            self._data.pop(key, None)

    async def keys(self, pattern: str) -> list[str]:
        async with self._guard:
            return [k for k in list(self._data) if self._live(k) and fnmatch.fnmatchcase(k, pattern)]

    @asynccontextmanager
    async def _named(self, name: str) -> AsyncIterator[None]:
        lock = self._named_locks.setdefault(name, asyncio.Lock())
        self._lock_users[name] = self._lock_users.get(name, 0) + 1
        try:
            async with lock:
                yield
        finally:
            # Forget the lock once nobody holds or waits for it
            self._lock_users[name] -= 1
            if not self._lock_users[name]:
                del self._lock_users[name]
                del self._named_locks[name]

    def lock(self, name: str, timeout: float = 10.0) -> Any:
        return self._named(name)

    async def info(self) -> dict[str, Any]:
        async with self._guard:
            live = sum(1 for k in list(self._data) if self._live(k) is not None)
        return {"backend": "memory", "keys": live}


def get_state_store(settings: Settings | None = None) -> StateStore:
    """Return the configured state store.

    A non-empty ``redis_url`` selects Redis; otherwise the in-process store
    is used.
    """
    cfg = settings or get_settings()
    if cfg.redis_url:
        log.info("state.backend_selected", backend="redis")
        return RedisStateStore(cfg.redis_url)
    log.info("state.backend_selected", backend="memory")
    return InMemoryStateStore()
