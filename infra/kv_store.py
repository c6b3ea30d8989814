"""
Shared key-value store used for the controller lock, the bot state snapshot
and the heartbeat.

Backends:
- RedisKeyValueStore: production backend. Conditional operations run as
  Lua scripts so the compare and the write happen atomically on the server.
- InMemoryKeyValueStore: single-process backend for DRY_RUN and tests.
  Same semantics (TTL included), guarded by a threading lock.

All backends raise TransientExternalError when the store itself fails.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

import redis

from core.exceptions import ConfigurationError, TransientExternalError

logger = logging.getLogger(__name__)


def _ttl_ms(ttl_seconds: float) -> int:
    return max(1, int(round(float(ttl_seconds) * 1000)))


class KeyValueStore(ABC):
    """Minimal store contract consumed by the lock and the state store."""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def set(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> None:
        ...

    @abstractmethod
    def delete(self, key: str) -> None:
        ...

    @abstractmethod
    def set_if_absent(self, key: str, value: str, ttl_seconds: float) -> bool:
        """Atomically create `key` only if it does not exist. True on success."""

    @abstractmethod
    def compare_and_delete(self, key: str, expected: str) -> bool:
        """Atomically delete `key` only if its value equals `expected`."""

    @abstractmethod
    def compare_and_extend(self, key: str, expected: str, ttl_seconds: float) -> bool:
        """Atomically reset the TTL of `key` only if its value equals `expected`."""

    @abstractmethod
    def ping(self) -> bool:
        ...

    def close(self) -> None:  # pragma: no cover - optional
        return None

    def describe(self) -> str:
        return self.__class__.__name__


# Lua scripts run atomically on the Redis server.
_COMPARE_AND_DELETE = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""

_COMPARE_AND_EXTEND = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("pexpire", KEYS[1], ARGV[2])
else
    return 0
end
"""


class RedisKeyValueStore(KeyValueStore):
    """Redis-backed store (redis-py client, decode_responses=True)."""

    def __init__(self, client: "redis.Redis", url: Optional[str] = None):
        self._client = client
        self._url = url
        self._compare_and_delete = client.register_script(_COMPARE_AND_DELETE)
        self._compare_and_extend = client.register_script(_COMPARE_AND_EXTEND)

    @classmethod
    def from_url(cls, url: str, socket_timeout: float = 5.0) -> "RedisKeyValueStore":
        client = redis.Redis.from_url(
            url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
            health_check_interval=30,
        )
        logger.info("Initialized Redis store at %s", _redact_url(url))
        return cls(client, url=url)

    def _call(self, op: str, fn: Callable[[], Any]) -> Any:
        try:
            return fn()
        except redis.RedisError as exc:
            raise TransientExternalError(f"redis.{op}", exc) from exc

    def get(self, key: str) -> Optional[str]:
        return self._call("get", lambda: self._client.get(key))

    def set(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> None:
        if ttl_seconds is None:
            self._call("set", lambda: self._client.set(key, value))
        else:
            self._call("set", lambda: self._client.set(key, value, px=_ttl_ms(ttl_seconds)))

    def delete(self, key: str) -> None:
        self._call("delete", lambda: self._client.delete(key))

    def set_if_absent(self, key: str, value: str, ttl_seconds: float) -> bool:
        result = self._call(
            "set_nx",
            lambda: self._client.set(key, value, nx=True, px=_ttl_ms(ttl_seconds)),
        )
        return bool(result)

    def compare_and_delete(self, key: str, expected: str) -> bool:
        result = self._call(
            "compare_and_delete",
            lambda: self._compare_and_delete(keys=[key], args=[expected]),
        )
        return int(result or 0) == 1

    def compare_and_extend(self, key: str, expected: str, ttl_seconds: float) -> bool:
        result = self._call(
            "compare_and_extend",
            lambda: self._compare_and_extend(keys=[key], args=[expected, _ttl_ms(ttl_seconds)]),
        )
        return int(result or 0) == 1

    def ping(self) -> bool:
        try:
            return bool(self._client.ping())
        except redis.RedisError as exc:
            logger.warning("Redis ping failed: %s", exc)
            return False

    def close(self) -> None:
        try:
            self._client.close()
        except redis.RedisError as exc:
            logger.warning("Failed closing Redis client: %s", exc)

    def describe(self) -> str:
        return f"redis({_redact_url(self._url) if self._url else 'client'})"


class InMemoryKeyValueStore(KeyValueStore):
    """
    Process-local store with TTL support.

    `clock` must be monotonic; tests inject a fake clock to expire keys
    without sleeping.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._mutex = threading.Lock()

    def _live(self, key: str) -> Optional[Tuple[str, Optional[float]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and self._clock() >= expires_at:
            del self._data[key]
            return None
        return entry

    def _expiry(self, ttl_seconds: Optional[float]) -> Optional[float]:
        if ttl_seconds is None:
            return None
        return self._clock() + float(ttl_seconds)

    def get(self, key: str) -> Optional[str]:
        with self._mutex:
            entry = self._live(key)
            return entry[0] if entry else None

    def set(self, key: str, value: str, ttl_seconds: Optional[float] = None) -> None:
        with self._mutex:
            self._data[key] = (value, self._expiry(ttl_seconds))

    def delete(self, key: str) -> None:
        with self._mutex:
            self._data.pop(key, None)

    def set_if_absent(self, key: str, value: str, ttl_seconds: float) -> bool:
        with self._mutex:
            if self._live(key) is not None:
                return False
            self._data[key] = (value, self._expiry(ttl_seconds))
            return True

    def compare_and_delete(self, key: str, expected: str) -> bool:
        with self._mutex:
            entry = self._live(key)
            if entry is None or entry[0] != expected:
                return False
            del self._data[key]
            return True

    def compare_and_extend(self, key: str, expected: str, ttl_seconds: float) -> bool:
        with self._mutex:
            entry = self._live(key)
            if entry is None or entry[0] != expected:
                return False
            self._data[key] = (entry[0], self._expiry(ttl_seconds))
            return True

    def ping(self) -> bool:
        return True

    def ttl(self, key: str) -> Optional[float]:
        """Remaining TTL in seconds (None if absent or persistent)."""
        with self._mutex:
            entry = self._live(key)
            if entry is None or entry[1] is None:
                return None
            return max(0.0, entry[1] - self._clock())

    def describe(self) -> str:
        return "memory"


def _redact_url(url: Optional[str]) -> str:
    if not url or "@" not in url:
        return url or ""
    scheme, _, rest = url.partition("://")
    return f"{scheme}://***@{rest.split('@', 1)[1]}"


def create_kv_store_from_config(cfg: Optional[Mapping[str, Any]]) -> KeyValueStore:
    """
    Build a store from the `store` config section.

    {"backend": "redis", "url": "redis://localhost:6379/0"}
    {"backend": "memory"}
    """
    cfg = dict(cfg or {})
    backend = str(cfg.get("backend", "memory")).lower()
    if backend == "memory":
        logger.info("Using in-memory store (single process only)")
        return InMemoryKeyValueStore()
    if backend == "redis":
        url = cfg.get("url")
        if not url:
            raise ConfigurationError("store.url is required for the redis backend")
        return RedisKeyValueStore.from_url(url, socket_timeout=float(cfg.get("socket_timeout_seconds", 5.0)))
    raise ConfigurationError(f"Unknown store backend: {backend}")


__all__ = [
    "InMemoryKeyValueStore",
    "KeyValueStore",
    "RedisKeyValueStore",
    "create_kv_store_from_config",
]
