from __future__ import annotations

import logging
import time
from threading import Lock
from typing import Optional, Protocol

import redis

from chat_service.core.metrics import metrics
from chat_service.core.settings import SETTINGS

logger = logging.getLogger(__name__)


class StoreError(Exception):
    pass


class KeyValueStore(Protocol):
    def get(self, key: str) -> Optional[str]: ...

    def set(self, key: str, value: str, ttl: int | None = None) -> None: ...

    def ttl(self, key: str) -> Optional[int]: ...


class MemoryStore:
    """In-process TTL store with the same string get/set contract as Redis."""

    def __init__(self, clock=time.time) -> None:
        self._store: dict[str, tuple[float | None, str]] = {}
        self._lock = Lock()
        self._clock = clock

    def _live_entry(self, key: str) -> tuple[float | None, str] | None:
        entry = self._store.get(key)
        if entry is None:
            return None
        expires_at, _ = entry
        if expires_at is not None and expires_at <= self._clock():
            self._store.pop(key, None)
            return None
        return entry

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._live_entry(key)
            return None if entry is None else entry[1]

    def set(self, key: str, value: str, ttl: int | None = None) -> None:
        expires_at = None
        if ttl is not None:
            expires_at = self._clock() + ttl
        with self._lock:
            self._store[key] = (expires_at, str(value))

    def ttl(self, key: str) -> Optional[int]:
        with self._lock:
            entry = self._live_entry(key)
            if entry is None:
                return None
            expires_at, _ = entry
            if expires_at is None:
                return -1
            return max(0, int(round(expires_at - self._clock())))


class RedisStore:
    def __init__(self, redis_url: str) -> None:
        self._redis = redis.Redis.from_url(redis_url, decode_responses=True)

    def get(self, key: str) -> Optional[str]:
        try:
            return self._redis.get(key)
        except redis.RedisError as exc:
            metrics.inc("chat_store_errors_total", {"op": "get"})
            raise StoreError(f"redis get failed: {exc}") from exc
        except UnicodeDecodeError as exc:
            # decode_responses=True cannot turn a non-UTF-8 value into str
            metrics.inc("chat_store_errors_total", {"op": "decode"})
            raise StoreError(f"redis value for {key} is not valid UTF-8: {exc}") from exc

    def set(self, key: str, value: str, ttl: int | None = None) -> None:
        try:
            if ttl is not None:
                self._redis.setex(key, ttl, value)
            else:
                self._redis.set(key, value)
        except redis.RedisError as exc:
            metrics.inc("chat_store_errors_total", {"op": "set"})
            raise StoreError(f"redis set failed: {exc}") from exc

    def ttl(self, key: str) -> Optional[int]:
        try:
            remaining = int(self._redis.ttl(key))
        except redis.RedisError as exc:
            metrics.inc("chat_store_errors_total", {"op": "ttl"})
            raise StoreError(f"redis ttl failed: {exc}") from exc
        # -2: key does not exist, -1: no expiry
        if remaining == -2:
            return None
        return remaining


_store: KeyValueStore | None = None


def get_store() -> KeyValueStore:
    global _store
    if _store is not None:
        return _store
    if SETTINGS.redis_url:
        logger.info("conversation store backend=redis")
        _store = RedisStore(SETTINGS.redis_url)
    else:
        logger.warning("REDIS_URL not set, conversation store backend=memory")
        _store = MemoryStore()
    return _store
