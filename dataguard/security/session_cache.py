from __future__ import annotations

import threading
import time
from collections.abc import Callable
from typing import Any

from cachetools import TTLCache

from dataguard.security.context import UserContext


SESSION_KEY_PREFIX = "auth:session:"


def session_cache_key(token: str) -> str:
    return f"{SESSION_KEY_PREFIX}{token}"


class _EvictingTTLCache(TTLCache):
    """``TTLCache`` that reports keys dropped by expiry or size pressure."""

    def __init__(
        self, maxsize: int, ttl: float, timer: Callable[[], float], on_evict: Callable[[str], None]
    ) -> None:
        super().__init__(maxsize=maxsize, ttl=ttl, timer=timer)
        self._on_evict = on_evict

    def expire(self, time: float | None = None) -> list[tuple[Any, Any]]:
        expired = list(super().expire(time) or ())
        for key, _ in expired:
            self._on_evict(key)
        return expired

    def popitem(self) -> tuple[Any, Any]:
        key, value = super().popitem()
        self._on_evict(key)
        return key, value


class SessionCache:
    """TTL-bounded ``token -> UserContext`` cache with a user id index.

    The index lets ``clear_user`` evict exactly the sessions of one user
    instead of pattern matching over every key. Entries dropped by the TTL
    cache itself are removed from the index as they go.
    """

    def __init__(self, ttl_seconds: float, max_entries: int, *, timer: Callable[[], float] = time.monotonic) -> None:
        self._entries: TTLCache[str, UserContext] = _EvictingTTLCache(
            maxsize=max_entries, ttl=ttl_seconds, timer=timer, on_evict=self._forget
        )
        self._by_user: dict[int, set[str]] = {}
        self._owners: dict[str, int] = {}
        self._lock = threading.Lock()

    def get(self, token: str) -> UserContext | None:
        with self._lock:
            return self._entries.get(session_cache_key(token))

    def set(self, token: str, user: UserContext) -> None:
        key = session_cache_key(token)
        with self._lock:
            previous = self._owners.get(key)
            if previous is not None and previous != user.user_id:
                self._forget(key)
            self._entries[key] = user
            self._owners[key] = user.user_id
            self._by_user.setdefault(user.user_id, set()).add(key)

    def delete(self, token: str) -> None:
        key = session_cache_key(token)
        with self._lock:
            self._entries.pop(key, None)
            self._forget(key)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._by_user.clear()
            self._owners.clear()

    def clear_user(self, user_id: int) -> int:
        with self._lock:
            keys = self._by_user.pop(user_id, set())
            removed = 0
            for key in keys:
                self._owners.pop(key, None)
                if self._entries.pop(key, None) is not None:
                    removed += 1
            return removed

    def indexed_users(self) -> int:
        with self._lock:
            self._entries.expire()
            return len(self._by_user)

    def __len__(self) -> int:
        with self._lock:
            self._entries.expire()
            return len(self._entries)

    def _forget(self, key: str) -> None:
        # Called with the lock held, including from inside the TTL cache.
        user_id = self._owners.pop(key, None)
        if user_id is None:
            return
        keys = self._by_user.get(user_id)
        if keys is None:
            return
        keys.discard(key)
        if not keys:
            del self._by_user[user_id]
