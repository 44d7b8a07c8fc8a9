"""Keyed mutual exclusion for per-user and per-conversation work."""
from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from typing import ContextManager, Iterator, Protocol

from redis import Redis
from redis.exceptions import LockError

logger = logging.getLogger(__name__)


class LockTimeout(Exception):
    """A keyed lock could not be acquired in time."""

    def __init__(self, key: str, timeout: float):
        super().__init__(f"Timed out after {timeout}s waiting for lock {key!r}")
        self.key = key
        self.timeout = timeout


def user_key(user_id: int) -> str:
    return f"user:{user_id}"


def conversation_key(conversation_id: int) -> str:
    return f"conversation:{conversation_id}"


class KeyedLocks(Protocol):
    def hold(self, key: str) -> ContextManager[None]: ...


class LocalKeyedLocks:
    """In-process lock table, one ``threading.Lock`` per key."""

    def __init__(self, timeout: float = 120.0):
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()
        self._timeout = timeout

    def _lock_for(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = self._locks[key] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self._lock_for(key)
        if not lock.acquire(timeout=self._timeout):
            raise LockTimeout(key, self._timeout)
        try:
            yield
        finally:
            lock.release()


class RedisKeyedLocks:
    """Cross-process locks over ``Redis.lock`` for RQ workers and the bot process.

    ``lease`` bounds how long a crashed holder can keep a key.
    """

    def __init__(
        self,
        conn: Redis,
        timeout: float = 120.0,
        lease: float = 600.0,
        prefix: str = "memobot:lock:",
    ):
        self._conn = conn
        self._timeout = timeout
        self._lease = lease
        self._prefix = prefix

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self._conn.lock(
            self._prefix + key,
            timeout=self._lease,
            blocking_timeout=self._timeout,
        )
        if not lock.acquire():
            raise LockTimeout(key, self._timeout)
        try:
            yield
        finally:
            try:
                lock.release()
            except LockError:
                logger.warning(f"Lock {key!r} expired before release")
