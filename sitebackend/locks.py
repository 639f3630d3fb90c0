"""
Per-key serialization of updates.

Two concurrent updates of the same record would otherwise both release the
attachment they fetched as "current", deleting a file the winning write still
references.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import ContextManager, Dict, Iterator, Protocol

import redis
from redis import exceptions as redis_exceptions

from sitebackend.errors import PersistenceFailure

logger = logging.getLogger(__name__)


class KeyLocks(Protocol):
    """Hands out one exclusive lock per resource key."""

    def hold(self, key: str) -> ContextManager[None]:
        ...


@dataclass
class InMemoryKeyLocks:
    """
    Process-local locks, enough for a single worker process.

    A key's entry lives only while some thread holds or waits on it.
    """

    locks: Dict[str, threading.Lock] = field(default_factory=dict)
    users: Dict[str, int] = field(default_factory=dict)

    def __post_init__(self):
        self._guard = threading.Lock()

    def _checkout(self, key: str) -> threading.Lock:
        with self._guard:
            lock = self.locks.get(key)
            if lock is None:
                lock = self.locks[key] = threading.Lock()
            self.users[key] = self.users.get(key, 0) + 1
            return lock

    def _checkin(self, key: str) -> None:
        with self._guard:
            remaining = self.users[key] - 1
            if remaining:
                self.users[key] = remaining
            else:
                del self.users[key]
                del self.locks[key]

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self._checkout(key)
        try:
            with lock:
                yield
        finally:
            self._checkin(key)


@dataclass
class RedisKeyLocks:
    """Redis-backed locks so every worker process serializes on the same key."""

    url: str
    prefix: str = "sitebackend:lock:"
    timeout: float = 30.0

    def __post_init__(self):
        self.client = redis.Redis.from_url(self.url)

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        lock = self.client.lock(
            f"{self.prefix}{key}",
            timeout=self.timeout,
            blocking_timeout=self.timeout,
        )
        try:
            acquired = lock.acquire()
        except redis_exceptions.ConnectionError as exc:
            raise PersistenceFailure(
                "Could not reach the lock server", detail=str(exc)
            ) from exc
        if not acquired:
            raise PersistenceFailure(f"Timed out waiting for lock on {key}")
        try:
            yield
        finally:
            try:
                lock.release()
            except redis_exceptions.LockError:
                # Lock expired while held; the next writer already owns it.
                logger.warning("Lock on %s expired before release", key)
