# File: parkangel/infrastructure/locks.py
"""
Per-recipient serialization for remittance work

Two remittance runs for the same recipient must never interleave, while
runs for different recipients proceed in parallel.

1. InMemoryRecipientLocks - one threading.Lock per recipient (single process)
2. RedisRecipientLocks - redis-py distributed lock per recipient (across processes)
"""

from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Dict, Iterator, Optional
import logging
import threading

import redis
from redis.exceptions import LockError

from ..domain.models import RemittanceStateError


class RecipientLockProvider(ABC):
    """Hands out a mutually exclusive section per recipient id"""

    @abstractmethod
    def hold(self, recipient_id: str) -> Iterator[None]:
        """Context manager holding the recipient's lock"""
        pass


class InMemoryRecipientLocks(RecipientLockProvider):

    def __init__(self):
        self._locks: Dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, recipient_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(recipient_id)
            if lock is None:
                lock = self._locks[recipient_id] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, recipient_id: str) -> Iterator[None]:
        lock = self._lock_for(recipient_id)
        with lock:
            yield


class RedisRecipientLocks(RecipientLockProvider):
    """
    Distributed lock keyed by recipient

    timeout bounds how long a crashed holder can block others;
    blocking_timeout bounds how long a caller waits before giving up.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        timeout: float = 300.0,
        blocking_timeout: Optional[float] = 60.0,
        prefix: str = "parkangel:remittance-lock:",
        client: Optional[redis.Redis] = None
    ):
        self.redis_client = client or redis.Redis.from_url(redis_url)
        self.timeout = timeout
        self.blocking_timeout = blocking_timeout
        self.prefix = prefix
        self._logger = logging.getLogger(self.__class__.__name__)

    @contextmanager
    def hold(self, recipient_id: str) -> Iterator[None]:
        lock = self.redis_client.lock(
            f"{self.prefix}{recipient_id}",
            timeout=self.timeout,
            blocking_timeout=self.blocking_timeout
        )
        if not lock.acquire():
            raise RemittanceStateError(f"Timed out waiting for remittance lock of {recipient_id}")
        try:
            yield
        finally:
            try:
                lock.release()
            except LockError as e:
                self._logger.warning(f"Remittance lock for {recipient_id} expired before release: {e}")
