"""
Resource locks - mutual exclusion over shared business resources.

A node whose metadata names a ``resource_ref`` runs its critical section
while holding the lock on that resource. Acquisition never waits: a busy
resource fails fast and the caller decides what to do.

Backends:
- InMemoryResourceLockManager: one process, many threads
- RedisResourceLockManager: many processes sharing a Redis server
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Iterator, Optional

from redis import Redis

from sagarun.errors import LockAcquisitionFailure
from sagarun.schemas import ResourceLock

logger = logging.getLogger(__name__)


class ResourceLockManager(ABC):
    """Non-blocking, per-resource exclusive locks."""

    @abstractmethod
    def try_acquire(self, resource_id: str, holder: str) -> bool:
        """
        Attempt to take the lock.

        Returns:
            True if acquired, False if another holder has it
        """
        pass

    @abstractmethod
    def release(self, resource_id: str, holder: Optional[str] = None) -> None:
        """
        Release a lock.

        With ``holder`` the lock is only released if that holder owns it.
        Releasing a lock that is not held is a no-op.
        """
        pass

    @abstractmethod
    def holder_of(self, resource_id: str) -> Optional[ResourceLock]:
        """Return the current lock on a resource, if any."""
        pass

    @contextmanager
    def hold(self, resource_id: str, holder: str, node_id: Optional[str] = None) -> Iterator[ResourceLock]:
        """
        Hold a resource for the duration of a block.

        Raises:
            LockAcquisitionFailure: If the resource is busy
        """
        if not self.try_acquire(resource_id, holder):
            current = self.holder_of(resource_id)
            raise LockAcquisitionFailure(
                resource_id,
                node_id=node_id,
                holder=current.holder_run_epoch if current else None,
            )
        try:
            yield self.holder_of(resource_id) or ResourceLock(resource_id, holder)
        finally:
            self.release(resource_id, holder)


class InMemoryResourceLockManager(ResourceLockManager):
    """Process-local lock table guarded by a mutex."""

    def __init__(self) -> None:
        self._locks: dict[str, ResourceLock] = {}
        self._mutex = threading.Lock()

    def try_acquire(self, resource_id: str, holder: str) -> bool:
        with self._mutex:
            if resource_id in self._locks:
                return False
            self._locks[resource_id] = ResourceLock(resource_id=resource_id, holder_run_epoch=holder)
        logger.debug(f"Lock acquired: {resource_id} by {holder}")
        return True

    def release(self, resource_id: str, holder: Optional[str] = None) -> None:
        with self._mutex:
            current = self._locks.get(resource_id)
            if current is None:
                return
            if holder is not None and current.holder_run_epoch != holder:
                logger.warning(
                    f"Not releasing {resource_id}: held by {current.holder_run_epoch}, not {holder}"
                )
                return
            del self._locks[resource_id]
        logger.debug(f"Lock released: {resource_id}")

    def holder_of(self, resource_id: str) -> Optional[ResourceLock]:
        with self._mutex:
            return self._locks.get(resource_id)


class RedisResourceLockManager(ResourceLockManager):
    """
    Fleet-wide locks stored in Redis.

    Acquisition is ``SET key value NX EX ttl``; the TTL bounds how long a
    crashed holder can keep a resource. Release is a compare-and-delete
    script so a holder never frees a lock that expired and was taken by
    someone else.
    """

    _RELEASE_SCRIPT = """
    local current = redis.call('GET', KEYS[1])
    if not current then
        return 0
    end
    if ARGV[1] == '' or cjson.decode(current)['holder_run_epoch'] == ARGV[1] then
        return redis.call('DEL', KEYS[1])
    end
    return 0
    """

    def __init__(self, client: Redis, ttl_seconds: int = 300, prefix: str = "sagarun:lock:"):
        self._client = client
        self._ttl_seconds = max(1, int(ttl_seconds))
        self._prefix = prefix

    @classmethod
    def from_url(cls, redis_url: str, ttl_seconds: int = 300) -> "RedisResourceLockManager":
        return cls(Redis.from_url(redis_url, decode_responses=True), ttl_seconds=ttl_seconds)

    def _key(self, resource_id: str) -> str:
        return f"{self._prefix}{resource_id}"

    def try_acquire(self, resource_id: str, holder: str) -> bool:
        lock = ResourceLock(resource_id=resource_id, holder_run_epoch=holder)
        acquired = self._client.set(
            self._key(resource_id), json.dumps(lock.to_dict()), ex=self._ttl_seconds, nx=True
        )
        return bool(acquired)

    def release(self, resource_id: str, holder: Optional[str] = None) -> None:
        self._client.eval(self._RELEASE_SCRIPT, 1, self._key(resource_id), holder or "")

    def holder_of(self, resource_id: str) -> Optional[ResourceLock]:
        raw = self._client.get(self._key(resource_id))
        if not raw:
            return None
        try:
            return ResourceLock.from_dict(json.loads(raw))
        except (json.JSONDecodeError, TypeError, KeyError, ValueError):
            logger.warning(f"Unreadable lock value for {resource_id}: {raw!r}")
            return None
