"""
Concurrency management and thread safety components.
"""

import logging
import threading
import time
import uuid
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterator, List, Optional, Set

from ..core.exceptions import ConcurrencyError

logger = logging.getLogger(__name__)

PERIOD_LIFECYCLE_RESOURCE = "period_lifecycle"


class LockType(Enum):
    """Types of locks available."""
    READ = "read"
    WRITE = "write"


@dataclass
class LockInfo:
    """Information about a held lock."""
    lock_id: str
    resource_id: str
    lock_type: LockType
    holder_id: str
    acquired_at: float
    timeout: Optional[float] = None


def course_resource(course_id: str) -> str:
    return f"course:{course_id}"


def enrollment_resource(enrollment_id: str) -> str:
    return f"enrollment:{enrollment_id}"


def current_holder(prefix: str) -> str:
    """Holder id for the calling thread, so nested acquisitions by one call are re-entrant."""
    return f"{prefix}_{threading.get_ident()}"


class ConcurrencyManager:
    """Manages concurrency control with optimistic and pessimistic locking.

    Read locks coexist with each other; a write lock excludes every lock held by
    another holder. A holder may take further locks on a resource it already
    holds. ``acquire_lock`` either fails straight away or, given ``wait``, blocks
    up to that many seconds for conflicting holders to release.
    """

    def __init__(self, default_wait: float = 5.0):
        self._default_wait = default_wait
        self._locks: Dict[str, Dict[LockType, Set[str]]] = defaultdict(lambda: defaultdict(set))
        self._lock_holders: Dict[str, LockInfo] = {}
        self._lock_timeouts: Dict[str, float] = {}
        self._version_tracker: Dict[str, int] = {}
        self._lock = threading.RLock()
        self._released = threading.Condition(self._lock)

    @property
    def default_wait(self) -> float:
        return self._default_wait

    def acquire_lock(self, resource_id: str, lock_type: LockType, holder_id: str,
                     timeout: Optional[float] = None, wait: Optional[float] = None) -> str:
        """Acquire a lock on a resource.

        ``timeout`` bounds how long the lock may be held before it is treated as
        abandoned; ``wait`` bounds how long to block for it.
        """
        with self._released:
            deadline = time.monotonic() + wait if wait else None
            while True:
                self._expire_locks()
                if self._can_acquire_lock(resource_id, lock_type, holder_id):
                    break
                remaining = deadline - time.monotonic() if deadline is not None else 0
                if remaining <= 0:
                    if wait:
                        raise ConcurrencyError(
                            f"Timed out waiting for {lock_type.value} lock on {resource_id}",
                            details={'resource_id': resource_id, 'wait': wait}
                        )
                    raise ConcurrencyError(
                        f"Cannot acquire {lock_type.value} lock on {resource_id}",
                        details={'resource_id': resource_id}
                    )
                self._released.wait(remaining)

            lock_id = str(uuid.uuid4())
            self._locks[resource_id][lock_type].add(lock_id)
            self._lock_holders[lock_id] = LockInfo(
                lock_id=lock_id,
                resource_id=resource_id,
                lock_type=lock_type,
                holder_id=holder_id,
                acquired_at=time.time(),
                timeout=timeout
            )
            if timeout:
                self._lock_timeouts[lock_id] = time.time() + timeout
            return lock_id

    def release_lock(self, lock_id: str) -> bool:
        """Release a lock."""
        with self._released:
            if lock_id not in self._lock_holders:
                return False

            lock_info = self._lock_holders.pop(lock_id)
            resource_id = lock_info.resource_id
            lock_type = lock_info.lock_type

            self._locks[resource_id][lock_type].discard(lock_id)
            if not self._locks[resource_id][lock_type]:
                del self._locks[resource_id][lock_type]
            if not self._locks[resource_id]:
                del self._locks[resource_id]
            self._lock_timeouts.pop(lock_id, None)

            self._released.notify_all()
            return True

    def _can_acquire_lock(self, resource_id: str, lock_type: LockType, holder_id: str) -> bool:
        """Check if a lock can be acquired."""
        existing_locks = self._locks.get(resource_id, {})
        others: Dict[LockType, int] = defaultdict(int)
        for held_type, lock_ids in existing_locks.items():
            for lock_id in lock_ids:
                if self._lock_holders[lock_id].holder_id != holder_id:
                    others[held_type] += 1

        if lock_type == LockType.READ:
            return others[LockType.WRITE] == 0
        return not any(others.values())

    def _expire_locks(self) -> None:
        now = time.time()
        expired = [lock_id for lock_id, deadline in self._lock_timeouts.items() if now > deadline]
        for lock_id in expired:
            logger.warning("Releasing expired lock %s on %s",
                           lock_id, self._lock_holders[lock_id].resource_id)
            self.release_lock(lock_id)

    @contextmanager
    def lock(self, resource_id: str, lock_type: LockType, holder_id: str,
             timeout: Optional[float] = None, wait: Optional[float] = None) -> Iterator[str]:
        """Context manager for acquiring and releasing locks."""
        lock_id = self.acquire_lock(resource_id, lock_type, holder_id, timeout=timeout, wait=wait)
        try:
            yield lock_id
        finally:
            self.release_lock(lock_id)

    def get_version(self, resource_id: str) -> int:
        """Get current version of a resource for optimistic concurrency control."""
        with self._lock:
            return self._version_tracker.get(resource_id, 0)

    def increment_version(self, resource_id: str) -> int:
        """Increment version of a resource."""
        with self._lock:
            new_version = self._version_tracker.get(resource_id, 0) + 1
            self._version_tracker[resource_id] = new_version
            return new_version

    def check_version(self, resource_id: str, expected_version: int) -> bool:
        """Check if resource version matches expected version."""
        with self._lock:
            return self._version_tracker.get(resource_id, 0) == expected_version

    def get_lock_info(self, resource_id: str) -> List[LockInfo]:
        """Get information about all locks on a resource."""
        with self._lock:
            return [
                self._lock_holders[lock_id]
                for lock_ids in self._locks.get(resource_id, {}).values()
                for lock_id in lock_ids
                if lock_id in self._lock_holders
            ]

    def get_holder_locks(self, holder_id: str) -> List[LockInfo]:
        """Get all locks held by a specific holder."""
        with self._lock:
            return [info for info in self._lock_holders.values() if info.holder_id == holder_id]
