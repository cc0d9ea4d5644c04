"""Per-key mutual exclusion for in-process callers.

``KeyedLock`` hands out one ``FairRLock`` per key, created on first use.
Callers on the same key run one at a time; callers on different keys never
wait on each other. The lock is reentrant, so a thread already inside a key's
critical section may enter it again.

Waiters are served in FIFO order, so under contention the order of committed
operations for one key follows the order in which callers started waiting.

Entries are never evicted from the registry. Memory grows with the number of
distinct keys ever seen.
"""

import threading
from contextlib import contextmanager
from typing import Any, Callable, Dict, Hashable, Iterator, TypeVar

import structlog

logger = structlog.get_logger()

T = TypeVar("T")


class FairRLock:
    """Reentrant lock granting ownership in ticket order.

    Each first-level ``acquire`` draws a ticket; the lock passes to the next
    ticket when the owner's hold count drops to zero.
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._owner = None
        self._count = 0
        self._next_ticket = 0
        self._serving = 0

    def acquire(self) -> None:
        me = threading.get_ident()
        with self._cond:
            if self._owner == me:
                self._count += 1
                return
            ticket = self._next_ticket
            self._next_ticket += 1
            while self._owner is not None or ticket != self._serving:
                self._cond.wait()
            self._owner = me
            self._count = 1

    def release(self) -> None:
        with self._cond:
            if self._owner != threading.get_ident():
                raise RuntimeError("cannot release un-acquired lock")
            self._count -= 1
            if self._count == 0:
                self._owner = None
                self._serving += 1
                self._cond.notify_all()

    @property
    def waiting(self) -> int:
        """Number of threads queued behind the current owner."""
        with self._cond:
            return self._next_ticket - self._serving - (1 if self._owner is not None else 0)

    def __enter__(self):
        self.acquire()
        return self

    def __exit__(self, *exc_info):
        self.release()


class KeyedLock:
    def __init__(self):
        self._locks: Dict[Hashable, FairRLock] = {}
        self._registry_lock = threading.Lock()

    def _get_lock(self, key: Hashable) -> FairRLock:
        lock = self._locks.get(key)
        if lock is not None:
            return lock
        with self._registry_lock:
            lock = self._locks.get(key)
            if lock is None:
                lock = FairRLock()
                self._locks[key] = lock
                logger.debug("Lock created", key=key, registered=len(self._locks))
            return lock

    def acquire(self, key: Hashable) -> None:
        """Block until the calling thread holds the mutex for ``key``."""
        self._get_lock(key).acquire()

    def release(self, key: Hashable) -> None:
        """Release the mutex for ``key``. No-op if the caller does not hold it."""
        lock = self._locks.get(key)
        if lock is None:
            return
        try:
            lock.release()
        except RuntimeError:
            # not owned by this thread
            return

    def run_exclusive(self, key: Hashable, body: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run ``body`` while holding the mutex for ``key`` and return its result.

        The mutex is released on every exit path; errors raised by ``body``
        propagate after release.
        """
        lock = self._get_lock(key)
        lock.acquire()
        try:
            return body(*args, **kwargs)
        finally:
            lock.release()

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        """Context manager form of ``run_exclusive``."""
        lock = self._get_lock(key)
        lock.acquire()
        try:
            yield
        finally:
            lock.release()

    def __len__(self) -> int:
        return len(self._locks)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._locks
