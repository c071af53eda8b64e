import logging
import threading
from contextlib import contextmanager
from datetime import timedelta
from typing import Callable, Hashable, Iterator, TypeVar

from executor import LockExecutor, RetryingError
from redis_client import KeyValue
from scheduler import Scheduler
from watcher import LockNotAcquiredError, LockWatcher

logger = logging.getLogger(__name__)

T = TypeVar("T")

__all__ = ["DistributedLock", "LockNotAcquiredError", "RetryingError"]


class DistributedLock:
    """
    Lease-based lock on one key of a Redis-like store.

    The value at the key is an owner token (`identity:caller_id`) so only
    the owner can renew or release it. While the body runs, a watchdog on
    the shared scheduler keeps extending the lease. If the process dies the
    lease simply expires.

    Usage:
        lock = DistributedLock.create(scheduler, "lock:reports", identity,
                                      delay=0.1, until=30, tries=50,
                                      key_value=RedisKeyValue())
        total = lock.supply(threading.get_ident(), build_report)
    """

    def __init__(
        self,
        scheduler: Scheduler,
        key: str,
        identity: str,
        delay: float | timedelta,
        until: float | timedelta,
        tries: int,
        key_value: KeyValue,
    ):
        self.key = key
        self.watcher = LockWatcher(scheduler, identity, key, until, key_value)
        self.executor = LockExecutor(delay, until, tries)

    @classmethod
    def create(
        cls,
        scheduler: Scheduler,
        key: str,
        identity: str,
        delay: float | timedelta,
        until: float | timedelta,
        tries: int,
        key_value: KeyValue,
    ) -> "DistributedLock":
        return cls(scheduler, key, identity, delay, until, tries, key_value)

    def supply(self, caller_id: Hashable, body: Callable[[], T], cancel: threading.Event | None = None) -> T:
        """
        Wait for the lock (within the retry policy), run `body` and return its
        result. Raises RetryingError if the lock never became free.
        """
        self.executor.execute(lambda: self.watcher.acquire_or_raise(caller_id), cancel)
        return self._run_held(caller_id, body)

    def execute(self, caller_id: Hashable, body: Callable[[], None], cancel: threading.Event | None = None) -> None:
        self.supply(caller_id, body, cancel)

    def try_once(self, caller_id: Hashable, body: Callable[[], None]) -> bool:
        """Single attempt: False right away if the lock is held elsewhere."""
        if not self.watcher.acquire(caller_id):
            return False
        self._run_held(caller_id, body)
        return True

    @contextmanager
    def hold(self, caller_id: Hashable, cancel: threading.Event | None = None) -> Iterator["DistributedLock"]:
        """`with lock.hold(caller_id):` form of `execute`."""
        self.executor.execute(lambda: self.watcher.acquire_or_raise(caller_id), cancel)
        try:
            self.watcher.start_watching(caller_id)
            try:
                yield self
            finally:
                self._stop_watching(caller_id)
        finally:
            self.watcher.release(caller_id)

    def force_release(self) -> None:
        """
        Delete the key no matter who holds it. Breaks mutual exclusion if a
        live owner still holds the lock; see LockWatcher.force_release.
        """
        self.watcher.force_release()

    # must only be called after a successful acquire
    def _run_held(self, caller_id: Hashable, body: Callable[[], T]) -> T:
        try:
            self.watcher.start_watching(caller_id)
            try:
                return body()
            finally:
                self._stop_watching(caller_id)
        finally:
            self.watcher.release(caller_id)

    def _stop_watching(self, caller_id: Hashable) -> None:
        if self.watcher.ownership_lost(caller_id):
            logger.warning("Lock '%s' was lost or left unrenewed while %s held it", self.key, self.watcher.owner(caller_id))
        self.watcher.stop_watching(caller_id)
