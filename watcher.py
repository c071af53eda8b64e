import logging
import threading
from dataclasses import dataclass
from datetime import timedelta
from typing import Hashable

import redis
from redis_client import KeyValue
from scheduler import ScheduledTask, Scheduler

logger = logging.getLogger(__name__)


class LockNotAcquiredError(Exception):
    """The key is currently held by another owner. Worth retrying."""

    def __init__(self, key: str, owner: "OwnerToken"):
        super().__init__(f"lock '{key}' is held by another owner (wanted by {owner})")
        self.key = key
        self.owner = owner


@dataclass(frozen=True)
class OwnerToken:
    identity: str
    caller_id: Hashable

    def __str__(self) -> str:
        return f"{self.identity}:{self.caller_id}"


@dataclass
class _Renewal:
    handle: ScheduledTask
    lost: threading.Event


def as_seconds(value: float | timedelta) -> float:
    if isinstance(value, timedelta):
        return value.total_seconds()
    return float(value)


class LockWatcher:
    """
    Owns the on-the-wire state of one lock key: acquire, renew, release.

    Every mutation is a single atomic call on the key-value store; the store
    decides who owns the key. Renewal runs on the shared scheduler every
    third of the lease, so one missed tick does not let the lease lapse.
    """

    def __init__(
        self,
        scheduler: Scheduler,
        identity: str,
        key: str,
        until: float | timedelta,
        key_value: KeyValue,
    ):
        self.scheduler = scheduler
        self.identity = identity
        self.key = key
        self.until = as_seconds(until)
        if self.until <= 0:
            raise ValueError(f"lease must be positive, got {until}")
        self.key_value = key_value
        self._renewals: dict[OwnerToken, _Renewal] = {}
        self._renewals_lock = threading.Lock()

    def owner(self, caller_id: Hashable) -> OwnerToken:
        return OwnerToken(self.identity, caller_id)

    def acquire(self, caller_id: Hashable) -> bool:
        owner = self.owner(caller_id)
        acquired = self.key_value.set_if_absent_or_same_owner(self.key, str(owner), self.until)
        if acquired:
            logger.debug("Lock '%s' acquired by %s for %.3fs", self.key, owner, self.until)
        return acquired

    def acquire_or_raise(self, caller_id: Hashable) -> None:
        if not self.acquire(caller_id):
            raise LockNotAcquiredError(self.key, self.owner(caller_id))

    def start_watching(self, caller_id: Hashable) -> ScheduledTask:
        owner = self.owner(caller_id)
        lost = threading.Event()
        holder: list[ScheduledTask] = []

        def renew():
            try:
                extended = self.key_value.extend_if_same_owner(self.key, str(owner), self.until)
            except redis.RedisError as e:
                # two thirds of the lease remain; try again next tick
                logger.error("Renewal of lock '%s' for %s failed: %s", self.key, owner, e)
                return
            except Exception:
                # the scheduler drops a task that raises; the lease is unprotected from here on
                lost.set()
                raise
            if not extended:
                if holder and holder[0].cancelled:
                    # stopped while this tick was in flight, the key was released on purpose
                    return
                logger.warning("Lock '%s' is no longer held by %s, stopping renewal", self.key, owner)
                lost.set()
                if holder:
                    holder[0].cancel()

        handle = self.scheduler.schedule(renew, self.until / 3)
        holder.append(handle)

        with self._renewals_lock:
            previous = self._renewals.pop(owner, None)
            self._renewals[owner] = _Renewal(handle, lost)
        if previous is not None:
            previous.handle.cancel()
        return handle

    def stop_watching(self, caller_id: Hashable) -> None:
        with self._renewals_lock:
            renewal = self._renewals.pop(self.owner(caller_id), None)
        if renewal is not None:
            renewal.handle.cancel()

    def ownership_lost(self, caller_id: Hashable) -> bool:
        """True if the running renewal found the key owned by someone else."""
        with self._renewals_lock:
            renewal = self._renewals.get(self.owner(caller_id))
        return renewal is not None and renewal.lost.is_set()

    def release(self, caller_id: Hashable) -> None:
        owner = self.owner(caller_id)
        # the lease may have expired and been taken over; that is not an error
        if self.key_value.delete_if_same_owner(self.key, str(owner)):
            logger.debug("Lock '%s' released by %s", self.key, owner)
        else:
            logger.debug("Lock '%s' was not held by %s at release", self.key, owner)

    def force_release(self) -> None:
        """
        Delete the key whoever holds it.

        Administrative escape hatch: if another live owner holds the lock,
        mutual exclusion is broken and a second owner can enter. Use only to
        clear a lock known to be abandoned.
        """
        logger.warning("Force releasing lock '%s'", self.key)
        self.key_value.delete(self.key)
