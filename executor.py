import logging
import threading
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, TypeVar

from watcher import LockNotAcquiredError, as_seconds

logger = logging.getLogger(__name__)

T = TypeVar("T")


class RetryingError(Exception):
    """Acquisition did not succeed within the retry policy."""

    def __init__(self, attempts: int, last_cause: LockNotAcquiredError | None, cancelled: bool = False):
        reason = "cancelled" if cancelled else "gave up"
        super().__init__(f"{reason} after {attempts} attempt(s): {last_cause}")
        self.attempts = attempts
        self.last_cause = last_cause
        self.cancelled = cancelled


@dataclass(frozen=True)
class RetryPolicy:
    delay: float     # wait between attempts
    deadline: float  # overall cutoff for the retry loop
    tries: int       # max attempts

    def __post_init__(self):
        if self.tries < 1:
            raise ValueError(f"tries must be at least 1, got {self.tries}")
        if self.delay < 0:
            raise ValueError(f"delay must not be negative, got {self.delay}")
        if self.deadline <= 0:
            raise ValueError(f"deadline must be positive, got {self.deadline}")


class LockExecutor:
    """
    Runs an operation until it stops raising LockNotAcquiredError.

    Only that error is retried; anything else propagates on the first
    occurrence. Gives up with RetryingError after `tries` attempts or once
    the next wait would run past the deadline.
    """

    def __init__(self, delay: float | timedelta, until: float | timedelta, tries: int):
        self.policy = RetryPolicy(delay=as_seconds(delay), deadline=as_seconds(until), tries=tries)

    @classmethod
    def from_policy(cls, policy: RetryPolicy) -> "LockExecutor":
        return cls(policy.delay, policy.deadline, policy.tries)

    def supply(self, fn: Callable[[], T], cancel: threading.Event | None = None) -> T:
        policy = self.policy
        waiter = cancel or threading.Event()
        deadline = time.monotonic() + policy.deadline
        attempts = 0

        while True:
            attempts += 1
            try:
                return fn()
            except LockNotAcquiredError as e:
                last = e

            if attempts >= policy.tries or time.monotonic() + policy.delay > deadline:
                logger.warning("Giving up on lock '%s' after %d attempt(s)", last.key, attempts)
                raise RetryingError(attempts, last) from last

            logger.debug("Lock '%s' busy, attempt %d/%d, retrying in %.3fs", last.key, attempts, policy.tries, policy.delay)
            if waiter.wait(policy.delay):
                logger.info("Waiting for lock '%s' cancelled after %d attempt(s)", last.key, attempts)
                raise RetryingError(attempts, last, cancelled=True) from last

    def execute(self, fn: Callable[[], None], cancel: threading.Event | None = None) -> None:
        self.supply(fn, cancel)
