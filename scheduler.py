import heapq
import itertools
import logging
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from typing import Callable

logger = logging.getLogger(__name__)


class SchedulerClosedError(RuntimeError):
    pass


class ScheduledTask(ABC):
    """Cancelable handle to a periodic job."""

    @abstractmethod
    def cancel(self) -> None:
        """
        Stop future runs. Safe to call any number of times.
        A run that already started is not interrupted.
        """

    @property
    @abstractmethod
    def cancelled(self) -> bool: ...


class Scheduler(ABC):
    @abstractmethod
    def schedule(self, task: Callable[[], None], period: float) -> ScheduledTask:
        """Run `task` every `period` seconds, first run one period from now."""


class _FixedRateTask(ScheduledTask):
    def __init__(self, fn: Callable[[], None], period: float, due: float):
        self.fn = fn
        self.period = period
        self.due = due
        self._cancelled = threading.Event()

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()


class StandaloneScheduler(Scheduler):
    """
    Fixed-rate scheduler backed by a thread pool.

    One dispatcher thread keeps due times in a heap and hands due runs to
    the pool. A task is re-queued only after its run returns, so runs of the
    same task never overlap; a late run fires as soon as the previous one
    finishes. A task that raises is logged and dropped.

    Meant to be shared by every lock in the process: create it at startup,
    `close()` it at teardown.
    """

    def __init__(self, max_workers: int = 4, grace: float = 5.0):
        self.grace = grace
        self._pool = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="lock-renewal")
        self._queue: list[tuple[float, int, _FixedRateTask]] = []
        self._seq = itertools.count()
        self._cond = threading.Condition()
        self._closed = False
        self._terminated = False
        self._in_flight = 0
        self._dispatcher = threading.Thread(target=self._dispatch, name="scheduler-dispatch", daemon=True)
        self._dispatcher.start()

    @property
    def closed(self) -> bool:
        return self._closed

    def schedule(self, task: Callable[[], None], period: float) -> ScheduledTask:
        if period <= 0:
            raise ValueError(f"period must be positive, got {period}")
        handle = _FixedRateTask(task, period, time.monotonic() + period)
        with self._cond:
            if self._closed:
                raise SchedulerClosedError("cannot schedule on a closed scheduler")
            self._push(handle)
        return handle

    def close(self) -> bool:
        """
        Stop accepting work, drop pending runs and wait up to `grace` seconds
        for runs already in progress. Runs still going after that are
        abandoned. Returns True if everything finished in time.
        """
        with self._cond:
            if self._closed:
                return self._terminated
            self._closed = True
            self._queue.clear()
            self._cond.notify_all()

            deadline = time.monotonic() + self.grace
            while self._in_flight:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                self._cond.wait(remaining)
            self._terminated = self._in_flight == 0
            abandoned = self._in_flight

        if abandoned:
            logger.warning(
                "Scheduler grace period of %.2fs elapsed, abandoning %d running task(s)",
                self.grace,
                abandoned,
            )
        self._pool.shutdown(wait=self._terminated, cancel_futures=True)
        self._dispatcher.join(timeout=1.0)
        return self._terminated

    def __enter__(self):
        return self

    def __exit__(self, *_):
        self.close()

    # caller holds self._cond
    def _push(self, handle: _FixedRateTask) -> None:
        heapq.heappush(self._queue, (handle.due, next(self._seq), handle))
        self._cond.notify_all()

    def _dispatch(self) -> None:
        with self._cond:
            while not self._closed:
                if not self._queue:
                    self._cond.wait()
                    continue

                due, _, handle = self._queue[0]
                if handle.cancelled:
                    heapq.heappop(self._queue)
                    continue

                wait = due - time.monotonic()
                if wait > 0:
                    self._cond.wait(wait)
                    continue

                heapq.heappop(self._queue)
                self._in_flight += 1
                self._pool.submit(self._run, handle)

    def _run(self, handle: _FixedRateTask) -> None:
        try:
            if not handle.cancelled:
                handle.fn()
        except Exception:
            logger.exception("Scheduled task %r failed, it will not run again", handle.fn)
            handle.cancel()
        finally:
            with self._cond:
                self._in_flight -= 1
                if not self._closed and not handle.cancelled:
                    handle.due += handle.period
                    self._push(handle)
                self._cond.notify_all()
