"""Per-key throttled execution with retry.

Work is accepted immediately and queued per key. A dispatcher thread starts
queued items on a worker pool, never letting more than ``limit`` items for
the same key begin within any rolling ``period``. Each item runs under a
tenacity retry loop; items that exhaust their attempts (or fail with a
terminal ledger error) are handed to the error sink.
"""

import logging
import threading
import time
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from config import RetryPolicy, ThrottlePolicy
from errors import LedgerError


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FailedWork:
    key: str
    label: str
    attempts: int
    error: BaseException


def log_failed_work(failure: FailedWork) -> None:
    logger.error(
        f"work_failed: key={failure.key} label={failure.label} "
        f"attempts={failure.attempts} error={failure.error!r}"
    )


class RateWindow:
    """Start times of recent items for one key."""

    def __init__(self, limit: int, period_secs: float) -> None:
        if limit < 1:
            raise ValueError("Throttle limit must be at least 1")
        self.limit = limit
        self.period_secs = period_secs
        self._starts: deque[float] = deque()

    def _prune(self, now: float) -> None:
        while self._starts and now - self._starts[0] >= self.period_secs:
            self._starts.popleft()

    def reserve(self, now: float) -> float:
        """Record a start at ``now`` if allowed; otherwise return seconds to wait."""
        self._prune(now)
        if len(self._starts) < self.limit:
            self._starts.append(now)
            return 0.0
        return self._starts[0] + self.period_secs - now

    def idle(self, now: float) -> bool:
        self._prune(now)
        return not self._starts


@dataclass
class _WorkUnit:
    key: str
    label: str
    work: Callable[[], Any]
    future: Future = field(default_factory=Future)


class KeyedThrottleExecutor:
    def __init__(
        self,
        throttle: ThrottlePolicy,
        retry: RetryPolicy,
        *,
        max_workers: int = 4,
        error_sink: Optional[Callable[[FailedWork], None]] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.throttle = throttle
        self.retry = retry
        self.error_sink = error_sink or log_failed_work
        self._clock = clock
        self._pool = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="ledger-work"
        )
        self._pending: dict[str, deque[_WorkUnit]] = {}
        self._windows: dict[str, RateWindow] = {}
        self._cond = threading.Condition()
        self._closed = False
        self._dispatcher = threading.Thread(
            target=self._dispatch_loop, name="ledger-throttle", daemon=True
        )
        self._dispatcher.start()

    def submit(
        self, key: object, work: Callable[[], Any], *, label: Optional[str] = None
    ) -> Future:
        unit = _WorkUnit(key=str(key), label=label or repr(work), work=work)
        with self._cond:
            if self._closed:
                raise RuntimeError("Executor has been shut down")
            self._pending.setdefault(unit.key, deque()).append(unit)
            self._cond.notify()
        return unit.future

    def pending(self) -> int:
        with self._cond:
            return sum(len(queue) for queue in self._pending.values())

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting work.

        With ``wait`` queued items are still started and awaited; without it
        queued items are cancelled. Cancelled recurring work stays due and is
        picked up by the next discovery scan.
        """
        with self._cond:
            self._closed = True
            if not wait:
                for queue in self._pending.values():
                    for unit in queue:
                        unit.future.cancel()
                self._pending.clear()
            self._cond.notify_all()
        self._dispatcher.join()
        self._pool.shutdown(wait=wait)

    def _dispatch_loop(self) -> None:
        with self._cond:
            while True:
                wait = self._start_ready()
                if self._closed and not self._pending:
                    return
                self._cond.wait(timeout=wait)

    def _start_ready(self) -> Optional[float]:
        now = self._clock()
        next_wait: Optional[float] = None
        for key in list(self._pending):
            queue = self._pending[key]
            window = self._windows.get(key)
            if window is None:
                window = RateWindow(self.throttle.limit, self.throttle.period_secs)
                self._windows[key] = window
            while queue:
                delay = window.reserve(now)
                if delay > 0:
                    next_wait = delay if next_wait is None else min(next_wait, delay)
                    break
                self._pool.submit(self._run, queue.popleft())
            if not queue:
                del self._pending[key]
        for key in [k for k, w in self._windows.items() if k not in self._pending]:
            if self._windows[key].idle(now):
                del self._windows[key]
        return next_wait

    def _run(self, unit: _WorkUnit) -> None:
        if not unit.future.set_running_or_notify_cancel():
            return
        attempts = 0
        retrying = Retrying(
            stop=stop_after_attempt(self.retry.max_attempts),
            wait=wait_exponential(
                multiplier=self.retry.base_delay_secs, max=self.retry.max_delay_secs
            ),
            retry=retry_if_not_exception_type(LedgerError),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    attempts += 1
                    result = unit.work()
        except Exception as exc:
            self.error_sink(
                FailedWork(key=unit.key, label=unit.label, attempts=attempts, error=exc)
            )
            unit.future.set_exception(exc)
        else:
            unit.future.set_result(result)
