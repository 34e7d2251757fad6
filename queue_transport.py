"""At-least-once delivery of recurring-occurrence tasks.

Both transports share the delivery contract in ``QueueTransport._deliver``:
per-user throttle admission, one consumer call, ack on return and nack on
exception. A nack re-schedules the task with exponential backoff until the
retry policy is exhausted, then the task is dead-lettered.
"""

from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from datetime import datetime, timedelta
from typing import Any, Callable, Optional

from apscheduler.schedulers.base import BaseScheduler

from errors import DataIntegrityError
from retry import RetryPolicy
from schemas import RecurringTask
from throttle import PerUserThrottle

logger = logging.getLogger(__name__)

Consumer = Callable[[RecurringTask], Any]
DeadLetterSink = Callable[[RecurringTask, BaseException], None]


def _log_dead_letter(task: RecurringTask, exc: BaseException) -> None:
    logger.error(f"dead_letter: task={task.model_dump()} error={exc!r}")


class QueueTransport:
    def __init__(
        self,
        consumer: Consumer,
        *,
        throttle: Optional[PerUserThrottle] = None,
        retry_policy: Optional[RetryPolicy] = None,
        dead_letters: Optional[DeadLetterSink] = None,
    ) -> None:
        self.consumer = consumer
        self.throttle = throttle or PerUserThrottle()
        self.retry_policy = retry_policy or RetryPolicy()
        self.dead_letters = dead_letters or _log_dead_letter

    def enqueue(self, task: RecurringTask, delay_secs: float = 0.0) -> None:
        self._schedule(task, max(0.0, delay_secs))

    def _schedule(self, task: RecurringTask, delay_secs: float) -> None:
        raise NotImplementedError

    def _deliver(self, task: RecurringTask) -> None:
        admission = self.throttle.try_acquire(task.user_id)
        if not admission.granted:
            logger.debug(
                f"task_deferred: txn={task.transaction_id} user={task.user_id} "
                f"retry_after={admission.retry_after:.2f}"
            )
            self._schedule(task, admission.retry_after)
            return

        try:
            outcome = self.consumer(task)
        except Exception as exc:
            self._nack(task, exc)
        else:
            logger.info(
                f"task_ack: txn={task.transaction_id} user={task.user_id} "
                f"attempt={task.attempt} outcome={outcome}"
            )
        finally:
            self.throttle.release(task.user_id)

    def _nack(self, task: RecurringTask, exc: Exception) -> None:
        if isinstance(exc, DataIntegrityError) or self.retry_policy.exhausted(
            task.attempt
        ):
            self.dead_letters(task, exc)
            return
        delay = self.retry_policy.delay_for(task.attempt)
        logger.warning(
            f"task_nack: txn={task.transaction_id} user={task.user_id} "
            f"attempt={task.attempt} retry_in={delay:.1f}s error={exc!r}"
        )
        self._schedule(task.next_attempt(), delay)


class SchedulerQueue(QueueTransport):
    """Delivers tasks as one-shot APScheduler jobs on a worker executor."""

    def __init__(
        self,
        scheduler: BaseScheduler,
        consumer: Consumer,
        *,
        executor: str = "tasks",
        **kwargs,
    ) -> None:
        super().__init__(consumer, **kwargs)
        self.scheduler = scheduler
        self.executor = executor

    def _schedule(self, task: RecurringTask, delay_secs: float) -> None:
        run_date = datetime.now(self.scheduler.timezone) + timedelta(
            seconds=delay_secs
        )
        self.scheduler.add_job(
            self._deliver,
            "date",
            run_date=run_date,
            args=[task],
            executor=self.executor,
            misfire_grace_time=None,
            coalesce=False,
        )


class MemoryQueue(QueueTransport):
    """Single-threaded transport ordered by due time.

    ``clock`` and ``sleep`` are injectable so that backoff and throttle waits
    can run against a fake clock.
    """

    def __init__(
        self,
        consumer: Consumer,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        **kwargs,
    ) -> None:
        super().__init__(consumer, **kwargs)
        self._clock = clock
        self._sleep = sleep
        self._heap: list[tuple[float, int, RecurringTask]] = []
        self._seq = itertools.count()
        self._lock = threading.Lock()

    def pending(self) -> int:
        with self._lock:
            return len(self._heap)

    def _schedule(self, task: RecurringTask, delay_secs: float) -> None:
        with self._lock:
            due_at = self._clock() + delay_secs
            heapq.heappush(self._heap, (due_at, next(self._seq), task))

    def drain(self, max_deliveries: int = 100_000) -> int:
        delivered = 0
        while delivered < max_deliveries:
            with self._lock:
                if not self._heap:
                    break
                due_at, _, task = heapq.heappop(self._heap)
            wait = due_at - self._clock()
            if wait > 0:
                self._sleep(wait)
            self._deliver(task)
            delivered += 1
        return delivered
