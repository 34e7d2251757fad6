import threading
import time

import pytest
from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy import select

from deadletters import DeadLetterRecorder
from errors import DataIntegrityError, TransientError
from models import DeadLetter
from queue_transport import MemoryQueue, SchedulerQueue
from retry import RetryPolicy, call_with_retry
from schemas import RecurringTask
from throttle import PerUserThrottle


def _memory_queue(consumer, clock, **kwargs):
    kwargs.setdefault("throttle", PerUserThrottle(limit=10, window_secs=60, clock=clock))
    return MemoryQueue(consumer, clock=clock, sleep=clock.sleep, **kwargs)


def test_throttle_window_limit(clock):
    throttle = PerUserThrottle(limit=2, window_secs=10, clock=clock)
    assert throttle.try_acquire(7).granted
    assert throttle.try_acquire(7).granted
    throttle.release(7)
    throttle.release(7)

    clock.sleep(4)
    denied = throttle.try_acquire(7)
    assert not denied.granted
    assert denied.retry_after == pytest.approx(6)
    assert throttle.try_acquire(8).granted

    clock.sleep(6)
    assert throttle.try_acquire(7).granted


def test_throttle_bounds_in_flight(clock):
    throttle = PerUserThrottle(limit=2, window_secs=1, clock=clock)
    assert throttle.try_acquire("u").granted
    assert throttle.try_acquire("u").granted
    clock.sleep(5)

    denied = throttle.try_acquire("u")
    assert not denied.granted
    assert denied.retry_after == pytest.approx(0.5)

    throttle.release("u")
    assert throttle.in_flight("u") == 1
    assert throttle.try_acquire("u").granted


def test_throttle_rejects_non_positive_limit():
    with pytest.raises(ValueError):
        PerUserThrottle(limit=0)


def test_retry_policy_backoff():
    policy = RetryPolicy(max_attempts=2, base_delay_secs=1.0)
    assert policy.delay_for(1) == 2.0
    assert policy.delay_for(2) == 4.0
    assert not policy.exhausted(1)
    assert policy.exhausted(2)


def test_call_with_retry_records_attempts():
    calls = []

    def flaky():
        calls.append(1)
        raise TransientError("smtp down")

    sleeps: list[float] = []
    with pytest.raises(TransientError) as excinfo:
        call_with_retry(flaky, RetryPolicy(), label="test", sleep=sleeps.append)
    assert len(calls) == 2
    assert sleeps == [2.0]
    assert excinfo.value.attempts == 2


def test_call_with_retry_does_not_retry_data_errors():
    def broken():
        raise DataIntegrityError("no amount")

    sleeps: list[float] = []
    with pytest.raises(DataIntegrityError) as excinfo:
        call_with_retry(broken, RetryPolicy(), label="test", sleep=sleeps.append)
    assert sleeps == []
    assert excinfo.value.attempts == 1


def test_burst_for_one_user_is_spread_over_windows(clock):
    starts: list[float] = []
    attempts: list[int] = []

    def consume(task):
        starts.append(clock())
        attempts.append(task.attempt)

    queue = _memory_queue(consume, clock)
    for txn_id in range(1, 26):
        queue.enqueue(RecurringTask(transaction_id=txn_id, user_id=1))
    queue.drain()

    assert len(starts) == 25
    assert starts.count(0.0) == 10
    assert starts.count(60.0) == 10
    assert starts.count(120.0) == 5
    # Throttle deferrals are not retries.
    assert set(attempts) == {1}
    assert queue.pending() == 0


def test_other_users_are_not_held_back(clock):
    starts: dict[int, list[float]] = {}

    def consume(task):
        starts.setdefault(task.user_id, []).append(clock())

    queue = _memory_queue(consume, clock)
    for txn_id in range(12):
        queue.enqueue(RecurringTask(transaction_id=txn_id + 1, user_id=1))
    queue.enqueue(RecurringTask(transaction_id=100, user_id=2))
    queue.drain()

    assert starts[2] == [0.0]
    assert max(starts[1]) == 60.0


def test_transient_failure_is_retried_with_backoff(clock):
    seen: list[tuple[int, float]] = []

    def consume(task):
        seen.append((task.attempt, clock()))
        if task.attempt == 1:
            raise TransientError("database is locked")

    dead: list = []
    queue = _memory_queue(consume, clock, dead_letters=lambda t, e: dead.append(t))
    queue.enqueue(RecurringTask(transaction_id=1, user_id=1))
    queue.drain()

    assert seen == [(1, 0.0), (2, 2.0)]
    assert dead == []


def test_exhausted_task_is_dead_lettered(clock):
    dead: list[tuple[RecurringTask, BaseException]] = []

    def consume(task):
        raise TransientError("still locked")

    queue = _memory_queue(consume, clock, dead_letters=lambda t, e: dead.append((t, e)))
    queue.enqueue(RecurringTask(transaction_id=5, user_id=3))
    queue.drain()

    assert len(dead) == 1
    task, error = dead[0]
    assert (task.transaction_id, task.attempt) == (5, 2)
    assert isinstance(error, TransientError)


def test_data_integrity_error_skips_retries(clock):
    calls: list[int] = []
    dead: list[RecurringTask] = []

    def consume(task):
        calls.append(task.attempt)
        raise DataIntegrityError("missing interval")

    queue = _memory_queue(consume, clock, dead_letters=lambda t, e: dead.append(t))
    queue.enqueue(RecurringTask(transaction_id=9, user_id=1))
    queue.drain()

    assert calls == [1]
    assert [t.attempt for t in dead] == [1]
    assert clock() == 0.0


def test_throttle_slot_released_after_failure(clock):
    throttle = PerUserThrottle(limit=10, window_secs=60, clock=clock)

    def consume(task):
        raise DataIntegrityError("bad row")

    queue = _memory_queue(
        consume, clock, throttle=throttle, dead_letters=lambda t, e: None
    )
    queue.enqueue(RecurringTask(transaction_id=1, user_id=4))
    queue.drain()
    assert throttle.in_flight(4) == 0


def test_dead_letter_recorder_persists(session_factory):
    recorder = DeadLetterRecorder(session_factory)
    task = RecurringTask(transaction_id=42, user_id=7, attempt=2)
    recorder.record_task(task, TransientError("timed out"))

    with session_factory() as session:
        entry = session.scalars(select(DeadLetter)).one()
        assert entry.source == "recurring"
        assert entry.attempts == 2
        assert '"transaction_id": 42' in entry.payload_json
        assert entry.error == "TransientError: timed out"
        assert entry.resolved_at is None


def test_scheduler_queue_caps_concurrency_per_user():
    scheduler = BackgroundScheduler(
        timezone="UTC", executors={"tasks": ThreadPoolExecutor(30)}
    )
    lock = threading.Lock()
    done = threading.Event()
    state = {"running": 0, "peak": 0, "finished": 0}

    def consume(task):
        with lock:
            state["running"] += 1
            state["peak"] = max(state["peak"], state["running"])
        time.sleep(0.05)
        with lock:
            state["running"] -= 1
            state["finished"] += 1
            if state["finished"] == 25:
                done.set()

    queue = SchedulerQueue(
        scheduler,
        consume,
        throttle=PerUserThrottle(limit=10, window_secs=0.3),
    )
    scheduler.start()
    try:
        for txn_id in range(1, 26):
            queue.enqueue(RecurringTask(transaction_id=txn_id, user_id=1))
        assert done.wait(timeout=15)
    finally:
        scheduler.shutdown(wait=True)

    assert state["finished"] == 25
    assert state["peak"] <= 10
