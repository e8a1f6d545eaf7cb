import threading
import time
from datetime import datetime

import pytest

from log_pipeline.scheduler import Scheduler, SchedulerState


class Counter:
    def __init__(self, error: Exception = None):
        self.calls = 0
        self.error = error

    def __call__(self):
        self.calls += 1
        if self.error is not None:
            raise self.error


def _scheduler(**kwargs) -> Scheduler:
    options = {
        "parse_task": Counter(),
        "cache_cleanup_task": Counter(),
        "retention_task": Counter(),
        "field_analysis_task": Counter(),
        "parse_interval": 0.01,
        "cache_cleanup_interval": 0.01,
        "retention_hour": 2,
        "field_analysis_hour": 3,
        "daily_poll_interval": 0.01,
        "daily_cooldown": 0.01,
        "stop_grace": 0.5,
        "clock": lambda: datetime(2024, 1, 1, 12, 0, 0),
    }
    options.update(kwargs)
    return Scheduler(**options)


def _wait_for(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def test_invalid_cadence_fails_fast() -> None:
    with pytest.raises(ValueError):
        _scheduler(parse_interval=0)
    with pytest.raises(ValueError):
        _scheduler(retention_hour=24)
    with pytest.raises(ValueError):
        _scheduler(stop_grace=-1)


def test_start_is_idempotent_and_stop_returns_to_stopped() -> None:
    parse = Counter()
    scheduler = _scheduler(parse_task=parse)

    scheduler.start()
    scheduler.start()

    assert scheduler.running
    assert len(scheduler._threads) == 3
    assert _wait_for(lambda: parse.calls >= 2)

    scheduler.stop()
    assert scheduler.state == SchedulerState.STOPPED
    assert not scheduler.running

    calls = parse.calls
    time.sleep(0.05)
    assert parse.calls == calls


def test_failing_task_does_not_kill_sibling_loops() -> None:
    parse = Counter(error=RuntimeError("boom"))
    cleanup = Counter()
    scheduler = _scheduler(parse_task=parse, cache_cleanup_task=cleanup)

    scheduler.start()
    try:
        assert _wait_for(lambda: parse.calls >= 3 and cleanup.calls >= 3)
        assert all(thread.is_alive() for thread in scheduler._threads)
    finally:
        scheduler.stop()


def test_stop_is_bounded_when_task_hangs() -> None:
    release = threading.Event()
    started = threading.Event()

    def hanging_task():
        started.set()
        release.wait(10)

    scheduler = _scheduler(parse_task=hanging_task, stop_grace=0.2)
    scheduler.start()
    assert started.wait(2)

    began = time.monotonic()
    scheduler.stop()
    elapsed = time.monotonic() - began

    release.set()
    assert elapsed < 0.2 + 1.0
    assert scheduler.state == SchedulerState.STOPPED


def test_daily_jobs_fire_on_matching_hour() -> None:
    retention = Counter()
    analysis = Counter()
    scheduler = _scheduler(
        retention_task=retention,
        field_analysis_task=analysis,
        clock=lambda: datetime(2024, 1, 1, 2, 30, 0),
    )

    scheduler.start()
    try:
        assert _wait_for(lambda: retention.calls >= 1)
    finally:
        scheduler.stop()

    assert analysis.calls == 0


def test_restart_after_stop() -> None:
    parse = Counter()
    scheduler = _scheduler(parse_task=parse)

    scheduler.start()
    scheduler.stop()
    calls = parse.calls

    scheduler.start()
    try:
        assert _wait_for(lambda: parse.calls > calls)
    finally:
        scheduler.stop()
