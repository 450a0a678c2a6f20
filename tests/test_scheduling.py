"""Tests for periodic tasks — completion, cancellation and duration ceilings."""

import threading
import time

import pytest

from recyclemart.scheduling import (
    CancellationToken,
    PeriodicTask,
    StopReason,
    TaskScheduler,
)


def _wait_until(predicate, timeout: float = 2.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


class TestCancellationToken:
    def test_cancel(self) -> None:
        token = CancellationToken()
        assert not token.cancelled
        token.cancel()
        assert token.cancelled
        assert token.wait(0) is True

    def test_wait_times_out(self) -> None:
        assert CancellationToken().wait(0.01) is False


class TestPeriodicTask:
    def test_stops_when_callback_returns_true(self) -> None:
        calls = []

        def tick() -> bool:
            calls.append(1)
            return len(calls) >= 3

        task = PeriodicTask("count", 0.01, tick).start()
        task.join(2.0)
        assert not task.is_running
        assert task.ticks == 3
        assert task.stop_reason == StopReason.COMPLETED

    def test_cancel_stops_promptly(self) -> None:
        task = PeriodicTask("slow", 60, lambda: False).start()
        started = time.monotonic()
        task.cancel()
        task.join(2.0)
        assert time.monotonic() - started < 1.0
        assert task.ticks == 0
        assert task.stop_reason == StopReason.CANCELLED

    def test_no_tick_after_cancel_and_join(self) -> None:
        task = PeriodicTask("busy", 0.005, lambda: False).start()
        _wait_until(lambda: task.ticks >= 2)
        task.cancel()
        task.join(2.0)
        ticks = task.ticks
        time.sleep(0.05)
        assert task.ticks == ticks

    def test_ceiling(self) -> None:
        task = PeriodicTask("bounded", 0.01, lambda: False, max_duration=0.05).start()
        task.join(2.0)
        assert task.stop_reason == StopReason.CEILING
        assert task.ticks >= 1

    def test_exceptions_do_not_stop_task(self) -> None:
        calls = []

        def tick() -> bool:
            calls.append(1)
            if len(calls) == 1:
                raise RuntimeError("transient")
            return True

        task = PeriodicTask("flaky", 0.01, tick).start()
        task.join(2.0)
        assert task.ticks == 2
        assert task.stop_reason == StopReason.COMPLETED

    def test_run_immediately(self) -> None:
        ran = threading.Event()
        task = PeriodicTask(
            "eager", 60, lambda: ran.set() or True, run_immediately=True,
        ).start()
        assert ran.wait(1.0)
        task.join(2.0)
        assert task.stop_reason == StopReason.COMPLETED

    def test_on_stop_called(self) -> None:
        stopped = []
        task = PeriodicTask(
            "notify", 0.01, lambda: True, on_stop=lambda t: stopped.append(t.stop_reason),
        ).start()
        task.join(2.0)
        assert stopped == [StopReason.COMPLETED]

    def test_shared_token(self) -> None:
        token = CancellationToken()
        a = PeriodicTask("a", 60, lambda: False, token=token).start()
        b = PeriodicTask("b", 60, lambda: False, token=token).start()
        token.cancel()
        a.join(2.0)
        b.join(2.0)
        assert a.stop_reason == b.stop_reason == StopReason.CANCELLED

    def test_invalid_interval(self) -> None:
        with pytest.raises(ValueError):
            PeriodicTask("bad", 0, lambda: True)

    def test_cannot_start_twice(self) -> None:
        task = PeriodicTask("once", 60, lambda: False).start()
        with pytest.raises(RuntimeError):
            task.start()
        task.cancel()
        task.join(2.0)


class TestTaskScheduler:
    def test_schedule_and_cancel(self) -> None:
        scheduler = TaskScheduler()
        task = scheduler.schedule("poll", 60, lambda: False)
        assert scheduler.get("poll") is task
        assert scheduler.active() == ["poll"]
        scheduler.cancel("poll")
        assert not task.is_running
        assert scheduler.get("poll") is None

    def test_rescheduling_replaces_previous(self) -> None:
        scheduler = TaskScheduler()
        first = scheduler.schedule("poll", 60, lambda: False)
        second = scheduler.schedule("poll", 60, lambda: False)
        first.join(2.0)
        assert first.stop_reason == StopReason.CANCELLED
        assert scheduler.get("poll") is second
        scheduler.cancel_all()

    def test_cancel_all(self) -> None:
        scheduler = TaskScheduler()
        tasks = [scheduler.schedule(f"t{i}", 60, lambda: False) for i in range(3)]
        scheduler.cancel_all()
        assert all(not t.is_running for t in tasks)
        assert scheduler.active() == []

    def test_cancel_unknown_is_noop(self) -> None:
        TaskScheduler().cancel("missing")

    def test_discard_finished_task(self) -> None:
        scheduler = TaskScheduler()
        task = scheduler.schedule("once", 0.01, lambda: True)
        task.join(2.0)
        scheduler.discard("once", task)
        assert scheduler.get("once") is None

    def test_discard_ignores_replaced_task(self) -> None:
        scheduler = TaskScheduler()
        first = scheduler.schedule("poll", 60, lambda: False)
        second = scheduler.schedule("poll", 60, lambda: False)
        first.join(2.0)
        scheduler.discard("poll", first)
        assert scheduler.get("poll") is second
        scheduler.cancel_all()
