"""
Tests for the civil-time hourly scheduler.

Validates:
1. ``delay_until_civil_minute`` for ordinary hours, second boundaries,
   invalid minutes, DST transitions and non-whole-hour offsets.
2. ``CivilTimeScheduler`` state transitions, re-arming after success and
   failure, and ``stop()`` suppressing further runs.

Timers are replaced by ``FakeTimer`` so nothing actually waits.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta, timezone

import pytest

from surfwatch.alerts.civil_time import civil_parts, get_zone
from surfwatch.alerts.scheduler import (
    MIN_DELAY,
    CivilTimeScheduler,
    SchedulerState,
    delay_until_civil_minute,
    schedule_hourly,
)

MADRID = get_zone("Europe/Madrid")
CET = timezone(timedelta(hours=1))


# ---------------------------------------------------------------------------
# Fixtures / Helpers
# ---------------------------------------------------------------------------


class FakeTimer:
    def __init__(self, delay: float, fn: Callable[[], None]) -> None:
        self.delay = delay
        self.fn = fn
        self.started = False
        self.cancelled = False

    def start(self) -> None:
        self.started = True

    def cancel(self) -> None:
        self.cancelled = True


class FakeTimerFactory:
    def __init__(self) -> None:
        self.timers: list[FakeTimer] = []

    def __call__(self, delay: float, fn: Callable[[], None]) -> FakeTimer:
        timer = FakeTimer(delay, fn)
        self.timers.append(timer)
        return timer

    @property
    def last(self) -> FakeTimer:
        return self.timers[-1]


NOW = datetime(2026, 2, 15, 19, 28, tzinfo=CET)


def _make_scheduler(
    callback: Callable[[], None],
    factory: FakeTimerFactory,
    minute: int = 10,
) -> CivilTimeScheduler:
    return CivilTimeScheduler(
        callback,
        minute,
        MADRID,
        clock=lambda: NOW,
        timer_factory=factory,
    )


# ---------------------------------------------------------------------------
# delay_until_civil_minute
# ---------------------------------------------------------------------------


class TestDelayUntilCivilMinute:
    """Delay to the next civil HH:mm."""

    def test_minute_already_passed(self) -> None:
        now = datetime(2026, 2, 15, 19, 28, tzinfo=CET)
        assert delay_until_civil_minute(now, 10, MADRID) == timedelta(minutes=42)

    def test_minute_later_this_hour(self) -> None:
        now = datetime(2026, 2, 15, 19, 3, tzinfo=CET)
        assert delay_until_civil_minute(now, 10, MADRID) == timedelta(minutes=7)

    def test_exactly_on_target_waits_full_hour(self) -> None:
        now = datetime(2026, 2, 15, 19, 10, tzinfo=CET)
        assert delay_until_civil_minute(now, 10, MADRID) == timedelta(hours=1)

    def test_partial_minute(self) -> None:
        now = datetime(2026, 2, 15, 19, 9, 30, tzinfo=CET)
        assert delay_until_civil_minute(now, 10, MADRID) == timedelta(seconds=30)

    def test_clamped_to_minimum(self) -> None:
        now = datetime(2026, 2, 15, 19, 9, 59, 500000, tzinfo=CET)
        assert delay_until_civil_minute(now, 10, MADRID) == MIN_DELAY

    def test_minute_zero(self) -> None:
        now = datetime(2026, 2, 15, 23, 45, tzinfo=CET)
        assert delay_until_civil_minute(now, 0, MADRID) == timedelta(minutes=15)

    @pytest.mark.parametrize("minute", [-1, 60, 100])
    def test_invalid_minute(self, minute: int) -> None:
        with pytest.raises(ValueError):
            delay_until_civil_minute(NOW, minute, MADRID)

    def test_spring_forward(self) -> None:
        # 01:30 CET on 2026-03-29; local 02:10 does not exist, next is 03:10 CEST
        now = datetime(2026, 3, 29, 0, 30, tzinfo=timezone.utc)
        delay = delay_until_civil_minute(now, 10, MADRID)
        assert delay == timedelta(minutes=40)
        landed = civil_parts(now + delay, MADRID)
        assert (landed.hour, landed.minute) == (3, 10)

    def test_fall_back(self) -> None:
        # 02:30 CEST on 2026-10-25; the next 02:10 is the repeated CET one
        now = datetime(2026, 10, 25, 0, 30, tzinfo=timezone.utc)
        delay = delay_until_civil_minute(now, 10, MADRID)
        assert delay == timedelta(minutes=40)
        landed = civil_parts(now + delay, MADRID)
        assert (landed.hour, landed.minute) == (2, 10)

    def test_half_hour_offset_zone(self) -> None:
        # Asia/Kolkata is UTC+5:30, so civil :10 is UTC :40
        now = datetime(2026, 2, 15, 12, 0, tzinfo=timezone.utc)
        delay = delay_until_civil_minute(now, 10, get_zone("Asia/Kolkata"))
        assert delay == timedelta(minutes=40)

    def test_always_positive(self) -> None:
        start = datetime(2026, 3, 28, 22, 0, tzinfo=timezone.utc)
        for step in range(0, 8 * 60, 7):
            now = start + timedelta(minutes=step)
            delay = delay_until_civil_minute(now, 10, MADRID)
            assert MIN_DELAY <= delay <= timedelta(hours=1)


# ---------------------------------------------------------------------------
# CivilTimeScheduler
# ---------------------------------------------------------------------------


class TestCivilTimeScheduler:
    """State machine over one pending timer."""

    def test_start_arms_timer(self) -> None:
        factory = FakeTimerFactory()
        scheduler = _make_scheduler(lambda: None, factory)
        assert scheduler.state == SchedulerState.IDLE

        scheduler.start()

        assert scheduler.state == SchedulerState.ARMED
        assert len(factory.timers) == 1
        assert factory.last.started
        assert factory.last.delay == pytest.approx(42 * 60)

    def test_fire_runs_callback_and_rearms(self) -> None:
        factory = FakeTimerFactory()
        calls: list[int] = []
        scheduler = _make_scheduler(lambda: calls.append(1), factory)
        scheduler.start()

        factory.last.fn()

        assert calls == [1]
        assert len(factory.timers) == 2
        assert scheduler.state == SchedulerState.ARMED

    def test_state_is_fired_during_callback(self) -> None:
        factory = FakeTimerFactory()
        seen: list[SchedulerState] = []
        holder: dict[str, CivilTimeScheduler] = {}
        holder["s"] = _make_scheduler(lambda: seen.append(holder["s"].state), factory)
        holder["s"].start()

        factory.last.fn()

        assert seen == [SchedulerState.FIRED]

    def test_callback_error_still_rearms(self) -> None:
        factory = FakeTimerFactory()

        def boom() -> None:
            raise RuntimeError("run failed")

        scheduler = _make_scheduler(boom, factory)
        scheduler.start()

        factory.last.fn()

        assert len(factory.timers) == 2
        assert scheduler.state == SchedulerState.ARMED

    def test_stop_cancels_pending_timer(self) -> None:
        factory = FakeTimerFactory()
        scheduler = _make_scheduler(lambda: None, factory)
        scheduler.start()

        scheduler.stop()

        assert factory.last.cancelled
        assert scheduler.state == SchedulerState.STOPPED

    def test_fire_after_stop_does_nothing(self) -> None:
        factory = FakeTimerFactory()
        calls: list[int] = []
        scheduler = _make_scheduler(lambda: calls.append(1), factory)
        scheduler.start()
        pending = factory.last

        scheduler.stop()
        pending.fn()

        assert calls == []
        assert len(factory.timers) == 1

    def test_stop_during_callback_suppresses_rearm(self) -> None:
        factory = FakeTimerFactory()
        holder: dict[str, CivilTimeScheduler] = {}
        holder["s"] = _make_scheduler(lambda: holder["s"].stop(), factory)
        holder["s"].start()

        factory.last.fn()

        assert len(factory.timers) == 1
        assert holder["s"].state == SchedulerState.STOPPED

    def test_start_twice_is_noop(self) -> None:
        factory = FakeTimerFactory()
        scheduler = _make_scheduler(lambda: None, factory)
        scheduler.start()
        scheduler.start()
        assert len(factory.timers) == 1

    def test_concurrent_start_arms_one_timer(self) -> None:
        factory = FakeTimerFactory()
        holder: dict[str, CivilTimeScheduler] = {}
        calls = []

        def clock() -> datetime:
            # A second start lands while the first is computing its delay
            calls.append(1)
            if len(calls) == 1:
                holder["s"].start()
            return NOW

        holder["s"] = CivilTimeScheduler(
            lambda: None, 10, MADRID, clock=clock, timer_factory=factory
        )
        holder["s"].start()

        assert len(factory.timers) == 1
        assert len(calls) == 1
        assert holder["s"].state == SchedulerState.ARMED

    def test_start_after_stop_is_noop(self) -> None:
        factory = FakeTimerFactory()
        scheduler = _make_scheduler(lambda: None, factory)
        scheduler.stop()
        scheduler.start()
        assert factory.timers == []

    @pytest.mark.parametrize("minute", [-1, 60])
    def test_invalid_minute_rejected(self, minute: int) -> None:
        with pytest.raises(ValueError):
            CivilTimeScheduler(lambda: None, minute, MADRID)

    def test_unknown_zone_rejected(self) -> None:
        with pytest.raises(ValueError):
            CivilTimeScheduler(lambda: None, 10, "Nowhere/Special")


class TestScheduleHourly:
    def test_returns_started_scheduler(self) -> None:
        factory = FakeTimerFactory()
        scheduler = schedule_hourly(
            lambda: None,
            10,
            "Europe/Madrid",
            clock=lambda: NOW,
            timer_factory=factory,
        )
        assert scheduler.state == SchedulerState.ARMED
        assert factory.last.delay == pytest.approx(42 * 60)
        scheduler.stop()
        assert factory.last.cancelled
