"""
Hourly scheduler pinned to a minute of the civil hour.

``delay_until_civil_minute`` finds the next instant whose wall-clock minute
in a zone equals the target. It scans forward in absolute time one minute
at a time and renders each candidate in the zone, so skipped and repeated
local minutes around DST transitions need no special casing.

``CivilTimeScheduler`` fires a callback at that minute every hour. It is a
small state machine over one pending timer::

    IDLE --start()--> ARMED --timer--> FIRED --callback returns--> ARMED ...
      any state --stop()--> STOPPED

The next timer is armed only after the callback returns, so runs never
overlap. A callback error is logged and the scheduler re-arms anyway.
"""

from __future__ import annotations

import logging
import threading
import zoneinfo
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from surfwatch.alerts.civil_time import civil_parts, get_zone
from surfwatch.alerts.models import as_utc

logger = logging.getLogger(__name__)

MAX_SCAN = timedelta(hours=6)
MIN_DELAY = timedelta(seconds=1)
FALLBACK_DELAY = timedelta(hours=1)

_ONE_MINUTE = timedelta(minutes=1)

TimerFactory = Callable[[float, Callable[[], None]], Any]


def delay_until_civil_minute(
    now: datetime,
    minute: int,
    tz: zoneinfo.ZoneInfo,
) -> timedelta:
    """Delay from ``now`` until the next civil ``HH:minute`` in ``tz``.

    Parameters
    ----------
    now : datetime
        Current instant (naive values are UTC).
    minute : int
        Target minute of the hour, 0..59.
    tz : ZoneInfo
        Civil zone the minute is read in.

    Returns
    -------
    timedelta
        Strictly positive delay, at least ``MIN_DELAY``. ``FALLBACK_DELAY``
        if no candidate is found within ``MAX_SCAN``.

    Raises
    ------
    ValueError
        If ``minute`` is outside 0..59.
    """
    if isinstance(minute, bool) or not isinstance(minute, int) or not 0 <= minute <= 59:
        raise ValueError(f"minute must be between 0 and 59, got {minute!r}")

    current = as_utc(now)
    candidate = (current + MIN_DELAY).replace(second=0, microsecond=0)
    limit = candidate + MAX_SCAN

    while candidate <= limit:
        if candidate > current and civil_parts(candidate, tz).minute == minute:
            return max(MIN_DELAY, candidate - current)
        candidate += _ONE_MINUTE

    return FALLBACK_DELAY


def _default_timer_factory(delay: float, fn: Callable[[], None]) -> threading.Timer:
    timer = threading.Timer(delay, fn)
    timer.daemon = True
    return timer


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SchedulerState(str, Enum):
    IDLE = "idle"
    ARMED = "armed"
    FIRED = "fired"
    STOPPED = "stopped"


class CivilTimeScheduler:
    """Calls ``callback`` once per hour at ``minute`` past in civil time.

    Parameters
    ----------
    callback : callable
        Invoked with no arguments on the scheduler's timer thread.
    minute : int
        Target minute of the hour, 0..59.
    tz : ZoneInfo or str
        Civil zone, as a ``ZoneInfo`` or IANA name.
    clock : callable
        Returns the current time; defaults to aware UTC now.
    timer_factory : callable
        ``(delay_seconds, fn) -> timer`` where the timer exposes
        ``start()`` and ``cancel()``. Defaults to a daemon
        ``threading.Timer``.
    """

    def __init__(
        self,
        callback: Callable[[], Any],
        minute: int,
        tz: zoneinfo.ZoneInfo | str,
        clock: Callable[[], datetime] = _utcnow,
        timer_factory: TimerFactory = _default_timer_factory,
    ) -> None:
        if isinstance(minute, bool) or not isinstance(minute, int) or not 0 <= minute <= 59:
            raise ValueError(f"minute must be between 0 and 59, got {minute!r}")
        self._callback = callback
        self._minute = minute
        self._tz = get_zone(tz) if isinstance(tz, str) else tz
        self._clock = clock
        self._timer_factory = timer_factory

        self._lock = threading.Lock()
        self._state = SchedulerState.IDLE
        self._timer: Any | None = None

    @property
    def state(self) -> SchedulerState:
        with self._lock:
            return self._state

    def start(self) -> CivilTimeScheduler:
        """Arm the first timer. No-op unless the scheduler is idle."""
        with self._lock:
            if self._state != SchedulerState.IDLE:
                return self
            # Claimed before the timer exists so a racing start sees non-idle
            self._state = SchedulerState.ARMED
        self._arm()
        return self

    def stop(self) -> None:
        """Cancel the pending timer and suppress any further re-arm."""
        with self._lock:
            self._state = SchedulerState.STOPPED
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()
        logger.info("Scheduler stopped")

    def _arm(self) -> None:
        delay = delay_until_civil_minute(self._clock(), self._minute, self._tz)
        with self._lock:
            if self._state == SchedulerState.STOPPED:
                return
            timer = self._timer_factory(delay.total_seconds(), self._fire)
            self._timer = timer
            self._state = SchedulerState.ARMED
            timer.start()
        logger.debug(
            "Scheduler armed: next run in %.0fs (minute=%02d, tz=%s)",
            delay.total_seconds(),
            self._minute,
            self._tz.key,
        )

    def _fire(self) -> None:
        with self._lock:
            if self._state == SchedulerState.STOPPED:
                return
            self._state = SchedulerState.FIRED
            self._timer = None

        try:
            self._callback()
        except Exception:
            logger.exception("Scheduled callback failed; rescheduling")

        self._arm()


def schedule_hourly(
    callback: Callable[[], Any],
    minute: int,
    tz: zoneinfo.ZoneInfo | str,
    **kwargs: Any,
) -> CivilTimeScheduler:
    """Create and start a ``CivilTimeScheduler``; call ``stop()`` to end it."""
    return CivilTimeScheduler(callback, minute, tz, **kwargs).start()
