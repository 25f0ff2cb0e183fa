"""
Tide height estimation from a day's high/low turning points.

Tide tables list a handful of turning points per day in the port's civil
time. ``TideEstimator`` resolves them to absolute instants and answers:

* the interpolated height at an instant (piecewise linear between the two
  bracketing events, clamped to the first/last height outside the table);
* the tide phase of a height, by tertiles of the day's observed range;
* the nearest event of a given type to an instant.

Events whose civil time cannot be resolved are dropped from interpolation
and nearest-event lookups but still count toward the day's height range.
Callers are responsible for caching the per-day event lists.
"""

from __future__ import annotations

import logging
from datetime import datetime

import numpy as np

from surfwatch.alerts.civil_time import CivilTimeParser
from surfwatch.alerts.models import (
    NearestTides,
    TideEvent,
    TidePhase,
    TideType,
    as_utc,
)

logger = logging.getLogger(__name__)


class TideEstimator:
    """Answers tide questions for one day's list of events.

    Parameters
    ----------
    events : list[TideEvent]
        The day's turning points, in any order.
    parser : CivilTimeParser
        Resolves the events' civil date/time in the port's zone.
    """

    def __init__(self, events: list[TideEvent], parser: CivilTimeParser) -> None:
        resolved: list[tuple[datetime, TideEvent]] = []
        for event in events:
            at = parser.parse(event.date, event.time)
            if at is None:
                logger.warning(
                    "Skipping tide event with unresolvable time: date=%s time=%s",
                    event.date,
                    event.time,
                )
                continue
            resolved.append((at, event))
        resolved.sort(key=lambda pair: pair[0])

        self._rows = resolved
        self._epochs = np.array([at.timestamp() for at, _ in resolved], dtype=float)
        self._heights = np.array([e.height for _, e in resolved], dtype=float)
        # Unresolvable events still bound the day's observed range
        self._day_heights = np.array([e.height for e in events], dtype=float)

    def __bool__(self) -> bool:
        return bool(self._rows)

    @property
    def events(self) -> list[TideEvent]:
        """Resolved events ordered by time."""
        return [event for _, event in self._rows]

    def interpolate(self, target: datetime) -> float | None:
        """Estimated tide height at ``target``; ``None`` with no events."""
        if not self._rows:
            return None
        # np.interp clamps to the first/last height outside the table.
        return float(
            np.interp(as_utc(target).timestamp(), self._epochs, self._heights)
        )

    def classify(self, height: float) -> TidePhase:
        """Phase of ``height`` by tertiles of the day's [min, max] range."""
        if not self._day_heights.size:
            return TidePhase.MID
        low = float(self._day_heights.min())
        high = float(self._day_heights.max())
        span = high - low
        if span <= 0:
            return TidePhase.MID
        ratio = (height - low) / span
        if ratio < 1 / 3:
            return TidePhase.LOW
        if ratio < 2 / 3:
            return TidePhase.MID
        return TidePhase.HIGH

    def phase_at(self, target: datetime) -> tuple[TidePhase | None, float | None]:
        """Interpolated ``(phase, height)`` at ``target``."""
        height = self.interpolate(target)
        if height is None:
            return None, None
        return self.classify(height), height

    def nearest_instant_of_type(
        self, target: datetime, tide_type: TideType
    ) -> datetime | None:
        """Instant of the event of ``tide_type`` closest to ``target``."""
        found = self._nearest(target, tide_type)
        return found[0] if found else None

    def nearest_of_type(
        self, target: datetime, tide_type: TideType
    ) -> TideEvent | None:
        """Event of ``tide_type`` closest in time to ``target``."""
        found = self._nearest(target, tide_type)
        return found[1] if found else None

    def nearest_tides(self, target: datetime) -> NearestTides:
        return NearestTides(
            high=self.nearest_of_type(target, TideType.HIGH),
            low=self.nearest_of_type(target, TideType.LOW),
        )

    def _nearest(
        self, target: datetime, tide_type: TideType
    ) -> tuple[datetime, TideEvent] | None:
        t = as_utc(target)
        best: tuple[datetime, TideEvent] | None = None
        best_diff = float("inf")
        for at, event in self._rows:
            if event.type != tide_type:
                continue
            diff = abs((at - t).total_seconds())
            if diff < best_diff:
                best = (at, event)
                best_diff = diff
        return best
