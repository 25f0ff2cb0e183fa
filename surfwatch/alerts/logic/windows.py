"""
Consecutive-hour window detection.

Finds the FIRST run (in time order) of candidate matches spaced exactly one
hour apart whose length reaches the minimum. The first qualifying run is
preferred over the longest one so the notification goes out for the earliest
actionable window.
"""

from __future__ import annotations

import numpy as np

from surfwatch.alerts.models import CandidateMatch, ConsecutiveWindow

HOUR_SECONDS = 3600.0


def first_consecutive_window(
    items: list[CandidateMatch],
    min_hours: int,
) -> ConsecutiveWindow | None:
    """Return the first hourly run of at least ``min_hours`` items.

    Parameters
    ----------
    items : list[CandidateMatch]
        Candidate matches in any order.
    min_hours : int
        Minimum run length. With ``min_hours <= 1`` the first streak always
        qualifies, so any non-empty input yields a window.

    Returns
    -------
    ConsecutiveWindow or None
        ``None`` when ``items`` is empty or no run is long enough.
    """
    if not items:
        return None

    ordered = sorted(items, key=lambda c: c.sample.timestamp)
    epochs = np.array([c.sample.timestamp.timestamp() for c in ordered])
    # breaks[i] is True when ordered[i + 1] does not follow ordered[i] by 1h
    breaks = np.diff(epochs) != HOUR_SECONDS

    streak_start = 0
    for i in range(len(ordered)):
        is_last = i == len(ordered) - 1
        if not is_last and not breaks[i]:
            continue

        streak_len = i - streak_start + 1
        if streak_len >= min_hours:
            run = ordered[streak_start : i + 1]
            return ConsecutiveWindow(
                start=run[0],
                end=run[-1],
                hours=streak_len,
                items=run,
            )
        streak_start = i + 1

    return None
