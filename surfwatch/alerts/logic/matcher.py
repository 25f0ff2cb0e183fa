"""
Rule matching for a single forecast sample.

A sample passes a rule when every dimension passes:

* wave height and primary period fall inside ANY of the rule's intervals
  for that dimension (no intervals = unconstrained);
* energy falls inside the rule's energy interval;
* the wind angle, reduced to ``[0, 360)``, falls inside ANY wind interval
  (no intervals = unconstrained). A wind interval with ``min > max`` wraps
  through north, e.g. ``(337.5, 22.5)`` accepts 350 and 10 but not 100.

All intervals are closed.
"""

from __future__ import annotations

from dataclasses import dataclass

from surfwatch.alerts.models import AlertRule, ForecastSample, Range


@dataclass(frozen=True)
class MatchDetail:
    """Per-dimension outcome of matching one sample against one rule."""

    wave: bool
    period: bool
    energy: bool
    wind: bool

    @property
    def passed(self) -> bool:
        return self.wave and self.period and self.energy and self.wind


def normalize_angle(angle: float) -> float:
    """Reduce an angle in degrees to ``[0, 360)``."""
    return ((angle % 360.0) + 360.0) % 360.0


def in_range(value: float, r: Range) -> bool:
    return r.min <= value <= r.max


def in_wind_range(angle: float, r: Range) -> bool:
    if r.min <= r.max:
        return r.min <= angle <= r.max
    return angle >= r.min or angle <= r.max


def _in_any(value: float, ranges: list[Range]) -> bool:
    if not ranges:
        return True
    return any(in_range(value, r) for r in ranges)


def match_detail(rule: AlertRule, sample: ForecastSample) -> MatchDetail:
    """Evaluate every dimension of ``rule`` against ``sample``."""
    wind_angle = normalize_angle(sample.wind.angle)
    return MatchDetail(
        wave=_in_any(sample.wave_height, rule.wave_ranges),
        period=_in_any(sample.primary_period, rule.period_ranges),
        energy=in_range(sample.energy, rule.energy),
        wind=(
            not rule.wind_ranges
            or any(in_wind_range(wind_angle, r) for r in rule.wind_ranges)
        ),
    )


def matches(rule: AlertRule, sample: ForecastSample) -> bool:
    return match_detail(rule, sample).passed
