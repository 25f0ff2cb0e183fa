"""
Domain models for the SurfWatch alert worker.

Pydantic v2 models for alert rules, forecast samples, tide events and the
records the evaluation run produces (candidate matches, windows, run
statistics, notification log entries and the notification payload handed to
the external composer).

Rules arrive from the external rule store in either the current interval
shape (``wave_ranges``/``period_ranges``/``wind_ranges`` + ``energy``) or the
legacy single-pair shape (``wave_min``/``wave_max`` ...). The legacy shape is
folded into the interval lists once, when the model is loaded, so the
matcher only ever sees intervals.
"""

from __future__ import annotations

import hashlib
import json
import math
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator


def as_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime (naive values are UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class TideType(str, Enum):
    """Kind of tide turning point."""

    HIGH = "high"
    LOW = "low"


class TidePreference(str, Enum):
    """Tide constraint attached to a rule."""

    ANY = "any"
    LOW = "low"
    MID = "mid"
    HIGH = "high"


class TidePhase(str, Enum):
    """Tertile of the day's observed tide range."""

    LOW = "low"
    MID = "mid"
    HIGH = "high"


# Source feeds label turning points in Spanish.
_TIDE_TYPE_ALIASES: dict[str, TideType] = {
    "pleamar": TideType.HIGH,
    "bajamar": TideType.LOW,
    "high": TideType.HIGH,
    "low": TideType.LOW,
}


# ---------------------------------------------------------------------------
# Value Objects
# ---------------------------------------------------------------------------


class Range(BaseModel):
    """Closed numeric interval ``[min, max]``.

    For wind angles ``min > max`` is allowed and means the interval wraps
    through 0 degrees.
    """

    model_config = {"populate_by_name": True, "frozen": True}

    min: float
    max: float


def _check_ordered(ranges: list[Range]) -> list[Range]:
    for r in ranges:
        if r.min > r.max:
            raise ValueError(f"interval min {r.min} is greater than max {r.max}")
    return ranges


class Swell(BaseModel):
    """One swell component of a forecast sample."""

    model_config = {"populate_by_name": True, "frozen": True}

    angle: float = 0.0
    height: float
    period: float


class Wind(BaseModel):
    """Wind speed (km/h) and direction (degrees, meteorological)."""

    model_config = {"populate_by_name": True, "frozen": True}

    speed: float = 0.0
    angle: float


class ForecastSample(BaseModel):
    """One hourly forecast record for a spot.

    Accepts the upstream feed keys (``date``, ``validSwells``) as aliases.
    """

    model_config = {"populate_by_name": True, "frozen": True}

    timestamp: datetime = Field(alias="date")
    spot: str = ""
    wind: Wind
    energy: float
    swells: list[Swell] = Field(default_factory=list, alias="validSwells")

    @field_validator("timestamp")
    @classmethod
    def _normalize_timestamp(cls, value: datetime) -> datetime:
        return as_utc(value)

    @property
    def wave_height(self) -> float:
        """Combined height: root-sum-of-squares of the swell heights."""
        if not self.swells:
            return 0.0
        return math.sqrt(sum(s.height**2 for s in self.swells))

    @property
    def primary_period(self) -> float:
        """Period of the tallest swell component."""
        if not self.swells:
            return 0.0
        return max(self.swells, key=lambda s: s.height).period


class TideEvent(BaseModel):
    """A high or low tide turning point in the port's civil time.

    Accepts the upstream feed keys (``hora``, ``altura``, ``tipo``) as
    aliases; ``tipo`` values ``pleamar``/``bajamar`` map to high/low.
    """

    model_config = {"populate_by_name": True, "frozen": True}

    date: str
    time: str = Field(alias="hora")
    height: float = Field(alias="altura")
    type: TideType = Field(alias="tipo")

    @field_validator("type", mode="before")
    @classmethod
    def _normalize_type(cls, value: Any) -> Any:
        if isinstance(value, TideType):
            return value
        text = str(value or "").strip().lower()
        for alias, tide_type in _TIDE_TYPE_ALIASES.items():
            if alias in text:
                return tide_type
        raise ValueError(f"unknown tide type {value!r}")


# ---------------------------------------------------------------------------
# Alert Rule
# ---------------------------------------------------------------------------

_LEGACY_RANGE_FIELDS: dict[str, tuple[str, str]] = {
    "wave_ranges": ("wave_min", "wave_max"),
    "period_ranges": ("period_min", "period_max"),
    "wind_ranges": ("wind_min", "wind_max"),
}


class AlertRule(BaseModel):
    """A subscriber's alert rule.

    Empty ``wave_ranges``/``period_ranges``/``wind_ranges`` mean the
    dimension is unconstrained. ``energy`` is always a single interval.
    """

    model_config = {"populate_by_name": True}

    id: str
    chat_id: int
    name: str
    spot: str
    enabled: bool = True

    wave_ranges: list[Range] = []
    period_ranges: list[Range] = []
    energy: Range
    wind_ranges: list[Range] = []

    tide_port_id: str = "72"
    tide_port_name: str = "Bermeo"
    tide_preference: TidePreference = TidePreference.ANY

    last_notified_at: datetime | None = None
    created_at: datetime | None = None

    @model_validator(mode="before")
    @classmethod
    def _resolve_legacy_shape(cls, data: Any) -> Any:
        """Fold legacy ``*_min``/``*_max`` pairs into interval lists."""
        if not isinstance(data, dict):
            return data
        data = dict(data)
        for field, (low_key, high_key) in _LEGACY_RANGE_FIELDS.items():
            low = data.pop(low_key, None)
            high = data.pop(high_key, None)
            if not data.get(field) and low is not None and high is not None:
                data[field] = [{"min": float(low), "max": float(high)}]
        low = data.pop("energy_min", None)
        high = data.pop("energy_max", None)
        if data.get("energy") is None and low is not None and high is not None:
            data["energy"] = {"min": float(low), "max": float(high)}
        if not data.get("tide_preference"):
            data.pop("tide_preference", None)
        return data

    @field_validator("wave_ranges", "period_ranges")
    @classmethod
    def _validate_ordered_ranges(cls, value: list[Range]) -> list[Range]:
        return _check_ordered(value)

    @field_validator("energy")
    @classmethod
    def _validate_energy(cls, value: Range) -> Range:
        _check_ordered([value])
        return value

    def fingerprint(self) -> str:
        """Stable hash of the filter profile.

        Two rules with the same thresholds, tide preference and tide port
        share a fingerprint regardless of id or name.
        """
        profile = {
            "wave_ranges": [r.model_dump() for r in self.wave_ranges],
            "period_ranges": [r.model_dump() for r in self.period_ranges],
            "wind_ranges": [r.model_dump() for r in self.wind_ranges],
            "energy": self.energy.model_dump(),
            "tide_preference": self.tide_preference.value,
            "tide_port_id": self.tide_port_id,
        }
        raw = json.dumps(profile, sort_keys=True)
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:16]

    def dedup_key(self) -> str:
        """Key of the last-notified window: subscriber, spot and profile."""
        return f"{self.chat_id}:{self.spot}:{self.fingerprint()}"


# ---------------------------------------------------------------------------
# Evaluation Records
# ---------------------------------------------------------------------------


class CandidateMatch(BaseModel):
    """A sample that passed the rule, with its tide context."""

    model_config = {"populate_by_name": True}

    sample: ForecastSample
    tide_phase: TidePhase | None = None
    tide_height: float | None = None


class ConsecutiveWindow(BaseModel):
    """A run of hourly-spaced candidate matches."""

    model_config = {"populate_by_name": True}

    start: CandidateMatch
    end: CandidateMatch
    hours: int
    items: list[CandidateMatch]


class AlertWindow(BaseModel):
    """A notified window ``[start, end)``."""

    model_config = {"populate_by_name": True, "frozen": True}

    start: datetime
    end: datetime

    @field_validator("start", "end")
    @classmethod
    def _normalize(cls, value: datetime) -> datetime:
        return as_utc(value)

    def contains(self, other: AlertWindow) -> bool:
        return other.start >= self.start and other.end <= self.end


class NearestTides(BaseModel):
    """Nearest high and low tide events to an instant."""

    model_config = {"populate_by_name": True}

    high: TideEvent | None = None
    low: TideEvent | None = None


class DiscardReasons(BaseModel):
    """Histogram of why individual forecast hours were discarded."""

    model_config = {"populate_by_name": True}

    wave: int = 0
    period: int = 0
    energy: int = 0
    wind: int = 0
    tide: int = 0
    daylight: int = 0


class RunStats(BaseModel):
    """Aggregate statistics of one evaluation run."""

    model_config = {"populate_by_name": True}

    total_rules: int = 0
    matched: int = 0
    notified: int = 0
    errors: int = 0
    pass_all: int = 0
    spots: list[str] = []
    discard_reasons: DiscardReasons = Field(default_factory=DiscardReasons)


class RunLogEntry(RunStats):
    """A persisted run summary."""

    timestamp: datetime
    duration_ms: int


class NotificationLogEvent(BaseModel):
    """A window match or send, as reported to the notification log."""

    model_config = {"populate_by_name": True}

    chat_id: int
    rule_id: str
    rule_name: str
    spot: str
    window_start: datetime
    window_end: datetime
    at: datetime

    def log_key(self) -> str:
        return (
            f"{self.chat_id}:{self.rule_id}:"
            f"{self.window_start.isoformat()}:{self.window_end.isoformat()}"
        )


class NotificationLogEntry(BaseModel):
    """Per-window record of how often it matched and was sent."""

    model_config = {"populate_by_name": True}

    key: str
    chat_id: int
    rule_id: str
    rule_name: str
    spot: str
    window_start: datetime
    window_end: datetime
    first_discovered_at: datetime
    last_matched_at: datetime
    matches: int = 0
    sent_count: int = 0
    last_sent_at: datetime | None = None


class NotificationPayload(BaseModel):
    """Structured notification handed to the sink.

    Turning this into a chat message is the composer's job.
    """

    model_config = {"populate_by_name": True}

    notification_id: str
    chat_id: int
    rule_id: str
    rule_name: str
    spot: str
    timezone: str

    window: AlertWindow
    hours: int
    first_sample: ForecastSample
    tide_phase: TidePhase | None = None
    tide_height: float | None = None
    nearest_tides: NearestTides = Field(default_factory=NearestTides)

    # Samples around the window, ordered by time; the ones inside
    # ``window`` are the good hours.
    context_samples: list[ForecastSample] = []

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )
