"""
Collaborator contracts and helpers for the alert worker.

The evaluation core never talks to the network, the chat transport or the
rule store directly. It consumes the protocols below, implemented by the
surrounding service:

- ``ForecastSource.fetch_forecasts(spot)``: hourly samples for a spot;
  returns an empty list on failure.
- ``DaylightOracle.is_within_daylight_window(spot, timestamp)``: whether a
  forecast hour is surfable light; fails open (True).
- ``TideSource.get_tide_events(port, civil_date)``: a port's turning points
  for one civil day; returns an empty list on failure.
- ``NotificationSink.send(chat_id, payload)``: hands a payload to the
  composer/transport; may raise.
- ``RuleSource.list_rules()``: all stored rules, already in the
  current interval shape.
- ``MatchRecorder.record_match(event)`` / ``record_sent(event)``: optional
  instrumentation hooks.

Helpers here parse raw feed records into models, cache tide lookups per
(port, day) and provide the default daylight window.
"""

from __future__ import annotations

import logging
import zoneinfo
from collections.abc import Callable, Iterable
from datetime import date, datetime, timedelta
from typing import Any, Protocol

from pydantic import ValidationError

from surfwatch.alerts.models import (
    AlertRule,
    ForecastSample,
    NotificationLogEvent,
    NotificationPayload,
    TideEvent,
    as_utc,
)

logger = logging.getLogger(__name__)

DEFAULT_TIDE_CACHE_CAPACITY = 256


# ---------------------------------------------------------------------------
# Protocols
# ---------------------------------------------------------------------------


class ForecastSource(Protocol):
    def fetch_forecasts(self, spot: str) -> list[ForecastSample]: ...


class DaylightOracle(Protocol):
    def is_within_daylight_window(self, spot: str, timestamp: datetime) -> bool: ...


class TideSource(Protocol):
    def get_tide_events(self, port: str, civil_date: date) -> list[TideEvent]: ...


class NotificationSink(Protocol):
    def send(self, chat_id: int, payload: NotificationPayload) -> None: ...


class RuleSource(Protocol):
    """Supplies every stored alert rule, enabled or not."""

    def list_rules(self) -> list[AlertRule]: ...


class MatchRecorder(Protocol):
    """Receives window matches and sends for the notification log."""

    def record_match(self, event: NotificationLogEvent) -> None: ...

    def record_sent(self, event: NotificationLogEvent) -> None: ...


# Returns the sunset instant for a spot on the civil day of ``timestamp``.
SunsetLookup = Callable[[str, datetime], datetime | None]


# ---------------------------------------------------------------------------
# Raw feed parsing
# ---------------------------------------------------------------------------


def parse_forecast_samples(
    raw: Iterable[dict[str, Any]],
    spot: str = "",
) -> list[ForecastSample]:
    """Parse upstream forecast records, skipping malformed ones.

    Parameters
    ----------
    raw : iterable of dict
        Records in the feed shape (``date``, ``wind``, ``energy``,
        ``validSwells``).
    spot : str
        Spot name stamped on records that do not carry one.

    Returns
    -------
    list[ForecastSample]
        Parsed samples in input order.
    """
    samples: list[ForecastSample] = []
    for i, record in enumerate(raw):
        if spot and not record.get("spot"):
            record = {**record, "spot": spot}
        try:
            samples.append(ForecastSample.model_validate(record))
        except ValidationError as exc:
            logger.warning(
                "Skipping malformed forecast record %d for spot=%s: %s",
                i,
                spot,
                exc.errors()[0]["msg"] if exc.errors() else exc,
            )
    return samples


def parse_alert_rules(
    raw: Iterable[dict[str, Any]],
    default_tide_port_id: str | None = None,
) -> list[AlertRule]:
    """Parse stored rules in either shape, skipping invalid ones.

    Rules without a tide port get ``default_tide_port_id`` when given.
    """
    rules: list[AlertRule] = []
    for i, record in enumerate(raw):
        if default_tide_port_id and not record.get("tide_port_id"):
            record = {**record, "tide_port_id": default_tide_port_id}
        try:
            rules.append(AlertRule.model_validate(record))
        except ValidationError as exc:
            logger.warning(
                "Skipping invalid alert rule %d (id=%s): %s",
                i,
                record.get("id"),
                exc.errors()[0]["msg"] if exc.errors() else exc,
            )
    return rules


def parse_tide_events(raw: Iterable[dict[str, Any]]) -> list[TideEvent]:
    """Parse upstream tide records, skipping malformed ones."""
    events: list[TideEvent] = []
    for i, record in enumerate(raw):
        try:
            events.append(TideEvent.model_validate(record))
        except ValidationError as exc:
            logger.warning(
                "Skipping malformed tide record %d: %s",
                i,
                exc.errors()[0]["msg"] if exc.errors() else exc,
            )
    return events


# ---------------------------------------------------------------------------
# Tide cache
# ---------------------------------------------------------------------------


class TideCache:
    """Per (port, civil date) memo in front of a ``TideSource``.

    Bounded: once ``capacity`` entries are held the whole map is cleared
    before the next insert.
    """

    def __init__(
        self,
        source: TideSource,
        capacity: int = DEFAULT_TIDE_CACHE_CAPACITY,
    ) -> None:
        self._source = source
        self._capacity = max(1, capacity)
        self._entries: dict[tuple[str, date], list[TideEvent]] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def get_tide_events(self, port: str, civil_date: date) -> list[TideEvent]:
        key = (port, civil_date)
        cached = self._entries.get(key)
        if cached is not None:
            return cached

        events = self._source.get_tide_events(port, civil_date)
        if len(self._entries) >= self._capacity:
            logger.debug("Tide cache full (%d entries), clearing", len(self._entries))
            self._entries.clear()
        self._entries[key] = events
        return events


# ---------------------------------------------------------------------------
# Daylight
# ---------------------------------------------------------------------------


class FixedDaylightWindow:
    """Default daylight predicate.

    A forecast hour is in the window when its local hour is at least
    ``first_hour`` and, if a sunset lookup is available and answers, the
    hour is no later than sunset plus ``after_sunset``. A missing or failing
    sunset lookup leaves only the morning bound in force.

    Parameters
    ----------
    tz : ZoneInfo
        Zone the local hour is taken in.
    sunset_lookup : callable, optional
        ``(spot, timestamp) -> datetime | None``.
    first_hour : int
        First local hour considered light.
    after_sunset : timedelta
        Grace period after sunset.
    """

    def __init__(
        self,
        tz: zoneinfo.ZoneInfo,
        sunset_lookup: SunsetLookup | None = None,
        first_hour: int = 5,
        after_sunset: timedelta = timedelta(hours=1),
    ) -> None:
        self.tz = tz
        self._sunset_lookup = sunset_lookup
        self._first_hour = first_hour
        self._after_sunset = after_sunset

    def is_within_daylight_window(self, spot: str, timestamp: datetime) -> bool:
        at = as_utc(timestamp)
        if at.astimezone(self.tz).hour < self._first_hour:
            return False
        if self._sunset_lookup is None:
            return True

        try:
            sunset = self._sunset_lookup(spot, at)
        except Exception:
            logger.warning(
                "Sunset lookup failed for spot=%s at %s; treating as daylight",
                spot,
                at.isoformat(),
                exc_info=True,
            )
            return True
        if sunset is None:
            return True
        return at <= as_utc(sunset) + self._after_sunset
