"""
Civil (wall-clock) time helpers.

Forecast samples carry absolute UTC instants while tide tables and the
hourly schedule are expressed in a port's civil time. These helpers convert
between the two with ``zoneinfo`` and never do offset arithmetic by hand.

``CivilTimeParser`` resolves ``YYYY-MM-DD`` + ``HH:MM`` strings in a zone into
aware UTC datetimes:

* a time that does not exist locally (the spring-forward gap) resolves to
  ``None``;
* an ambiguous time (the repeated fall-back hour) resolves to the
  occurrence closest to the wall time read as UTC, which is the second one
  for zones east of Greenwich such as Europe/Madrid;
* malformed strings resolve to ``None``.

Results are memoized in a bounded map owned by the parser that is cleared
entirely once it reaches capacity.
"""

from __future__ import annotations

import logging
import re
import zoneinfo
from dataclasses import dataclass
from datetime import date, datetime, timezone

from surfwatch.alerts.models import as_utc

logger = logging.getLogger(__name__)

DEFAULT_PARSE_CACHE_CAPACITY = 1024

_DATE_RE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
_TIME_RE = re.compile(r"^(\d{2}):(\d{2})$")


@dataclass(frozen=True)
class CivilParts:
    """Calendar and clock fields of an instant rendered in a zone."""

    year: int
    month: int
    day: int
    hour: int
    minute: int
    second: int


def get_zone(name: str) -> zoneinfo.ZoneInfo:
    """Load a zone by IANA name; raises ``ValueError`` when unknown."""
    try:
        return zoneinfo.ZoneInfo(name)
    except (zoneinfo.ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown time zone: {name!r}") from exc


def civil_parts(instant: datetime, tz: zoneinfo.ZoneInfo) -> CivilParts:
    """Render ``instant`` in ``tz`` and return its calendar/clock fields."""
    local = as_utc(instant).astimezone(tz)
    return CivilParts(
        year=local.year,
        month=local.month,
        day=local.day,
        hour=local.hour,
        minute=local.minute,
        second=local.second,
    )


def civil_date(instant: datetime, tz: zoneinfo.ZoneInfo) -> date:
    """Civil calendar date of ``instant`` in ``tz``."""
    return as_utc(instant).astimezone(tz).date()


def _parse_date(raw: str) -> tuple[int, int, int] | None:
    match = _DATE_RE.match(raw.strip())
    if not match:
        return None
    year, month, day = (int(g) for g in match.groups())
    if not 1 <= month <= 12 or not 1 <= day <= 31:
        return None
    return year, month, day


def _parse_time(raw: str) -> tuple[int, int] | None:
    match = _TIME_RE.match(raw.strip())
    if not match:
        return None
    hour, minute = (int(g) for g in match.groups())
    if not 0 <= hour <= 23 or not 0 <= minute <= 59:
        return None
    return hour, minute


class CivilTimeParser:
    """Resolves civil date/time strings of one zone into UTC instants.

    Parameters
    ----------
    tz : ZoneInfo
        Zone the strings are expressed in.
    capacity : int
        Number of memoized results kept before the memo is cleared.
    """

    def __init__(
        self,
        tz: zoneinfo.ZoneInfo,
        capacity: int = DEFAULT_PARSE_CACHE_CAPACITY,
    ) -> None:
        self.tz = tz
        self._capacity = max(1, capacity)
        self._cache: dict[str, datetime | None] = {}

    def __len__(self) -> int:
        return len(self._cache)

    def parse(self, date_ymd: str, time_hm: str) -> datetime | None:
        """Return the UTC instant for a civil date and time, or ``None``."""
        key = f"{date_ymd}T{time_hm}"
        if key in self._cache:
            return self._cache[key]

        result = self._resolve(date_ymd, time_hm)
        if len(self._cache) >= self._capacity:
            self._cache.clear()
        self._cache[key] = result
        return result

    def _resolve(self, date_ymd: str, time_hm: str) -> datetime | None:
        date_part = _parse_date(date_ymd)
        time_part = _parse_time(time_hm)
        if date_part is None or time_part is None:
            logger.debug("Unparseable civil time %r %r", date_ymd, time_hm)
            return None

        try:
            nominal = datetime(*date_part, *time_part, tzinfo=timezone.utc)
        except ValueError:
            # e.g. 2026-02-31
            return None

        best: datetime | None = None
        for fold in (0, 1):
            local = nominal.replace(tzinfo=self.tz, fold=fold)
            instant = local.astimezone(timezone.utc)
            # A wall time inside a DST gap renders back as a different one.
            back = instant.astimezone(self.tz)
            if (back.hour, back.minute) != time_part or back.date() != local.date():
                continue
            if best is None or abs(instant - nominal) < abs(best - nominal):
                best = instant
        return best
