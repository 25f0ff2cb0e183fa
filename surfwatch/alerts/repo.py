"""
Repository: persistence layer for the alert worker.

Holds the only state that crosses evaluation runs:

- **Last notified window** per dedup key (subscriber, spot, rule profile),
  read before and written after each successful send.
- **Last notified timestamp** per rule.
- **Notification log**: one entry per (subscriber, rule, window) counting
  how often the window was matched and how often it was sent. Entries whose
  window already ended are pruned, and at most ``max_entries`` are kept.
- **Run log**: the newest ``run_log_max_entries`` run summaries.

Two implementations:

- ``InMemoryRepository``: process-lifetime state for tests and local runs.
- ``PostgresRepository``: ``psycopg`` (v3) with ``dict_row`` and explicit
  transactions. Schema lives in ``SCHEMA_SQL``.
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from collections import OrderedDict
from datetime import datetime

import psycopg
from psycopg.rows import dict_row

from surfwatch.alerts.models import (
    AlertWindow,
    DiscardReasons,
    NotificationLogEntry,
    NotificationLogEvent,
    RunLogEntry,
    as_utc,
)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logger = logging.getLogger(__name__)

DEFAULT_NOTIFICATION_LOG_MAX_ENTRIES = 5000
DEFAULT_RUN_LOG_MAX_ENTRIES = 48

# ---------------------------------------------------------------------------
# Repository Interface
# ---------------------------------------------------------------------------


class Repository(ABC):
    """Abstract base for alert worker state."""

    @abstractmethod
    def get_last_window(self, key: str) -> AlertWindow | None:
        """Last window notified for a dedup key, or None."""
        ...

    @abstractmethod
    def set_last_window(self, key: str, window: AlertWindow) -> None:
        ...

    @abstractmethod
    def touch_rule_notified(self, rule_id: str, at: datetime) -> None:
        """Record that ``rule_id`` sent a notification at ``at``."""
        ...

    @abstractmethod
    def get_rule_notified(self, rule_id: str) -> datetime | None:
        ...

    @abstractmethod
    def record_match(self, event: NotificationLogEvent) -> None:
        """Count a window match in the notification log.

        Creates the entry on first discovery; otherwise bumps ``matches``
        and refreshes ``last_matched_at``, ``rule_name`` and ``spot``.
        """
        ...

    @abstractmethod
    def record_sent(self, event: NotificationLogEvent) -> None:
        """Count a window send in the notification log.

        Bumps ``sent_count`` and sets ``last_sent_at``; an entry that was
        never matched is created with ``matches=1``.
        """
        ...

    @abstractmethod
    def notification_log(self, now: datetime) -> list[NotificationLogEntry]:
        """Entries whose window has not ended at ``now``, oldest first."""
        ...

    @abstractmethod
    def append_run_log(self, entry: RunLogEntry) -> None:
        ...

    @abstractmethod
    def run_log(self) -> list[RunLogEntry]:
        """Retained run summaries, oldest first."""
        ...


def _new_log_entry(event: NotificationLogEvent, sent: bool) -> NotificationLogEntry:
    return NotificationLogEntry(
        key=event.log_key(),
        chat_id=event.chat_id,
        rule_id=event.rule_id,
        rule_name=event.rule_name,
        spot=event.spot,
        window_start=event.window_start,
        window_end=event.window_end,
        first_discovered_at=event.at,
        last_matched_at=event.at,
        matches=1,
        sent_count=1 if sent else 0,
        last_sent_at=event.at if sent else None,
    )


# ---------------------------------------------------------------------------
# InMemoryRepository
# ---------------------------------------------------------------------------


class InMemoryRepository(Repository):
    """Repository holding state in process memory.

    Parameters
    ----------
    notification_log_max_entries : int
        Maximum notification log entries kept; the oldest are dropped.
    run_log_max_entries : int
        Maximum run log entries kept; the oldest are dropped.
    """

    def __init__(
        self,
        notification_log_max_entries: int = DEFAULT_NOTIFICATION_LOG_MAX_ENTRIES,
        run_log_max_entries: int = DEFAULT_RUN_LOG_MAX_ENTRIES,
    ) -> None:
        self._windows: dict[str, AlertWindow] = {}
        self._notified: dict[str, datetime] = {}
        self._log: OrderedDict[str, NotificationLogEntry] = OrderedDict()
        self._runs: list[RunLogEntry] = []
        self._log_max = notification_log_max_entries
        self._runs_max = run_log_max_entries

    def get_last_window(self, key: str) -> AlertWindow | None:
        return self._windows.get(key)

    def set_last_window(self, key: str, window: AlertWindow) -> None:
        self._windows[key] = window

    def touch_rule_notified(self, rule_id: str, at: datetime) -> None:
        self._notified[rule_id] = as_utc(at)

    def get_rule_notified(self, rule_id: str) -> datetime | None:
        return self._notified.get(rule_id)

    def record_match(self, event: NotificationLogEvent) -> None:
        self._prune(event.at)
        key = event.log_key()
        existing = self._log.get(key)
        if existing is None:
            self._log[key] = _new_log_entry(event, sent=False)
        else:
            existing.matches += 1
            existing.last_matched_at = event.at
            existing.rule_name = event.rule_name
            existing.spot = event.spot
        self._trim()

    def record_sent(self, event: NotificationLogEvent) -> None:
        self._prune(event.at)
        key = event.log_key()
        existing = self._log.get(key)
        if existing is None:
            self._log[key] = _new_log_entry(event, sent=True)
        else:
            existing.sent_count += 1
            existing.last_sent_at = event.at
        self._trim()

    def notification_log(self, now: datetime) -> list[NotificationLogEntry]:
        self._prune(now)
        return list(self._log.values())

    def append_run_log(self, entry: RunLogEntry) -> None:
        self._runs.append(entry)
        del self._runs[: -self._runs_max]

    def run_log(self) -> list[RunLogEntry]:
        return list(self._runs)

    def _prune(self, now: datetime) -> None:
        cutoff = as_utc(now)
        for key in [k for k, e in self._log.items() if e.window_end <= cutoff]:
            del self._log[key]

    def _trim(self) -> None:
        while len(self._log) > self._log_max:
            self._log.popitem(last=False)


# ---------------------------------------------------------------------------
# SQL Constants
# ---------------------------------------------------------------------------

SCHEMA_SQL = """\
CREATE TABLE IF NOT EXISTS alert_windows (
    dedup_key     TEXT PRIMARY KEY,
    window_start  TIMESTAMPTZ NOT NULL,
    window_end    TIMESTAMPTZ NOT NULL,
    updated_at    TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE TABLE IF NOT EXISTS alert_rule_notified (
    rule_id           TEXT PRIMARY KEY,
    last_notified_at  TIMESTAMPTZ NOT NULL
);
CREATE TABLE IF NOT EXISTS notification_log (
    key                  TEXT PRIMARY KEY,
    chat_id              BIGINT NOT NULL,
    rule_id              TEXT NOT NULL,
    rule_name            TEXT NOT NULL,
    spot                 TEXT NOT NULL,
    window_start         TIMESTAMPTZ NOT NULL,
    window_end           TIMESTAMPTZ NOT NULL,
    first_discovered_at  TIMESTAMPTZ NOT NULL,
    last_matched_at      TIMESTAMPTZ NOT NULL,
    matches              INTEGER NOT NULL DEFAULT 0,
    sent_count           INTEGER NOT NULL DEFAULT 0,
    last_sent_at         TIMESTAMPTZ
);
CREATE TABLE IF NOT EXISTS run_log (
    id               BIGSERIAL PRIMARY KEY,
    timestamp        TIMESTAMPTZ NOT NULL,
    total_rules      INTEGER NOT NULL,
    matched          INTEGER NOT NULL,
    notified         INTEGER NOT NULL,
    errors           INTEGER NOT NULL,
    pass_all         INTEGER NOT NULL,
    spots            JSONB NOT NULL,
    discard_reasons  JSONB NOT NULL,
    duration_ms      INTEGER NOT NULL
);
"""

_GET_WINDOW_SQL = """\
SELECT window_start, window_end
FROM alert_windows
WHERE dedup_key = %s
"""

_UPSERT_WINDOW_SQL = """\
INSERT INTO alert_windows (dedup_key, window_start, window_end, updated_at)
VALUES (%s, %s, %s, now())
ON CONFLICT (dedup_key) DO UPDATE SET
    window_start = EXCLUDED.window_start,
    window_end = EXCLUDED.window_end,
    updated_at = EXCLUDED.updated_at
"""

_UPSERT_RULE_NOTIFIED_SQL = """\
INSERT INTO alert_rule_notified (rule_id, last_notified_at)
VALUES (%s, %s)
ON CONFLICT (rule_id) DO UPDATE SET
    last_notified_at = EXCLUDED.last_notified_at
"""

_GET_RULE_NOTIFIED_SQL = """\
SELECT last_notified_at
FROM alert_rule_notified
WHERE rule_id = %s
"""

_PRUNE_LOG_SQL = """\
DELETE FROM notification_log
WHERE window_end <= %s
"""

_TRIM_LOG_SQL = """\
DELETE FROM notification_log
WHERE key NOT IN (
    SELECT key FROM notification_log
    ORDER BY first_discovered_at DESC, key DESC
    LIMIT %s
)
"""

_UPSERT_LOG_MATCH_SQL = """\
INSERT INTO notification_log (
    key, chat_id, rule_id, rule_name, spot, window_start, window_end,
    first_discovered_at, last_matched_at, matches, sent_count, last_sent_at
) VALUES (
    %(key)s, %(chat_id)s, %(rule_id)s, %(rule_name)s, %(spot)s,
    %(window_start)s, %(window_end)s, %(at)s, %(at)s, 1, 0, NULL
)
ON CONFLICT (key) DO UPDATE SET
    matches = notification_log.matches + 1,
    last_matched_at = EXCLUDED.last_matched_at,
    rule_name = EXCLUDED.rule_name,
    spot = EXCLUDED.spot
"""

_UPSERT_LOG_SENT_SQL = """\
INSERT INTO notification_log (
    key, chat_id, rule_id, rule_name, spot, window_start, window_end,
    first_discovered_at, last_matched_at, matches, sent_count, last_sent_at
) VALUES (
    %(key)s, %(chat_id)s, %(rule_id)s, %(rule_name)s, %(spot)s,
    %(window_start)s, %(window_end)s, %(at)s, %(at)s, 1, 1, %(at)s
)
ON CONFLICT (key) DO UPDATE SET
    sent_count = notification_log.sent_count + 1,
    last_sent_at = EXCLUDED.last_sent_at
"""

_FETCH_LOG_SQL = """\
SELECT
    key,
    chat_id,
    rule_id,
    rule_name,
    spot,
    window_start,
    window_end,
    first_discovered_at,
    last_matched_at,
    matches,
    sent_count,
    last_sent_at
FROM notification_log
ORDER BY first_discovered_at, key
"""

_INSERT_RUN_SQL = """\
INSERT INTO run_log (
    timestamp, total_rules, matched, notified, errors, pass_all,
    spots, discard_reasons, duration_ms
) VALUES (
    %(timestamp)s, %(total_rules)s, %(matched)s, %(notified)s, %(errors)s,
    %(pass_all)s, %(spots)s, %(discard_reasons)s, %(duration_ms)s
)
"""

_TRIM_RUNS_SQL = """\
DELETE FROM run_log
WHERE id NOT IN (
    SELECT id FROM run_log ORDER BY id DESC LIMIT %s
)
"""

_FETCH_RUNS_SQL = """\
SELECT
    timestamp,
    total_rules,
    matched,
    notified,
    errors,
    pass_all,
    spots,
    discard_reasons,
    duration_ms
FROM run_log
ORDER BY id
"""


# ---------------------------------------------------------------------------
# Row -> Model Mapping Helpers
# ---------------------------------------------------------------------------


def _event_to_params(event: NotificationLogEvent) -> dict:
    return {
        "key": event.log_key(),
        "chat_id": event.chat_id,
        "rule_id": event.rule_id,
        "rule_name": event.rule_name,
        "spot": event.spot,
        "window_start": event.window_start,
        "window_end": event.window_end,
        "at": event.at,
    }


def _run_to_params(entry: RunLogEntry) -> dict:
    """Serialize a run summary; JSONB columns become JSON strings."""
    return {
        "timestamp": entry.timestamp,
        "total_rules": entry.total_rules,
        "matched": entry.matched,
        "notified": entry.notified,
        "errors": entry.errors,
        "pass_all": entry.pass_all,
        "spots": json.dumps(entry.spots),
        "discard_reasons": json.dumps(entry.discard_reasons.model_dump()),
        "duration_ms": entry.duration_ms,
    }


def _row_to_run(row: dict) -> RunLogEntry:
    """Convert a ``run_log`` row, parsing JSONB columns that arrive as text."""
    spots = row.get("spots") or []
    if isinstance(spots, str):
        spots = json.loads(spots)
    reasons = row.get("discard_reasons") or {}
    if isinstance(reasons, str):
        reasons = json.loads(reasons)
    return RunLogEntry(
        timestamp=row["timestamp"],
        total_rules=row["total_rules"],
        matched=row["matched"],
        notified=row["notified"],
        errors=row.get("errors", 0),
        pass_all=row.get("pass_all", 0),
        spots=spots,
        discard_reasons=DiscardReasons(**reasons),
        duration_ms=row["duration_ms"],
    )


# ---------------------------------------------------------------------------
# Concrete Implementation: PostgresRepository
# ---------------------------------------------------------------------------


class PostgresRepository(Repository):
    """PostgreSQL-backed Repository using psycopg v3.

    Opens a connection per operation from a DSN; pooling, if any, is
    external.

    Parameters
    ----------
    conninfo : str
        PostgreSQL connection string (DSN).
    notification_log_max_entries : int
        Maximum notification log rows kept after each write.
    run_log_max_entries : int
        Maximum run log rows kept after each append.
    """

    def __init__(
        self,
        conninfo: str,
        notification_log_max_entries: int = DEFAULT_NOTIFICATION_LOG_MAX_ENTRIES,
        run_log_max_entries: int = DEFAULT_RUN_LOG_MAX_ENTRIES,
    ) -> None:
        self._conninfo = conninfo
        self._log_max = notification_log_max_entries
        self._runs_max = run_log_max_entries

    def _connect(self) -> psycopg.Connection:
        """Create a new connection with ``dict_row`` rows.

        ``autocommit=False``; writes run inside ``conn.transaction()``.
        """
        return psycopg.connect(
            self._conninfo,
            row_factory=dict_row,
            autocommit=False,
        )

    def ensure_schema(self) -> None:
        """Create the worker's tables if they do not exist."""
        with self._connect() as conn:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(SCHEMA_SQL)
        logger.info("Schema ensured")

    def get_last_window(self, key: str) -> AlertWindow | None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(_GET_WINDOW_SQL, (key,))
                row = cur.fetchone()
        if row is None:
            return None
        return AlertWindow(start=row["window_start"], end=row["window_end"])

    def set_last_window(self, key: str, window: AlertWindow) -> None:
        with self._connect() as conn:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(
                        _UPSERT_WINDOW_SQL, (key, window.start, window.end)
                    )

    def touch_rule_notified(self, rule_id: str, at: datetime) -> None:
        with self._connect() as conn:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(_UPSERT_RULE_NOTIFIED_SQL, (rule_id, as_utc(at)))

    def get_rule_notified(self, rule_id: str) -> datetime | None:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(_GET_RULE_NOTIFIED_SQL, (rule_id,))
                row = cur.fetchone()
        return row["last_notified_at"] if row else None

    def record_match(self, event: NotificationLogEvent) -> None:
        self._write_log(_UPSERT_LOG_MATCH_SQL, event)

    def record_sent(self, event: NotificationLogEvent) -> None:
        self._write_log(_UPSERT_LOG_SENT_SQL, event)

    def _write_log(self, upsert_sql: str, event: NotificationLogEvent) -> None:
        """Prune ended windows, upsert the entry and trim, in one transaction."""
        with self._connect() as conn:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(_PRUNE_LOG_SQL, (event.at,))
                    cur.execute(upsert_sql, _event_to_params(event))
                    cur.execute(_TRIM_LOG_SQL, (self._log_max,))
        logger.debug("Notification log updated: key=%s", event.log_key())

    def notification_log(self, now: datetime) -> list[NotificationLogEntry]:
        with self._connect() as conn:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(_PRUNE_LOG_SQL, (as_utc(now),))
                    cur.execute(_FETCH_LOG_SQL)
                    rows = cur.fetchall()
        return [NotificationLogEntry(**row) for row in rows]

    def append_run_log(self, entry: RunLogEntry) -> None:
        with self._connect() as conn:
            with conn.transaction():
                with conn.cursor() as cur:
                    cur.execute(_INSERT_RUN_SQL, _run_to_params(entry))
                    cur.execute(_TRIM_RUNS_SQL, (self._runs_max,))

    def run_log(self) -> list[RunLogEntry]:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(_FETCH_RUNS_SQL)
                rows = cur.fetchall()
        return [_row_to_run(row) for row in rows]
