"""
Alert worker: the hourly tick around the evaluation runner.

``AlertWorker.handle_tick`` is what the scheduler fires every hour at
``check_minute`` past in the configured zone. One tick:

1. Loads every rule from the rule source.
2. Runs ``EvaluationRunner.run_once`` with the configured minimum window.
3. Appends a ``RunLogEntry`` (stats + duration) to the repository.
4. Emits run metrics and logs a one-line summary with the discard
   histogram.

A failing rule load or run-log write is logged and reported through the
``RunErrors`` metric; the scheduler keeps ticking either way.

``create_worker`` wires a worker from ``Settings`` for a given set of
collaborators (forecast feed, daylight oracle, tide feed, sink, rules).
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from typing import Any

from surfwatch.alerts.civil_time import get_zone
from surfwatch.alerts.collaborators import (
    DaylightOracle,
    FixedDaylightWindow,
    ForecastSource,
    NotificationSink,
    RuleSource,
    TideCache,
    TideSource,
)
from surfwatch.alerts.config import Settings
from surfwatch.alerts.logic.evaluator import EvaluationRunner
from surfwatch.alerts.models import RunLogEntry, RunStats
from surfwatch.alerts.repo import InMemoryRepository, PostgresRepository, Repository
from surfwatch.alerts.scheduler import CivilTimeScheduler, schedule_hourly

logger = logging.getLogger(__name__)

MetricEmitter = Callable[[str, float, str, dict[str, str]], None]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Metric Emitter
# ---------------------------------------------------------------------------


def _default_metric_emitter(
    name: str, value: float, unit: str, dimensions: dict[str, str]
) -> None:
    """Default metric emitter: log the metric."""
    logger.info(
        "Metric: %s=%.3f %s dimensions=%s",
        name,
        value,
        unit,
        dimensions,
    )


# ---------------------------------------------------------------------------
# AlertWorker
# ---------------------------------------------------------------------------


class AlertWorker:
    """Runs evaluation ticks and owns the hourly schedule.

    Parameters
    ----------
    runner : EvaluationRunner
        Evaluation core.
    rule_source : RuleSource
        Supplies the rules evaluated on each tick.
    repo : Repository
        Receives the run log.
    settings : Settings
        Minimum window length, schedule minute and zone.
    metric_emitter : callable or None
        ``(name, value, unit, dimensions)``; metrics are logged when None.
    clock : callable
        Returns the current aware UTC time.
    """

    def __init__(
        self,
        runner: EvaluationRunner,
        rule_source: RuleSource,
        repo: Repository,
        settings: Settings,
        metric_emitter: MetricEmitter | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._runner = runner
        self._rule_source = rule_source
        self._repo = repo
        self._settings = settings
        self._metric_emitter = metric_emitter or _default_metric_emitter
        self._clock = clock
        self._scheduler: CivilTimeScheduler | None = None

    def handle_tick(self) -> RunStats | None:
        """Run one evaluation pass.

        Returns
        -------
        RunStats or None
            The run's statistics, or None if the rules could not be loaded.
        """
        dimensions = {"Timezone": self._settings.timezone}
        started_at = self._clock()
        t0 = time.monotonic()

        try:
            rules = self._rule_source.list_rules()
        except Exception:
            logger.exception("Failed to load alert rules; skipping run")
            self._metric_emitter("RunErrors", 1, "Count", dimensions)
            return None

        stats = self._runner.run_once(rules, self._settings.min_consecutive_hours)
        duration_ms = int((time.monotonic() - t0) * 1000)

        try:
            self._repo.append_run_log(
                RunLogEntry(
                    timestamp=started_at,
                    duration_ms=duration_ms,
                    **stats.model_dump(),
                )
            )
        except Exception:
            logger.exception("Failed to append run log entry")
            self._metric_emitter("RunErrors", 1, "Count", dimensions)

        self._metric_emitter("RulesMatched", stats.matched, "Count", dimensions)
        self._metric_emitter("RulesNotified", stats.notified, "Count", dimensions)
        self._metric_emitter("RuleErrors", stats.errors, "Count", dimensions)
        self._metric_emitter("RunDuration", duration_ms, "Milliseconds", dimensions)

        reasons = stats.discard_reasons
        logger.info(
            "Run complete: rules=%d matched=%d notified=%d errors=%d pass_all=%d "
            "duration_ms=%d spots=%s discards=wave:%d period:%d energy:%d "
            "wind:%d tide:%d daylight:%d",
            stats.total_rules,
            stats.matched,
            stats.notified,
            stats.errors,
            stats.pass_all,
            duration_ms,
            ",".join(stats.spots),
            reasons.wave,
            reasons.period,
            reasons.energy,
            reasons.wind,
            reasons.tide,
            reasons.daylight,
        )
        return stats

    def start(self, **scheduler_kwargs: Any) -> CivilTimeScheduler:
        """Arm the hourly schedule; extra kwargs go to the scheduler."""
        if self._scheduler is None:
            self._scheduler = schedule_hourly(
                self.handle_tick,
                self._settings.check_minute,
                self._settings.timezone,
                **scheduler_kwargs,
            )
            logger.info(
                "Alert worker scheduled at minute %02d (%s)",
                self._settings.check_minute,
                self._settings.timezone,
            )
        return self._scheduler

    def stop(self) -> None:
        if self._scheduler is not None:
            self._scheduler.stop()
            self._scheduler = None


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def create_repository(settings: Settings) -> Repository:
    """PostgreSQL repository when ``database_url`` is set, else in-memory.

    The PostgreSQL tables are created here when missing.
    """
    if settings.database_url is not None:
        repo = PostgresRepository(
            conninfo=settings.database_url.get_secret_value(),
            notification_log_max_entries=settings.notification_log_max_entries,
            run_log_max_entries=settings.run_log_max_entries,
        )
        repo.ensure_schema()
        return repo
    logger.warning("DATABASE_URL not set; alert state is kept in memory")
    return InMemoryRepository(
        notification_log_max_entries=settings.notification_log_max_entries,
        run_log_max_entries=settings.run_log_max_entries,
    )


def create_worker(
    settings: Settings,
    forecasts: ForecastSource,
    tides: TideSource,
    sink: NotificationSink,
    rule_source: RuleSource,
    daylight: DaylightOracle | None = None,
    repo: Repository | None = None,
    metric_emitter: MetricEmitter | None = None,
    clock: Callable[[], datetime] = _utcnow,
) -> AlertWorker:
    """Build an ``AlertWorker`` and its runner from settings.

    The repository doubles as window store and notification log recorder.
    Without an explicit daylight oracle a ``FixedDaylightWindow`` in the
    configured zone is used.
    """
    if repo is None:
        repo = create_repository(settings)
    runner = EvaluationRunner(
        forecasts=forecasts,
        daylight=daylight or FixedDaylightWindow(get_zone(settings.timezone)),
        tides=TideCache(tides, capacity=settings.tide_cache_capacity),
        sink=sink,
        store=repo,
        timezone=settings.timezone,
        recorder=repo,
        tide_window=timedelta(hours=settings.tide_window_hours),
        context=timedelta(hours=settings.context_hours),
        parse_cache_capacity=settings.civil_parse_cache_capacity,
        clock=clock,
    )
    return AlertWorker(
        runner=runner,
        rule_source=rule_source,
        repo=repo,
        settings=settings,
        metric_emitter=metric_emitter,
        clock=clock,
    )
