"""
Evaluation runner: one pass over all alert rules.

Implements ``run_once``, which for every enabled rule:

1. Fetches the spot's forecast (memoized per spot for the run).
2. Drops hours outside the daylight window, then matches the remaining
   hours against the rule's thresholds, counting why each hour failed.
3. Applies the rule's tide preference:
    - ``high``/``low``: the hour must lie within +/- ``tide_window`` of the
      nearest turning point of that type on the hour's civil day; no such
      event discards the hour.
    - ``mid``: the interpolated phase must be mid.
    - ``any``: no constraint.
4. Finds the first run of consecutive hourly candidates
   (``first_consecutive_window``) and turns it into ``[start, end + 1h)``.
5. Reports the match, checks the window against the last notified window
   for the rule's dedup key, and on a genuinely new window builds the
   payload, sends it, then records the window, the notified timestamp and
   the send.

A failure inside one rule is logged with traceback and counted in
``errors``; the run continues with the next rule.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import date, datetime, timedelta, timezone
from typing import Protocol

from surfwatch.alerts.civil_time import (
    DEFAULT_PARSE_CACHE_CAPACITY,
    CivilTimeParser,
    civil_date,
    get_zone,
)
from surfwatch.alerts.collaborators import (
    DaylightOracle,
    ForecastSource,
    MatchRecorder,
    NotificationSink,
    TideSource,
)
from surfwatch.alerts.logic.dedup import WindowDeduplicator, WindowStore
from surfwatch.alerts.logic.matcher import match_detail
from surfwatch.alerts.logic.tides import TideEstimator
from surfwatch.alerts.logic.windows import first_consecutive_window
from surfwatch.alerts.models import (
    AlertRule,
    AlertWindow,
    CandidateMatch,
    ConsecutiveWindow,
    ForecastSample,
    NotificationLogEvent,
    NotificationPayload,
    RunStats,
    TidePhase,
    TidePreference,
    TideType,
)

logger = logging.getLogger(__name__)

ONE_HOUR = timedelta(hours=1)
DEFAULT_TIDE_WINDOW = timedelta(hours=3)
DEFAULT_CONTEXT = timedelta(hours=4)


class RuleNotifiedStore(WindowStore, Protocol):
    """Window store that also tracks when each rule last notified."""

    def touch_rule_notified(self, rule_id: str, at: datetime) -> None: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# EvaluationRunner
# ---------------------------------------------------------------------------


class EvaluationRunner:
    """Evaluates alert rules against forecasts and notifies new windows.

    Parameters
    ----------
    forecasts : ForecastSource
        Hourly forecast samples per spot.
    daylight : DaylightOracle
        Daylight predicate applied before threshold matching.
    tides : TideSource
        Tide events per (port, civil date); typically a ``TideCache``.
    sink : NotificationSink
        Receives payloads for windows worth notifying.
    store : RuleNotifiedStore
        Last notified window per dedup key and notified timestamps.
    timezone : str
        Civil zone of tide tables and tide-day lookups.
    recorder : MatchRecorder, optional
        Notification log hooks; skipped when None.
    tide_window : timedelta
        Half-width of the window around the nearest high/low tide.
    context : timedelta
        Margin of context samples on either side of a notified window.
    parse_cache_capacity : int
        Capacity of the civil time parser memo.
    clock : callable
        Returns the current aware UTC time.
    """

    def __init__(
        self,
        forecasts: ForecastSource,
        daylight: DaylightOracle,
        tides: TideSource,
        sink: NotificationSink,
        store: RuleNotifiedStore,
        timezone: str,
        recorder: MatchRecorder | None = None,
        tide_window: timedelta = DEFAULT_TIDE_WINDOW,
        context: timedelta = DEFAULT_CONTEXT,
        parse_cache_capacity: int = DEFAULT_PARSE_CACHE_CAPACITY,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._forecasts = forecasts
        self._daylight = daylight
        self._tides = tides
        self._sink = sink
        self._store = store
        self._dedup = WindowDeduplicator(store)
        self._recorder = recorder
        self._tide_window = tide_window
        self._context = context
        self._clock = clock

        self.timezone = timezone
        self._tz = get_zone(timezone)
        self._parser = CivilTimeParser(self._tz, capacity=parse_cache_capacity)

    # -----------------------------------------------------------------------
    # Public API
    # -----------------------------------------------------------------------

    def run_once(
        self,
        rules: list[AlertRule],
        min_consecutive_hours: int,
    ) -> RunStats:
        """Evaluate every rule once.

        Parameters
        ----------
        rules : list[AlertRule]
            All rules, enabled or not. Disabled rules count toward
            ``total_rules`` but are not evaluated.
        min_consecutive_hours : int
            Minimum window length; values below 1 are treated as 1.

        Returns
        -------
        RunStats
            Aggregate statistics and discard histogram for the run.
        """
        stats = RunStats(
            total_rules=len(rules),
            spots=list(dict.fromkeys(rule.spot for rule in rules)),
        )
        forecasts_by_spot: dict[str, list[ForecastSample]] = {}
        estimators: dict[tuple[str, date], TideEstimator] = {}
        min_hours = max(1, min_consecutive_hours)

        for rule in rules:
            try:
                if not rule.enabled:
                    continue
                self._evaluate_rule(
                    rule, min_hours, stats, forecasts_by_spot, estimators
                )
            except Exception:
                logger.exception(
                    "Rule evaluation failed: rule=%s, chat=%s, spot=%s",
                    rule.id,
                    rule.chat_id,
                    rule.spot,
                )
                stats.errors += 1

        return stats

    # -----------------------------------------------------------------------
    # Per-rule evaluation
    # -----------------------------------------------------------------------

    def _evaluate_rule(
        self,
        rule: AlertRule,
        min_hours: int,
        stats: RunStats,
        forecasts_by_spot: dict[str, list[ForecastSample]],
        estimators: dict[tuple[str, date], TideEstimator],
    ) -> None:
        forecasts = forecasts_by_spot.get(rule.spot)
        if forecasts is None:
            forecasts = self._forecasts.fetch_forecasts(rule.spot)
            forecasts_by_spot[rule.spot] = forecasts
        if not forecasts:
            logger.debug("No forecast for spot=%s (rule=%s)", rule.spot, rule.id)
            return

        passing = self._match_samples(rule, forecasts, stats)
        if not passing:
            return
        stats.matched += 1

        def estimator_for(day: date) -> TideEstimator:
            key = (rule.tide_port_id, day)
            if key not in estimators:
                events = self._tides.get_tide_events(rule.tide_port_id, day)
                estimators[key] = TideEstimator(events, self._parser)
            return estimators[key]

        candidates = self._apply_tide_preference(rule, passing, stats, estimator_for)
        if not candidates:
            return

        window = first_consecutive_window(candidates, min_hours)
        if window is None:
            return

        alert_window = AlertWindow(
            start=window.start.sample.timestamp,
            end=window.end.sample.timestamp + ONE_HOUR,
        )
        self._record_match(rule, alert_window)

        key = rule.dedup_key()
        if not self._dedup.should_send(key, alert_window):
            return

        start_day = civil_date(window.start.sample.timestamp, self._tz)
        payload = self._build_payload(
            rule, window, alert_window, forecasts, estimator_for(start_day)
        )
        self._sink.send(rule.chat_id, payload)

        self._dedup.record(key, alert_window)
        self._store.touch_rule_notified(rule.id, self._clock())
        self._record_sent(rule, alert_window)
        stats.notified += 1
        logger.info(
            "Notified rule=%s chat=%s spot=%s window=[%s, %s) hours=%d",
            rule.id,
            rule.chat_id,
            rule.spot,
            alert_window.start.isoformat(),
            alert_window.end.isoformat(),
            window.hours,
        )

    def _match_samples(
        self,
        rule: AlertRule,
        forecasts: list[ForecastSample],
        stats: RunStats,
    ) -> list[ForecastSample]:
        reasons = stats.discard_reasons
        passing: list[ForecastSample] = []
        for sample in forecasts:
            if not self._daylight.is_within_daylight_window(rule.spot, sample.timestamp):
                reasons.daylight += 1
                continue

            detail = match_detail(rule, sample)
            if detail.passed:
                passing.append(sample)
                stats.pass_all += 1
                continue
            if not detail.wave:
                reasons.wave += 1
            if not detail.period:
                reasons.period += 1
            if not detail.energy:
                reasons.energy += 1
            if not detail.wind:
                reasons.wind += 1
        return passing

    def _apply_tide_preference(
        self,
        rule: AlertRule,
        samples: list[ForecastSample],
        stats: RunStats,
        estimator_for: Callable[[date], TideEstimator],
    ) -> list[CandidateMatch]:
        preference = rule.tide_preference
        candidates: list[CandidateMatch] = []

        for sample in samples:
            estimator = estimator_for(civil_date(sample.timestamp, self._tz))

            if preference in (TidePreference.HIGH, TidePreference.LOW):
                nearest = estimator.nearest_instant_of_type(
                    sample.timestamp, TideType(preference.value)
                )
                if nearest is None or abs(sample.timestamp - nearest) > self._tide_window:
                    stats.discard_reasons.tide += 1
                    continue

            phase, height = estimator.phase_at(sample.timestamp)

            if preference == TidePreference.MID and phase != TidePhase.MID:
                stats.discard_reasons.tide += 1
                continue

            candidates.append(
                CandidateMatch(sample=sample, tide_phase=phase, tide_height=height)
            )
        return candidates

    # -----------------------------------------------------------------------
    # Payload and hooks
    # -----------------------------------------------------------------------

    def _build_payload(
        self,
        rule: AlertRule,
        window: ConsecutiveWindow,
        alert_window: AlertWindow,
        forecasts: list[ForecastSample],
        start_day_tides: TideEstimator,
    ) -> NotificationPayload:
        first = window.start
        lower = window.start.sample.timestamp - self._context
        upper = window.end.sample.timestamp + self._context
        context = sorted(
            (s for s in forecasts if lower <= s.timestamp <= upper),
            key=lambda s: s.timestamp,
        )
        if not context:
            context = [item.sample for item in window.items]

        return NotificationPayload(
            notification_id=f"notif_{uuid.uuid4()}",
            chat_id=rule.chat_id,
            rule_id=rule.id,
            rule_name=rule.name,
            spot=rule.spot,
            timezone=self.timezone,
            window=alert_window,
            hours=window.hours,
            first_sample=first.sample,
            tide_phase=first.tide_phase,
            tide_height=first.tide_height,
            nearest_tides=start_day_tides.nearest_tides(first.sample.timestamp),
            context_samples=context,
            created_at=self._clock(),
        )

    def _log_event(self, rule: AlertRule, window: AlertWindow) -> NotificationLogEvent:
        return NotificationLogEvent(
            chat_id=rule.chat_id,
            rule_id=rule.id,
            rule_name=rule.name,
            spot=rule.spot,
            window_start=window.start,
            window_end=window.end,
            at=self._clock(),
        )

    def _record_match(self, rule: AlertRule, window: AlertWindow) -> None:
        if self._recorder is not None:
            self._recorder.record_match(self._log_event(rule, window))

    def _record_sent(self, rule: AlertRule, window: AlertWindow) -> None:
        if self._recorder is not None:
            self._recorder.record_sent(self._log_event(rule, window))
