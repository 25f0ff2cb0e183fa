"""
Core evaluation logic for the alert worker.

This package contains the rule matcher, tide estimation, consecutive
window detection, window deduplication and the evaluation runner.

Public API:
    - ``EvaluationRunner`` -- One pass over all rules (``run_once``).
    - ``match_detail`` / ``matches`` -- Rule vs. forecast sample.
    - ``TideEstimator`` -- Tide height, phase and nearest turning points.
    - ``first_consecutive_window`` -- First hourly run of candidates.
    - ``should_send`` / ``WindowDeduplicator`` -- Containment dedup.
"""

from surfwatch.alerts.logic.dedup import WindowDeduplicator, should_send
from surfwatch.alerts.logic.evaluator import EvaluationRunner
from surfwatch.alerts.logic.matcher import MatchDetail, match_detail, matches
from surfwatch.alerts.logic.tides import TideEstimator
from surfwatch.alerts.logic.windows import first_consecutive_window

__all__ = [
    "EvaluationRunner",
    "MatchDetail",
    "match_detail",
    "matches",
    "TideEstimator",
    "first_consecutive_window",
    "should_send",
    "WindowDeduplicator",
]
