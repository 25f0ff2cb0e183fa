#!/usr/bin/env python3
"""
dev_runner.py -- Local development harness for the alert worker.

Runs the worker against JSON fixture files instead of the live forecast,
tide and chat services:

1. Loads alert rules, per-spot forecasts and per-port tide tables from a
   fixtures directory.
2. Wires an ``AlertWorker`` from ``Settings`` with a sink that logs each
   notification payload instead of sending it.
3. Either runs a single evaluation (``--once``) or arms the hourly schedule
   and waits for SIGINT/SIGTERM to stop it gracefully.

Fixture layout::

    <fixtures>/rules.json                    list of rule records
    <fixtures>/forecasts/<spot>.json         list of forecast records
    <fixtures>/tides/<port>/<YYYY-MM-DD>.json  list of tide records

Usage:
    python -m surfwatch.alerts.dev_runner --fixtures ./fixtures --once

    # Keep running on the hourly schedule:
    TIMEZONE=Europe/Madrid CHECK_MINUTE=10 \\
    python -m surfwatch.alerts.dev_runner --fixtures ./fixtures
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import signal
import threading
from datetime import date
from pathlib import Path
from typing import Any

from surfwatch.alerts.collaborators import (
    parse_alert_rules,
    parse_forecast_samples,
    parse_tide_events,
)
from surfwatch.alerts.config import load_settings
from surfwatch.alerts.handler import create_worker
from surfwatch.alerts.models import (
    AlertRule,
    ForecastSample,
    NotificationPayload,
    TideEvent,
)

logger = logging.getLogger("surfwatch.alerts.dev_runner")


# ---------------------------------------------------------------------------
# Fixture-backed collaborators
# ---------------------------------------------------------------------------


def _read_json_list(path: Path) -> list[dict[str, Any]]:
    """Read a JSON array; a missing or malformed file yields an empty list."""
    if not path.exists():
        return []
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        logger.warning("Could not read fixture %s", path, exc_info=True)
        return []
    if not isinstance(data, list):
        logger.warning("Fixture %s is not a JSON array", path)
        return []
    return data


class FixtureRules:
    def __init__(self, root: Path, default_tide_port_id: str) -> None:
        self._path = root / "rules.json"
        self._default_port = default_tide_port_id

    def list_rules(self) -> list[AlertRule]:
        return parse_alert_rules(_read_json_list(self._path), self._default_port)


class FixtureForecasts:
    def __init__(self, root: Path) -> None:
        self._root = root / "forecasts"

    def fetch_forecasts(self, spot: str) -> list[ForecastSample]:
        return parse_forecast_samples(
            _read_json_list(self._root / f"{spot}.json"), spot=spot
        )


class FixtureTides:
    def __init__(self, root: Path) -> None:
        self._root = root / "tides"

    def get_tide_events(self, port: str, civil_date: date) -> list[TideEvent]:
        path = self._root / port / f"{civil_date.isoformat()}.json"
        return parse_tide_events(_read_json_list(path))


class LoggingSink:
    """Logs notification payloads instead of delivering them."""

    def send(self, chat_id: int, payload: NotificationPayload) -> None:
        logger.info(
            "NOTIFY chat=%s rule=%s spot=%s window=[%s, %s) hours=%d tide=%s",
            chat_id,
            payload.rule_name,
            payload.spot,
            payload.window.start.isoformat(),
            payload.window.end.isoformat(),
            payload.hours,
            payload.tide_phase.value if payload.tide_phase else "-",
        )


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

_shutdown = threading.Event()


def _signal_handler(signum: int, frame: Any) -> None:
    """Handle SIGINT/SIGTERM for graceful shutdown."""
    sig_name = signal.Signals(signum).name
    logger.info("Received %s. Requesting graceful shutdown...", sig_name)
    _shutdown.set()


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the alert worker locally.")
    parser.add_argument(
        "--fixtures",
        type=Path,
        default=Path(os.environ.get("SURFWATCH_FIXTURES", "./fixtures")),
        help="Directory with rules.json, forecasts/ and tides/.",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single evaluation and exit.",
    )
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> None:
    """Entry point: wire the worker from fixtures and run it."""
    args = _parse_args(argv)
    os.environ.setdefault("APP_ENV", "local")
    settings = load_settings()

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    def local_metric_emitter(
        name: str, value: float, unit: str, dimensions: dict[str, str]
    ) -> None:
        logger.info("METRIC: %s=%.3f %s dimensions=%s", name, value, unit, dimensions)

    worker = create_worker(
        settings,
        forecasts=FixtureForecasts(args.fixtures),
        tides=FixtureTides(args.fixtures),
        sink=LoggingSink(),
        rule_source=FixtureRules(args.fixtures, settings.default_tide_port_id),
        metric_emitter=local_metric_emitter,
    )
    logger.info(
        "Alert worker ready: fixtures=%s timezone=%s minute=%02d",
        args.fixtures,
        settings.timezone,
        settings.check_minute,
    )

    if args.once:
        worker.handle_tick()
        return

    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)

    worker.start()
    try:
        while not _shutdown.wait(timeout=1.0):
            pass
    finally:
        worker.stop()
        logger.info("Shut down.")


if __name__ == "__main__":
    main()
