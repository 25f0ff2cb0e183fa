"""
Window-containment deduplication.

Decides whether a newly detected window warrants another notification given
the last window already sent for the same subscriber, spot and rule profile.

Decision Logic:
    - No previous window: send.
    - Same start and end as the previous window: do not send.
    - New window fully inside the previous one
      (``next.start >= prev.start AND next.end <= prev.end``): do not send.
    - Anything else (extends forward, extends backward, shifted or
      disjoint): send.

The same physical surf window, re-detected on every run while the forecast
refreshes, therefore produces at most one notification unless its
boundaries genuinely grow or move.
"""

from __future__ import annotations

import logging
from typing import Protocol

from surfwatch.alerts.models import AlertWindow

logger = logging.getLogger(__name__)


def should_send(previous: AlertWindow | None, next_window: AlertWindow) -> bool:
    """Return True when ``next_window`` is not already covered by ``previous``.

    Parameters
    ----------
    previous : AlertWindow or None
        Last window notified for the same dedup key.
    next_window : AlertWindow
        Newly detected window.

    Returns
    -------
    bool
        True if a notification should be sent.
    """
    if previous is None:
        return True
    if next_window == previous:
        return False
    if previous.contains(next_window):
        return False
    return True


class WindowStore(Protocol):
    """Persistence of the last notified window per dedup key."""

    def get_last_window(self, key: str) -> AlertWindow | None: ...

    def set_last_window(self, key: str, window: AlertWindow) -> None: ...


class WindowDeduplicator:
    """Applies ``should_send`` against windows held in a ``WindowStore``.

    The store is only written through ``record`` after a successful send,
    so a failed send leaves the previous window in place and the next run
    retries.
    """

    def __init__(self, store: WindowStore) -> None:
        self._store = store

    def should_send(self, key: str, window: AlertWindow) -> bool:
        previous = self._store.get_last_window(key)
        decision = should_send(previous, window)
        if not decision:
            logger.debug(
                "Window already notified: key=%s, previous=[%s, %s], next=[%s, %s]",
                key,
                previous.start.isoformat(),
                previous.end.isoformat(),
                window.start.isoformat(),
                window.end.isoformat(),
            )
        return decision

    def record(self, key: str, window: AlertWindow) -> None:
        self._store.set_last_window(key, window)
