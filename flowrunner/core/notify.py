"""User-facing notifications.

The engine and the ``notificationNode`` report through a Notifier. Delivery
is best effort: a failing notifier is logged and never affects a run.
"""

from __future__ import annotations

import logging
from typing import Protocol

from flowrunner.core.config import NotificationConfig

logger = logging.getLogger(__name__)

LEVELS = ("info", "success", "warning", "error")
CATEGORIES = ("run", "node", "validation", "user")

_LOG_LEVELS = {
    "info": logging.INFO,
    "success": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class Notifier(Protocol):
    def notify(self, level: str, message: str, category: str = "user") -> None: ...


class LoggingNotifier:
    """Default notifier: forwards notifications to the ``flowrunner.notify`` logger."""

    def __init__(self, log: logging.Logger | None = None):
        self._log = log or logger

    def notify(self, level: str, message: str, category: str = "user") -> None:
        self._log.log(_LOG_LEVELS.get(level, logging.INFO), f"[{category}] {message}")


class CollectingNotifier:
    """Keeps notifications in memory (CLI summaries and tests)."""

    def __init__(self):
        self.messages: list[tuple[str, str, str]] = []

    def notify(self, level: str, message: str, category: str = "user") -> None:
        self.messages.append((level, message, category))


class FilteringNotifier:
    """Drops notifications whose level or category is suppressed, forwards the rest."""

    def __init__(self, inner: Notifier, config: NotificationConfig):
        self.inner = inner
        self._levels = set(config.suppress_levels)
        self._categories = set(config.suppress_categories)

    def notify(self, level: str, message: str, category: str = "user") -> None:
        if level in self._levels or category in self._categories:
            return
        self.inner.notify(level, message, category)


def safe_notify(notifier: Notifier, level: str, message: str, category: str) -> None:
    """Deliver a notification, logging instead of raising on failure."""
    try:
        notifier.notify(level, message, category)
    except Exception as e:
        logger.warning(f"Notification delivery failed ({category}/{level}): {e}")
