"""User-facing notifications (toasts) raised by the sync layer."""
import logging
from typing import Protocol

logger = logging.getLogger("sync.notify")


class Notifier(Protocol):
    def notify(self, level: str, message: str) -> None:
        """Show a single notification. level: info, success, warning, error."""
        ...


class LoggingNotifier:
    """Default notifier: writes notifications to the log."""

    _LEVELS = {
        "info": logging.INFO,
        "success": logging.INFO,
        "warning": logging.WARNING,
        "error": logging.ERROR,
    }

    def notify(self, level: str, message: str) -> None:
        logger.log(self._LEVELS.get(level, logging.INFO), f"[{level}] {message}")
