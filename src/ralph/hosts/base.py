from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Literal

logger = logging.getLogger(__name__)

Severity = Literal["info", "success", "warning", "error"]

_LOG_LEVELS = {
    "info": logging.INFO,
    "success": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
}


class SessionHost(ABC):
    """Creates and drives child agent sessions. Everything here is best-effort."""

    @abstractmethod
    async def create(self, title: str) -> str:
        """Create a session and return its id."""

    @abstractmethod
    async def prompt(self, session_id: str, text: str) -> None:
        """Send a prompt without waiting for the session to finish its turn."""

    @abstractmethod
    async def abort(self, session_id: str) -> None:
        """Interrupt whatever the session is doing."""

    @abstractmethod
    async def delete(self, session_id: str) -> None:
        """Dispose of the session."""


class Notifier(ABC):
    @abstractmethod
    async def show(self, severity: Severity, message: str) -> None:
        """Show a short status message to whoever supervises the loop."""


class LoggingNotifier(Notifier):
    async def show(self, severity: Severity, message: str) -> None:
        logger.log(_LOG_LEVELS.get(severity, logging.INFO), "[notify:%s] %s", severity, message)


async def notify_safely(notifier: Notifier, severity: Severity, message: str) -> None:
    try:
        await notifier.show(severity, message)
    except Exception:
        logger.debug("Notification delivery failed: %s", message, exc_info=True)
