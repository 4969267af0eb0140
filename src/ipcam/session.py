"""Shared status handling for the single-slot camera and recording sessions."""
from __future__ import annotations

import logging
from enum import Enum
from typing import Any

from .events import EventHub

logger = logging.getLogger(__name__)


class SessionStatus(str, Enum):
    """Lifecycle states shared by the stream and recording sessions."""

    IDLE = "idle"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    RECORDING = "recording"
    ERROR = "error"


class SessionBase:
    """Hold the status slot of a session and publish its transitions."""

    kind = "session"
    status_event = "session_status"

    def __init__(self, *, events: EventHub | None = None) -> None:
        self._events = events if events is not None else EventHub()
        self._status = SessionStatus.IDLE
        self._last_error: str | None = None

    @property
    def events(self) -> EventHub:
        return self._events

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def last_error(self) -> str | None:
        return self._last_error

    def _status_payload(self) -> dict[str, Any]:
        return {}

    def _set_status(self, status: SessionStatus, error: str | None = None) -> None:
        self._status = status
        if status is SessionStatus.ERROR:
            self._last_error = error
        elif status is not SessionStatus.IDLE:
            self._last_error = None
        payload = {"status": status.value, "error": error, **self._status_payload()}
        logger.debug("%s status -> %s", self.kind, status.value)
        self._events.emit(self.status_event, payload)

    def _fail(self, error: str) -> None:
        """Publish ``error`` then fall back to ``idle`` without a second event."""

        self._set_status(SessionStatus.ERROR, error)
        self._status = SessionStatus.IDLE


__all__ = ["SessionBase", "SessionStatus"]
