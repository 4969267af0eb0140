"""Persistent record of session and schedule lifecycle events."""

from __future__ import annotations

import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Deque, Mapping

from .events import (
    CAMERA_STATUS,
    HEALTHCHECK,
    RECORDER_STATUS,
    SCHEDULE_COMPLETE,
    SCHEDULE_ERROR,
    SCHEDULE_STARTING,
    EventHub,
)
from .urls import mask_url_password

logger = logging.getLogger(__name__)

_CATEGORIES: dict[str, str] = {
    CAMERA_STATUS: "camera",
    HEALTHCHECK: "camera",
    RECORDER_STATUS: "recorder",
    SCHEDULE_STARTING: "schedule",
    SCHEDULE_COMPLETE: "schedule",
    SCHEDULE_ERROR: "schedule",
}


@dataclass(slots=True)
class EventLogEntry:
    """A lifecycle event kept for troubleshooting."""

    timestamp: float
    category: str
    event: str
    message: str
    details: dict[str, object] | None = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "timestamp": self.timestamp,
            "category": self.category,
            "event": self.event,
            "message": self.message,
        }
        if self.details:
            payload["details"] = self.details
        return payload


def describe_event(event: str, payload: Mapping[str, object]) -> str:
    """Return a one-line human readable summary of ``event``."""

    if event in (CAMERA_STATUS, RECORDER_STATUS):
        subject = "Stream" if event == CAMERA_STATUS else "Recording"
        status = payload.get("status")
        error = payload.get("error")
        if error:
            return f"{subject} {status}: {error}"
        return f"{subject} {status}"
    if event == HEALTHCHECK:
        return f"Camera unreachable: {payload.get('reason')}"
    name = payload.get("name") or payload.get("id")
    if event == SCHEDULE_STARTING:
        return f"Schedule '{name}' starting"
    if event == SCHEDULE_COMPLETE:
        return f"Schedule '{name}' completed"
    if event == SCHEDULE_ERROR:
        return f"Schedule '{name}' failed: {payload.get('error')}"
    return event


class EventLog:
    """Bounded in-memory log mirrored to a JSON lines file."""

    def __init__(
        self,
        path: Path | str | None = Path("data/events.jsonl"),
        *,
        max_entries: int = 500,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._path: Path | None = Path(path) if path is not None else None
        self._entries: Deque[EventLogEntry] = deque(maxlen=max_entries)
        self._lock = threading.Lock()
        self._clock = clock
        if self._path is not None:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:  # pragma: no cover - filesystem errors are rare
                logger.warning("Unable to prepare event log directory: %s", exc)
                self._path = None
        self._restore()

    @property
    def path(self) -> Path | None:
        return self._path

    def attach(self, hub: EventHub) -> Callable[[], None]:
        """Record every event emitted on ``hub``; returns a detach hook."""

        return hub.on_any(self.handle_event)

    def handle_event(self, event: str, payload: Mapping[str, object]) -> None:
        details = {
            key: mask_url_password(value) if isinstance(value, str) and key == "url" else value
            for key, value in payload.items()
            if value is not None
        }
        self.record(
            _CATEGORIES.get(event, "general"),
            event,
            describe_event(event, payload),
            details=details,
        )

    def record(
        self,
        category: str,
        event: str,
        message: str,
        *,
        details: dict[str, object] | None = None,
    ) -> EventLogEntry:
        entry = EventLogEntry(
            timestamp=self._clock(),
            category=category.strip() or "general",
            event=event,
            message=message,
            details=details or None,
        )
        with self._lock:
            self._entries.append(entry)
            self._append(entry)
        return entry

    def tail(self, limit: int | None = None, *, category: str | None = None) -> list[EventLogEntry]:
        """Return the newest entries, oldest first, optionally for one category."""

        with self._lock:
            entries = list(self._entries)
        if category:
            entries = [entry for entry in entries if entry.category == category.strip()]
        if limit is not None:
            try:
                count = max(1, int(limit))
            except (TypeError, ValueError):
                count = 1
            entries = entries[-count:]
        return entries

    # ------------------------------------------------------------------
    def _restore(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            lines = self._path.read_text(encoding="utf-8").splitlines()
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to load event log: %s", exc)
            return
        for line in lines:
            line = line.strip()
            if not line:
                continue
            try:
                payload = json.loads(line)
            except ValueError:
                continue
            entry = self._parse(payload)
            if entry is not None:
                self._entries.append(entry)

    @staticmethod
    def _parse(payload: object) -> EventLogEntry | None:
        if not isinstance(payload, dict):
            return None
        event = payload.get("event")
        message = payload.get("message")
        if not isinstance(event, str) or not isinstance(message, str):
            return None
        try:
            timestamp = float(payload.get("timestamp"))  # type: ignore[arg-type]
        except (TypeError, ValueError):
            return None
        category = payload.get("category")
        details = payload.get("details")
        return EventLogEntry(
            timestamp=timestamp,
            category=category if isinstance(category, str) and category else "general",
            event=event,
            message=message,
            details=details if isinstance(details, dict) else None,
        )

    def _append(self, entry: EventLogEntry) -> None:
        if self._path is None:
            return
        try:
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry.to_dict(), separators=(",", ":"), default=str) + "\n")
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to persist event log: %s", exc)


__all__ = ["EventLog", "EventLogEntry", "describe_event"]
