"""Recurring weekly recording schedules."""
from __future__ import annotations

import asyncio
import json
import logging
import random
import re
import time as _time
from dataclasses import dataclass, field, replace
from datetime import datetime, time, timedelta, timezone
from pathlib import Path
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterable, Mapping

from .errors import InvalidArgumentError, NotFoundError
from .events import SCHEDULE_COMPLETE, SCHEDULE_ERROR, SCHEDULE_STARTING, EventHub
from .urls import mask_url_password

if TYPE_CHECKING:  # pragma: no cover - typing only
    from .recorder import RecordingSession

logger = logging.getLogger(__name__)

DAY_TAGS: tuple[str, ...] = ("mon", "tue", "wed", "thu", "fri", "sat", "sun")
DEFAULT_SCHEDULE_NAME = "Schedule"
DEFAULT_DURATION_MINUTES = 60
LOOKAHEAD_DAYS = 7

_START_TIME_PATTERN = re.compile(r"^([01]?\d|2[0-3]):([0-5]\d)$")
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"

# Accepted spellings for every editable field, mapped to attribute names.
_FIELD_ALIASES: dict[str, str] = {
    "name": "name",
    "cameraUrl": "camera_url",
    "camera_url": "camera_url",
    "startTime": "start_time",
    "start_time": "start_time",
    "durationMinutes": "duration_minutes",
    "duration_minutes": "duration_minutes",
    "days": "days",
    "enabled": "enabled",
}


def _to_base36(value: int) -> str:
    if value <= 0:
        return "0"
    digits: list[str] = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def generate_schedule_id() -> str:
    """Return a short identifier built from the clock and a random suffix."""

    suffix = "".join(random.choice(_BASE36) for _ in range(4))
    return _to_base36(int(_time.time() * 1000)) + suffix


def _iso_now() -> str:
    stamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
    return stamp.replace("+00:00", "Z")


def parse_start_time(value: object) -> tuple[int, int]:
    """Return ``(hour, minute)`` for a 24-hour ``HH:MM`` string."""

    if not isinstance(value, str):
        raise InvalidArgumentError("Start time is required.")
    match = _START_TIME_PATTERN.match(value.strip())
    if match is None:
        raise InvalidArgumentError("Start time must use 24-hour HH:MM format.")
    return int(match.group(1)), int(match.group(2))


def _normalise_days(value: object) -> list[str]:
    if value is None:
        return list(DAY_TAGS)
    if isinstance(value, str) or not isinstance(value, Iterable):
        raise InvalidArgumentError("Days must be a list of day names.")
    days: list[str] = []
    for item in value:
        tag = str(item).strip().lower()
        if tag not in DAY_TAGS:
            raise InvalidArgumentError(f"Unknown day '{item}'.")
        if tag not in days:
            days.append(tag)
    return days


def _normalise_duration(value: object) -> int:
    if value is None:
        return DEFAULT_DURATION_MINUTES
    if isinstance(value, bool):
        raise InvalidArgumentError("Duration must be a whole number of minutes.")
    try:
        number = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise InvalidArgumentError("Duration must be a whole number of minutes.") from exc
    if not number.is_integer() or number <= 0:
        raise InvalidArgumentError("Duration must be a positive whole number of minutes.")
    return int(number)


@dataclass(slots=True)
class Schedule:
    """A weekly recording slot."""

    id: str
    camera_url: str
    start_time: str
    name: str = DEFAULT_SCHEDULE_NAME
    duration_minutes: int = DEFAULT_DURATION_MINUTES
    days: list[str] = field(default_factory=lambda: list(DAY_TAGS))
    enabled: bool = True
    created_at: str = field(default_factory=_iso_now)

    def __post_init__(self) -> None:
        self.camera_url = self.camera_url.strip() if isinstance(self.camera_url, str) else ""
        if not self.camera_url:
            raise InvalidArgumentError("Camera URL is required.")
        hour, minute = parse_start_time(self.start_time)
        self.start_time = f"{hour:02d}:{minute:02d}"
        self.name = str(self.name).strip() if self.name else DEFAULT_SCHEDULE_NAME
        self.duration_minutes = _normalise_duration(self.duration_minutes)
        self.days = _normalise_days(self.days)
        self.enabled = bool(self.enabled)

    @property
    def hour_minute(self) -> tuple[int, int]:
        return parse_start_time(self.start_time)

    def allows(self, moment: datetime) -> bool:
        """Return whether ``moment`` falls on an allowed weekday.

        An empty day list allows every day.
        """

        if not self.days:
            return True
        return DAY_TAGS[moment.weekday()] in self.days

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "name": self.name,
            "cameraUrl": self.camera_url,
            "startTime": self.start_time,
            "durationMinutes": self.duration_minutes,
            "days": list(self.days),
            "enabled": self.enabled,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Schedule":
        if not isinstance(data, Mapping):
            raise InvalidArgumentError("Schedule entry must be an object.")
        identifier = data.get("id")
        if not isinstance(identifier, str) or not identifier:
            raise InvalidArgumentError("Schedule entry has no id.")
        kwargs: dict[str, Any] = {"id": identifier}
        for key, value in data.items():
            attribute = _FIELD_ALIASES.get(key)
            if attribute is not None:
                kwargs[attribute] = value
        created = data.get("createdAt") or data.get("created_at")
        if isinstance(created, str) and created:
            kwargs["created_at"] = created
        kwargs.setdefault("camera_url", "")
        kwargs.setdefault("start_time", None)
        return cls(**kwargs)


class ScheduleStore:
    """JSON file holding the list of schedules."""

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> list[Schedule]:
        """Return the stored schedules; a missing or unreadable file yields ``[]``."""

        if not self._path.exists():
            return []
        try:
            raw = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable schedules file %s: %s", self._path, exc)
            return []
        if not isinstance(raw, list):
            logger.warning("Ignoring schedules file %s: expected a list", self._path)
            return []
        schedules: list[Schedule] = []
        for entry in raw:
            try:
                schedules.append(Schedule.from_dict(entry))
            except InvalidArgumentError as exc:
                logger.warning("Skipping invalid schedule entry: %s", exc)
        return schedules

    def save(self, schedules: Iterable[Schedule]) -> None:
        payload = [schedule.to_dict() for schedule in schedules]
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(payload, indent=2), encoding="utf-8")


Clock = Callable[[], datetime]
Sleep = Callable[[float], Awaitable[Any]]


class ScheduleEngine:
    """Arm timers for enabled schedules and drive the recorder when they fire.

    Each schedule id owns at most one timer task. When a timer fires, the
    recording runs in a separate execution task so that editing or deleting
    the schedule never interrupts a recording that has already started.
    """

    def __init__(
        self,
        recorder: "RecordingSession",
        *,
        store: ScheduleStore | None = None,
        schedules_file: Path | str | None = None,
        events: EventHub | None = None,
        clock: Clock = datetime.now,
        sleep: Sleep = asyncio.sleep,
        id_factory: Callable[[], str] = generate_schedule_id,
    ) -> None:
        if store is None:
            if schedules_file is None:
                raise ValueError("Either store or schedules_file is required")
            store = ScheduleStore(schedules_file)
        self._recorder = recorder
        self._store = store
        self._events = events if events is not None else EventHub()
        self._clock = clock
        self._sleep = sleep
        self._id_factory = id_factory
        self._schedules: list[Schedule] = store.load()
        self._timers: dict[str, asyncio.Task[None]] = {}
        self._next_runs: dict[str, datetime] = {}
        self._executions: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    @property
    def events(self) -> EventHub:
        return self._events

    @property
    def timers(self) -> dict[str, asyncio.Task[None]]:
        return dict(self._timers)

    @property
    def executions(self) -> set[asyncio.Task[None]]:
        return set(self._executions)

    def next_run(self, schedule_id: str) -> datetime | None:
        return self._next_runs.get(schedule_id)

    def start(self) -> None:
        """Arm every enabled schedule; requires a running event loop."""

        for schedule in self._schedules:
            if schedule.enabled:
                self._arm(schedule)
        logger.info("Schedule engine armed %d timer(s)", len(self._timers))

    def destroy(self) -> None:
        """Cancel every outstanding timer and in-flight execution."""

        for schedule_id in list(self._timers):
            self._disarm(schedule_id)
        for task in list(self._executions):
            if not task.done():
                task.cancel()

    async def aclose(self) -> None:
        pending = [task for task in self._timers.values()] + list(self._executions)
        self.destroy()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    def list_schedules(self) -> list[Schedule]:
        return list(self._schedules)

    def get_schedule(self, schedule_id: str) -> Schedule | None:
        for schedule in self._schedules:
            if schedule.id == schedule_id:
                return schedule
        return None

    def add_schedule(self, fields: Mapping[str, Any]) -> Schedule:
        values = self._normalise_fields(fields)
        values.setdefault("camera_url", "")
        values.setdefault("start_time", None)
        schedule = Schedule(id=self._new_id(), **values)
        self._schedules.append(schedule)
        self._store.save(self._schedules)
        logger.info(
            "Added schedule %s (%s at %s)",
            schedule.id,
            mask_url_password(schedule.camera_url),
            schedule.start_time,
        )
        if schedule.enabled:
            self._arm(schedule)
        return schedule

    def update_schedule(self, schedule_id: str, updates: Mapping[str, Any]) -> Schedule:
        index = self._index_of(schedule_id)
        current = self._schedules[index]
        values = self._normalise_fields(updates)
        updated = replace(current, **values)
        self._schedules[index] = updated
        self._store.save(self._schedules)
        self._disarm(schedule_id)
        if updated.enabled:
            self._arm(updated)
        return updated

    def delete_schedule(self, schedule_id: str) -> dict[str, str]:
        index = self._index_of(schedule_id)
        self._disarm(schedule_id)
        del self._schedules[index]
        self._store.save(self._schedules)
        return {"message": "Schedule deleted."}

    # ------------------------------------------------------------------
    def _next_occurrence(self, schedule: Schedule, from_instant: datetime) -> datetime | None:
        """Return the first start strictly after ``from_instant`` within a week.

        Candidates are taken on ``from_instant``'s day and the six following
        days. ``None`` means nothing qualifies inside that window.
        """

        hour, minute = schedule.hour_minute
        start_of_day = from_instant.date()
        for offset in range(LOOKAHEAD_DAYS):
            day = start_of_day + timedelta(days=offset)
            candidate = datetime.combine(day, time(hour, minute), tzinfo=from_instant.tzinfo)
            if candidate <= from_instant:
                continue
            if not schedule.allows(candidate):
                continue
            return candidate
        return None

    def _arm(self, schedule: Schedule, from_instant: datetime | None = None) -> None:
        self._disarm(schedule.id)
        reference = from_instant or self._clock()
        when = self._next_occurrence(schedule, reference)
        if when is None:
            logger.debug("Schedule %s has no start in the coming week", schedule.id)
            return
        loop = asyncio.get_running_loop()
        task = loop.create_task(self._wait_and_fire(schedule.id, when))
        self._timers[schedule.id] = task
        self._next_runs[schedule.id] = when
        task.add_done_callback(self._on_background_done)

    def _disarm(self, schedule_id: str) -> None:
        self._next_runs.pop(schedule_id, None)
        task = self._timers.pop(schedule_id, None)
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _wait_and_fire(self, schedule_id: str, when: datetime) -> None:
        delay = (when - self._clock()).total_seconds()
        await self._sleep(max(0.0, delay))
        if self._timers.get(schedule_id) is asyncio.current_task():
            del self._timers[schedule_id]
            self._next_runs.pop(schedule_id, None)
        schedule = self.get_schedule(schedule_id)
        if schedule is None or not schedule.enabled:
            return
        loop = asyncio.get_running_loop()
        execution = loop.create_task(self._execute_schedule(schedule, fired_at=when))
        self._executions.add(execution)
        execution.add_done_callback(self._executions.discard)
        execution.add_done_callback(self._on_background_done)

    async def _execute_schedule(self, schedule: Schedule, fired_at: datetime | None = None) -> None:
        identity = {"id": schedule.id, "name": schedule.name}
        self._events.emit(SCHEDULE_STARTING, dict(identity))
        logger.info("Schedule %s starting recording", schedule.id)
        try:
            result = await self._recorder.start_recording(schedule.camera_url)
        except Exception as exc:
            logger.warning("Schedule %s failed to start recording: %s", schedule.id, exc)
            self._events.emit(SCHEDULE_ERROR, {**identity, "error": str(exc)})
            self._rearm(schedule.id, fired_at)
            return

        started_file = result.get("file") if isinstance(result, Mapping) else None
        await self._sleep(schedule.duration_minutes * 60)
        try:
            if started_file is None or self._recorder.current_file == started_file:
                await self._recorder.stop_recording()
        except Exception as exc:
            logger.exception("Schedule %s failed to stop its recording", schedule.id)
            self._events.emit(SCHEDULE_ERROR, {**identity, "error": str(exc)})
        else:
            self._events.emit(SCHEDULE_COMPLETE, {**identity, "file": started_file})
            logger.info("Schedule %s completed", schedule.id)
        self._rearm(schedule.id, fired_at)

    def _rearm(self, schedule_id: str, fired_at: datetime | None) -> None:
        schedule = self.get_schedule(schedule_id)
        if schedule is None or not schedule.enabled:
            return
        if schedule_id in self._timers:
            return
        now = self._clock()
        reference = max(now, fired_at) if fired_at is not None else now
        self._arm(schedule, reference)

    def _on_background_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Scheduled task failed", exc_info=exc)

    # ------------------------------------------------------------------
    def _index_of(self, schedule_id: str) -> int:
        for index, schedule in enumerate(self._schedules):
            if schedule.id == schedule_id:
                return index
        raise NotFoundError("Schedule not found.")

    def _new_id(self) -> str:
        existing = {schedule.id for schedule in self._schedules}
        while True:
            candidate = self._id_factory()
            if candidate not in existing:
                return candidate

    @staticmethod
    def _normalise_fields(fields: Mapping[str, Any]) -> dict[str, Any]:
        if not isinstance(fields, Mapping):
            raise InvalidArgumentError("Schedule must be an object.")
        values: dict[str, Any] = {}
        for key, value in fields.items():
            attribute = _FIELD_ALIASES.get(key)
            if attribute is None:
                continue
            if attribute == "enabled":
                values[attribute] = value is not False
            else:
                values[attribute] = value
        return values


__all__ = [
    "DAY_TAGS",
    "Schedule",
    "ScheduleEngine",
    "ScheduleStore",
    "generate_schedule_id",
    "parse_start_time",
]
