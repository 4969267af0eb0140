"""In-process fan-out of session and schedule lifecycle events."""
from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable, Mapping

logger = logging.getLogger(__name__)

CAMERA_STATUS = "camera_status"
RECORDER_STATUS = "recorder_status"
HEALTHCHECK = "healthcheck"
SCHEDULE_STARTING = "schedule_starting"
SCHEDULE_COMPLETE = "schedule_complete"
SCHEDULE_ERROR = "schedule_error"

Listener = Callable[[dict[str, Any]], Any]
AnyListener = Callable[[str, dict[str, Any]], Any]


class EventHub:
    """Deliver named events to registered callbacks and queue subscribers.

    Callbacks run synchronously in emission order. Coroutine callbacks are
    scheduled on the running loop. Queue subscribers receive
    ``{"type": event, **payload}`` messages; a full queue drops its oldest
    message rather than blocking the emitter.
    """

    def __init__(self, *, max_queue_size: int = 64) -> None:
        if max_queue_size <= 0:
            raise ValueError("max_queue_size must be positive")
        self._max_queue_size = max_queue_size
        self._listeners: dict[str, list[Listener]] = {}
        self._any_listeners: list[AnyListener] = []
        self._subscribers: set[asyncio.Queue[dict[str, Any]]] = set()
        self._pending: set[asyncio.Task[Any]] = set()

    # ------------------------------------------------------------------
    # Callback observers
    # ------------------------------------------------------------------
    def on(self, event: str, callback: Listener) -> Callable[[], None]:
        """Register ``callback`` for ``event`` and return an unsubscribe hook."""

        if not event or not isinstance(event, str):
            raise ValueError("event must be a non-empty string")
        self._listeners.setdefault(event, []).append(callback)
        return lambda: self.off(event, callback)

    def off(self, event: str, callback: Listener) -> None:
        listeners = self._listeners.get(event)
        if not listeners:
            return
        try:
            listeners.remove(callback)
        except ValueError:
            return
        if not listeners:
            del self._listeners[event]

    def on_any(self, callback: AnyListener) -> Callable[[], None]:
        """Register ``callback`` for every event; it receives ``(event, payload)``."""

        self._any_listeners.append(callback)

        def _remove() -> None:
            try:
                self._any_listeners.remove(callback)
            except ValueError:
                pass

        return _remove

    def listener_count(self, event: str | None = None) -> int:
        if event is None:
            return sum(len(items) for items in self._listeners.values()) + len(
                self._any_listeners
            )
        return len(self._listeners.get(event, ()))

    # ------------------------------------------------------------------
    # Queue subscribers
    # ------------------------------------------------------------------
    def subscribe(self) -> asyncio.Queue[dict[str, Any]]:
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=self._max_queue_size)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[dict[str, Any]]) -> None:
        self._subscribers.discard(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    # ------------------------------------------------------------------
    # Emission
    # ------------------------------------------------------------------
    def emit(self, event: str, payload: Mapping[str, Any] | None = None) -> None:
        data: dict[str, Any] = dict(payload or {})
        for callback in list(self._listeners.get(event, ())):
            self._invoke(callback, event, dict(data))
        for any_callback in list(self._any_listeners):
            self._invoke(any_callback, event, event, dict(data))
        if self._subscribers:
            message = {"type": event, **data}
            for queue in list(self._subscribers):
                self._offer(queue, message)

    async def aclose(self) -> None:
        """Wait for coroutine listeners scheduled by :meth:`emit`."""

        pending = [task for task in self._pending if not task.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._pending.clear()
        self._subscribers.clear()

    def _invoke(self, callback: Callable[..., Any], event: str, *args: Any) -> None:
        try:
            result = callback(*args)
        except Exception:
            logger.exception("Listener for %s event raised", event)
            return
        if not inspect.isawaitable(result):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("Dropping coroutine listener for %s event: no running loop", event)
            if inspect.iscoroutine(result):
                result.close()
            return
        task = loop.create_task(result)
        self._pending.add(task)
        task.add_done_callback(self._on_listener_done)

    def _on_listener_done(self, task: asyncio.Task[Any]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Coroutine event listener failed", exc_info=exc)

    @staticmethod
    def _offer(queue: asyncio.Queue[dict[str, Any]], message: dict[str, Any]) -> None:
        while True:
            try:
                queue.put_nowait(message)
                return
            except asyncio.QueueFull:
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:  # pragma: no cover - race guard
                    return


__all__ = [
    "EventHub",
    "HEALTHCHECK",
    "SCHEDULE_COMPLETE",
    "SCHEDULE_ERROR",
    "SCHEDULE_STARTING",
    "CAMERA_STATUS",
    "RECORDER_STATUS",
]
