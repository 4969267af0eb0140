from __future__ import annotations

import asyncio
from typing import Any, Callable

import pytest

from ipcam.errors import TranscodeFailedError
from ipcam.events import EventHub
from ipcam.process import FFmpegCommand, ProcessExit, StartedInfo


class FakeHandle:
    """In-memory stand-in for a transcoder process."""

    name = "ffmpeg"

    def __init__(
        self,
        argv: list[str],
        *,
        kind: str,
        fail: str | None = None,
        graceful: bool = False,
        gate: asyncio.Event | None = None,
    ) -> None:
        self.argv = list(argv)
        self.kind = kind
        self.fail = fail
        self.graceful = graceful
        self.gate = gate
        self.builder: FFmpegCommand | None = None
        self.stop_calls = 0
        self._callbacks: list[Callable[..., Any]] = []
        self._spawned = False
        self._started = False
        self._exit: ProcessExit | None = None

    @property
    def command(self) -> tuple[str, ...]:
        return tuple(self.argv)

    @property
    def running(self) -> bool:
        return self._spawned and self._exit is None

    @property
    def started(self) -> bool:
        return self._started

    @property
    def exit(self) -> ProcessExit | None:
        return self._exit

    def on_exit(self, callback: Callable[..., Any]) -> None:
        self._callbacks.append(callback)

    async def start(self) -> StartedInfo:
        self._spawned = True
        await asyncio.sleep(0)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail is not None:
            self._finish(returncode=1, error=self.fail)
            raise TranscodeFailedError(self.fail, diagnostic=self.fail)
        self._started = True
        return StartedInfo(pid=4242, command=tuple(self.argv))

    async def stop(self) -> bool:
        if not self.running:
            return False
        self.stop_calls += 1
        self._finish(returncode=255, error=None, requested=True)
        return True

    def crash(self, error: str = "ffmpeg exited with code 1") -> None:
        self._finish(returncode=1, error=error)

    def finish(self) -> None:
        self._finish(returncode=0, error=None)

    def _finish(self, *, returncode: int | None, error: str | None, requested: bool = False) -> None:
        if self._exit is not None:
            return
        self._exit = ProcessExit(
            returncode=returncode, error=error, requested=requested, started=self._started
        )
        for callback in list(self._callbacks):
            callback(self, self._exit)


class FakeProcessFactory:
    def __init__(self) -> None:
        self.handles: list[FakeHandle] = []
        self.fail: str | None = None
        self.gate: asyncio.Event | None = None

    @property
    def last(self) -> FakeHandle:
        return self.handles[-1]

    def command(self, command: FFmpegCommand, *, graceful: bool = False) -> FakeHandle:
        handle = FakeHandle(
            command.arguments(), kind="command", fail=self.fail, graceful=graceful, gate=self.gate
        )
        handle.builder = command
        self.handles.append(handle)
        return handle

    def spawn(self, argv, *, graceful: bool = False) -> FakeHandle:
        handle = FakeHandle(list(argv), kind="spawn", fail=self.fail, graceful=graceful, gate=self.gate)
        self.handles.append(handle)
        return handle


class EventRecorder:
    """Collect every event emitted on a hub."""

    def __init__(self, hub: EventHub) -> None:
        self.items: list[tuple[str, dict[str, Any]]] = []
        hub.on_any(lambda event, payload: self.items.append((event, payload)))

    def of(self, event: str) -> list[dict[str, Any]]:
        return [payload for name, payload in self.items if name == event]

    def statuses(self, event: str) -> list[str]:
        return [payload["status"] for payload in self.of(event)]


@pytest.fixture
def processes() -> FakeProcessFactory:
    return FakeProcessFactory()


@pytest.fixture
def hub() -> EventHub:
    return EventHub()


@pytest.fixture
def recorded(hub: EventHub) -> EventRecorder:
    return EventRecorder(hub)
