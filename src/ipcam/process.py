"""Transcoder process handles with a uniform start/stop contract."""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
import signal
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Iterable, Sequence

from .errors import TranscodeFailedError

logger = logging.getLogger(__name__)

DIAGNOSTIC_TAIL_CHARS = 200
_STDERR_BUFFER_CHARS = 8192
_READ_CHUNK_BYTES = 4096

READY_MARKERS: tuple[str, ...] = ("Output #0", "Press [q]")
VOICE_DENOISE_FILTER = "afftdn=nf=-25,highpass=f=200,lowpass=f=3000"

SpawnFunc = Callable[..., Awaitable[asyncio.subprocess.Process]]


def resolve_ffmpeg_path(configured: str | None = None) -> str:
    """Return the ffmpeg binary location.

    An explicitly configured path wins when it exists or can be found on
    ``PATH``; otherwise the first ``ffmpeg`` on ``PATH`` is used, falling back
    to the bare command name.
    """

    if configured:
        candidate = os.path.expanduser(configured)
        if os.path.isfile(candidate):
            return candidate
        found = shutil.which(candidate)
        if found:
            return found
        logger.warning("Configured ffmpeg path %s not found; searching PATH", configured)
    return shutil.which("ffmpeg") or "ffmpeg"


@dataclass(frozen=True, slots=True)
class StartedInfo:
    """Details reported once a process signals that output has begun."""

    pid: int | None
    command: tuple[str, ...]


@dataclass(frozen=True, slots=True)
class ProcessExit:
    """Terminal state of a process, delivered exactly once per lifetime."""

    returncode: int | None
    error: str | None
    requested: bool
    started: bool

    @property
    def crashed(self) -> bool:
        return self.error is not None


ExitCallback = Callable[["ProcessHandle", ProcessExit], None]


class ProcessHandle(ABC):
    """Run a transcoder subprocess and report readiness and termination.

    :meth:`start` resolves once the process signals that it is producing
    output and raises :class:`TranscodeFailedError` carrying the tail of the
    diagnostic stream when it exits or fails to spawn first. :meth:`stop`
    terminates the process and is a no-op when nothing is running. With a
    ``stop_timeout`` of ``None`` it waits for the process to exit on its own
    after SIGTERM and never kills it. Exit
    callbacks fire exactly once, whichever way the process ends.
    """

    name = "ffmpeg"

    def __init__(
        self,
        *,
        stop_timeout: float | None = 5.0,
        spawn: SpawnFunc | None = None,
    ) -> None:
        self._stop_timeout = None if stop_timeout is None else float(stop_timeout)
        self._spawn = spawn or asyncio.create_subprocess_exec
        self._process: asyncio.subprocess.Process | None = None
        self._monitor_task: asyncio.Task[None] | None = None
        self._ready: asyncio.Future[StartedInfo] | None = None
        self._exit_callbacks: list[ExitCallback] = []
        self._stderr = ""
        self._started = False
        self._stop_requested = False
        self._exit: ProcessExit | None = None
        self._command: tuple[str, ...] = ()

    # ------------------------------------------------------------------
    @abstractmethod
    def arguments(self) -> list[str]:
        """Return the full argv, binary first."""

    def _on_spawned(self) -> None:
        """Hook invoked right after the process has been created."""

    def _on_diagnostic(self, buffer: str) -> None:
        """Hook invoked whenever new diagnostic output arrives."""

    def _on_finished(self, result: ProcessExit) -> None:
        """Hook invoked once the process has terminated."""

    # ------------------------------------------------------------------
    @property
    def command(self) -> tuple[str, ...]:
        return self._command or tuple(self.arguments())

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process is not None else None

    @property
    def running(self) -> bool:
        return self._process is not None and self._exit is None

    @property
    def started(self) -> bool:
        return self._started

    @property
    def exit(self) -> ProcessExit | None:
        return self._exit

    @property
    def diagnostic(self) -> str:
        """Return the last characters written to the diagnostic stream."""

        return self._stderr[-DIAGNOSTIC_TAIL_CHARS:].strip()

    def on_exit(self, callback: ExitCallback) -> None:
        self._exit_callbacks.append(callback)

    async def start(self) -> StartedInfo:
        if self._process is not None or self._exit is not None:
            raise RuntimeError("Process handle has already been started")
        loop = asyncio.get_running_loop()
        self._ready = loop.create_future()
        self._command = tuple(self.arguments())
        try:
            self._process = await self._spawn(
                *self._command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            message = f"Failed to launch {self.name}: {exc}"
            self._finish(returncode=None, error=message)
            raise TranscodeFailedError(message, diagnostic=str(exc)) from exc
        logger.debug("Spawned %s (pid %s)", self.name, self._process.pid)
        self._monitor_task = loop.create_task(self._monitor())
        self._on_spawned()
        return await asyncio.shield(self._ready)

    async def stop(self) -> bool:
        """Terminate the process; return ``False`` when nothing was running."""

        process = self._process
        if process is None or self._exit is not None:
            return False
        self._stop_requested = True
        if process.returncode is None:
            try:
                process.send_signal(signal.SIGTERM)
            except ProcessLookupError:
                pass
            try:
                await asyncio.wait_for(process.wait(), timeout=self._stop_timeout)
            except asyncio.TimeoutError:
                logger.warning("%s did not exit after SIGTERM; killing", self.name)
                try:
                    process.kill()
                except ProcessLookupError:
                    pass
                await process.wait()
        task = self._monitor_task
        if task is not None and task is not asyncio.current_task():
            try:
                await task
            except asyncio.CancelledError:  # pragma: no cover - shutdown race
                pass
        return True

    # ------------------------------------------------------------------
    def _mark_ready(self) -> None:
        if self._started or self._exit is not None:
            return
        self._started = True
        info = StartedInfo(pid=self.pid, command=self._command)
        ready = self._ready
        if ready is not None and not ready.done():
            ready.set_result(info)

    async def _monitor(self) -> None:
        process = self._process
        assert process is not None
        stream = process.stderr
        try:
            if stream is not None:
                while True:
                    chunk = await stream.read(_READ_CHUNK_BYTES)
                    if not chunk:
                        break
                    text = chunk.decode("utf-8", errors="replace")
                    self._stderr = (self._stderr + text)[-_STDERR_BUFFER_CHARS:]
                    self._on_diagnostic(self._stderr)
            returncode = await process.wait()
        except asyncio.CancelledError:
            self._finish(returncode=process.returncode, error=None)
            raise
        except Exception as exc:  # pragma: no cover - unexpected stream failure
            logger.exception("Error while monitoring %s", self.name)
            self._finish(returncode=process.returncode, error=str(exc))
            return
        error: str | None = None
        if not self._stop_requested and returncode != 0:
            error = f"{self.name} exited with code {returncode}"
            tail = self.diagnostic
            if tail:
                error = f"{error}: {tail}"
        self._finish(returncode=returncode, error=error)

    def _finish(self, *, returncode: int | None, error: str | None) -> None:
        if self._exit is not None:
            return
        result = ProcessExit(
            returncode=returncode,
            error=error,
            requested=self._stop_requested,
            started=self._started,
        )
        self._exit = result
        ready = self._ready
        if ready is not None and not ready.done():
            if error is not None:
                message = error
            elif returncode is not None:
                message = f"{self.name} exited with code {returncode} before producing output"
            else:
                message = f"{self.name} exited before producing output"
            ready.set_exception(TranscodeFailedError(message, diagnostic=self.diagnostic))
            # Retrieved by start(); keep unobserved failures quiet.
            ready.exception()
        self._on_finished(result)
        for callback in list(self._exit_callbacks):
            try:
                callback(self, result)
            except Exception:
                logger.exception("Exit callback for %s failed", self.name)


class FFmpegCommand:
    """Fluent builder for single-output ffmpeg invocations.

    Handlers registered with :meth:`on` receive ``"start"`` (argv) once the
    process is spawned, then exactly one of ``"error"`` (message) or
    ``"end"`` (no arguments).
    """

    _EVENTS = frozenset({"start", "error", "end"})

    def __init__(self, source: str | None = None, *, binary: str = "ffmpeg") -> None:
        self._binary = binary
        self._inputs: list[tuple[str, list[str]]] = []
        self._global_options: list[str] = ["-y"]
        self._output_options: list[str] = []
        self._output: str | None = None
        self._handlers: dict[str, list[Callable[..., Any]]] = {}
        if source is not None:
            self.input(source)

    @property
    def binary(self) -> str:
        return self._binary

    def input(self, source: str) -> "FFmpegCommand":
        self._inputs.append((str(source), []))
        return self

    def input_options(self, *options: str | Iterable[str]) -> "FFmpegCommand":
        if not self._inputs:
            raise ValueError("Add an input before setting input options")
        self._inputs[-1][1].extend(_flatten(options))
        return self

    def output_options(self, *options: str | Iterable[str]) -> "FFmpegCommand":
        self._output_options.extend(_flatten(options))
        return self

    def output(self, target: str | os.PathLike[str]) -> "FFmpegCommand":
        self._output = os.fspath(target)
        return self

    def on(self, event: str, handler: Callable[..., Any]) -> "FFmpegCommand":
        if event not in self._EVENTS:
            raise ValueError(f"Unsupported ffmpeg command event: {event}")
        self._handlers.setdefault(event, []).append(handler)
        return self

    def arguments(self) -> list[str]:
        if not self._inputs:
            raise ValueError("ffmpeg command requires at least one input")
        if self._output is None:
            raise ValueError("ffmpeg command requires an output")
        argv = [self._binary, *self._global_options]
        for source, options in self._inputs:
            argv.extend(options)
            argv.extend(["-i", source])
        argv.extend(self._output_options)
        argv.append(self._output)
        return argv

    def handle(self, **kwargs: Any) -> "CommandProcessHandle":
        return CommandProcessHandle(self, **kwargs)

    def emit(self, event: str, *args: Any) -> None:
        for handler in list(self._handlers.get(event, ())):
            try:
                handler(*args)
            except Exception:
                logger.exception("ffmpeg %s handler failed", event)


class CommandProcessHandle(ProcessHandle):
    """Process handle driven by an :class:`FFmpegCommand` builder.

    Readiness is the builder's ``start`` event, fired once the process has
    been spawned.
    """

    def __init__(self, command: FFmpegCommand, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._builder = command

    @property
    def builder(self) -> FFmpegCommand:
        return self._builder

    def arguments(self) -> list[str]:
        return self._builder.arguments()

    def _on_spawned(self) -> None:
        self._builder.emit("start", list(self._command))
        self._mark_ready()

    def _on_finished(self, result: ProcessExit) -> None:
        if result.error is not None:
            self._builder.emit("error", result.error)
        else:
            self._builder.emit("end")


class SpawnProcessHandle(ProcessHandle):
    """Process handle over a raw argv.

    Readiness is detected by one of :data:`READY_MARKERS` appearing in the
    diagnostic stream.
    """

    def __init__(
        self,
        argv: Sequence[str],
        *,
        ready_markers: Sequence[str] = READY_MARKERS,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        if not argv:
            raise ValueError("argv must not be empty")
        self._argv = [str(item) for item in argv]
        self._ready_markers = tuple(ready_markers)

    def arguments(self) -> list[str]:
        return list(self._argv)

    def _on_diagnostic(self, buffer: str) -> None:
        if not self._started and any(marker in buffer for marker in self._ready_markers):
            self._mark_ready()


class ProcessFactory:
    """Create process handles for the sessions; replaced with fakes in tests."""

    def __init__(self, *, stop_timeout: float = 5.0) -> None:
        self._stop_timeout = stop_timeout

    def _timeout(self, graceful: bool) -> float | None:
        return None if graceful else self._stop_timeout

    def command(self, command: FFmpegCommand, *, graceful: bool = False) -> ProcessHandle:
        """Build a handle for ``command``.

        ``graceful`` handles are never killed on stop; recordings use them so
        ffmpeg can finish writing the container.
        """

        return CommandProcessHandle(command, stop_timeout=self._timeout(graceful))

    def spawn(self, argv: Sequence[str], *, graceful: bool = False) -> ProcessHandle:
        return SpawnProcessHandle(argv, stop_timeout=self._timeout(graceful))


def _flatten(options: Iterable[str | Iterable[str]]) -> list[str]:
    flattened: list[str] = []
    for option in options:
        if isinstance(option, str):
            flattened.append(option)
        else:
            flattened.extend(str(item) for item in option)
    return flattened


__all__ = [
    "CommandProcessHandle",
    "DIAGNOSTIC_TAIL_CHARS",
    "FFmpegCommand",
    "ProcessExit",
    "ProcessFactory",
    "ProcessHandle",
    "READY_MARKERS",
    "SpawnProcessHandle",
    "StartedInfo",
    "VOICE_DENOISE_FILTER",
    "resolve_ffmpeg_path",
]
