"""Live-view session management for IP cameras.

A single :class:`CameraSession` owns the active stream. Plain HTTP and MJPEG
sources are relayed as-is through :meth:`CameraSession.open_mjpeg_proxy`;
everything else is transcoded into an HLS playlist by ffmpeg. While a stream
is live the source is probed periodically and the session falls back to
``idle`` once the camera stops answering.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable
from urllib.parse import unquote, urlsplit, urlunsplit

import httpx

from .errors import AlreadyActiveError, ConnectFailedError, InvalidArgumentError, TranscodeFailedError
from .events import CAMERA_STATUS, HEALTHCHECK, EventHub
from .process import (
    VOICE_DENOISE_FILTER,
    FFmpegCommand,
    ProcessExit,
    ProcessFactory,
    ProcessHandle,
)
from .session import SessionBase, SessionStatus
from .urls import derive_audio_url, is_mjpeg_url, mask_url_password, rtsp_input_options

logger = logging.getLogger(__name__)

MJPEG_STREAM_ENDPOINT = "/api/stream/mjpeg"
AUDIO_STREAM_ENDPOINT = "/api/stream/audio"
HLS_PLAYLIST_NAME = "stream.m3u8"
HLS_STREAM_ENDPOINT = f"/stream/{HLS_PLAYLIST_NAME}"
HLS_SEGMENT_PATTERN = "segment_%03d.ts"
STREAM_ARTIFACT_SUFFIXES: tuple[str, ...] = (".ts", ".m3u8")

HEALTH_CHECK_TIMEOUT = 5.0
PROXY_TIMEOUT = 10.0
DEFAULT_MJPEG_MEDIA_TYPE = "multipart/x-mixed-replace"

_DEFAULT_PORTS = {"http": 80, "https": 443, "rtsp": 554, "rtsps": 322, "rtmp": 1935}

ClientFactory = Callable[..., httpx.AsyncClient]
Probe = Callable[[str, float], Awaitable["str | None"]]


def split_credentials(url: str) -> tuple[str, tuple[str, str] | None]:
    """Return ``url`` without userinfo plus the basic-auth pair it carried."""

    parts = urlsplit(url)
    if parts.username is None:
        return url, None
    host = parts.hostname or ""
    if ":" in host:
        host = f"[{host}]"
    if parts.port is not None:
        host = f"{host}:{parts.port}"
    stripped = urlunsplit(parts._replace(netloc=host))
    return stripped, (unquote(parts.username), unquote(parts.password or ""))


async def probe_camera(
    url: str,
    timeout: float = HEALTH_CHECK_TIMEOUT,
    *,
    client_factory: ClientFactory = httpx.AsyncClient,
) -> str | None:
    """Check that the camera behind ``url`` answers.

    Returns ``None`` when reachable, otherwise a short reason. HTTP sources
    receive a GET whose body is discarded as soon as headers arrive; other
    schemes get a TCP connect to the camera's port.
    """

    try:
        parts = urlsplit(url)
        port = parts.port
    except ValueError as exc:
        return f"Invalid camera URL: {exc}"
    scheme = parts.scheme.lower()
    if scheme in {"http", "https"}:
        target, auth = split_credentials(url)
        try:
            async with client_factory(timeout=timeout, auth=auth) as client:
                async with client.stream("GET", target):
                    pass
        except httpx.TimeoutException:
            return "Health check timed out"
        except httpx.HTTPError as exc:
            return str(exc) or exc.__class__.__name__
        return None

    host = parts.hostname
    if not host:
        return "Camera URL has no host"
    port = port or _DEFAULT_PORTS.get(scheme)
    if port is None:
        return f"Unsupported scheme '{scheme}'"
    try:
        _reader, writer = await asyncio.wait_for(asyncio.open_connection(host, port), timeout)
    except asyncio.TimeoutError:
        return "Health check timed out"
    except OSError as exc:
        return str(exc) or exc.__class__.__name__
    writer.close()
    with contextlib.suppress(Exception):
        await writer.wait_closed()
    return None


class UpstreamStream:
    """Body of a camera response relayed to a single consumer.

    Iterating yields raw chunks; when the consumer stops iterating (for
    example because the browser disconnected) the upstream connection is
    closed.
    """

    def __init__(self, client: httpx.AsyncClient, response: httpx.Response) -> None:
        self._client = client
        self._response = response
        self._closed = False

    @property
    def status_code(self) -> int:
        return self._response.status_code

    @property
    def media_type(self) -> str:
        return self._response.headers.get("content-type") or DEFAULT_MJPEG_MEDIA_TYPE

    @property
    def closed(self) -> bool:
        return self._closed

    async def __aiter__(self) -> AsyncIterator[bytes]:
        try:
            async for chunk in self._response.aiter_raw():
                yield chunk
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self._response.aclose()
        finally:
            await self._client.aclose()


class AudioStream:
    """MP3 audio produced by an ffmpeg process reading the camera's audio feed."""

    media_type = "audio/mpeg"

    def __init__(self, process: asyncio.subprocess.Process, *, chunk_size: int = 4096) -> None:
        self._process = process
        self._chunk_size = chunk_size
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def __aiter__(self) -> AsyncIterator[bytes]:
        stdout = self._process.stdout
        try:
            if stdout is None:
                return
            while True:
                chunk = await stdout.read(self._chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            await self.aclose()

    async def aclose(self) -> None:
        if self._closed:
            return
        self._closed = True
        process = self._process
        if process.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                process.terminate()
            try:
                await asyncio.wait_for(process.wait(), timeout=5.0)
            except asyncio.TimeoutError:
                with contextlib.suppress(ProcessLookupError):
                    process.kill()
                await process.wait()


class CameraSession(SessionBase):
    """Own the single live-view session of the application."""

    kind = "camera"
    status_event = CAMERA_STATUS

    def __init__(
        self,
        *,
        stream_dir: Path | str,
        events: EventHub | None = None,
        ffmpeg_path: str = "ffmpeg",
        hls_segment_duration: int = 2,
        hls_list_size: int = 5,
        health_check_interval: float = 15.0,
        health_check_timeout: float = HEALTH_CHECK_TIMEOUT,
        processes: ProcessFactory | None = None,
        probe: Probe | None = None,
        client_factory: ClientFactory = httpx.AsyncClient,
        spawn: Callable[..., Awaitable[asyncio.subprocess.Process]] | None = None,
    ) -> None:
        super().__init__(events=events)
        if health_check_interval <= 0:
            raise ValueError("health_check_interval must be positive")
        self._stream_dir = Path(stream_dir)
        self._ffmpeg_path = ffmpeg_path
        self._hls_segment_duration = int(hls_segment_duration)
        self._hls_list_size = int(hls_list_size)
        self._health_check_interval = float(health_check_interval)
        self._health_check_timeout = float(health_check_timeout)
        self._processes = processes or ProcessFactory()
        self._client_factory = client_factory
        self._probe: Probe = probe or (
            lambda url, timeout: probe_camera(url, timeout, client_factory=client_factory)
        )
        self._spawn = spawn or asyncio.create_subprocess_exec
        self._process: ProcessHandle | None = None
        self._current_url: str | None = None
        self._audio_url: str | None = None
        self._health_task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------
    @property
    def stream_dir(self) -> Path:
        return self._stream_dir

    @property
    def current_url(self) -> str | None:
        return self._current_url

    @property
    def audio_url(self) -> str | None:
        return self._audio_url

    @property
    def process(self) -> ProcessHandle | None:
        return self._process

    @property
    def health_check_active(self) -> bool:
        return self._health_task is not None and not self._health_task.done()

    def _status_payload(self) -> dict[str, Any]:
        return {"url": self._current_url}

    # ------------------------------------------------------------------
    # Session operations
    # ------------------------------------------------------------------
    async def start_stream(self, url: str | None) -> dict[str, object]:
        if self._status in (SessionStatus.CONNECTING, SessionStatus.STREAMING):
            raise AlreadyActiveError("Stream already running. Stop the current stream first.")
        camera_url = url.strip() if isinstance(url, str) else ""
        if not camera_url:
            raise InvalidArgumentError("Camera URL is required.")

        mjpeg = is_mjpeg_url(camera_url)
        if not mjpeg:
            self._clean_stream_dir()
            self._stream_dir.mkdir(parents=True, exist_ok=True)

        self._current_url = camera_url
        self._audio_url = derive_audio_url(camera_url)

        if mjpeg:
            self._process = None
            self._set_status(SessionStatus.STREAMING)
            self._start_health_check()
            logger.info("Proxying MJPEG stream from %s", mask_url_password(camera_url))
            return {
                "status": SessionStatus.STREAMING.value,
                "url": camera_url,
                "stream_type": "mjpeg",
                "stream_url": MJPEG_STREAM_ENDPOINT,
                "audio_url": AUDIO_STREAM_ENDPOINT if self._audio_url else None,
            }

        self._set_status(SessionStatus.CONNECTING)

        command = (
            FFmpegCommand(camera_url, binary=self._ffmpeg_path)
            .input_options(rtsp_input_options(camera_url))
            .output_options(self._hls_output_options())
            .output(self._stream_dir / HLS_PLAYLIST_NAME)
            .on("start", self._log_command)
        )
        handle = self._processes.command(command)
        handle.on_exit(self._on_process_exit)
        self._process = handle
        try:
            await handle.start()
        except TranscodeFailedError as exc:
            result = handle.exit
            if result is not None and result.requested:
                raise ConnectFailedError(
                    "Stream was stopped before it connected.", diagnostic=exc.diagnostic
                ) from exc
            raise ConnectFailedError(
                f"Failed to connect to camera: {exc}", diagnostic=exc.diagnostic
            ) from exc

        if self._process is not handle or not handle.running:
            raise ConnectFailedError("Stream ended before it connected.")
        self._set_status(SessionStatus.STREAMING)
        self._start_health_check()
        logger.info("Transcoding %s to HLS", mask_url_password(camera_url))
        return {
            "status": SessionStatus.STREAMING.value,
            "url": camera_url,
            "stream_type": "hls",
            "stream_url": HLS_STREAM_ENDPOINT,
        }

    async def stop_stream(self) -> dict[str, object]:
        if self._status is not SessionStatus.STREAMING and self._process is None:
            return {"status": SessionStatus.IDLE.value, "message": "No stream running."}

        process = self._process
        self._set_status(SessionStatus.IDLE)
        self._clear()
        if process is not None:
            await process.stop()
        return {"status": SessionStatus.IDLE.value, "message": "Stream stopped."}

    def get_status(self) -> dict[str, object]:
        streaming = self._status is SessionStatus.STREAMING
        mjpeg = bool(self._current_url) and is_mjpeg_url(self._current_url)
        stream_type: str | None = None
        stream_file: str | None = None
        if streaming:
            stream_type = "mjpeg" if mjpeg else "hls"
            stream_file = MJPEG_STREAM_ENDPOINT if mjpeg else HLS_STREAM_ENDPOINT
        return {
            "status": self._status.value,
            "url": self._current_url,
            "stream_type": stream_type,
            "stream_file": stream_file,
            "audio_url": AUDIO_STREAM_ENDPOINT if streaming and self._audio_url else None,
            "error": self._last_error,
        }

    async def aclose(self) -> None:
        await self.stop_stream()

    # ------------------------------------------------------------------
    # Relays
    # ------------------------------------------------------------------
    async def open_mjpeg_proxy(self, url: str | None = None) -> UpstreamStream:
        """Connect to the camera and return its response body for relaying."""

        target = url or self._current_url
        if not target:
            raise InvalidArgumentError("No stream active. Start stream first.")
        try:
            request_url, auth = split_credentials(target)
        except ValueError as exc:
            raise InvalidArgumentError(f"Invalid camera URL: {exc}") from exc
        client = self._client_factory(timeout=PROXY_TIMEOUT, auth=auth)
        try:
            response = await client.send(client.build_request("GET", request_url), stream=True)
        except httpx.HTTPError as exc:
            await client.aclose()
            raise ConnectFailedError(f"Failed to connect to camera: {exc}") from exc
        return UpstreamStream(client, response)

    async def open_audio_stream(self) -> AudioStream:
        """Start an ffmpeg process emitting the denoised camera audio as MP3."""

        audio_url = self._audio_url
        if not audio_url:
            raise InvalidArgumentError("No audio stream available. Start stream first.")
        argv = [
            self._ffmpeg_path,
            "-i",
            audio_url,
            "-af",
            VOICE_DENOISE_FILTER,
            "-c:a",
            "libmp3lame",
            "-b:a",
            "128k",
            "-f",
            "mp3",
            "-",
        ]
        try:
            process = await self._spawn(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as exc:
            raise TranscodeFailedError(f"Failed to process audio: {exc}") from exc
        return AudioStream(process)

    # ------------------------------------------------------------------
    # Health checking
    # ------------------------------------------------------------------
    def _start_health_check(self) -> None:
        self._stop_health_check()
        url = self._current_url
        if url is None:
            return
        loop = asyncio.get_running_loop()
        self._health_task = loop.create_task(self._health_check_loop(url))
        self._health_task.add_done_callback(self._on_health_task_done)

    def _stop_health_check(self) -> None:
        task = self._health_task
        self._health_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _health_check_loop(self, url: str) -> None:
        while True:
            await asyncio.sleep(self._health_check_interval)
            if self._status is not SessionStatus.STREAMING or self._current_url != url:
                return
            reason = await self._check_camera_reachable(url)
            if reason is not None:
                await self._handle_unreachable(reason)
                return

    async def _check_camera_reachable(self, url: str) -> str | None:
        try:
            return await self._probe(url, self._health_check_timeout)
        except Exception as exc:
            logger.debug("Health probe raised for %s", mask_url_password(url), exc_info=True)
            return str(exc) or exc.__class__.__name__

    async def _handle_unreachable(self, reason: str) -> None:
        if self._status is not SessionStatus.STREAMING:
            return
        logger.warning("Camera unreachable: %s. Resetting to idle.", reason)
        process = self._process
        self._set_status(SessionStatus.IDLE)
        self._clear()
        self._events.emit(HEALTHCHECK, {"reachable": False, "reason": reason})
        if process is not None:
            await process.stop()

    def _on_health_task_done(self, task: asyncio.Task[None]) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Camera health check stopped unexpectedly", exc_info=exc)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _hls_output_options(self) -> list[str]:
        return [
            "-c:v",
            "libx264",
            "-preset",
            "ultrafast",
            "-tune",
            "zerolatency",
            "-c:a",
            "aac",
            "-f",
            "hls",
            "-hls_time",
            str(self._hls_segment_duration),
            "-hls_list_size",
            str(self._hls_list_size),
            "-hls_flags",
            "delete_segments+append_list",
            "-hls_segment_filename",
            str(self._stream_dir / HLS_SEGMENT_PATTERN),
        ]

    def _clean_stream_dir(self) -> None:
        try:
            entries = list(self._stream_dir.iterdir())
        except OSError:
            return
        for entry in entries:
            if entry.suffix in STREAM_ARTIFACT_SUFFIXES and entry.is_file():
                try:
                    entry.unlink()
                except OSError as exc:
                    logger.debug("Unable to remove stream artefact %s: %s", entry, exc)

    def _clear(self) -> None:
        self._process = None
        self._current_url = None
        self._audio_url = None
        self._stop_health_check()

    def _on_process_exit(self, handle: ProcessHandle, result: ProcessExit) -> None:
        if handle is not self._process:
            return
        error = result.error
        if error is None and not result.started and not result.requested:
            error = f"{handle.name} exited before producing output"
        if error is not None:
            logger.warning("Stream transcoder failed: %s", error)
            self._fail(error)
        else:
            self._set_status(SessionStatus.IDLE)
        self._clear()

    @staticmethod
    def _log_command(argv: list[str]) -> None:
        logger.info("Started stream transcoder: %s", " ".join(mask_url_password(arg) or "" for arg in argv))


__all__ = [
    "AUDIO_STREAM_ENDPOINT",
    "AudioStream",
    "CameraSession",
    "HLS_STREAM_ENDPOINT",
    "MJPEG_STREAM_ENDPOINT",
    "UpstreamStream",
    "probe_camera",
    "split_credentials",
]
