"""Recording session management and access to finished recordings."""
from __future__ import annotations

import logging
import time
from datetime import datetime
from pathlib import Path
from typing import Callable

from .errors import (
    AlreadyActiveError,
    InvalidArgumentError,
    NotFoundError,
    PathTraversalError,
    TranscodeFailedError,
)
from .events import RECORDER_STATUS, EventHub
from .process import VOICE_DENOISE_FILTER, FFmpegCommand, ProcessExit, ProcessFactory, ProcessHandle
from .session import SessionBase, SessionStatus
from .urls import derive_audio_url, mask_url_password, rtsp_input_options

logger = logging.getLogger(__name__)

RECORDING_SUFFIX = ".mp4"
RECORDING_NAME_FORMAT = "recording_%Y-%m-%d_%H-%M-%S.mp4"


def recording_filename(moment: datetime) -> str:
    """Return the file name used for a recording started at ``moment``."""

    return moment.strftime(RECORDING_NAME_FORMAT)


def format_size(size_bytes: int) -> str:
    return f"{size_bytes / (1024 * 1024):.2f} MB"


def list_recording_files(directory: Path) -> list[dict[str, object]]:
    """Describe the finished recordings in ``directory``, newest first.

    The directory is created when missing. Filesystem errors produce an
    empty or partial listing rather than an exception.
    """

    try:
        directory.mkdir(parents=True, exist_ok=True)
        paths = [path for path in directory.iterdir() if path.suffix == RECORDING_SUFFIX]
    except OSError as exc:
        logger.warning("Unable to list recordings in %s: %s", directory, exc)
        return []

    entries: list[tuple[float, dict[str, object]]] = []
    for path in paths:
        try:
            stat = path.stat()
        except OSError:
            continue
        if not path.is_file():
            continue
        modified = datetime.fromtimestamp(stat.st_mtime).astimezone()
        entries.append(
            (
                stat.st_mtime,
                {
                    "name": path.name,
                    "size": int(stat.st_size),
                    "size_formatted": format_size(int(stat.st_size)),
                    "date": modified.isoformat(),
                },
            )
        )
    entries.sort(key=lambda item: item[0], reverse=True)
    return [entry for _, entry in entries]


def resolve_recording_path(directory: Path, filename: str) -> Path:
    """Return the path of ``filename`` inside ``directory``.

    Names that are empty, carry directory components or resolve outside the
    recordings directory raise :class:`PathTraversalError` before the
    filesystem is touched.
    """

    name = filename.strip() if isinstance(filename, str) else ""
    if not name or name in {".", ".."} or Path(name).name != name or "\\" in name:
        raise PathTraversalError("Invalid filename.")
    root = directory.resolve()
    candidate = (root / name).resolve()
    if candidate.parent != root:
        raise PathTraversalError("Invalid filename.")
    return candidate


class RecordingSession(SessionBase):
    """Own the single recording slot of the application."""

    kind = "recorder"
    status_event = RECORDER_STATUS

    def __init__(
        self,
        *,
        recordings_dir: Path | str,
        events: EventHub | None = None,
        ffmpeg_path: str = "ffmpeg",
        processes: ProcessFactory | None = None,
        now: Callable[[], datetime] = datetime.now,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(events=events)
        self._recordings_dir = Path(recordings_dir)
        self._ffmpeg_path = ffmpeg_path
        self._processes = processes or ProcessFactory()
        self._now = now
        self._monotonic = monotonic
        self._process: ProcessHandle | None = None
        self._current_url: str | None = None
        self._current_file: str | None = None
        self._started_at: float | None = None
        self._audio = False

    @property
    def recordings_dir(self) -> Path:
        return self._recordings_dir

    @property
    def current_file(self) -> str | None:
        return self._current_file

    @property
    def current_url(self) -> str | None:
        return self._current_url

    @property
    def process(self) -> ProcessHandle | None:
        return self._process

    def _status_payload(self) -> dict[str, object]:
        return {"url": self._current_url, "file": self._current_file}

    # ------------------------------------------------------------------
    async def start_recording(
        self,
        url: str | None,
        include_audio: bool | None = None,
        audio_url: str | None = None,
    ) -> dict[str, object]:
        if self._status is SessionStatus.RECORDING or self._process is not None:
            raise AlreadyActiveError(
                "Recording already in progress. Stop the current recording first."
            )
        camera_url = url.strip() if isinstance(url, str) else ""
        if not camera_url:
            raise InvalidArgumentError("Camera URL is required.")

        want_audio = True if include_audio is None else bool(include_audio)
        resolved_audio_url = (audio_url or "").strip() or derive_audio_url(camera_url)
        use_audio = want_audio and bool(resolved_audio_url)

        filename = recording_filename(self._now())
        self._recordings_dir.mkdir(parents=True, exist_ok=True)
        output_path = self._recordings_dir / filename

        if use_audio:
            assert resolved_audio_url is not None
            handle = self._processes.spawn(
                self._dual_input_arguments(camera_url, resolved_audio_url, output_path),
                graceful=True,
            )
        else:
            command = (
                FFmpegCommand(camera_url, binary=self._ffmpeg_path)
                .input_options(rtsp_input_options(camera_url))
                .output_options(
                    "-c:v", "libx264", "-preset", "ultrafast", "-c:a", "aac", "-movflags", "+faststart"
                )
                .output(output_path)
            )
            handle = self._processes.command(command, graceful=True)

        handle.on_exit(self._on_process_exit)
        self._process = handle
        try:
            await handle.start()
        except TranscodeFailedError as exc:
            raise TranscodeFailedError(
                f"Failed to start recording: {exc}", diagnostic=exc.diagnostic
            ) from exc

        if self._process is not handle or not handle.running:
            raise TranscodeFailedError("Recording ended before it started.")
        self._current_url = camera_url
        self._current_file = filename
        self._audio = use_audio
        self._started_at = self._monotonic()
        self._set_status(SessionStatus.RECORDING)
        logger.info(
            "Recording %s to %s (audio: %s)",
            mask_url_password(camera_url),
            filename,
            "yes" if use_audio else "no",
        )
        return {
            "status": SessionStatus.RECORDING.value,
            "file": filename,
            "url": camera_url,
            "audio": use_audio,
        }

    async def stop_recording(self) -> dict[str, object]:
        process = self._process
        if process is None and self._status is not SessionStatus.RECORDING:
            return {"status": SessionStatus.IDLE.value, "message": "No recording in progress."}

        filename = self._current_file
        self._set_status(SessionStatus.IDLE)
        self._clear()
        if process is not None:
            await process.stop()
        logger.info("Recording %s stopped", filename)
        return {"status": SessionStatus.IDLE.value, "message": "Recording stopped.", "file": filename}

    def get_status(self) -> dict[str, object]:
        recording = self._status is SessionStatus.RECORDING
        duration = 0
        if recording and self._started_at is not None:
            duration = max(0, int(self._monotonic() - self._started_at))
        return {
            "status": self._status.value,
            "file": self._current_file,
            "url": self._current_url,
            "audio": self._audio if recording else False,
            "duration": duration,
            "error": self._last_error,
        }

    async def aclose(self) -> None:
        await self.stop_recording()

    # ------------------------------------------------------------------
    def list_recordings(self) -> list[dict[str, object]]:
        return list_recording_files(self._recordings_dir)

    def recording_path(self, filename: str) -> Path:
        path = resolve_recording_path(self._recordings_dir, filename)
        if not path.is_file():
            raise NotFoundError("Recording not found.")
        return path

    def delete_recording(self, filename: str) -> dict[str, object]:
        path = self.recording_path(filename)
        try:
            path.unlink()
        except FileNotFoundError as exc:
            raise NotFoundError("Recording not found.") from exc
        logger.info("Deleted recording %s", path.name)
        return {"message": f"Deleted {path.name}."}

    # ------------------------------------------------------------------
    def _dual_input_arguments(self, video_url: str, audio_url: str, output: Path) -> list[str]:
        argv = [self._ffmpeg_path]
        argv.extend(rtsp_input_options(video_url))
        argv.extend(["-i", video_url])
        argv.extend(rtsp_input_options(audio_url))
        argv.extend(["-i", audio_url])
        argv.extend(
            [
                "-af",
                VOICE_DENOISE_FILTER,
                "-c:v",
                "libx264",
                "-preset",
                "ultrafast",
                "-c:a",
                "aac",
                "-b:a",
                "128k",
                "-movflags",
                "+faststart",
                "-y",
                str(output),
            ]
        )
        return argv

    def _clear(self) -> None:
        self._process = None
        self._current_url = None
        self._current_file = None
        self._started_at = None
        self._audio = False

    def _on_process_exit(self, handle: ProcessHandle, result: ProcessExit) -> None:
        if handle is not self._process:
            return
        error = result.error
        if error is None and not result.started and not result.requested:
            error = f"{handle.name} exited before producing output"
        if error is not None:
            logger.warning("Recording transcoder failed: %s", error)
            self._fail(error)
        else:
            self._set_status(SessionStatus.IDLE)
        self._clear()


__all__ = [
    "RecordingSession",
    "format_size",
    "list_recording_files",
    "recording_filename",
    "resolve_recording_path",
]
