"""FastAPI application wiring together the ipcam sessions."""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.responses import FileResponse, StreamingResponse
from pydantic import BaseModel

from .camera import CameraSession
from .config import DEFAULT_CONFIG_PATH, AppConfig, load_config
from .errors import (
    AlreadyActiveError,
    IPCamError,
    InvalidArgumentError,
    NotFoundError,
    PathTraversalError,
    TranscodeFailedError,
)
from .event_log import EventLog
from .events import EventHub
from .process import ProcessFactory, resolve_ffmpeg_path
from .recorder import RecordingSession, resolve_recording_path
from .scheduler import Schedule, ScheduleEngine
from .version import APP_VERSION

_NO_CACHE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, max-age=0",
    "Pragma": "no-cache",
}

_STREAM_MEDIA_TYPES = {
    ".m3u8": "application/vnd.apple.mpegurl",
    ".ts": "video/mp2t",
}


class StreamStartPayload(BaseModel):
    cameraUrl: str | None = None


class RecordStartPayload(BaseModel):
    cameraUrl: str | None = None
    includeAudio: bool | None = None
    audioUrl: str | None = None


class SchedulePayload(BaseModel):
    name: str | None = None
    cameraUrl: str | None = None
    startTime: str | None = None
    durationMinutes: int | None = None
    days: list[str] | None = None
    enabled: bool | None = None


def _http_error(exc: IPCamError) -> HTTPException:
    if isinstance(exc, AlreadyActiveError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, (PathTraversalError, InvalidArgumentError)):
        return HTTPException(status_code=400, detail=str(exc))
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, TranscodeFailedError):
        return HTTPException(status_code=502, detail=str(exc))
    return HTTPException(status_code=500, detail=str(exc))


def create_app(
    config_path: Path | str = DEFAULT_CONFIG_PATH,
    *,
    config: AppConfig | None = None,
    events: EventHub | None = None,
    processes: ProcessFactory | None = None,
    camera_session: CameraSession | None = None,
    recorder_session: RecordingSession | None = None,
    schedule_engine: ScheduleEngine | None = None,
    event_log: EventLog | None = None,
) -> FastAPI:
    app = FastAPI(title="ipcam", version=APP_VERSION)

    logger = logging.getLogger(__name__)

    settings = config or load_config(config_path)
    hub = events or EventHub()
    factory = processes or ProcessFactory()
    ffmpeg_path = resolve_ffmpeg_path(settings.ffmpeg_path)

    camera = camera_session or CameraSession(
        stream_dir=settings.stream_dir,
        events=hub,
        ffmpeg_path=ffmpeg_path,
        hls_segment_duration=settings.hls_segment_duration,
        hls_list_size=settings.hls_list_size,
        health_check_interval=settings.health_check_interval,
        processes=factory,
    )
    recorder = recorder_session or RecordingSession(
        recordings_dir=settings.recordings_dir,
        events=hub,
        ffmpeg_path=ffmpeg_path,
        processes=factory,
    )
    scheduler = schedule_engine or ScheduleEngine(
        recorder,
        schedules_file=settings.schedules_file,
        events=hub,
    )
    system_log = event_log
    if system_log is None and settings.event_log_file is not None:
        system_log = EventLog(settings.event_log_file)
    if system_log is not None:
        system_log.attach(hub)

    app.state.config = settings
    app.state.events = hub
    app.state.camera = camera
    app.state.recorder = recorder
    app.state.scheduler = scheduler
    app.state.event_log = system_log

    def _status_snapshot() -> dict[str, object]:
        return {"camera": camera.get_status(), "recorder": recorder.get_status()}

    def _serialise_schedule(schedule: Schedule) -> dict[str, object]:
        payload = schedule.to_dict()
        next_run = scheduler.next_run(schedule.id)
        payload["nextRun"] = next_run.isoformat() if next_run is not None else None
        return payload

    @app.on_event("startup")
    async def startup() -> None:  # pragma: no cover - framework hook
        logger.info("ipcam %s starting", APP_VERSION)
        scheduler.start()

    @app.on_event("shutdown")
    async def shutdown() -> None:  # pragma: no cover - framework hook
        await scheduler.aclose()
        await camera.aclose()
        await recorder.aclose()
        await hub.aclose()
        logger.info("ipcam shut down")

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------
    @app.get("/api/status")
    async def get_status() -> dict[str, object]:
        return _status_snapshot()

    @app.get("/api/events")
    async def get_events(limit: int | None = None, category: str | None = None) -> dict[str, object]:
        if system_log is None:
            return {"entries": []}
        entries = system_log.tail(limit, category=category)
        return {"entries": [entry.to_dict() for entry in entries]}

    # ------------------------------------------------------------------
    # Live view
    # ------------------------------------------------------------------
    @app.post("/api/stream/start")
    async def start_stream(payload: StreamStartPayload) -> dict[str, object]:
        try:
            return await camera.start_stream(payload.cameraUrl)
        except IPCamError as exc:
            raise _http_error(exc) from exc

    @app.post("/api/stream/stop")
    async def stop_stream() -> dict[str, object]:
        return await camera.stop_stream()

    @app.get("/api/stream/status")
    async def stream_status() -> dict[str, object]:
        return camera.get_status()

    @app.get("/api/stream/mjpeg")
    async def stream_mjpeg() -> StreamingResponse:
        try:
            upstream = await camera.open_mjpeg_proxy()
        except IPCamError as exc:
            raise _http_error(exc) from exc
        if upstream.status_code >= 400:
            await upstream.aclose()
            raise HTTPException(
                status_code=502,
                detail=f"Camera responded with HTTP {upstream.status_code}",
            )
        response = StreamingResponse(upstream, media_type=upstream.media_type)
        response.headers.update(_NO_CACHE_HEADERS)
        return response

    @app.get("/api/stream/audio")
    async def stream_audio() -> StreamingResponse:
        try:
            audio = await camera.open_audio_stream()
        except IPCamError as exc:
            raise _http_error(exc) from exc
        response = StreamingResponse(audio, media_type=audio.media_type)
        response.headers.update(_NO_CACHE_HEADERS)
        return response

    @app.get("/stream/{filename}")
    async def stream_file(filename: str) -> FileResponse:
        try:
            path = resolve_recording_path(camera.stream_dir, filename)
        except IPCamError as exc:
            raise _http_error(exc) from exc
        media_type = _STREAM_MEDIA_TYPES.get(path.suffix)
        if media_type is None or not path.is_file():
            raise HTTPException(status_code=404, detail="Stream file not found")
        return FileResponse(path, media_type=media_type, headers=_NO_CACHE_HEADERS)

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------
    @app.post("/api/record/start")
    async def start_recording(payload: RecordStartPayload) -> dict[str, object]:
        try:
            return await recorder.start_recording(
                payload.cameraUrl,
                include_audio=payload.includeAudio,
                audio_url=payload.audioUrl,
            )
        except IPCamError as exc:
            raise _http_error(exc) from exc

    @app.post("/api/record/stop")
    async def stop_recording() -> dict[str, object]:
        return await recorder.stop_recording()

    @app.get("/api/record/status")
    async def recording_status() -> dict[str, object]:
        return recorder.get_status()

    @app.get("/api/recordings")
    async def list_recordings() -> list[dict[str, object]]:
        return recorder.list_recordings()

    @app.get("/api/recordings/{filename}")
    async def download_recording(filename: str) -> FileResponse:
        try:
            path = recorder.recording_path(filename)
        except IPCamError as exc:
            raise _http_error(exc) from exc
        return FileResponse(path, media_type="video/mp4", filename=path.name)

    @app.delete("/api/recordings/{filename}")
    async def delete_recording(filename: str) -> dict[str, object]:
        try:
            return recorder.delete_recording(filename)
        except IPCamError as exc:
            raise _http_error(exc) from exc

    # ------------------------------------------------------------------
    # Schedules
    # ------------------------------------------------------------------
    @app.get("/api/schedules")
    async def list_schedules() -> list[dict[str, object]]:
        return [_serialise_schedule(schedule) for schedule in scheduler.list_schedules()]

    @app.post("/api/schedules")
    async def create_schedule(payload: SchedulePayload) -> dict[str, object]:
        if not payload.cameraUrl or not payload.startTime:
            raise HTTPException(status_code=400, detail="cameraUrl and startTime are required.")
        try:
            schedule = scheduler.add_schedule(payload.model_dump(exclude_unset=True))
        except IPCamError as exc:
            raise _http_error(exc) from exc
        return _serialise_schedule(schedule)

    @app.get("/api/schedules/{schedule_id}")
    async def get_schedule(schedule_id: str) -> dict[str, object]:
        schedule = scheduler.get_schedule(schedule_id)
        if schedule is None:
            raise HTTPException(status_code=404, detail="Schedule not found.")
        return _serialise_schedule(schedule)

    @app.put("/api/schedules/{schedule_id}")
    async def update_schedule(schedule_id: str, payload: SchedulePayload) -> dict[str, object]:
        try:
            schedule = scheduler.update_schedule(
                schedule_id, payload.model_dump(exclude_unset=True)
            )
        except IPCamError as exc:
            raise _http_error(exc) from exc
        return _serialise_schedule(schedule)

    @app.delete("/api/schedules/{schedule_id}")
    async def delete_schedule(schedule_id: str) -> dict[str, object]:
        try:
            return scheduler.delete_schedule(schedule_id)
        except IPCamError as exc:
            raise _http_error(exc) from exc

    # ------------------------------------------------------------------
    # Push updates
    # ------------------------------------------------------------------
    @app.websocket("/ws")
    async def status_updates(websocket: WebSocket) -> None:
        await websocket.accept()
        queue = hub.subscribe()
        try:
            await websocket.send_json({"type": "status", **_status_snapshot()})

            async def _forward() -> None:
                while True:
                    message = await queue.get()
                    await websocket.send_json(message)

            async def _drain() -> None:
                while True:
                    await websocket.receive_text()

            tasks = [asyncio.ensure_future(_forward()), asyncio.ensure_future(_drain())]
            try:
                done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for task in tasks:
                    task.cancel()
                await asyncio.gather(*tasks, return_exceptions=True)
            for task in done:
                if task.cancelled():
                    continue
                exc = task.exception()
                if exc is not None and not isinstance(exc, WebSocketDisconnect):
                    logger.warning("Status websocket closed: %s", exc)
        except WebSocketDisconnect:
            pass
        finally:
            hub.unsubscribe(queue)

    return app


__all__ = ["create_app"]
