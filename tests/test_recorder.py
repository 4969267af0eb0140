from __future__ import annotations

import asyncio
import os
import stat
from datetime import datetime
from pathlib import Path

import pytest

from ipcam.errors import (
    AlreadyActiveError,
    InvalidArgumentError,
    NotFoundError,
    PathTraversalError,
    TranscodeFailedError,
)
from ipcam.events import RECORDER_STATUS
from ipcam.process import VOICE_DENOISE_FILTER, ProcessFactory
from ipcam.recorder import RecordingSession, list_recording_files, recording_filename

START = datetime(2024, 5, 1, 10, 0, 5)


class FakeMonotonic:
    def __init__(self) -> None:
        self.value = 100.0

    def __call__(self) -> float:
        return self.value


def _session(tmp_path: Path, hub, processes, **kwargs) -> RecordingSession:
    return RecordingSession(
        recordings_dir=tmp_path / "recordings",
        events=hub,
        ffmpeg_path="ffmpeg",
        processes=processes,
        now=lambda: START,
        **kwargs,
    )


def test_recording_filename_uses_local_timestamp() -> None:
    assert recording_filename(START) == "recording_2024-05-01_10-00-05.mp4"


def test_audio_included_by_default_uses_dual_input(tmp_path, hub, processes, recorded) -> None:
    async def scenario():
        session = _session(tmp_path, hub, processes)
        return await session.start_recording("http://admin:pw@cam.local/video.cgi")

    result = asyncio.run(scenario())
    handle = processes.last
    assert result == {
        "status": "recording",
        "file": "recording_2024-05-01_10-00-05.mp4",
        "url": "http://admin:pw@cam.local/video.cgi",
        "audio": True,
    }
    assert handle.kind == "spawn"
    assert handle.argv[:5] == [
        "ffmpeg",
        "-i",
        "http://admin:pw@cam.local/video.cgi",
        "-i",
        "http://admin:pw@cam.local/audio.cgi",
    ]
    assert handle.argv[handle.argv.index("-af") + 1] == VOICE_DENOISE_FILTER
    assert handle.argv[handle.argv.index("-b:a") + 1] == "128k"
    assert "+faststart" in handle.argv
    assert handle.argv[-1] == str(tmp_path / "recordings" / "recording_2024-05-01_10-00-05.mp4")
    assert recorded.of(RECORDER_STATUS)[-1]["file"] == "recording_2024-05-01_10-00-05.mp4"


def test_audio_excluded_never_references_audio_url(tmp_path, hub, processes) -> None:
    async def scenario():
        session = _session(tmp_path, hub, processes)
        return await session.start_recording(
            "http://admin:pw@cam.local/video.cgi", include_audio=False
        )

    result = asyncio.run(scenario())
    handle = processes.last
    assert result["audio"] is False
    assert handle.kind == "command"
    assert not any("audio.cgi" in arg for arg in handle.argv)
    assert "-af" not in handle.argv
    assert handle.argv.count("-i") == 1


def test_rtsp_inputs_get_transport_options(tmp_path, hub, processes) -> None:
    async def scenario():
        session = _session(tmp_path, hub, processes)
        await session.start_recording("rtsp://cam.local/stream1")

    asyncio.run(scenario())
    argv = processes.last.argv
    assert argv[1:7] == ["-rtsp_transport", "tcp", "-timeout", "5000000", "-i", "rtsp://cam.local/stream1"]
    second = argv.index("-i", 6)
    assert argv[second - 4 : second + 2] == [
        "-rtsp_transport",
        "tcp",
        "-timeout",
        "5000000",
        "-i",
        "rtsp://cam.local/audio.cgi",
    ]


def test_explicit_audio_url_overrides_derived_one(tmp_path, hub, processes) -> None:
    async def scenario():
        session = _session(tmp_path, hub, processes)
        return await session.start_recording(
            "rtmp://cam.local/live/key", audio_url="http://mic.local/audio"
        )

    result = asyncio.run(scenario())
    assert result["audio"] is True
    assert "http://mic.local/audio" in processes.last.argv


def test_unparseable_url_records_without_audio(tmp_path, hub, processes) -> None:
    async def scenario():
        session = _session(tmp_path, hub, processes)
        return await session.start_recording("camera-one")

    result = asyncio.run(scenario())
    assert result["audio"] is False
    assert processes.last.kind == "command"


def test_second_recording_rejected(tmp_path, hub, processes) -> None:
    async def scenario():
        session = _session(tmp_path, hub, processes)
        await session.start_recording("rtsp://cam.local/one")
        with pytest.raises(AlreadyActiveError):
            await session.start_recording("rtsp://cam.local/two")
        return session.get_status()

    status = asyncio.run(scenario())
    assert status["url"] == "rtsp://cam.local/one"
    assert len(processes.handles) == 1


def test_empty_url_rejected(tmp_path, hub, processes, recorded) -> None:
    async def scenario():
        session = _session(tmp_path, hub, processes)
        with pytest.raises(InvalidArgumentError):
            await session.start_recording("")

    asyncio.run(scenario())
    assert processes.handles == []
    assert recorded.items == []


def test_start_failure_resets_session(tmp_path, hub, processes, recorded) -> None:
    processes.fail = "Connection timed out"

    async def scenario():
        session = _session(tmp_path, hub, processes)
        with pytest.raises(TranscodeFailedError) as excinfo:
            await session.start_recording("rtsp://cam.local/x")
        return session, excinfo.value

    session, error = asyncio.run(scenario())
    assert error.diagnostic == "Connection timed out"
    assert recorded.statuses(RECORDER_STATUS) == ["error"]
    status = session.get_status()
    assert status["status"] == "idle"
    assert status["file"] is None
    assert status["error"] == "Connection timed out"


def test_stop_and_status(tmp_path, hub, processes, recorded) -> None:
    clock = FakeMonotonic()

    async def scenario():
        session = _session(tmp_path, hub, processes, monotonic=clock)
        idle = await session.stop_recording()
        await session.start_recording("rtsp://cam.local/x")
        clock.value += 42.7
        status = session.get_status()
        stopped = await session.stop_recording()
        return idle, status, stopped, session.get_status()

    idle, status, stopped, after = asyncio.run(scenario())
    assert idle == {"status": "idle", "message": "No recording in progress."}
    assert status["status"] == "recording"
    assert status["duration"] == 42
    assert status["audio"] is True
    assert stopped == {
        "status": "idle",
        "message": "Recording stopped.",
        "file": "recording_2024-05-01_10-00-05.mp4",
    }
    assert after["file"] is None and after["duration"] == 0
    assert processes.last.stop_calls == 1
    assert recorded.statuses(RECORDER_STATUS) == ["recording", "idle"]


def test_list_recordings_newest_first(tmp_path: Path) -> None:
    directory = tmp_path / "recordings"
    directory.mkdir()
    older = directory / "recording_2024-05-01_08-00-00.mp4"
    newer = directory / "recording_2024-05-02_08-00-00.mp4"
    older.write_bytes(b"\0" * (1024 * 1024))
    newer.write_bytes(b"\0" * 1024)
    (directory / "notes.txt").write_text("ignored", encoding="utf-8")
    os.utime(older, (1_700_000_000, 1_700_000_000))
    os.utime(newer, (1_700_100_000, 1_700_100_000))

    entries = list_recording_files(directory)

    assert [entry["name"] for entry in entries] == [newer.name, older.name]
    assert entries[1]["size"] == 1024 * 1024
    assert entries[1]["size_formatted"] == "1.00 MB"
    assert entries[0]["size_formatted"] == "0.00 MB"
    assert datetime.fromisoformat(entries[0]["date"]).timestamp() == 1_700_100_000


def test_list_recordings_creates_missing_directory(tmp_path, hub, processes) -> None:
    session = _session(tmp_path, hub, processes)
    assert session.list_recordings() == []
    assert (tmp_path / "recordings").is_dir()


@pytest.mark.parametrize(
    "name", ["../secret.mp4", "sub/recording.mp4", "..", "", "/etc/passwd", "..\\secret.mp4"]
)
def test_delete_rejects_path_traversal(tmp_path, hub, processes, name) -> None:
    outside = tmp_path / "secret.mp4"
    outside.write_bytes(b"keep")
    session = _session(tmp_path, hub, processes)
    (tmp_path / "recordings").mkdir()

    with pytest.raises(PathTraversalError):
        session.delete_recording(name)

    assert outside.exists()


def test_delete_existing_and_missing_recordings(tmp_path, hub, processes) -> None:
    session = _session(tmp_path, hub, processes)
    directory = tmp_path / "recordings"
    directory.mkdir()
    target = directory / "recording_2024-05-01_08-00-00.mp4"
    target.write_bytes(b"data")

    assert session.delete_recording(target.name) == {"message": f"Deleted {target.name}."}
    assert not target.exists()
    with pytest.raises(NotFoundError):
        session.delete_recording(target.name)


def test_file_is_hidden_until_transcoder_is_ready(tmp_path, hub, processes, recorded) -> None:
    async def scenario():
        processes.gate = asyncio.Event()
        session = _session(tmp_path, hub, processes)
        task = asyncio.create_task(session.start_recording("rtsp://cam.local/x"))
        for _ in range(5):
            await asyncio.sleep(0)
        pending = session.get_status()
        with pytest.raises(AlreadyActiveError):
            await session.start_recording("rtsp://cam.local/y")
        processes.gate.set()
        await task
        return pending, session.get_status()

    pending, ready = asyncio.run(scenario())
    assert pending["status"] == "idle"
    assert pending["file"] is None
    assert pending["url"] is None
    assert pending["duration"] == 0
    assert ready["status"] == "recording"
    assert ready["file"] == "recording_2024-05-01_10-00-05.mp4"
    assert recorded.statuses(RECORDER_STATUS) == ["recording"]


def test_failed_pending_start_reports_no_file(tmp_path, hub, processes, recorded) -> None:
    async def scenario():
        processes.gate = asyncio.Event()
        processes.fail = "Connection refused"
        session = _session(tmp_path, hub, processes)
        task = asyncio.create_task(session.start_recording("rtsp://cam.local/x"))
        await asyncio.sleep(0)
        processes.gate.set()
        with pytest.raises(TranscodeFailedError):
            await task

    asyncio.run(scenario())
    (payload,) = recorded.of(RECORDER_STATUS)
    assert payload["status"] == "error"
    assert payload["file"] is None
    assert payload["url"] is None


def test_recordings_use_graceful_handles(tmp_path, hub, processes) -> None:
    async def scenario():
        session = _session(tmp_path, hub, processes)
        await session.start_recording("http://cam.local/video.cgi")
        await session.stop_recording()
        await session.start_recording("rtsp://cam.local/x", include_audio=False)
        await session.stop_recording()

    asyncio.run(scenario())
    assert [handle.kind for handle in processes.handles] == ["spawn", "command"]
    assert all(handle.graceful for handle in processes.handles)


def test_stop_waits_for_transcoder_to_finish_writing(tmp_path, hub) -> None:
    armed = tmp_path / "armed"
    finalised = tmp_path / "finalised"
    binary = tmp_path / "fake-ffmpeg"
    binary.write_text(
        "#!/bin/sh\n"
        f"trap 'sleep 1; touch \"{finalised}\"; exit 0' TERM\n"
        f"touch \"{armed}\"\n"
        "while true; do sleep 0.1; done\n",
        encoding="utf-8",
    )
    binary.chmod(binary.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

    async def wait_until_armed() -> None:
        while not armed.exists():
            await asyncio.sleep(0.01)

    async def scenario():
        session = RecordingSession(
            recordings_dir=tmp_path / "recordings",
            events=hub,
            ffmpeg_path=str(binary),
            processes=ProcessFactory(stop_timeout=0.2),
        )
        await asyncio.wait_for(
            session.start_recording("rtsp://cam.local/x", include_audio=False), 10
        )
        await asyncio.wait_for(wait_until_armed(), 10)
        handle = session.process
        stopped = await asyncio.wait_for(session.stop_recording(), 10)
        return handle.exit, stopped

    result, stopped = asyncio.run(scenario())
    assert finalised.exists()
    assert result.requested is True
    assert result.returncode == 0
    assert stopped["message"] == "Recording stopped."
