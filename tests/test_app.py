"""Tests for the HTTP and WebSocket surface."""

from __future__ import annotations

from pathlib import Path

import pytest

pytest.importorskip("httpx")

from fastapi import FastAPI
from fastapi.testclient import TestClient

from ipcam.app import create_app
from ipcam.config import AppConfig


def build_app(tmp_path: Path, processes) -> FastAPI:
    config = AppConfig(
        stream_dir=tmp_path / "stream",
        recordings_dir=tmp_path / "recordings",
        schedules_file=tmp_path / "schedules.json",
        event_log_file=tmp_path / "events.jsonl",
        ffmpeg_path="ffmpeg",
    )
    return create_app(tmp_path / "config.json", config=config, processes=processes)


def test_stream_endpoints(tmp_path: Path, processes) -> None:
    app = build_app(tmp_path, processes)
    with TestClient(app) as client:
        response = client.get("/api/status")
        assert response.status_code == 200
        assert response.json()["camera"]["status"] == "idle"
        assert response.json()["recorder"]["status"] == "idle"

        response = client.post("/api/stream/start", json={})
        assert response.status_code == 400
        assert response.json()["detail"] == "Camera URL is required."

        response = client.post("/api/stream/start", json={"cameraUrl": "rtsp://cam.local/1"})
        assert response.status_code == 200
        assert response.json()["stream_type"] == "hls"

        response = client.post("/api/stream/start", json={"cameraUrl": "rtsp://cam.local/2"})
        assert response.status_code == 409

        response = client.get("/api/stream/status")
        assert response.json()["url"] == "rtsp://cam.local/1"

        response = client.post("/api/stream/stop")
        assert response.json() == {"status": "idle", "message": "Stream stopped."}

        response = client.get("/api/events", params={"category": "camera"})
        statuses = [entry["details"]["status"] for entry in response.json()["entries"]]
        assert statuses == ["connecting", "streaming", "idle"]


def test_stream_failure_maps_to_bad_gateway(tmp_path: Path, processes) -> None:
    processes.fail = "Connection refused"
    app = build_app(tmp_path, processes)
    with TestClient(app) as client:
        response = client.post("/api/stream/start", json={"cameraUrl": "rtsp://cam.local/1"})
        assert response.status_code == 502
        assert "Connection refused" in response.json()["detail"]
        assert client.get("/api/stream/status").json()["status"] == "idle"


def test_stream_and_recording_are_independent(tmp_path: Path, processes) -> None:
    app = build_app(tmp_path, processes)
    with TestClient(app) as client:
        assert client.post("/api/stream/start", json={"cameraUrl": "rtsp://cam.local/1"}).status_code == 200
        response = client.post(
            "/api/record/start",
            json={"cameraUrl": "rtsp://cam.local/1", "includeAudio": False},
        )
        assert response.status_code == 200
        assert response.json()["audio"] is False

        client.post("/api/record/stop")
        status = client.get("/api/status").json()
        assert status["camera"]["status"] == "streaming"
        assert status["recorder"]["status"] == "idle"

        client.post("/api/record/start", json={"cameraUrl": "rtsp://cam.local/2"})
        client.post("/api/stream/stop")
        status = client.get("/api/status").json()
        assert status["camera"]["status"] == "idle"
        assert status["recorder"]["status"] == "recording"
        client.post("/api/record/stop")


def test_recordings_endpoints(tmp_path: Path, processes) -> None:
    app = build_app(tmp_path, processes)
    recordings = tmp_path / "recordings"
    recordings.mkdir()
    (recordings / "recording_2024-05-01_10-00-00.mp4").write_bytes(b"movie")

    with TestClient(app) as client:
        response = client.get("/api/recordings")
        assert [item["name"] for item in response.json()] == ["recording_2024-05-01_10-00-00.mp4"]

        response = client.get("/api/recordings/recording_2024-05-01_10-00-00.mp4")
        assert response.status_code == 200
        assert response.content == b"movie"
        assert response.headers["content-type"] == "video/mp4"

        response = client.delete("/api/recordings/recording_2024-05-01_10-00-00.mp4")
        assert response.json() == {"message": "Deleted recording_2024-05-01_10-00-00.mp4."}

        response = client.delete("/api/recordings/recording_2024-05-01_10-00-00.mp4")
        assert response.status_code == 404

        response = client.get("/api/recordings/..secret")
        assert response.status_code == 404


def test_schedule_endpoints(tmp_path: Path, processes) -> None:
    app = build_app(tmp_path, processes)
    with TestClient(app) as client:
        response = client.post("/api/schedules", json={"name": "Porch"})
        assert response.status_code == 400

        response = client.post(
            "/api/schedules",
            json={"name": "Porch", "cameraUrl": "rtsp://cam.local/1", "startTime": "07:30"},
        )
        assert response.status_code == 200
        created = response.json()
        assert created["durationMinutes"] == 60
        assert created["nextRun"] is not None
        schedule_id = created["id"]

        response = client.put(f"/api/schedules/{schedule_id}", json={"enabled": False})
        assert response.json()["enabled"] is False
        assert response.json()["nextRun"] is None
        assert response.json()["name"] == "Porch"

        response = client.put(f"/api/schedules/{schedule_id}", json={"startTime": "7pm"})
        assert response.status_code == 400

        assert [item["id"] for item in client.get("/api/schedules").json()] == [schedule_id]
        assert client.get(f"/api/schedules/{schedule_id}").json()["startTime"] == "07:30"

        response = client.delete(f"/api/schedules/{schedule_id}")
        assert response.json() == {"message": "Schedule deleted."}
        assert client.delete(f"/api/schedules/{schedule_id}").status_code == 404
        assert client.get(f"/api/schedules/{schedule_id}").status_code == 404


def test_websocket_pushes_initial_status_and_updates(tmp_path: Path, processes) -> None:
    app = build_app(tmp_path, processes)
    with TestClient(app) as client:
        with client.websocket_connect("/ws") as websocket:
            initial = websocket.receive_json()
            assert initial["type"] == "status"
            assert initial["camera"]["status"] == "idle"
            assert initial["recorder"]["status"] == "idle"

            client.post("/api/stream/start", json={"cameraUrl": "rtsp://cam.local/1"})
            first = websocket.receive_json()
            second = websocket.receive_json()
            assert (first["type"], first["status"]) == ("camera_status", "connecting")
            assert (second["type"], second["status"]) == ("camera_status", "streaming")
            assert second["url"] == "rtsp://cam.local/1"

        client.post("/api/stream/stop")
