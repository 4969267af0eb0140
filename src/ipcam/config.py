"""Configuration loading for ipcam."""
from __future__ import annotations

import json
import math
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping

DEFAULT_CONFIG_PATH = Path("data/config.json")

DEFAULT_HLS_SEGMENT_DURATION = 2
DEFAULT_HLS_LIST_SIZE = 5
DEFAULT_HEALTH_CHECK_INTERVAL = 15.0
DEFAULT_PORT = 3000

# Environment variables override values read from the JSON file.
_ENV_OVERRIDES: dict[str, str] = {
    "IPCAM_STREAM_DIR": "streamDir",
    "IPCAM_RECORDINGS_DIR": "recordingsDir",
    "IPCAM_SCHEDULES_FILE": "schedulesFile",
    "IPCAM_EVENT_LOG_FILE": "eventLogFile",
    "IPCAM_FFMPEG_PATH": "ffmpegPath",
    "IPCAM_PORT": "port",
}


@dataclass(frozen=True, slots=True)
class AppConfig:
    """Filesystem locations and transcoder tuning used by the sessions."""

    stream_dir: Path = Path("data/stream")
    recordings_dir: Path = Path("data/recordings")
    schedules_file: Path = Path("data/schedules.json")
    event_log_file: Path | None = Path("data/events.jsonl")
    ffmpeg_path: str | None = None
    hls_segment_duration: int = DEFAULT_HLS_SEGMENT_DURATION
    hls_list_size: int = DEFAULT_HLS_LIST_SIZE
    health_check_interval: float = DEFAULT_HEALTH_CHECK_INTERVAL
    port: int = DEFAULT_PORT

    def __post_init__(self) -> None:
        if self.hls_segment_duration < 1:
            raise ValueError("HLS segment duration must be at least one second")
        if self.hls_list_size < 1:
            raise ValueError("HLS list size must be positive")
        if not math.isfinite(self.health_check_interval) or self.health_check_interval <= 0:
            raise ValueError("Health check interval must be a positive number of seconds")
        if self.port < 1 or self.port > 65535:
            raise ValueError("Port must be between 1 and 65535")

    def to_dict(self) -> dict[str, object]:
        return {
            "streamDir": str(self.stream_dir),
            "recordingsDir": str(self.recordings_dir),
            "schedulesFile": str(self.schedules_file),
            "eventLogFile": str(self.event_log_file) if self.event_log_file else None,
            "ffmpegPath": self.ffmpeg_path,
            "hlsSegmentDuration": self.hls_segment_duration,
            "hlsListSize": self.hls_list_size,
            "healthCheckInterval": self.health_check_interval,
            "port": self.port,
        }


def _parse_int(value: Any, *, default: int, name: str) -> int:
    if value is None or value == "":
        return default
    if isinstance(value, bool):
        raise ValueError(f"{name} must be an integer")
    try:
        return int(float(value))
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be an integer") from exc


def _parse_float(value: Any, *, default: float, name: str) -> float:
    if value is None or value == "":
        return default
    try:
        result = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{name} must be numeric") from exc
    if math.isnan(result):
        raise ValueError(f"{name} must be numeric")
    return result


def _parse_path(value: Any, *, default: Path, base: Path) -> Path:
    if value is None:
        return default if default.is_absolute() else base / default
    text = str(value).strip()
    if not text:
        return default if default.is_absolute() else base / default
    path = Path(text).expanduser()
    return path if path.is_absolute() else base / path


def parse_config(payload: Mapping[str, Any], *, base: Path | None = None) -> AppConfig:
    """Build an :class:`AppConfig` from a mapping using the on-disk key names."""

    root = Path(base) if base is not None else Path.cwd()
    defaults = AppConfig()
    event_log_raw = payload.get("eventLogFile", ...)
    if event_log_raw is None or event_log_raw is False:
        event_log: Path | None = None
    elif event_log_raw is ...:
        event_log = _parse_path(None, default=Path("data/events.jsonl"), base=root)
    else:
        event_log = _parse_path(event_log_raw, default=Path("data/events.jsonl"), base=root)
    ffmpeg_raw = payload.get("ffmpegPath")
    ffmpeg_path = str(ffmpeg_raw).strip() if ffmpeg_raw else None
    return AppConfig(
        stream_dir=_parse_path(payload.get("streamDir"), default=defaults.stream_dir, base=root),
        recordings_dir=_parse_path(
            payload.get("recordingsDir"), default=defaults.recordings_dir, base=root
        ),
        schedules_file=_parse_path(
            payload.get("schedulesFile"), default=defaults.schedules_file, base=root
        ),
        event_log_file=event_log,
        ffmpeg_path=ffmpeg_path or None,
        hls_segment_duration=_parse_int(
            payload.get("hlsSegmentDuration"),
            default=defaults.hls_segment_duration,
            name="hlsSegmentDuration",
        ),
        hls_list_size=_parse_int(
            payload.get("hlsListSize"), default=defaults.hls_list_size, name="hlsListSize"
        ),
        health_check_interval=_parse_float(
            payload.get("healthCheckInterval"),
            default=defaults.health_check_interval,
            name="healthCheckInterval",
        ),
        port=_parse_int(payload.get("port"), default=defaults.port, name="port"),
    )


def load_config(
    path: Path | str | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> AppConfig:
    """Read configuration from ``path`` and apply ``IPCAM_*`` overrides.

    A missing file yields the defaults. Relative locations are resolved
    against the directory holding the configuration file.
    """

    config_path = Path(path) if path is not None else DEFAULT_CONFIG_PATH
    env = os.environ if environ is None else environ
    payload: dict[str, Any] = {}
    if config_path.exists():
        try:
            raw = json.loads(config_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise RuntimeError(f"Failed to load configuration: {exc}") from exc
        if not isinstance(raw, Mapping):
            raise RuntimeError("Configuration file must contain a JSON object")
        payload.update(raw)
    for variable, key in _ENV_OVERRIDES.items():
        value = env.get(variable)
        if value:
            payload[key] = value
    base = config_path.parent.resolve()
    return parse_config(payload, base=base)


__all__ = ["AppConfig", "DEFAULT_CONFIG_PATH", "load_config", "parse_config"]
