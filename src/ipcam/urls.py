"""Helpers deriving companion URLs and classifying camera sources."""
from __future__ import annotations

import re
from urllib.parse import urlsplit, urlunsplit

AUDIO_PATH = "/audio.cgi"

RTSP_INPUT_OPTIONS: tuple[str, ...] = ("-rtsp_transport", "tcp", "-timeout", "5000000")

_MJPEG_PATTERN = re.compile(r"mjpe?g", re.IGNORECASE)


def _scheme(url: str) -> str:
    try:
        return urlsplit(url).scheme.lower()
    except ValueError:
        return ""


def derive_audio_url(video_url: str | None) -> str | None:
    """Return the camera's audio endpoint for ``video_url``.

    The path is replaced by :data:`AUDIO_PATH` while the scheme, credentials,
    host, port and query string are preserved. ``None`` is returned when the
    value is not an absolute URL.
    """

    if not video_url:
        return None
    try:
        parts = urlsplit(video_url)
        # Accessing the port validates it and raises for garbage values.
        parts.port
    except ValueError:
        return None
    if not parts.scheme or not parts.netloc:
        return None
    return urlunsplit(parts._replace(path=AUDIO_PATH))


def is_mjpeg_url(url: str | None) -> bool:
    """Return ``True`` when ``url`` should be proxied rather than transcoded.

    Any plain ``http`` source is treated as MJPEG, as is any URL mentioning
    ``mjpg``/``mjpeg``.
    """

    if not url:
        return False
    if _MJPEG_PATTERN.search(url):
        return True
    return _scheme(url) == "http"


def is_rtsp_url(url: str | None) -> bool:
    return bool(url) and _scheme(url) == "rtsp"


def rtsp_input_options(url: str) -> list[str]:
    """Return transport tuning flags to place before an RTSP input."""

    return list(RTSP_INPUT_OPTIONS) if is_rtsp_url(url) else []


def mask_url_password(url: str | None) -> str | None:
    """Return ``url`` with any embedded password replaced by asterisks."""

    if not url:
        return url
    try:
        parsed = urlsplit(url)
        port = parsed.port
    except ValueError:
        return url
    if parsed.username is None and parsed.password is None:
        return url

    username = parsed.username or ""
    password = parsed.password or ""
    userinfo = username
    if password:
        stars = "*" * len(password)
        userinfo = f"{username}:{stars}" if username else stars

    host = parsed.hostname or ""
    if port:
        host = f"{host}:{port}"
    netloc = f"{userinfo}@{host}" if userinfo else host
    return urlunsplit(parsed._replace(netloc=netloc))


__all__ = [
    "AUDIO_PATH",
    "RTSP_INPUT_OPTIONS",
    "derive_audio_url",
    "is_mjpeg_url",
    "is_rtsp_url",
    "mask_url_password",
    "rtsp_input_options",
]
