"""Exceptions raised by the ipcam session and schedule services."""
from __future__ import annotations


class IPCamError(RuntimeError):
    """Base error for camera session, recording and schedule failures."""


class InvalidArgumentError(IPCamError, ValueError):
    """Raised when a required input is missing or malformed."""


class AlreadyActiveError(IPCamError):
    """Raised when a session slot is already occupied."""


class TranscodeFailedError(IPCamError):
    """Raised when the transcoder could not start producing output."""

    def __init__(self, message: str, *, diagnostic: str | None = None) -> None:
        super().__init__(message)
        self.diagnostic = diagnostic


class ConnectFailedError(TranscodeFailedError):
    """Raised when a live stream could not connect to its camera."""


class NotFoundError(IPCamError, LookupError):
    """Raised when a referenced schedule or recording does not exist."""


class PathTraversalError(InvalidArgumentError):
    """Raised when a filename resolves outside the recordings directory."""


__all__ = [
    "AlreadyActiveError",
    "ConnectFailedError",
    "IPCamError",
    "InvalidArgumentError",
    "NotFoundError",
    "PathTraversalError",
    "TranscodeFailedError",
]
