"""Exception taxonomy shared by the DevSpace server components."""

from __future__ import annotations

from typing import Optional


class DevSpaceError(Exception):
    """Base class for errors raised by ds_server."""


class ConfigError(DevSpaceError):
    """Raised when the server configuration is unusable (e.g. missing secret)."""


class PayloadValidationError(DevSpaceError, ValueError):
    """Raised when an inbound message does not match its declared shape."""


class SessionLimitError(DevSpaceError):
    """Raised when a global or per-user session ceiling would be exceeded."""


class ProvisionError(DevSpaceError):
    """Raised when a sandbox cannot be created or started."""


class ImageNotAllowedError(ProvisionError):
    """Raised when the requested sandbox image is not on the allow-list."""


class SandboxGoneError(DevSpaceError):
    """Raised when the container engine reports the sandbox no longer exists."""


class FsOperationError(DevSpaceError):
    """
    A filesystem proxy operation failed. Carries the operation tag and the
    relative path it targeted so the transport can report it per request.
    """

    def __init__(self, op: str, message: str, path: Optional[str] = None) -> None:
        super().__init__(message)
        self.op = op
        self.path = path


__all__ = [
    "DevSpaceError",
    "ConfigError",
    "PayloadValidationError",
    "SessionLimitError",
    "ProvisionError",
    "ImageNotAllowedError",
    "SandboxGoneError",
    "FsOperationError",
]
