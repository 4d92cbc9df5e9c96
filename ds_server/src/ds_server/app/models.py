from __future__ import annotations

"""
Pydantic models for inbound DevSpace messages.

Every WebSocket event payload is validated against one of these shapes before
any handler logic runs. Unknown fields are dropped (``extra="ignore"``) so
older or newer clients sending extra keys keep working.

Bounds mirror the limits the browser client was built against:
- usernames are 1-32 chars of ``[A-Za-z0-9._-]``
- session ids 5-100 chars, tokens 10-200 chars
- terminal input at most 8 KiB per message
- PTY geometry 10-1000 columns, 5-500 rows
"""

from typing import Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class InboundModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


# -----------------------
# Session setup
# -----------------------

class InitRequest(InboundModel):
    username: str = Field(..., min_length=1, max_length=32, pattern=r"^[A-Za-z0-9._-]+$")
    sessionId: Optional[str] = Field(default=None, min_length=5, max_length=100)


class AuthenticatedRequest(InboundModel):
    """
    Base shape for every operation bound to an existing session.
    """
    sessionId: str = Field(..., min_length=5, max_length=100)
    token: str = Field(..., min_length=10, max_length=200)


# -----------------------
# Terminal
# -----------------------

class InputRequest(AuthenticatedRequest):
    data: str = Field(..., max_length=8192)


class ResizeRequest(AuthenticatedRequest):
    cols: int = Field(..., ge=10, le=1000)
    rows: int = Field(..., ge=5, le=500)


class KillRequest(AuthenticatedRequest):
    pass


class StatsRequest(AuthenticatedRequest):
    pass


# -----------------------
# Filesystem proxy
# -----------------------

class FsPathRequest(AuthenticatedRequest):
    requestId: Optional[Union[str, int]] = Field(default=None)
    path: str = Field(default="", max_length=4096)


class FsWriteRequest(FsPathRequest):
    content: str = Field(default="", max_length=5 * 1024 * 1024)


class FsRenameRequest(AuthenticatedRequest):
    requestId: Optional[Union[str, int]] = Field(default=None)
    from_path: str = Field(..., alias="from", min_length=1, max_length=4096)
    to_path: str = Field(..., alias="to", min_length=1, max_length=4096)


# -----------------------
# HTTP surface
# -----------------------

class SessionCookieRequest(BaseModel):
    """
    Body of POST /set-session-cookie. Fields are optional so the route can
    answer with a plain 400 instead of a schema error.
    """
    sessionId: Optional[str] = Field(default=None, max_length=100)
    username: Optional[str] = Field(default=None, max_length=32)


__all__ = [
    "InboundModel",
    "InitRequest",
    "AuthenticatedRequest",
    "InputRequest",
    "ResizeRequest",
    "KillRequest",
    "StatsRequest",
    "FsPathRequest",
    "FsWriteRequest",
    "FsRenameRequest",
    "SessionCookieRequest",
]
