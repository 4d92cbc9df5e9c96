from __future__ import annotations

"""
HTTP surface next to the WebSocket: health, client config, one-shot tar
downloads and the session cookie used by the browser client.
"""

import logging
from typing import Any, Dict, Iterator

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from fastapi.responses import JSONResponse, StreamingResponse

from ds_server.app.config import ServerConfig
from ds_server.app.deps import get_controller, get_settings
from ds_server.app.errors import FsOperationError, SandboxGoneError
from ds_server.app.models import SessionCookieRequest
from ds_server.app.sessions.controller import FS_MODE, SessionController

logger = logging.getLogger("devspace.http")

router = APIRouter()

__all__ = ["router"]

SESSION_COOKIE = "devspace_session"
USER_COOKIE = "devspace_user"


@router.get("/health")
async def health(
    controller: SessionController = Depends(get_controller),
    settings: ServerConfig = Depends(get_settings),
) -> Dict[str, Any]:
    """
    Liveness probe; intentionally unauthenticated.
    """
    return {
        "status": "ok",
        "service": "DevSpace",
        "version": settings.service_version,
        "host": controller.hostname,
        "sessions": controller.registry.stats(),
    }


@router.get("/config")
async def client_config(settings: ServerConfig = Depends(get_settings)) -> Dict[str, Any]:
    return {
        "allowlist": list(settings.allowlist_images),
        "baseImage": settings.base_image,
        "network": {"allowedModes": [settings.network_mode], "defaultMode": settings.network_mode},
        "limits": {
            "memory": settings.memory_limit,
            "cpus": settings.cpu_limit,
            "pidsLimit": settings.pids_limit,
            "idleMinutes": settings.idle_minutes,
        },
        "fsMode": FS_MODE,
        "sessionGraceSeconds": settings.session_grace_period_ms // 1000,
    }


def _iter_chunks(stream: Iterator[bytes]) -> Iterator[bytes]:
    for chunk in stream:
        yield bytes(chunk)


@router.get("/download")
async def download(
    token: str = Query(..., min_length=1, max_length=200),
    controller: SessionController = Depends(get_controller),
):
    """
    Exchange a single-use download token (issued over ``fs:downloadToken``)
    for a tar stream of the granted path.
    """
    try:
        opened, expired = await controller.open_download(token)
    except FsOperationError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    except SandboxGoneError:
        raise HTTPException(status_code=410, detail="Session ended")
    if opened is None:
        if expired:
            raise HTTPException(status_code=410, detail="Token expired")
        raise HTTPException(status_code=404, detail="Invalid token")

    stream, filename = opened
    headers = {"Content-Disposition": f'attachment; filename="{filename}"'}
    return StreamingResponse(_iter_chunks(stream), media_type="application/x-tar", headers=headers)


@router.post("/set-session-cookie")
async def set_session_cookie(
    body: SessionCookieRequest,
    response: Response,
    settings: ServerConfig = Depends(get_settings),
):
    if not body.sessionId or not body.username:
        return JSONResponse(status_code=400, content={"error": "Missing sessionId or username"})
    max_age = settings.session_grace_period_ms // 1000
    for name, value in ((SESSION_COOKIE, body.sessionId), (USER_COOKIE, body.username)):
        response.set_cookie(name, value, max_age=max_age, httponly=True, samesite="lax")
    return {"ok": True}
