from __future__ import annotations

"""
Terminal transport: the ``/ws`` WebSocket endpoint.

Frames are JSON objects ``{"event": <name>, "data": <payload>}`` in both
directions. Per connection:

- the receive loop parses frames and hands them to a ConnectionActor inbox;
- the actor handles events one at a time, so keystrokes reach the shell in
  the order they were typed (filesystem operations are spawned as tasks so a
  slow read never stalls the terminal);
- a single writer task drains the connection outbox, preserving emission
  order for everything the server sends.
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type

from docker.errors import DockerException
from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from ds_server.app.deps import get_controller
from ds_server.app.errors import FsOperationError, PayloadValidationError, SandboxGoneError
from ds_server.app.models import (
    FsPathRequest,
    FsRenameRequest,
    FsWriteRequest,
    InputRequest,
    KillRequest,
    ResizeRequest,
    StatsRequest,
)
from ds_server.app.security import validate
from ds_server.app.sessions.controller import SessionController
from ds_server.app.sessions.session import Connection, Session, TerminationReason

logger = logging.getLogger("devspace.socket")

router = APIRouter()

__all__ = ["router", "ConnectionActor", "parse_frame"]

# Events that do not count as user activity for the idle monitor.
_PASSIVE_EVENTS = {"session:ping", "session:pong", "stats:subscribe", "stats:unsubscribe"}

FsHandler = Callable[[Session, Any], Awaitable[Dict[str, Any]]]

# event -> (payload model, op tag, handler, tree change kind or None)
_FS_OPS: Dict[str, Tuple[Type[BaseModel], str, FsHandler, Optional[str]]] = {
    "fs:list": (FsPathRequest, "list", lambda s, r: s.fs.list_directory(r.path), None),
    "fs:read": (FsPathRequest, "read", lambda s, r: s.fs.read_file(r.path), None),
    "fs:write": (FsWriteRequest, "write", lambda s, r: s.fs.write_file(r.path, r.content), "write"),
    "fs:createDir": (FsPathRequest, "createDir", lambda s, r: s.fs.create_directory(r.path), "mkdir"),
    "fs:delete": (FsPathRequest, "delete", lambda s, r: s.fs.delete_entry(r.path), "delete"),
    "fs:rename": (FsRenameRequest, "rename", lambda s, r: s.fs.rename_entry(r.from_path, r.to_path), "rename"),
}


def parse_frame(text: str) -> Optional[Tuple[str, Any]]:
    """``(event, data)`` from a text frame, or None when it is not a valid frame."""
    try:
        frame = json.loads(text)
    except ValueError:
        return None
    if not isinstance(frame, dict):
        return None
    event = frame.get("event")
    if not isinstance(event, str) or not event:
        return None
    return event, frame.get("data")


class ConnectionActor:
    """
    Owns one connection's inbound message channel. ``close`` enqueues a
    sentinel; once reached, the session is handed to the disconnect path.
    """

    def __init__(self, controller: SessionController, conn: Connection) -> None:
        self.controller = controller
        self.conn = conn
        self.inbox: asyncio.Queue[Optional[Tuple[str, Any]]] = asyncio.Queue()

    def submit(self, event: str, data: Any) -> None:
        self.inbox.put_nowait((event, data))

    def close(self) -> None:
        self.inbox.put_nowait(None)

    async def run(self) -> None:
        while True:
            item = await self.inbox.get()
            if item is None:
                break
            event, data = item
            try:
                await self.dispatch(event, data)
            except Exception:
                logger.exception("Handler for %s failed on connection=%s", event, self.conn.connection_id)
        self.controller.disconnect(self.conn)

    # ---------- dispatch ----------

    async def dispatch(self, event: str, data: Any) -> None:
        if event not in _PASSIVE_EVENTS:
            self.controller.mark_activity(self.conn)

        if event == "workspace:init":
            await self.controller.init(self.conn, data)
        elif event == "session:pong":
            self.controller.pong(self.conn)
        elif event == "terminal:input":
            req = self._validate(InputRequest, event, data)
            session = self._authorize(req)
            if session is not None:
                await self.controller.write_input(session, req.data)
        elif event == "terminal:resize":
            req = self._validate(ResizeRequest, event, data)
            session = self._authorize(req)
            if session is not None:
                await self.controller.resize(session, req.cols, req.rows)
        elif event == "terminal:kill":
            session = self._authorize(self._validate(KillRequest, event, data))
            if session is not None:
                await self.controller.terminate(session, TerminationReason.KILLED)
        elif event == "stats:subscribe":
            session = self._authorize(self._validate(StatsRequest, event, data))
            if session is not None:
                self.controller.subscribe_stats(session)
        elif event == "stats:unsubscribe":
            session = self._authorize(self._validate(StatsRequest, event, data))
            if session is not None:
                self.controller.unsubscribe_stats(session)
        elif event in _FS_OPS:
            self.controller.spawn(self._fs_operation(event, data), name=f"{event}-{self.conn.connection_id[:8]}")
        elif event == "fs:downloadToken":
            self._download_token(data)
        elif event == "fs:treeSimple:resync":
            session = self.controller.registry.get_by_connection(self.conn.connection_id)
            if session is not None and not session.closed and session.tree is not None:
                self.controller.spawn(session.tree.resync(), name=f"resync-{session.session_id}")
        elif event == "session:ping":
            pass
        else:
            logger.debug("Ignoring unknown event %r on connection=%s", event, self.conn.connection_id)

    def _validate(self, model: Type[BaseModel], event: str, data: Any) -> Optional[Any]:
        try:
            return validate(model, data)
        except PayloadValidationError as exc:
            self.conn.emit("terminal:data", f"\r\n[invalid {event}] {exc}\r\n")
            return None

    def _authorize(self, req: Optional[Any]) -> Optional[Session]:
        if req is None:
            return None
        session = self.controller.authorize(self.conn, req)
        if session is None:
            logger.debug("Dropped unauthorized request on connection=%s", self.conn.connection_id)
        return session

    # ---------- filesystem ----------

    def _fs_error(self, request_id: Any, op: str, message: str, path: Optional[str] = None) -> None:
        payload: Dict[str, Any] = {"requestId": request_id, "op": op, "message": message}
        if path is not None:
            payload["path"] = path
        self.conn.emit("fs:error", payload)

    async def _fs_operation(self, event: str, data: Any) -> None:
        model, op, handler, change = _FS_OPS[event]
        request_id = data.get("requestId") if isinstance(data, dict) else None
        try:
            req = validate(model, data)
        except PayloadValidationError as exc:
            self._fs_error(request_id, op, str(exc))
            return

        session = self.controller.authorize(self.conn, req)
        if session is None or session.fs is None:
            self._fs_error(req.requestId, op, "Unauthorized")
            return

        try:
            result = await handler(session, req)
        except FsOperationError as exc:
            self._fs_error(req.requestId, op, str(exc), exc.path)
            return
        except SandboxGoneError:
            self._fs_error(req.requestId, op, "Sandbox is no longer available")
            return
        except (DockerException, OSError) as exc:
            logger.warning("fs %s failed for session=%s: %s", op, session.session_id, exc)
            self._fs_error(req.requestId, op, str(exc))
            return

        self.conn.emit(f"fs:{op}Result", {"requestId": req.requestId, **result})
        if change is None:
            return
        if session.tree is not None:
            session.tree.nudge(op)
        if change == "rename":
            self.conn.emit("fs:delta", {"change": change, "from": result["from"], "to": result["to"]})
        else:
            self.conn.emit("fs:delta", {"change": change, "path": result["path"]})

    def _download_token(self, data: Any) -> None:
        request_id = data.get("requestId") if isinstance(data, dict) else None
        try:
            req = validate(FsPathRequest, data)
        except PayloadValidationError as exc:
            self._fs_error(request_id, "downloadToken", str(exc))
            return
        session = self.controller.authorize(self.conn, req)
        if session is None:
            self._fs_error(req.requestId, "downloadToken", "Unauthorized")
            return
        token = self.controller.issue_download_token(session, req.path)
        self.conn.emit("fs:downloadTokenResult", {"requestId": req.requestId, "token": token})


# ---------- WebSocket endpoint ----------

async def _drain_outbox(websocket: WebSocket, conn: Connection) -> None:
    while True:
        frame = await conn.outbox.get()
        if frame is None:
            return
        try:
            await websocket.send_json(frame)
        except (WebSocketDisconnect, RuntimeError, OSError) as exc:
            logger.debug("Writer stopped for connection=%s: %s", conn.connection_id, exc)
            conn.close()
            return


@router.websocket("/ws")
async def workspace_socket(websocket: WebSocket, controller: SessionController = Depends(get_controller)) -> None:
    await websocket.accept()
    conn = Connection()
    actor = ConnectionActor(controller, conn)
    writer = asyncio.create_task(_drain_outbox(websocket, conn), name=f"ws-writer-{conn.connection_id[:8]}")
    runner = asyncio.create_task(actor.run(), name=f"ws-actor-{conn.connection_id[:8]}")
    logger.info("Connection opened connection=%s", conn.connection_id)
    try:
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                raise WebSocketDisconnect(message.get("code", 1000), message.get("reason"))
            text = message.get("text")
            if text is None:
                logger.debug("Skipping binary frame on connection=%s", conn.connection_id)
                continue
            frame = parse_frame(text)
            if frame is None:
                logger.debug("Skipping malformed frame on connection=%s", conn.connection_id)
                continue
            actor.submit(*frame)
    except WebSocketDisconnect as exc:
        logger.info("Connection closed connection=%s code=%s", conn.connection_id, exc.code)
    finally:
        conn.close()
        actor.close()
        await runner
        await writer
