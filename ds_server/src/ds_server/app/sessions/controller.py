from __future__ import annotations

"""
Session lifecycle controller.

State machine per session:

    NEW --provision ok--> RUNNING
    NEW --provision fails--> never registered, workspace:error to the caller
    RUNNING --transport drop--> DISCONNECTED (grace timer running)
    DISCONNECTED --same sessionId within grace--> RUNNING (token re-derived)
    DISCONNECTED --grace expires--> TERMINATED
    RUNNING --kill / idle / resource / shell end--> TERMINATED

TERMINATED is absorbing. ``terminate`` is the single teardown routine for
every exit path; the ``closed`` flag is set before its first await so that
concurrent triggers (idle monitor racing a client kill) tear down once.

Blocking Docker calls run through asyncio.to_thread. The two long-lived
streams (shell output, resource stats) run on daemon threads owned by the
runtime and hop back onto the loop with call_soon_threadsafe.
"""

import asyncio
import logging
import socket
from collections import deque
from typing import Any, Callable, Coroutine, Deque, Dict, Iterator, Optional, Set, Tuple

from docker.errors import DockerException

from ds_server.app.config import ServerConfig
from ds_server.app.errors import PayloadValidationError, ProvisionError, SessionLimitError
from ds_server.app.models import AuthenticatedRequest, InitRequest
from ds_server.app.sandbox.core import gen_session_id, monotonic
from ds_server.app.sandbox.fs_ops import SandboxFS, sanitize_rel
from ds_server.app.sandbox.runtime import ResourceSample, SandboxRuntime
from ds_server.app.sandbox.tree import TreeSynchronizer
from ds_server.app.security import DownloadTokenStore, derive_token, sanitize_username, validate, verify_token
from ds_server.app.sessions.monitors import IdleMonitor, ResourceGuard
from ds_server.app.sessions.registry import SessionRegistry
from ds_server.app.sessions.session import Connection, Session, TerminationReason, TokenBucket

logger = logging.getLogger("devspace.sessions")

__all__ = ["SessionController"]

INVALID_INIT = "Invalid init request"
ACTIVE_ON_CONNECTION = "A session is already active on this connection"
FS_MODE = "simple-json"


def _call_soon(loop: asyncio.AbstractEventLoop, fn: Callable[..., Any], *args: Any) -> None:
    """Hand a callback from a stream thread to the event loop."""
    try:
        loop.call_soon_threadsafe(fn, *args)
    except RuntimeError:
        # Loop already closed during shutdown; nothing left to deliver to.
        logger.debug("dropped %s: event loop closed", getattr(fn, "__name__", fn))


class SessionController:
    def __init__(
        self,
        settings: ServerConfig,
        runtime: SandboxRuntime,
        registry: Optional[SessionRegistry] = None,
        *,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        self.settings = settings
        self.runtime = runtime
        self.registry = registry or SessionRegistry()
        self.downloads = DownloadTokenStore(ttl_seconds=settings.download_token_ttl_seconds)
        self._clock = clock
        self._init_attempts: Dict[str, Deque[float]] = {}
        self._background: Set[asyncio.Task] = set()
        self.hostname = socket.gethostname()

    # ---------- background tasks ----------

    def spawn(self, coro: Coroutine[Any, Any, Any], name: Optional[str] = None) -> asyncio.Task:
        """Run a finite coroutine in the background and keep a reference to it."""
        task = asyncio.get_running_loop().create_task(coro, name=name)
        self._background.add(task)
        task.add_done_callback(self._background_done)
        return task

    def _background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background task %s failed", task.get_name(), exc_info=task.exception())

    async def wait_idle(self) -> None:
        """Wait until every spawned task (terminations, fs operations) is done."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ---------- creation / resume ----------

    def _allow_init(self, conn: Connection) -> bool:
        now = self._clock()
        window_s = self.settings.socket_init_rate_window_ms / 1000.0
        attempts = self._init_attempts.setdefault(conn.connection_id, deque())
        while attempts and now - attempts[0] >= window_s:
            attempts.popleft()
        if len(attempts) >= self.settings.socket_init_max:
            return False
        attempts.append(now)
        return True

    async def init(self, conn: Connection, payload: Any) -> Optional[Session]:
        """
        Handle ``workspace:init``: resume when a sessionId is presented,
        otherwise create a new session for this connection.
        """
        if not self._allow_init(conn):
            logger.warning("Init rate limit hit on connection=%s", conn.connection_id)
            conn.emit("workspace:error", {"message": "Too many initialization attempts"})
            return None
        try:
            req = validate(InitRequest, payload)
        except PayloadValidationError as exc:
            logger.debug("Rejected init on connection=%s: %s", conn.connection_id, exc)
            conn.emit("workspace:error", {"message": INVALID_INIT})
            return None

        username = sanitize_username(req.username)
        current = self.registry.get_by_connection(conn.connection_id)
        if req.sessionId:
            if current is not None and not current.closed and current.session_id != req.sessionId:
                conn.emit("workspace:error", {"message": ACTIVE_ON_CONNECTION})
                return None
            return await self.resume(conn, req.sessionId, username)

        if current is not None and not current.closed:
            conn.emit("workspace:error", {"message": ACTIVE_ON_CONNECTION})
            return None
        return await self._create(conn, username)

    async def _create(self, conn: Connection, username: str) -> Optional[Session]:
        s = self.settings
        try:
            self.registry.reserve(
                username,
                max_total=s.max_concurrent_sessions,
                max_per_user=s.max_sessions_per_user,
            )
        except SessionLimitError as exc:
            logger.warning("Session refused for user=%s: %s", username, exc)
            conn.emit("workspace:error", {"message": str(exc)})
            return None

        session_id = gen_session_id(username)
        try:
            handle = await asyncio.to_thread(self.runtime.provision, session_id, username)
        except (ProvisionError, DockerException, OSError) as exc:
            self.registry.release_reservation(username)
            logger.error("Provisioning failed for session=%s: %s", session_id, exc)
            conn.emit("workspace:error", {"message": f"Failed to start session: {exc}"})
            return None

        if not conn.open:
            # The client left while the sandbox was starting; nobody can resume it.
            logger.info("Connection closed during provisioning; discarding session=%s", session_id)
            self.registry.release_reservation(username)
            await asyncio.to_thread(self.runtime.destroy, handle)
            await asyncio.to_thread(self.runtime.release_workspace_dir, handle)
            return None

        now = self._clock()
        session = Session(
            session_id=session_id,
            username=username,
            token=derive_token(s.instance_secret, session_id, conn.connection_id),
            sandbox=handle,
            connection=None,
            input_bucket=TokenBucket(s.input_max_tokens_per_sec, s.input_burst_bytes, now),
            created_at=now,
            last_activity=now,
        )
        self.registry.add(session)
        self.registry.bind(session, conn)

        session.emit("workspace:ready", self._ready_payload(session, resumed=False))
        self._start_output(session)
        self._attach_guard(session)
        self._start_tree(session)
        logger.info("Session started session=%s user=%s image=%s", session_id, username, handle.image)
        return session

    async def resume(self, conn: Connection, session_id: str, username: str) -> Optional[Session]:
        """
        Re-bind a live session to a new connection. Unknown, closed and
        foreign sessions get the same generic error.
        """
        session = self.registry.get(session_id)
        if session is None or session.closed or session.username != username:
            logger.info("Resume refused for session=%s on connection=%s", session_id, conn.connection_id)
            conn.emit("workspace:error", {"message": INVALID_INIT})
            return None

        session.disconnect_timer.cancel()
        self.registry.bind(session, conn)
        session.token = derive_token(self.settings.instance_secret, session.session_id, conn.connection_id)
        session.mark_activity(self._clock())
        session.emit("workspace:ready", self._ready_payload(session, resumed=True))
        if session.tree is not None:
            await session.tree.emit_current("reconnect")
        logger.info("Session resumed session=%s connection=%s", session.session_id, conn.connection_id)
        return session

    def _ready_payload(self, session: Session, *, resumed: bool) -> Dict[str, Any]:
        s = self.settings
        return {
            "user": session.username,
            "sessionId": session.session_id,
            "token": session.token,
            "mode": "container",
            "baseImage": session.sandbox.image,
            "networkMode": session.sandbox.network_mode,
            "cwd": s.workspace_path,
            "workingDir": s.workspace_path,
            "host": self.hostname,
            "limits": {
                "idleMinutes": s.idle_minutes,
                "memory": s.memory_limit,
                "cpus": s.cpu_limit,
                "pidsLimit": s.pids_limit,
            },
            "fsMode": FS_MODE,
            "resumed": resumed,
        }

    # ---------- per-session machinery ----------

    def _start_output(self, session: Session) -> None:
        loop = asyncio.get_running_loop()

        def on_data(text: str) -> None:
            _call_soon(loop, session.emit, "terminal:data", text)

        def on_end(error: Optional[BaseException]) -> None:
            _call_soon(loop, self._on_shell_end, session, error)

        session.stop_output = self.runtime.start_output_pump(session.sandbox, on_data, on_end)

    def _on_shell_end(self, session: Session, error: Optional[BaseException]) -> None:
        if session.closed:
            return
        if error is not None:
            session.emit("terminal:data", f"\r\n[stream error: {error}]\r\n")
            self.request_terminate(session, TerminationReason.SHELL_ERROR)
        else:
            self.request_terminate(session, TerminationReason.SHELL_EXIT)

    def _attach_guard(self, session: Session) -> None:
        s = self.settings
        guard = ResourceGuard(
            session,
            self.request_terminate,
            mem_percent=s.resource_kill_mem_percent,
            cpu_percent=s.resource_kill_cpu_percent,
            sustain_s=s.resource_kill_sustain_ms / 1000.0,
            grace_s=s.resource_kill_grace_ms / 1000.0,
            interval_s=s.resource_check_interval_ms / 1000.0,
            clock=self._clock,
        )
        session.guard = guard
        if guard.enabled:
            self._ensure_stats_stream(session)
            guard.start()

    def _start_tree(self, session: Session) -> None:
        s = self.settings
        fs = SandboxFS(self.runtime, session.sandbox, s.workspace_path, s.max_inline_read)
        session.fs = fs
        session.tree = TreeSynchronizer(
            fs,
            session.emit,
            scan_s=s.tree_scan_ms / 1000.0,
            warmup_scans=s.tree_warmup_scans,
            warmup_interval_s=s.tree_warmup_interval_ms / 1000.0,
            nudge_delay_s=s.tree_nudge_delay_ms / 1000.0,
            nudge_max_wait_s=s.tree_nudge_max_wait_ms / 1000.0,
            dedup_chars=s.tree_dedup_leading_chars,
            name=f"tree-{session.session_id}",
        )
        task = asyncio.get_running_loop().create_task(session.tree.run(), name=f"tree-{session.session_id}")
        task.add_done_callback(self._tree_done)
        session.tree_task = task

    @staticmethod
    def _tree_done(task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.error("Tree synchronizer %s crashed", task.get_name(), exc_info=task.exception())

    # ---------- resource stats ----------

    def _ensure_stats_stream(self, session: Session) -> None:
        if session.stop_stats is not None or session.closed:
            return
        loop = asyncio.get_running_loop()

        def on_sample(sample: ResourceSample) -> None:
            _call_soon(loop, self._on_stat, session, sample)

        def on_end(error: Optional[BaseException]) -> None:
            _call_soon(loop, self._on_stats_end, session, error)

        session.stop_stats = self.runtime.stream_stats(session.sandbox, on_sample, on_end)

    def _on_stat(self, session: Session, sample: ResourceSample) -> None:
        if session.closed:
            return
        session.last_stat = sample
        if session.stats_forwarding:
            session.emit("stats:tick", sample.to_payload())

    def _on_stats_end(self, session: Session, error: Optional[BaseException]) -> None:
        session.stop_stats = None
        if error is not None and not session.closed:
            logger.debug("Stats stream ended for session=%s: %s", session.session_id, error)

    def _stop_stats_stream(self, session: Session) -> None:
        stop, session.stop_stats = session.stop_stats, None
        if stop is not None:
            stop()

    def subscribe_stats(self, session: Session) -> None:
        session.stats_forwarding = True
        self._ensure_stats_stream(session)

    def unsubscribe_stats(self, session: Session) -> None:
        session.stats_forwarding = False
        guard = session.guard
        if guard is None or not guard.enabled:
            self._stop_stats_stream(session)

    # ---------- authenticated operations ----------

    def authorize(self, conn: Connection, req: AuthenticatedRequest) -> Optional[Session]:
        """
        The session bound to ``conn`` if the request's sessionId and token
        both match it. Every failure looks the same to the caller.
        """
        session = self.registry.get_by_connection(conn.connection_id)
        if session is None or session.closed:
            return None
        if session.session_id != req.sessionId:
            return None
        if not verify_token(self.settings.instance_secret, req.token, session.session_id, conn.connection_id):
            return None
        return session

    async def write_input(self, session: Session, data: str) -> bool:
        raw = data.encode("utf-8")
        if len(raw) > session.input_bucket.burst:
            # Larger than the bucket can ever hold; throttling would never clear it.
            session.emit("terminal:data", f"\r\n[input rejected: exceeds {int(session.input_bucket.burst)} bytes]\r\n")
            return False
        if not session.input_bucket.consume(len(raw), self._clock()):
            session.emit("terminal:data", "\r\n[input throttled]\r\n")
            return False
        try:
            await asyncio.to_thread(self.runtime.write_input, session.sandbox, raw)
        except OSError as exc:
            # The output pump reports the broken stream and ends the session.
            logger.warning("Input write failed for session=%s: %s", session.session_id, exc)
            return False
        return True

    async def resize(self, session: Session, cols: int, rows: int) -> None:
        await asyncio.to_thread(self.runtime.resize, session.sandbox, cols, rows)

    def mark_activity(self, conn: Connection) -> None:
        session = self.registry.get_by_connection(conn.connection_id)
        if session is not None and not session.closed:
            session.mark_activity(self._clock())

    def pong(self, conn: Connection) -> None:
        session = self.registry.get_by_connection(conn.connection_id)
        if session is None or session.closed:
            return
        session.mark_activity(self._clock())
        session.emit("terminal:data", "[session] pong received, session extended\n")

    # ---------- downloads ----------

    def issue_download_token(self, session: Session, path: str) -> str:
        return self.downloads.issue(session_id=session.session_id, rel_path=sanitize_rel(path), target=session)

    async def open_download(self, token: str) -> Tuple[Optional[Tuple[Iterator[bytes], str]], bool]:
        """
        Exchange a download token for (stream, filename). Returns
        ``(None, expired)`` when the token is unusable.

        Raises:
            FsOperationError: the path vanished after the token was issued.
        """
        grant, expired = self.downloads.consume(token)
        if grant is None:
            return None, expired
        session: Session = grant.target
        if session.closed or session.fs is None:
            return None, True
        return await session.fs.create_download_archive(grant.rel_path), False

    # ---------- disconnect / termination ----------

    def disconnect(self, conn: Connection) -> None:
        """
        Transport dropped: unbind and give the client the grace period to
        come back with the same sessionId.
        """
        self._init_attempts.pop(conn.connection_id, None)
        session = self.registry.get_by_connection(conn.connection_id)
        if session is None or session.closed:
            return
        self.registry.unbind(session)
        grace_s = self.settings.session_grace_period_ms / 1000.0
        logger.info("Session disconnected session=%s; grace %.0fs", session.session_id, grace_s)
        session.disconnect_timer.schedule(grace_s, lambda: self.terminate(session, TerminationReason.DISCONNECT))

    def request_terminate(self, session: Session, reason: TerminationReason) -> None:
        """Fire-and-forget termination for callbacks that cannot await."""
        if session.closed:
            return
        self.spawn(self.terminate(session, reason), name=f"terminate-{session.session_id}")

    async def terminate(self, session: Session, reason: TerminationReason) -> bool:
        """
        Tear a session down. Returns False when it was already closed. Every
        step is independent: one failing cleanup never blocks the rest.
        """
        if session.closed:
            return False
        session.closed = True
        conn = session.connection
        logger.info("Terminating session=%s user=%s reason=%s", session.session_id, session.username, reason.value)

        session.disconnect_timer.cancel()
        steps: Tuple[Tuple[str, Callable[[], None]], ...] = (
            ("stats", lambda: self._stop_stats_stream(session)),
            ("guard", lambda: session.guard.stop() if session.guard is not None else None),
            ("tree", lambda: self._stop_tree(session)),
            ("output", lambda: session.stop_output() if session.stop_output is not None else None),
        )
        for label, step in steps:
            try:
                step()
            except Exception:
                logger.exception("Teardown step %s failed for session=%s", label, session.session_id)

        # The exit goes out before any await; a later init on this
        # connection must not be answered ahead of it.
        if conn is not None:
            conn.emit("terminal:exit", {"code": reason.exit_code, "signal": reason.signal, "reason": reason.value})

        try:
            await asyncio.to_thread(self.runtime.destroy, session.sandbox)
        except Exception:
            logger.exception("Sandbox destroy failed for session=%s", session.session_id)
        try:
            await asyncio.to_thread(self.runtime.release_workspace_dir, session.sandbox)
        except Exception:
            logger.exception("Workspace release failed for session=%s", session.session_id)

        self.downloads.revoke_session(session.session_id)
        self.registry.remove(session)
        return True

    @staticmethod
    def _stop_tree(session: Session) -> None:
        if session.tree is not None:
            session.tree.dispose()
        task, session.tree_task = session.tree_task, None
        if task is not None and not task.done():
            task.cancel()

    async def shutdown(self) -> None:
        sessions = self.registry.sessions()
        if sessions:
            logger.info("Shutting down %d session(s)", len(sessions))
        await asyncio.gather(
            *(self.terminate(s, TerminationReason.SHUTDOWN) for s in sessions),
            return_exceptions=True,
        )
        for task in list(self._background):
            task.cancel()

    # ---------- monitors ----------

    def idle_monitor(self) -> IdleMonitor:
        s = self.settings
        return IdleMonitor(
            self.registry,
            self.request_terminate,
            idle_max_s=s.session_idle_max_ms / 1000.0,
            ping_after_s=s.idle_ping_after_ms / 1000.0,
            ping_timeout_s=s.session_idle_ping_timeout_ms / 1000.0,
            check_s=s.session_idle_check_ms / 1000.0,
            clock=self._clock,
        )
