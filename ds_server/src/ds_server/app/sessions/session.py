from __future__ import annotations

"""
Session state: the binding between a user, their sandbox and (at most) one
live transport connection.
"""

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from ds_server.app.sandbox.core import OneShotTimer, gen_connection_id
from ds_server.app.sandbox.fs_ops import SandboxFS
from ds_server.app.sandbox.runtime import ResourceSample, SandboxHandle
from ds_server.app.sandbox.tree import TreeSynchronizer

logger = logging.getLogger("devspace.session")

__all__ = ["Connection", "TokenBucket", "TerminationReason", "Session"]


class Connection:
    """
    One WebSocket connection as seen by the session layer: an id and an
    ordered outbox drained by a single writer task. ``emit`` never blocks.
    """

    def __init__(self, connection_id: Optional[str] = None) -> None:
        self.connection_id = connection_id or gen_connection_id()
        self.outbox: asyncio.Queue[Optional[Dict[str, Any]]] = asyncio.Queue()
        self.open = True

    def emit(self, event: str, data: Any) -> None:
        if not self.open:
            return
        self.outbox.put_nowait({"event": event, "data": data})

    def close(self) -> None:
        if not self.open:
            return
        self.open = False
        self.outbox.put_nowait(None)

    def __repr__(self) -> str:
        return f"Connection({self.connection_id[:8]}, open={self.open})"


class TokenBucket:
    """
    Input throttle. Capacity ``burst`` bytes, refilled at ``rate`` bytes per
    second; a message is accepted whole or not at all.
    """

    def __init__(self, rate: float, burst: float, now: float) -> None:
        self.rate = float(rate)
        self.burst = float(burst)
        self.tokens = float(burst)
        self.last_refill = now

    def refill(self, now: float) -> None:
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(self.burst, self.tokens + elapsed * self.rate)
        self.last_refill = now

    def consume(self, cost: int, now: float) -> bool:
        self.refill(now)
        if cost > self.tokens:
            return False
        self.tokens -= cost
        return True


class TerminationReason(str, enum.Enum):
    SHELL_EXIT = "shell_exit"
    SHELL_ERROR = "shell_error"
    KILLED = "killed"
    IDLE = "idle"
    IDLE_TIMEOUT = "idle_timeout"
    RESOURCE = "resource"
    DISCONNECT = "disconnect"
    SHUTDOWN = "shutdown"

    @property
    def exit_code(self) -> int:
        if self is TerminationReason.SHELL_EXIT:
            return 0
        if self is TerminationReason.SHELL_ERROR:
            return 1
        return 137

    @property
    def signal(self) -> Optional[str]:
        return "SIGKILL" if self.exit_code == 137 else None


@dataclass(eq=False)
class Session:
    session_id: str
    username: str
    token: str
    sandbox: SandboxHandle
    connection: Optional[Connection]
    input_bucket: TokenBucket
    created_at: float
    last_activity: float
    ping_sent_at: Optional[float] = None
    disconnect_timer: OneShotTimer = field(default_factory=lambda: OneShotTimer("disconnect-grace"))

    last_stat: Optional[ResourceSample] = None
    stats_forwarding: bool = False
    stop_stats: Optional[Callable[[], None]] = None
    stop_output: Optional[Callable[[], None]] = None
    guard: Optional[Any] = None

    fs: Optional[SandboxFS] = None
    tree: Optional[TreeSynchronizer] = None
    tree_task: Optional[asyncio.Task] = None

    closed: bool = False

    @property
    def connection_id(self) -> Optional[str]:
        return self.connection.connection_id if self.connection is not None else None

    def emit(self, event: str, data: Any) -> None:
        """Deliver to the bound connection; dropped while disconnected."""
        conn = self.connection
        if conn is not None and not self.closed:
            conn.emit(event, data)

    def mark_activity(self, now: float) -> None:
        self.last_activity = now
        self.ping_sent_at = None

    def __repr__(self) -> str:
        return f"Session({self.session_id}, user={self.username}, closed={self.closed})"
