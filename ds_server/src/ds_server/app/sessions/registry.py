from __future__ import annotations

"""
Process-wide session registry.

The only structure shared across sessions. Lookups by session id and by
connection id, per-user counters, and pending reservations all live behind a
single re-entrant lock, so a ceiling check and the slot it grants are atomic
with respect to concurrent creation and termination.
"""

import logging
import threading
from collections import Counter
from typing import Dict, List, Optional

from ds_server.app.errors import SessionLimitError
from ds_server.app.sessions.session import Connection, Session

logger = logging.getLogger("devspace.registry")

__all__ = ["SessionRegistry"]


class SessionRegistry:
    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._by_id: Dict[str, Session] = {}
        self._by_connection: Dict[str, Session] = {}
        self._user_counts: Counter[str] = Counter()
        self._pending_total = 0

    # ---------- reservations ----------

    def reserve(self, username: str, *, max_total: int = 0, max_per_user: int = 0) -> None:
        """
        Claim a slot before provisioning. A ceiling of 0 means unlimited.

        Raises:
            SessionLimitError: when the global or per-user ceiling is reached.
        """
        with self._lock:
            total = len(self._by_id) + self._pending_total
            if max_total and total >= max_total:
                raise SessionLimitError("Global session limit reached")
            if max_per_user and self._user_counts[username] >= max_per_user:
                raise SessionLimitError("User session quota exceeded")
            self._pending_total += 1
            self._user_counts[username] += 1

    def release_reservation(self, username: str) -> None:
        with self._lock:
            self._pending_total = max(0, self._pending_total - 1)
            self._decrement_user(username)

    # ---------- live sessions ----------

    def add(self, session: Session) -> None:
        """Register a provisioned session, consuming its reservation."""
        with self._lock:
            self._pending_total = max(0, self._pending_total - 1)
            self._by_id[session.session_id] = session
            if session.connection is not None:
                self._by_connection[session.connection.connection_id] = session

    def remove(self, session: Session) -> bool:
        """
        Drop a session and its per-user slot. Returns False if it was already
        gone, so the counter is decremented exactly once.
        """
        with self._lock:
            if self._by_id.get(session.session_id) is not session:
                return False
            del self._by_id[session.session_id]
            for cid in [c for c, s in self._by_connection.items() if s is session]:
                del self._by_connection[cid]
            self._decrement_user(session.username)
            return True

    def bind(self, session: Session, conn: Connection) -> None:
        with self._lock:
            if session.connection is not None:
                self._by_connection.pop(session.connection.connection_id, None)
            session.connection = conn
            self._by_connection[conn.connection_id] = session

    def unbind(self, session: Session) -> Optional[Connection]:
        with self._lock:
            conn, session.connection = session.connection, None
            if conn is not None:
                self._by_connection.pop(conn.connection_id, None)
            return conn

    # ---------- lookup ----------

    def get(self, session_id: Optional[str]) -> Optional[Session]:
        if not session_id:
            return None
        with self._lock:
            return self._by_id.get(session_id)

    def get_by_connection(self, connection_id: Optional[str]) -> Optional[Session]:
        if not connection_id:
            return None
        with self._lock:
            return self._by_connection.get(connection_id)

    def sessions(self) -> List[Session]:
        with self._lock:
            return list(self._by_id.values())

    def user_count(self, username: str) -> int:
        with self._lock:
            return self._user_counts[username]

    def stats(self) -> Dict[str, object]:
        with self._lock:
            return {
                "count": len(self._by_id),
                "pending": self._pending_total,
                "users": {u: n for u, n in self._user_counts.items() if n > 0},
            }

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_id)

    def _decrement_user(self, username: str) -> None:
        self._user_counts[username] -= 1
        if self._user_counts[username] <= 0:
            del self._user_counts[username]
