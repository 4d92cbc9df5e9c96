from __future__ import annotations

"""
Core helpers for sandbox utilities: labels, ids, clocks and one-shot timers.

Contents:
- Labels used to mark managed containers
- Session / connection id generation
- Time helpers
- OneShotTimer: a single cancellable deadline owned by one component
"""

import asyncio
import inspect
import logging
import time
import uuid
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Union

logger = logging.getLogger("devspace.timers")

# --------------------------
# Labels (public constants)
# --------------------------

LABEL_MANAGED = "devspace.managed"
LABEL_SESSION = "devspace.session"
LABEL_USER = "devspace.user"
LABEL_IMAGE = "devspace.image"
LABEL_CREATED_AT = "devspace.created_at"
LABEL_HOST_WORKSPACE = "devspace.use_host_workspace"
LABEL_MINIMAL_MODE = "devspace.minimal_mode"
LABEL_APT_CAPS = "devspace.apt_caps"


# --------------------------
# Ids
# --------------------------

def gen_session_id(username: str) -> str:
    """
    Session ids carry the sanitized username as a prefix: ``alice_3f2a9c0d1e4b``.
    """
    return f"{username}_{uuid.uuid4().hex[:12]}"


def gen_connection_id() -> str:
    return uuid.uuid4().hex


# --------------------------
# Time helpers
# --------------------------

def now_utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def monotonic() -> float:
    """
    Clock used for every session deadline (seconds, never goes backwards).
    """
    return time.monotonic()


# --------------------------
# Timers
# --------------------------

TimerCallback = Callable[[], Union[Awaitable[Any], Any]]


class OneShotTimer:
    """
    At most one pending callback. ``schedule`` replaces whatever was pending,
    ``cancel`` is idempotent, and a callback that is already running is never
    cancelled by its own owner re-arming or clearing the timer.
    """

    def __init__(self, name: str = "timer") -> None:
        self.name = name
        self._task: Optional[asyncio.Task] = None

    @property
    def pending(self) -> bool:
        return self._task is not None and not self._task.done()

    def schedule(self, delay_s: float, callback: TimerCallback) -> None:
        self.cancel()
        self._task = asyncio.get_running_loop().create_task(self._run(max(0.0, delay_s), callback))

    def cancel(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()

    async def _run(self, delay_s: float, callback: TimerCallback) -> None:
        await asyncio.sleep(delay_s)
        # Detach before firing so the callback may re-arm or cancel this timer.
        self._task = None
        try:
            result = callback()
            if inspect.isawaitable(result):
                await result
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Timer %s callback failed", self.name)


__all__ = [
    "LABEL_MANAGED",
    "LABEL_SESSION",
    "LABEL_USER",
    "LABEL_IMAGE",
    "LABEL_CREATED_AT",
    "LABEL_HOST_WORKSPACE",
    "LABEL_MINIMAL_MODE",
    "LABEL_APT_CAPS",
    "gen_session_id",
    "gen_connection_id",
    "now_utc_iso",
    "monotonic",
    "OneShotTimer",
]
