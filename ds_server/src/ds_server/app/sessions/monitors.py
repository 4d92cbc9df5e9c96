from __future__ import annotations

"""
Policy monitors that can end a session on their own.

- ResourceGuard: per session, samples the latest resource reading on a fixed
  interval. Memory over the ceiling kills immediately; CPU must stay high for
  a sustain window, then gets one warning and a grace period.
- IdleMonitor: one global loop over all sessions; pings idle clients and
  terminates at the hard idle ceiling or when a ping goes unanswered.

Both report through a terminate callback instead of tearing anything down
themselves, so every exit path funnels into the controller's single
idempotent termination routine.
"""

import asyncio
import logging
from typing import Callable, List, Optional, Tuple

from ds_server.app.sandbox.core import OneShotTimer, monotonic
from ds_server.app.sessions.registry import SessionRegistry
from ds_server.app.sessions.session import Session, TerminationReason

logger = logging.getLogger("devspace.monitors")

__all__ = ["ResourceGuard", "IdleMonitor"]

TerminateFn = Callable[[Session, TerminationReason], None]


class ResourceGuard:
    """
    Kill thresholds are percentages; 0 disables that threshold. The guard is
    inert when both are 0.
    """

    def __init__(
        self,
        session: Session,
        terminate: TerminateFn,
        *,
        mem_percent: int = 0,
        cpu_percent: int = 0,
        sustain_s: float = 15.0,
        grace_s: float = 5.0,
        interval_s: float = 2.0,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        self.session = session
        self._terminate = terminate
        self.mem_percent = mem_percent
        self.cpu_percent = cpu_percent
        self.sustain_s = sustain_s
        self.grace_s = grace_s
        self.interval_s = interval_s
        self._clock = clock

        self.cpu_high_since: Optional[float] = None
        self.warned = False
        self._grace = OneShotTimer(f"resource-grace-{session.session_id}")
        self._task: Optional[asyncio.Task] = None
        self._stopped = False

    @property
    def enabled(self) -> bool:
        return self.mem_percent > 0 or self.cpu_percent > 0

    @property
    def grace_pending(self) -> bool:
        return self._grace.pending

    def start(self) -> None:
        if not self.enabled or self._task is not None:
            return
        self._task = asyncio.get_running_loop().create_task(self._loop())

    async def _loop(self) -> None:
        while not self._stopped and not self.session.closed:
            await asyncio.sleep(self.interval_s)
            self.check(self._clock())

    def check(self, now: float) -> None:
        """Evaluate the most recent sample once."""
        session = self.session
        if self._stopped or session.closed:
            return
        stat = session.last_stat
        if stat is None:
            return

        if self.mem_percent and stat.mem_percent >= self.mem_percent:
            session.emit(
                "terminal:data",
                f"\n[resource] memory {stat.mem_percent:.1f}% >= {self.mem_percent}% - terminating\n",
            )
            self._kill()
            return

        if not self.cpu_percent or stat.cpu_percent is None:
            return

        if stat.cpu_percent >= self.cpu_percent:
            if self.cpu_high_since is None:
                self.cpu_high_since = now
            if not self.warned and now - self.cpu_high_since >= self.sustain_s:
                self.warned = True
                session.emit(
                    "terminal:data",
                    f"\n[resource] CPU {stat.cpu_percent:.1f}% high; terminating in {self.grace_s:g}s if still high\n",
                )
                self._grace.schedule(self.grace_s, self._grace_expired)
        else:
            self._reset()

    def _grace_expired(self) -> None:
        session = self.session
        if self._stopped or session.closed:
            return
        stat = session.last_stat
        if stat is not None and stat.cpu_percent is not None and stat.cpu_percent >= self.cpu_percent:
            session.emit("terminal:data", "[resource] CPU still high, terminating\n")
            self._kill()
        else:
            self.cpu_high_since = None
            self.warned = False
            session.emit("terminal:data", "[resource] CPU normalized\n")

    def _kill(self) -> None:
        logger.info("Resource ceiling reached for session=%s", self.session.session_id)
        self.stop()
        self._terminate(self.session, TerminationReason.RESOURCE)

    def _reset(self) -> None:
        self.cpu_high_since = None
        self.warned = False
        self._grace.cancel()

    def stop(self) -> None:
        """Cancel the sampling loop and any pending grace timer. Idempotent."""
        self._stopped = True
        self._reset()
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()


class IdleMonitor:
    """
    Global idle scanner. Sessions without a live connection are skipped: the
    disconnect grace timer owns their fate.
    """

    def __init__(
        self,
        registry: SessionRegistry,
        terminate: TerminateFn,
        *,
        idle_max_s: float,
        ping_after_s: float,
        ping_timeout_s: float,
        check_s: float = 5.0,
        clock: Callable[[], float] = monotonic,
    ) -> None:
        self.registry = registry
        self._terminate = terminate
        self.idle_max_s = idle_max_s
        self.ping_after_s = ping_after_s
        self.ping_timeout_s = ping_timeout_s
        self.check_s = check_s
        self._clock = clock

    @property
    def enabled(self) -> bool:
        return self.idle_max_s > 0

    async def run(self) -> None:
        if not self.enabled:
            logger.info("Idle monitor disabled (SESSION_IDLE_MAX_MS=0)")
            return
        logger.info(
            "Idle monitor started (max=%ss ping_after=%ss timeout=%ss every %ss)",
            self.idle_max_s,
            self.ping_after_s,
            self.ping_timeout_s,
            self.check_s,
        )
        while True:
            await asyncio.sleep(self.check_s)
            try:
                self.scan(self._clock())
            except Exception:
                logger.exception("Idle scan failed")

    def scan(self, now: float) -> List[Tuple[Session, TerminationReason]]:
        """
        One pass over the registry. Returns the sessions it asked to
        terminate, with the reason.
        """
        doomed: List[Tuple[Session, TerminationReason]] = []
        for session in self.registry.sessions():
            if session.closed or session.connection is None:
                continue
            idle_for = now - session.last_activity

            if idle_for >= self.idle_max_s:
                session.emit(
                    "terminal:data",
                    f"\n[session] idle {round(idle_for)}s >= {round(self.idle_max_s)}s - terminating\n",
                )
                doomed.append((session, TerminationReason.IDLE))
                continue

            if idle_for < self.ping_after_s:
                continue

            if session.ping_sent_at is not None:
                if now - session.ping_sent_at >= self.ping_timeout_s:
                    session.emit(
                        "terminal:data",
                        f"[session] no pong within {self.ping_timeout_s:g}s - terminating\n",
                    )
                    doomed.append((session, TerminationReason.IDLE_TIMEOUT))
                continue

            session.ping_sent_at = now
            remaining = round(self.idle_max_s - idle_for)
            session.emit("session:ping", {"idleSeconds": round(idle_for), "willTerminateAfterSeconds": remaining})
            session.emit(
                "terminal:data",
                f"[session] ping at {round(idle_for)}s idle; terminate in {remaining}s if no activity\n",
            )

        for session, reason in doomed:
            logger.info("Idle policy terminating session=%s reason=%s", session.session_id, reason.value)
            self._terminate(session, reason)
        return doomed
