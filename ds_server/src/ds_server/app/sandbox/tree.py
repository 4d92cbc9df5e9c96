from __future__ import annotations

"""
File tree synchronizer: keeps the client's view of the sandbox workspace
current by pushing full snapshots over ``fs:treeSimple``.

Snapshot shape: nested dicts where a directory maps to a dict and a file maps
to None; the root is always a dict. Snapshots are compared through an
order-independent hash (FNV-1a over the sorted traversal), and a push happens
only when the hash changed, the tree is the first non-empty one, or the caller
forces it.

Lifecycle: UNINITIALIZED -> WARMING_UP -> STEADY, with DISABLED reachable from
either once the sandbox is reported missing. A disabled synchronizer never
rescans again.
"""

import asyncio
import enum
import logging
import re
from typing import Any, Callable, Dict, List, Optional

from docker.errors import DockerException

from ds_server.app.errors import FsOperationError, SandboxGoneError
from ds_server.app.sandbox.core import OneShotTimer, monotonic

logger = logging.getLogger("devspace.tree")

__all__ = [
    "TreeState",
    "TreeSynchronizer",
    "build_tree",
    "hash_tree",
    "nudge_deadline",
]

Tree = Dict[str, Any]
EmitFn = Callable[[str, Dict[str, Any]], None]

_CONTROL_RE = re.compile(r"[\x00-\x1f\x7f]")
_MULTI_SLASH_RE = re.compile(r"/{2,}")
_FNV_OFFSET = 2166136261
_FNV_PRIME = 16777619
_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


# --------------------------
# Snapshot building
# --------------------------

def _sanitize_record(record: str) -> str:
    cleaned = _CONTROL_RE.sub("", record).replace("\\", "/")
    return _MULTI_SLASH_RE.sub("/", cleaned).strip()


def _ensure_dir(tree: Tree, parts: List[str]) -> Tree:
    cur = tree
    for part in parts:
        node = cur.get(part)
        if not isinstance(node, dict):
            # A directory always replaces a file placeholder of the same name.
            node = {}
            cur[part] = node
        cur = node
    return cur


def _split(rel: str) -> List[str]:
    return [p for p in rel.split("/") if p and p not in (".", "..")]


def _dedup_leading_char_siblings(node: Tree, chars: str) -> None:
    """
    Drop an empty directory ``<c>name`` when a non-empty sibling ``name``
    exists, for each configured leading character ``c``.
    """
    for child in node.values():
        if isinstance(child, dict):
            _dedup_leading_char_siblings(child, chars)
    names = list(node)
    for ch in chars:
        for name in names:
            if not name.startswith(ch) or name not in node:
                continue
            base = name[1:]
            if not base or base not in node:
                continue
            prefixed, base_node = node[name], node[base]
            prefixed_empty = isinstance(prefixed, dict) and not prefixed
            base_empty = isinstance(base_node, dict) and not base_node
            if prefixed_empty and not base_empty:
                del node[name]


def build_tree(output: str, dedup_chars: str = "") -> Tree:
    """
    Fold NUL-separated ``<type>|<relpath>`` records into a nested tree.
    Only ``d`` (directory) and ``f`` (regular file) records are kept.
    """
    dirs: List[str] = []
    files: List[str] = []
    for raw in output.split("\0"):
        record = _sanitize_record(raw)
        kind, sep, rel = record.partition("|")
        if not sep:
            continue
        rel = rel.lstrip("/")
        if not rel or rel == ".":
            continue
        if kind == "d":
            dirs.append(rel)
        elif kind == "f":
            files.append(rel)

    tree: Tree = {}
    for rel in sorted(dirs):
        parts = _split(rel)
        if parts:
            _ensure_dir(tree, parts)
    for rel in sorted(files):
        parts = _split(rel)
        if not parts:
            continue
        parent = _ensure_dir(tree, parts[:-1])
        parent.setdefault(parts[-1], None)

    if dedup_chars:
        _dedup_leading_char_siblings(tree, dedup_chars)
    return tree


def _to_base36(n: int) -> str:
    if n == 0:
        return "0"
    digits = []
    while n:
        n, rem = divmod(n, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def hash_tree(tree: Tree) -> str:
    """
    32-bit FNV-1a over ``<path>:D`` / ``<path>:F`` lines in sorted order,
    rendered in base 36. Sibling insertion order does not affect the result.
    """
    h = _FNV_OFFSET

    def walk(node: Tree, base: str) -> None:
        nonlocal h
        for key in sorted(node):
            path = f"{base}/{key}" if base else key
            child = node[key]
            line = path + (":D" if isinstance(child, dict) else ":F")
            for ch in line:
                h = ((h ^ ord(ch)) * _FNV_PRIME) & 0xFFFFFFFF
            if isinstance(child, dict):
                walk(child, path)

    walk(tree, "")
    return _to_base36(h)


def nudge_deadline(first_nudge_at: float, now: float, min_delay: float, max_wait: float) -> float:
    """
    When a debounced rescan should fire: ``min_delay`` after the latest nudge,
    but never later than ``max_wait`` after the first nudge of the burst.
    """
    return min(first_nudge_at + max_wait, now + min_delay)


# --------------------------
# Synchronizer
# --------------------------

class TreeState(str, enum.Enum):
    UNINITIALIZED = "uninitialized"
    WARMING_UP = "warming_up"
    STEADY = "steady"
    DISABLED = "disabled"


class TreeSynchronizer:
    """
    Per-session snapshot producer.

    ``fs`` needs a coroutine ``scan_tree()`` returning the raw listing;
    ``emit(event, payload)`` delivers ``fs:treeSimple`` to the client.
    Rebuilds are serialized: periodic scans skip while one is in flight,
    forced rebuilds (nudges, resync) wait for it to finish.
    """

    def __init__(
        self,
        fs: Any,
        emit: EmitFn,
        *,
        scan_s: float = 2.0,
        warmup_scans: int = 3,
        warmup_interval_s: float = 0.25,
        nudge_delay_s: float = 0.12,
        nudge_max_wait_s: float = 0.6,
        dedup_chars: str = "",
        clock: Callable[[], float] = monotonic,
        name: str = "tree",
    ) -> None:
        self.fs = fs
        self._emit = emit
        self.scan_s = scan_s
        self.warmup_scans = warmup_scans
        self.warmup_interval_s = warmup_interval_s
        self.nudge_delay_s = nudge_delay_s
        self.nudge_max_wait_s = nudge_max_wait_s
        self.dedup_chars = dedup_chars
        self._clock = clock
        self.name = name

        self.state = TreeState.UNINITIALIZED
        self.version = 0
        self.tree: Tree = {}
        self.last_hash: Optional[str] = None
        self.emitted_non_empty = False

        self._lock = asyncio.Lock()
        self._nudge_timer = OneShotTimer(f"{name}-nudge")
        self._first_nudge_at: Optional[float] = None
        self._disposed = False

    @property
    def active(self) -> bool:
        return not self._disposed and self.state is not TreeState.DISABLED

    async def run(self) -> None:
        """Warmup burst followed by the steady periodic loop."""
        self.state = TreeState.WARMING_UP
        for i in range(self.warmup_scans):
            await self.rebuild(f"warmup#{i + 1}", force_emit=True)
            if not self.active:
                return
            await asyncio.sleep(self.warmup_interval_s)
        if not self.emitted_non_empty:
            await self.rebuild("post-warmup-force", force_emit=True)
        if not self.active:
            return

        self.state = TreeState.STEADY
        while self.active:
            await asyncio.sleep(self.scan_s)
            await self.rebuild("periodic", wait=False)

    async def rebuild(self, reason: str, *, force_emit: bool = False, wait: bool = True) -> bool:
        """
        Scan, hash and (maybe) push. Returns True when a snapshot was emitted.
        """
        if not self.active:
            return False
        if not wait and self._lock.locked():
            logger.debug("[%s] skip %s: rebuild in flight", self.name, reason)
            return False

        async with self._lock:
            if not self.active:
                return False
            try:
                output = await self.fs.scan_tree()
            except SandboxGoneError as exc:
                self._disable(exc)
                return False
            except (FsOperationError, DockerException, OSError) as exc:
                logger.warning("[%s] tree scan failed (%s): %s", self.name, reason, exc)
                return False

            tree = build_tree(output, self.dedup_chars)
            digest = hash_tree(tree)
            changed = digest != self.last_hash
            empty = not tree
            if not (force_emit or changed or (not self.emitted_non_empty and not empty)):
                logger.debug("[%s] skip %s: unchanged", self.name, reason)
                return False

            self.tree = tree
            self.version += 1
            self.last_hash = digest
            if not empty:
                self.emitted_non_empty = True
            self._push(changed, reason)
            logger.debug(
                "[%s] emit v%d reason=%s changed=%s entries=%d", self.name, self.version, reason, changed, len(tree)
            )
            return True

    def nudge(self, reason: str = "nudge") -> None:
        """
        Request a rescan soon. Bursts are coalesced into one forced rebuild
        that fires no later than ``nudge_max_wait_s`` after the first nudge.
        """
        if not self.active:
            return
        now = self._clock()
        if self._first_nudge_at is None:
            self._first_nudge_at = now
        deadline = nudge_deadline(self._first_nudge_at, now, self.nudge_delay_s, self.nudge_max_wait_s)
        self._nudge_timer.schedule(deadline - now, lambda: self._fire_nudge(reason))

    async def _fire_nudge(self, reason: str) -> None:
        self._first_nudge_at = None
        await self.rebuild(f"debounced-{reason}", force_emit=True)

    async def resync(self) -> bool:
        self._nudge_timer.cancel()
        self._first_nudge_at = None
        return await self.rebuild("manual-resync", force_emit=True)

    async def emit_current(self, reason: str = "reconnect") -> None:
        if not self.active:
            return
        if self.version == 0:
            await self.rebuild(reason, force_emit=True)
            return
        self._push(False, reason)

    def dispose(self) -> None:
        self._disposed = True
        self._nudge_timer.cancel()
        self._first_nudge_at = None

    def _disable(self, exc: BaseException) -> None:
        self.state = TreeState.DISABLED
        self._nudge_timer.cancel()
        self._first_nudge_at = None
        logger.warning("[%s] sandbox unavailable; tree sync disabled: %s", self.name, exc)

    def _push(self, changed: bool, reason: str) -> None:
        self._emit(
            "fs:treeSimple",
            {"version": self.version, "tree": self.tree, "changed": changed, "reason": reason},
        )
