import asyncio
import time

import pytest

from ds_server.app.errors import FsOperationError, SandboxGoneError
from ds_server.app.sandbox.tree import TreeState, TreeSynchronizer, build_tree, hash_tree, nudge_deadline


def _listing(*records: str) -> str:
    return "".join(r + "\0" for r in records)


class _ScriptedFS:
    """Returns listings in order; the last one repeats. Exceptions are raised."""

    def __init__(self, *outputs):
        self.outputs = list(outputs)
        self.calls = 0

    async def scan_tree(self) -> str:
        self.calls += 1
        out = self.outputs[0] if len(self.outputs) == 1 else self.outputs.pop(0)
        if isinstance(out, BaseException):
            raise out
        return out


def _sync(fs, **kw):
    emitted = []
    kw.setdefault("warmup_scans", 1)
    kw.setdefault("warmup_interval_s", 0)
    kw.setdefault("scan_s", 3600)
    sync = TreeSynchronizer(fs, lambda ev, data: emitted.append((ev, dict(data))), **kw)
    return sync, emitted


# --------------------------
# Pure helpers
# --------------------------

def test_build_tree_nested_dirs_and_files():
    tree = build_tree(_listing("d|src", "f|src/app.py", "f|README.md", "l|link", "d|src/pkg"))
    assert tree == {"src": {"app.py": None, "pkg": {}}, "README.md": None}


def test_build_tree_directory_wins_over_file():
    tree = build_tree(_listing("f|data", "d|data", "f|data/x.csv"))
    assert tree == {"data": {"x.csv": None}}


def test_build_tree_sanitizes_records():
    tree = build_tree(_listing("d|a\\b", "f|a//b/c\x07.txt", "f|./", "garbage", "f|/lead.txt"))
    assert tree == {"a": {"b": {"c.txt": None}}, "lead.txt": None}


def test_build_tree_dedups_leading_char_siblings():
    out = _listing("d|project", "f|project/main.py", "d|_project")
    assert build_tree(out) == {"project": {"main.py": None}, "_project": {}}
    assert build_tree(out, dedup_chars="_") == {"project": {"main.py": None}}
    # a non-empty prefixed sibling is kept
    out = _listing("d|project", "f|project/main.py", "d|_project", "f|_project/x")
    assert "_project" in build_tree(out, dedup_chars="_")


def test_hash_is_order_independent_and_sensitive_to_changes():
    a = {"b": None, "a": {"y": None, "x": {}}}
    b = {"a": {"x": {}, "y": None}, "b": None}
    assert hash_tree(a) == hash_tree(b)
    assert hash_tree(a) != hash_tree({**a, "c": None})
    # a file and an empty directory of the same name hash differently
    assert hash_tree({"n": None}) != hash_tree({"n": {}})
    assert hash_tree({}) == hash_tree({})
    assert hash_tree({}).isalnum()


def test_nudge_deadline_bounded_by_first_nudge():
    assert nudge_deadline(0.0, 0.0, 0.12, 0.6) == pytest.approx(0.12)
    assert nudge_deadline(0.0, 0.3, 0.12, 0.6) == pytest.approx(0.42)
    assert nudge_deadline(0.0, 0.55, 0.12, 0.6) == pytest.approx(0.6)


# --------------------------
# Synchronizer
# --------------------------

def test_warmup_emits_then_steady_skips_unchanged():
    async def main():
        fs = _ScriptedFS(_listing("f|a.txt"))
        sync, emitted = _sync(fs, warmup_scans=2)
        task = asyncio.create_task(sync.run())
        for _ in range(10):
            await asyncio.sleep(0)
        assert sync.state is TreeState.STEADY
        assert [d["reason"] for _, d in emitted] == ["warmup#1", "warmup#2"]
        assert emitted[0][1]["changed"] is True
        assert emitted[1][1]["changed"] is False

        assert await sync.rebuild("periodic") is False
        assert len(emitted) == 2
        sync.dispose()
        task.cancel()

    asyncio.run(main())


def test_empty_warmup_forces_one_more_rebuild():
    async def main():
        fs = _ScriptedFS("", _listing("f|late.txt"))
        sync, emitted = _sync(fs)
        task = asyncio.create_task(sync.run())
        for _ in range(10):
            await asyncio.sleep(0)
        assert [d["reason"] for _, d in emitted] == ["warmup#1", "post-warmup-force"]
        assert emitted[-1][1]["tree"] == {"late.txt": None}
        assert sync.emitted_non_empty
        sync.dispose()
        task.cancel()

    asyncio.run(main())


def test_changed_snapshot_emits_with_incremented_version():
    async def main():
        fs = _ScriptedFS(_listing("f|a"), _listing("f|a", "f|b"))
        sync, emitted = _sync(fs)
        assert await sync.rebuild("first")
        assert await sync.rebuild("periodic")
        assert [d["version"] for _, d in emitted] == [1, 2]
        assert emitted[-1][1] == {"version": 2, "tree": {"a": None, "b": None}, "changed": True, "reason": "periodic"}

    asyncio.run(main())


def test_sandbox_gone_disables_for_good():
    async def main():
        fs = _ScriptedFS(SandboxGoneError("No such container"))
        sync, emitted = _sync(fs)
        assert await sync.rebuild("first", force_emit=True) is False
        assert sync.state is TreeState.DISABLED and not sync.active
        sync.nudge("write")
        assert await sync.resync() is False
        assert fs.calls == 1 and emitted == []

    asyncio.run(main())


def test_transient_scan_failure_is_skipped():
    async def main():
        fs = _ScriptedFS(FsOperationError("scan", "boom"), _listing("f|a"))
        sync, emitted = _sync(fs)
        assert await sync.rebuild("first") is False
        assert sync.active
        assert await sync.rebuild("again") is True
        assert len(emitted) == 1

    asyncio.run(main())


def test_two_quick_nudges_coalesce_into_one_rescan():
    async def main():
        fs = _ScriptedFS(_listing("f|a"))
        sync, emitted = _sync(fs, nudge_delay_s=0.05, nudge_max_wait_s=0.3)
        sync.nudge("write")
        await asyncio.sleep(0.01)
        sync.nudge("write")
        await asyncio.sleep(0.2)
        assert fs.calls == 1
        assert [d["reason"] for _, d in emitted] == ["debounced-write"]

    asyncio.run(main())


def test_continuous_nudges_fire_within_max_wait():
    async def main():
        fs = _ScriptedFS(_listing("f|a"))
        sync, emitted = _sync(fs, nudge_delay_s=0.1, nudge_max_wait_s=0.25)
        start = time.monotonic()
        fired_at = None
        while time.monotonic() - start < 0.6:
            sync.nudge("write")
            await asyncio.sleep(0.03)
            if emitted and fired_at is None:
                fired_at = time.monotonic() - start
        assert fired_at is not None
        assert fired_at < 0.25 + 0.15
        sync.dispose()

    asyncio.run(main())


def test_emit_current_replays_latest_snapshot():
    async def main():
        fs = _ScriptedFS(_listing("d|src"))
        sync, emitted = _sync(fs)
        await sync.emit_current("reconnect")
        assert emitted[-1][1]["version"] == 1 and emitted[-1][1]["reason"] == "reconnect"
        await sync.emit_current("reconnect")
        assert fs.calls == 1
        assert emitted[-1][1] == {"version": 1, "tree": {"src": {}}, "changed": False, "reason": "reconnect"}

    asyncio.run(main())


def test_resync_always_emits():
    async def main():
        fs = _ScriptedFS(_listing("f|a"))
        sync, emitted = _sync(fs)
        await sync.rebuild("first")
        assert await sync.resync() is True
        assert emitted[-1][1]["reason"] == "manual-resync"
        assert emitted[-1][1]["changed"] is False

    asyncio.run(main())
