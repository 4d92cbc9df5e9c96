from __future__ import annotations

"""
Filesystem proxy for a session's sandbox workspace.

Every operation resolves a client-supplied relative path under the workspace
root (``..`` segments and leading slashes are stripped first) and then runs
argument-vector commands inside the sandbox. Nothing is interpolated into a
shell string.
"""

import asyncio
import logging
import posixpath
from typing import Any, Dict, Iterator, List, Optional, Tuple

from ds_server.app.errors import FsOperationError
from ds_server.app.sandbox.runtime import CommandResult, SandboxHandle, SandboxRuntime

logger = logging.getLogger("devspace.fs")

__all__ = ["sanitize_rel", "abs_path", "SandboxFS"]


# --------------------------
# Path confinement
# --------------------------

def sanitize_rel(path: Optional[str]) -> str:
    """
    Normalize a client path to a workspace-relative form.

    Backslashes count as separators; empty, ``.`` and ``..`` segments are
    dropped, so the result can never climb out of the root.
    """
    raw = (path or "").replace("\\", "/").replace("\x00", "")
    parts = [seg for seg in raw.split("/") if seg and seg not in (".", "..")]
    return "/".join(parts)


def abs_path(root: str, rel: str) -> str:
    rel = sanitize_rel(rel)
    return posixpath.join(root, rel) if rel else root


def _to_ms(seconds: str) -> int:
    try:
        return int(float(seconds) * 1000)
    except ValueError:
        return 0


class SandboxFS:
    """
    Workspace operations bound to one sandbox handle. All public methods are
    coroutines; the blocking Docker exec runs in a worker thread.
    """

    def __init__(
        self,
        runtime: SandboxRuntime,
        handle: SandboxHandle,
        root: str,
        max_inline_read: int = 256 * 1024,
    ) -> None:
        self.runtime = runtime
        self.handle = handle
        self.root = root
        self.max_inline_read = max_inline_read

    async def _run(self, *argv: str) -> CommandResult:
        return await asyncio.to_thread(self.runtime.exec_run, self.handle, list(argv))

    async def _require(self, op: str, rel: str, *argv: str) -> CommandResult:
        res = await self._run(*argv)
        if not res.ok:
            raise FsOperationError(op, res.error_text() or f"{op} failed", rel)
        return res

    # ---------- tree scan ----------

    async def scan_tree(self) -> str:
        """
        One-pass listing of the whole workspace as ``<type>|<relpath>`` records
        separated by NUL. A partial listing (exit code 1) is still returned.
        """
        res = await self._run("find", self.root, "-mindepth", "1", "-printf", "%y|%P\\0")
        return res.stdout.decode("utf-8", errors="replace")

    # ---------- read-only ops ----------

    async def list_directory(self, path: str) -> Dict[str, Any]:
        rel = sanitize_rel(path)
        ap = abs_path(self.root, rel)
        probe = await self._run("test", "-d", ap)
        if not probe.ok:
            raise FsOperationError("list", "Not a directory", rel)
        res = await self._require(
            "list", rel, "find", ap, "-mindepth", "1", "-maxdepth", "1", "-printf", "%y|%s|%T@|%f\\0"
        )
        entries: List[Dict[str, Any]] = []
        for record in res.stdout.decode("utf-8", errors="replace").split("\0"):
            if not record:
                continue
            parts = record.split("|", 3)
            if len(parts) != 4 or not parts[3]:
                continue
            kind, size, mtime, name = parts
            is_dir = kind == "d"
            entries.append(
                {
                    "name": name,
                    "path": posixpath.join(rel, name) if rel else name,
                    "type": "directory" if is_dir else "file",
                    "isDir": is_dir,
                    "size": int(size) if size.isdigit() else 0,
                    "mtime": _to_ms(mtime),
                }
            )
        entries.sort(key=lambda e: (not e["isDir"], e["name"]))
        return {"path": rel, "entries": entries}

    async def read_file(self, path: str) -> Dict[str, Any]:
        rel = sanitize_rel(path)
        if not rel:
            raise FsOperationError("read", "Path required", rel)
        ap = abs_path(self.root, rel)
        probe = await self._run("test", "-f", ap)
        if not probe.ok:
            raise FsOperationError("read", "Not found", rel)
        stat = await self._require("read", rel, "stat", "-c", "%s", ap)
        size_text = stat.stdout.decode("utf-8", errors="replace").strip()
        size = int(size_text) if size_text.isdigit() else 0
        truncated = size > self.max_inline_read
        if truncated:
            res = await self._require("read", rel, "head", "-c", str(self.max_inline_read), ap)
        else:
            res = await self._require("read", rel, "cat", ap)
        return {
            "path": rel,
            "truncated": truncated,
            "size": size,
            "content": res.stdout.decode("utf-8", errors="replace"),
        }

    # ---------- mutations ----------

    async def write_file(self, path: str, content: str) -> Dict[str, Any]:
        rel = sanitize_rel(path)
        if not rel:
            raise FsOperationError("write", "Path required", rel)
        ap = abs_path(self.root, rel)
        parent, name = posixpath.split(ap)
        await self._require("write", rel, "mkdir", "-p", parent)
        data = content.encode("utf-8")
        await asyncio.to_thread(self.runtime.put_archive, self.handle, parent, name, data)

        size, mtime = len(data), 0
        stat = await self._run("stat", "-c", "%s|%Y", ap)
        if stat.ok:
            size_text, _, mtime_text = stat.stdout.decode("utf-8", errors="replace").strip().partition("|")
            if size_text.isdigit():
                size = int(size_text)
            mtime = _to_ms(mtime_text or "0")
        return {"path": rel, "size": size, "mtime": mtime, "type": "file", "isDir": False}

    async def create_directory(self, path: str) -> Dict[str, Any]:
        rel = sanitize_rel(path)
        if not rel:
            raise FsOperationError("createDir", "Path required", rel)
        await self._require("createDir", rel, "mkdir", "-p", abs_path(self.root, rel))
        return {"path": rel, "type": "directory", "isDir": True}

    async def delete_entry(self, path: str) -> Dict[str, Any]:
        rel = sanitize_rel(path)
        if not rel:
            raise FsOperationError("delete", "Refusing to delete the workspace root", rel)
        # rm -f succeeds when the entry is already gone.
        await self._require("delete", rel, "rm", "-rf", abs_path(self.root, rel))
        return {"path": rel}

    async def rename_entry(self, src: str, dst: str) -> Dict[str, Any]:
        rel_src, rel_dst = sanitize_rel(src), sanitize_rel(dst)
        if not rel_src or not rel_dst:
            raise FsOperationError("rename", "Both source and destination are required", rel_src or rel_dst)
        ap_src, ap_dst = abs_path(self.root, rel_src), abs_path(self.root, rel_dst)
        await self._require("rename", rel_dst, "mkdir", "-p", posixpath.dirname(ap_dst))
        await self._require("rename", rel_src, "mv", ap_src, ap_dst)
        return {"from": rel_src, "to": rel_dst}

    # ---------- downloads ----------

    async def create_download_archive(self, path: str) -> Tuple[Iterator[bytes], str]:
        """
        Tar stream of a file or directory plus the suggested download filename.
        """
        rel = sanitize_rel(path)
        ap = abs_path(self.root, rel)
        probe = await self._run("test", "-e", ap)
        if not probe.ok:
            raise FsOperationError("download", "Not found", rel)
        stream, _stat = await asyncio.to_thread(self.runtime.get_archive, self.handle, ap)
        filename = (posixpath.basename(rel) or "download") + ".tar"
        return stream, filename
