from __future__ import annotations

"""
Sandbox runtime client: a thin adapter over the Docker Engine API.

This module provides:
- SandboxRuntime.provision: allow-listed image, hardened HostConfig, an
  indefinite placeholder process and an interactive login shell on a PTY
- One-shot command execution by argument vector (never a shell string)
- Archive upload/download used by the filesystem proxy
- Background threads that pump shell output and resource samples
- Best-effort teardown that never raises

Every method is blocking; callers on the event loop go through
asyncio.to_thread. Background streams run on daemon threads and report back
through the callbacks they are given.
"""

import codecs
import io
import logging
import os
import re
import shutil
import socket
import tarfile
import threading
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, Tuple

import docker
from docker import DockerClient
from docker.errors import APIError, DockerException, ImageNotFound, NotFound
from docker.models.containers import Container
from docker.types import Ulimit

from ds_server.app.config import ServerConfig
from ds_server.app.errors import FsOperationError, ImageNotAllowedError, ProvisionError, SandboxGoneError
from ds_server.app.sandbox.core import (
    LABEL_APT_CAPS,
    LABEL_CREATED_AT,
    LABEL_HOST_WORKSPACE,
    LABEL_IMAGE,
    LABEL_MANAGED,
    LABEL_MINIMAL_MODE,
    LABEL_SESSION,
    LABEL_USER,
    now_utc_iso,
)

logger = logging.getLogger("devspace.sandbox")

__all__ = [
    "APT_CAPS",
    "CommandResult",
    "ResourceSample",
    "ShellStream",
    "SandboxHandle",
    "SandboxRuntime",
    "image_allowed",
    "compute_cpu_percent",
    "parse_stats_sample",
    "tar_from_bytes",
]

APT_CAPS = ["SETUID", "SETGID", "DAC_OVERRIDE", "CHOWN", "FOWNER", "MKNOD"]
BLKIO_DEVICE = "/dev/sda"

_DIGEST_RE = re.compile(r"@sha256:[0-9a-f]{64}$")
_READ_CHUNK = 4096


# --------------------------
# Value types
# --------------------------

@dataclass(frozen=True)
class CommandResult:
    exit_code: int
    stdout: bytes = b""
    stderr: bytes = b""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def text(self) -> str:
        return (self.stdout + self.stderr).decode("utf-8", errors="replace")

    def error_text(self) -> str:
        raw = self.stderr or self.stdout
        return raw.decode("utf-8", errors="replace").strip()


@dataclass(frozen=True)
class ResourceSample:
    """
    One resource-usage reading. ``cpu_percent`` is None when the sample
    could not be computed (counter reset or no elapsed system time).
    """
    cpu_percent: Optional[float]
    mem_used: int
    mem_limit: int
    mem_percent: float

    def to_payload(self) -> Dict[str, Any]:
        return {
            "cpuPercent": self.cpu_percent,
            "memUsed": self.mem_used,
            "memLimit": self.mem_limit,
            "memPercent": self.mem_percent,
        }


class ShellStream:
    """
    Raw bidirectional byte stream of the interactive shell exec (PTY mode,
    so output is not multiplexed).
    """

    def __init__(self, raw: Any) -> None:
        self._raw = raw
        self._sock = getattr(raw, "_sock", raw)
        self._write_lock = threading.Lock()
        self.closed = False
        settimeout = getattr(self._sock, "settimeout", None)
        if settimeout is not None:
            # An idle shell must not trip the Docker client's read timeout.
            settimeout(None)

    def write(self, data: bytes) -> None:
        if self.closed:
            raise OSError("shell stream is closed")
        with self._write_lock:
            self._sock.sendall(data)

    def read(self, size: int = _READ_CHUNK) -> bytes:
        return self._sock.recv(size)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self._sock.close()


@dataclass
class SandboxHandle:
    """
    Everything needed to address one session's sandbox. Owned by exactly one
    session; nothing else keeps a reference to the container.
    """
    session_id: str
    container: Any
    exec_id: str
    shell: Any
    image: str
    network_mode: str
    workspace_dir: Optional[str] = None
    auto_remove: bool = True
    labels: Dict[str, str] = field(default_factory=dict)


# --------------------------
# Pure helpers
# --------------------------

def image_allowed(image: str, allowlist: Sequence[str], *, digest_required: bool = False) -> bool:
    """
    True when ``image`` is allow-listed and, if required, pinned by digest.
    """
    if image not in allowlist:
        return False
    if digest_required and not _DIGEST_RE.search(image):
        return False
    return True


def compute_cpu_percent(stats: Dict[str, Any]) -> Optional[float]:
    """
    CPU% from cumulative usage deltas between this and the previous sample,
    scaled by online CPUs. A non-positive system delta or a negative usage
    delta yields None: the sample is absent, not zero.
    """
    cpu = stats.get("cpu_stats") or {}
    pre = stats.get("precpu_stats") or {}
    cpu_delta = (cpu.get("cpu_usage") or {}).get("total_usage", 0) - (pre.get("cpu_usage") or {}).get("total_usage", 0)
    sys_delta = (cpu.get("system_cpu_usage") or 0) - (pre.get("system_cpu_usage") or 0)
    if sys_delta <= 0 or cpu_delta < 0:
        return None
    cores = cpu.get("online_cpus") or len((cpu.get("cpu_usage") or {}).get("percpu_usage") or []) or 1
    return round(cpu_delta / sys_delta * cores * 100.0, 1)


def parse_stats_sample(stats: Dict[str, Any]) -> ResourceSample:
    mem = stats.get("memory_stats") or {}
    used = int(mem.get("usage") or 0)
    limit = int(mem.get("limit") or 0)
    mem_percent = round(used / limit * 100.0, 1) if limit > 0 else 0.0
    return ResourceSample(
        cpu_percent=compute_cpu_percent(stats),
        mem_used=used,
        mem_limit=limit,
        mem_percent=mem_percent,
    )


def tar_from_bytes(name: str, data: bytes, mode: int = 0o644) -> io.BytesIO:
    """
    Create an in-memory tar archive holding a single file, positioned at the
    start and ready for Docker put_archive.
    """
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        ti = tarfile.TarInfo(name=name)
        ti.size = len(data)
        ti.mode = mode
        tar.addfile(ti, io.BytesIO(data))
    buf.seek(0)
    return buf


def _is_missing_container(exc: Exception) -> bool:
    msg = str(exc).lower()
    return "no such container" in msg or "is not running" in msg


# --------------------------
# Runtime client
# --------------------------

class SandboxRuntime:
    """
    Stateless per call: every operation is handed the SandboxHandle it acts on,
    so concurrent use for different sessions is safe.
    """

    def __init__(self, settings: ServerConfig, client_factory: Optional[Callable[[], DockerClient]] = None) -> None:
        self.settings = settings
        self._client_factory = client_factory or (lambda: docker.from_env(timeout=settings.docker_client_timeout))
        self._client: Optional[DockerClient] = None
        self._client_lock = threading.Lock()

    @property
    def client(self) -> DockerClient:
        with self._client_lock:
            if self._client is None:
                self._client = self._client_factory()
            return self._client

    def ping(self) -> None:
        self.client.ping()

    def close(self) -> None:
        with self._client_lock:
            client, self._client = self._client, None
        if client is not None:
            client.close()

    # ---------- provisioning ----------

    def sandbox_environment(self, session_id: str, username: str) -> List[str]:
        s = self.settings
        return [
            "LANG=C.UTF-8",
            "LC_ALL=C.UTF-8",
            "TERM=xterm-256color",
            f"WORKSPACE_DIR={s.workspace_path}",
            f"DEVSPACE_SESSION_ID={session_id}",
            f"DEVSPACE_USER={username}",
            f"MINIMAL_RESOURCE_MODE={str(s.minimal_resource_mode).lower()}",
        ]

    def build_create_kwargs(
        self,
        session_id: str,
        username: str,
        image: str,
        host_dir: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Translate settings into ``containers.create`` kwargs: no new
        privileges, tini as init, capability policy, resource ceilings and an
        isolated (or host-bound) workspace.
        """
        s = self.settings
        kwargs: Dict[str, Any] = {
            "image": image,
            "command": ["sleep", "infinity"],
            "name": f"devspace_{session_id}",
            "working_dir": s.workspace_path,
            "environment": self.sandbox_environment(session_id, username),
            "labels": {
                LABEL_MANAGED: "true",
                LABEL_SESSION: session_id,
                LABEL_USER: username,
                LABEL_IMAGE: image,
                LABEL_CREATED_AT: now_utc_iso(),
                LABEL_HOST_WORKSPACE: str(s.use_host_workspace).lower(),
                LABEL_MINIMAL_MODE: str(s.minimal_resource_mode).lower(),
                LABEL_APT_CAPS: str(s.enable_apt_caps).lower(),
            },
            "auto_remove": s.auto_remove,
            "network_mode": s.network_mode,
            "read_only": s.read_only_root,
            "security_opt": ["no-new-privileges:true"],
            "init": True,
            "stdin_open": False,
            "tty": False,
        }

        if s.enable_apt_caps:
            # Package installs need a writable root and a handful of caps.
            kwargs["read_only"] = False
            kwargs["cap_drop"] = ["ALL"]
            kwargs["cap_add"] = list(APT_CAPS)
        elif s.retain_cap_drop_all:
            kwargs["cap_drop"] = ["ALL"]
            if s.allowed_extra_caps:
                kwargs["cap_add"] = list(s.allowed_extra_caps)
        elif s.allowed_extra_caps:
            kwargs["cap_add"] = list(s.allowed_extra_caps)

        kwargs.update(s.build_run_resource_kwargs())
        if s.container_runtime:
            kwargs["runtime"] = s.container_runtime

        for key, rate in (
            ("device_read_bps", s.blkio_read_bps),
            ("device_write_bps", s.blkio_write_bps),
            ("device_read_iops", s.blkio_read_iops),
            ("device_write_iops", s.blkio_write_iops),
        ):
            if rate > 0:
                kwargs[key] = [{"Path": BLKIO_DEVICE, "Rate": rate}]

        ulimits = []
        if s.ulimit_nofile > 0:
            ulimits.append(Ulimit(name="nofile", soft=s.ulimit_nofile, hard=s.ulimit_nofile))
        if s.ulimit_nproc > 0:
            ulimits.append(Ulimit(name="nproc", soft=s.ulimit_nproc, hard=s.ulimit_nproc))
        if ulimits:
            kwargs["ulimits"] = ulimits

        if s.tmpfs:
            kwargs["tmpfs"] = dict(s.tmpfs)
        if host_dir:
            kwargs["volumes"] = {host_dir: {"bind": s.workspace_path, "mode": "rw"}}
        if s.sandbox_user:
            kwargs["user"] = s.sandbox_user
        return kwargs

    def _ensure_image(self, image: str) -> None:
        try:
            self.client.images.get(image)
        except ImageNotFound:
            logger.info("Pulling sandbox image %s", image)
            self.client.images.pull(image)

    def provision(self, session_id: str, username: str) -> SandboxHandle:
        """
        Create and start a sandbox for ``session_id`` and attach a login shell.

        Raises:
            ImageNotAllowedError: the configured image fails the allow-list.
            ProvisionError: anything else; no container is left behind.
        """
        s = self.settings
        image = s.base_image
        if not image_allowed(image, s.allowlist_images, digest_required=s.digest_required):
            raise ImageNotAllowedError(f'Refused to create container: image "{image}" is not in allowlist.')

        try:
            self._ensure_image(image)
        except DockerException as exc:
            raise ProvisionError(f"image {image} unavailable: {exc}") from exc

        host_dir: Optional[str] = None
        if s.use_host_workspace:
            host_dir = s.session_workspace_dir(session_id)
            os.makedirs(host_dir, mode=0o750, exist_ok=True)

        kwargs = self.build_create_kwargs(session_id, username, image, host_dir)
        try:
            container: Container = self.client.containers.create(**kwargs)
        except DockerException as exc:
            self._remove_host_dir(host_dir)
            raise ProvisionError(str(exc)) from exc

        try:
            container.start()
            if not s.use_host_workspace:
                container.exec_run(["mkdir", "-p", s.workspace_path])
            exec_info = self.client.api.exec_create(
                container.id,
                ["/bin/bash", "--login"],
                stdin=True,
                tty=True,
                workdir=s.workspace_path,
                environment=self.sandbox_environment(session_id, username),
                user=s.sandbox_user or "",
            )
            raw = self.client.api.exec_start(exec_info["Id"], tty=True, socket=True)
            shell = ShellStream(raw)
        except Exception as exc:
            logger.warning("Sandbox start failed for session=%s; removing container: %s", session_id, exc)
            try:
                container.remove(force=True)
            except Exception as rm_exc:
                logger.error("Failed to remove half-created container for session=%s: %s", session_id, rm_exc)
            self._remove_host_dir(host_dir)
            raise ProvisionError(str(exc)) from exc

        logger.info(
            "Provisioned sandbox session=%s container=%s image=%s network=%s",
            session_id,
            container.short_id,
            image,
            s.network_mode,
        )
        return SandboxHandle(
            session_id=session_id,
            container=container,
            exec_id=exec_info["Id"],
            shell=shell,
            image=image,
            network_mode=s.network_mode,
            workspace_dir=host_dir,
            auto_remove=s.auto_remove,
            labels=dict(kwargs["labels"]),
        )

    # ---------- interactive shell ----------

    def resize(self, handle: SandboxHandle, cols: int, rows: int) -> None:
        try:
            self.client.api.exec_resize(handle.exec_id, height=rows, width=cols)
        except (DockerException, OSError) as exc:
            logger.debug("resize ignored for session=%s: %s", handle.session_id, exc)

    def write_input(self, handle: SandboxHandle, data: bytes) -> None:
        handle.shell.write(data)

    def start_output_pump(
        self,
        handle: SandboxHandle,
        on_data: Callable[[str], None],
        on_end: Callable[[Optional[BaseException]], None],
    ) -> Callable[[], None]:
        """
        Forward shell output (decoded incrementally as UTF-8) to ``on_data``
        from a daemon thread. ``on_end`` fires once when the stream ends or
        errors, unless the returned stop function was called first.
        """
        stopped = threading.Event()

        def _pump() -> None:
            decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
            error: Optional[BaseException] = None
            try:
                while not stopped.is_set():
                    chunk = handle.shell.read(_READ_CHUNK)
                    if not chunk:
                        break
                    text = decoder.decode(chunk)
                    if text:
                        on_data(text)
            except OSError as exc:
                error = exc
            if not stopped.is_set():
                on_end(error)

        threading.Thread(target=_pump, name=f"ds-shell-{handle.session_id}", daemon=True).start()
        return stopped.set

    # ---------- one-shot commands ----------

    def exec_run(self, handle: SandboxHandle, argv: Sequence[str], *, workdir: Optional[str] = None) -> CommandResult:
        """
        Run ``argv`` inside the sandbox and capture stdout/stderr separately.

        Raises:
            SandboxGoneError: the container no longer exists or is stopped.
        """
        try:
            res = handle.container.exec_run(
                list(argv),
                demux=True,
                workdir=workdir,
                user=self.settings.sandbox_user or "",
            )
        except NotFound as exc:
            raise SandboxGoneError(str(exc)) from exc
        except APIError as exc:
            if exc.status_code == 409 or _is_missing_container(exc):
                raise SandboxGoneError(str(exc)) from exc
            raise
        stdout, stderr = res.output if res.output else (None, None)
        exit_code = res.exit_code if res.exit_code is not None else 1
        return CommandResult(exit_code=int(exit_code), stdout=stdout or b"", stderr=stderr or b"")

    def exec_capture(self, handle: SandboxHandle, argv: Sequence[str]) -> str:
        """Combined stdout+stderr text of a one-shot command."""
        return self.exec_run(handle, argv).text()

    def put_archive(self, handle: SandboxHandle, parent: str, name: str, data: bytes) -> None:
        try:
            ok = handle.container.put_archive(parent, tar_from_bytes(name, data))
        except NotFound as exc:
            if _is_missing_container(exc):
                raise SandboxGoneError(str(exc)) from exc
            raise FsOperationError("write", f"parent directory missing: {parent}") from exc
        if not ok:
            raise FsOperationError("write", f"upload to {parent} rejected")

    def get_archive(self, handle: SandboxHandle, path: str) -> Tuple[Iterator[bytes], Dict[str, Any]]:
        try:
            stream, stat = handle.container.get_archive(path)
        except NotFound as exc:
            if _is_missing_container(exc):
                raise SandboxGoneError(str(exc)) from exc
            raise FsOperationError("download", "Not found") from exc
        return stream, stat

    # ---------- resource usage ----------

    def stream_stats(
        self,
        handle: SandboxHandle,
        on_sample: Callable[[ResourceSample], None],
        on_end: Optional[Callable[[Optional[BaseException]], None]] = None,
    ) -> Callable[[], None]:
        """
        Subscribe to the engine's stats stream on a daemon thread. The returned
        function unsubscribes; calling it more than once is harmless.
        """
        stopped = threading.Event()

        def _stream() -> None:
            error: Optional[BaseException] = None
            try:
                for raw in self.client.api.stats(handle.container.id, stream=True, decode=True):
                    if stopped.is_set():
                        break
                    on_sample(parse_stats_sample(raw))
            except (DockerException, OSError, ValueError) as exc:
                error = exc
            if not stopped.is_set() and on_end is not None:
                on_end(error)

        threading.Thread(target=_stream, name=f"ds-stats-{handle.session_id}", daemon=True).start()
        return stopped.set

    # ---------- teardown ----------

    def destroy(self, handle: SandboxHandle) -> None:
        """
        Close the shell, stop with a short grace timeout, then force-remove
        unless the container removes itself. Never raises.
        """
        try:
            handle.shell.close()
        except Exception as exc:
            logger.debug("shell close failed for session=%s: %s", handle.session_id, exc)

        container = handle.container
        try:
            container.stop(timeout=self.settings.stop_timeout_seconds)
        except NotFound:
            logger.debug("container for session=%s already gone", handle.session_id)
            return
        except Exception as exc:
            logger.warning("Failed to stop container for session=%s: %s", handle.session_id, exc)

        if handle.auto_remove:
            return
        try:
            container.remove(force=True)
        except NotFound:
            pass
        except Exception as exc:
            logger.error("Failed to remove container for session=%s: %s", handle.session_id, exc)

    def release_workspace_dir(self, handle: SandboxHandle) -> None:
        self._remove_host_dir(handle.workspace_dir)

    @staticmethod
    def _remove_host_dir(host_dir: Optional[str]) -> None:
        if host_dir:
            shutil.rmtree(host_dir, ignore_errors=True)
