"""
Unified server configuration for DevSpace (ds_server).

This module centralizes:
- Defaults for all server settings
- Loading from environment variables
- Optional .env file hydration (only for allowed keys, via python-dotenv)
- Helpers for resource parsing and derived values

Usage:
    from ds_server.app.config import get_settings

    settings = get_settings()
    settings.validate()
    print(settings.base_image)

Notes:
- Environment variables always take precedence over .env values.
- Durations follow the deployment convention of the original service and are
  expressed in milliseconds (``*_MS``) unless the name says otherwise.
- SERVER_INSTANCE_SECRET is mandatory; ``validate()`` refuses to continue
  without it so the process never starts with a guessable token key.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import dotenv_values, find_dotenv

from ds_server.app.errors import ConfigError


# ----------------------------
# Helpers: env, parsing, types
# ----------------------------

_ALLOWED_DOTENV_KEYS = {
    # Security
    "SERVER_INSTANCE_SECRET",
    # Service
    "CLIENT_URL",
    "CORS_ALLOW_ORIGINS",
    "DEVSPACE_VERSION",
    "LOG_LEVEL",
    "DOCKER_CLIENT_TIMEOUT",
    # Image policy
    "FORCED_BASE_IMAGE",
    "ALLOWLIST_IMAGES",
    "DIGEST_REQUIRED",
    # Sandbox shape
    "FORCED_NETWORK_MODE",
    "READONLY_ROOT",
    "SANDBOX_MEMORY",
    "SANDBOX_CPUS",
    "SANDBOX_AUTOREMOVE",
    "SANDBOX_RUNTIME",
    "SANDBOX_PIDS_LIMIT",
    "SANDBOX_TMPFS",
    "SANDBOX_USER_UID",
    "SANDBOX_USER_GID",
    "SANDBOX_STOP_TIMEOUT_SECONDS",
    "RETAIN_CAP_DROP_ALL",
    "ALLOWED_EXTRA_CAPS",
    "ENABLE_APT_CAPS",
    "ULIMIT_NOFILE",
    "ULIMIT_NPROC",
    "BLKIO_READ_BPS",
    "BLKIO_WRITE_BPS",
    "BLKIO_READ_IOPS",
    "BLKIO_WRITE_IOPS",
    "MINIMAL_RESOURCE_MODE",
    "USE_HOST_WORKSPACE",
    "WORKSPACES_ROOT",
    "WORKSPACE_PATH",
    # Sessions
    "SESSION_GRACE_PERIOD_MS",
    "SOCKET_INIT_RATE_WINDOW_MS",
    "SOCKET_INIT_MAX",
    "MAX_CONCURRENT_SESSIONS",
    "MAX_SESSIONS_PER_USER",
    "INPUT_MAX_TOKENS_PER_SEC",
    "INPUT_BURST_BYTES",
    # Idle monitor
    "SESSION_IDLE_MAX_MS",
    "SESSION_IDLE_PING_MS",
    "SESSION_IDLE_PING_TIMEOUT_MS",
    "SESSION_IDLE_CHECK_MS",
    # Resource guard
    "RESOURCE_KILL_MEM_PERCENT",
    "RESOURCE_KILL_CPU_PERCENT",
    "RESOURCE_KILL_SUSTAIN_MS",
    "RESOURCE_KILL_GRACE_MS",
    "RESOURCE_CHECK_INTERVAL_MS",
    # File tree
    "SIMPLE_TREE_SCAN_MS",
    "SIMPLE_TREE_WARMUP_SCANS",
    "SIMPLE_TREE_WARMUP_INTERVAL_MS",
    "SIMPLE_TREE_NUDGE_DELAY_MS",
    "SIMPLE_TREE_NUDGE_MAX_WAIT_MS",
    "SIMPLE_TREE_DEDUP_LEADING_CHARS",
    # Filesystem proxy
    "MAX_INLINE_READ",
    "DOWNLOAD_TOKEN_TTL_SECONDS",
}

_MIN_SECRET_LENGTH = 16

_SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)([kKmMgG]?[bB]?)?\s*$")
_CPU_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*(c|cpu|cpus)?\s*$")


def _str2bool(val: str | None, default: bool = False) -> bool:
    if val is None:
        return default
    s = val.strip().lower()
    return s in ("1", "true", "yes", "y", "on")


def _split_csv(s: str | None) -> List[str]:
    if not s:
        return []
    return [part.strip() for part in s.split(",") if part.strip()]


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError:
        return default


def _parse_mem_limit_to_bytes(mem_limit: Optional[str]) -> Optional[int]:
    """
    Parse human-readable memory limit into bytes for Docker (e.g., '512m', '2g', '1024').
    Returns None if not provided or invalid.
    """
    if not mem_limit:
        return None
    m = _SIZE_RE.match(mem_limit.strip())
    if not m:
        return None
    val = float(m.group(1))
    unit = (m.group(2) or "").lower()

    if unit in ("", "b"):
        mult = 1
    elif unit in ("k", "kb"):
        mult = 1024
    elif unit in ("m", "mb"):
        mult = 1024**2
    elif unit in ("g", "gb"):
        mult = 1024**3
    else:
        return None
    return int(val * mult)


def _parse_cpu_limit_to_nano_cpus(cpu_limit: Optional[str]) -> Optional[int]:
    """
    Parse CPU limit into nano_cpus for Docker (1.0 CPU == 1e9 nano_cpus).
    Accepts forms like '1', '1.5', '2c', '0.5cpu'.
    """
    if not cpu_limit:
        return None
    m = _CPU_RE.match(cpu_limit.strip())
    if not m:
        return None
    return int(float(m.group(1)) * 1_000_000_000)


def _parse_tmpfs(spec: Optional[str]) -> Dict[str, str]:
    """
    Parse SANDBOX_TMPFS entries ("/tmp:rw,noexec,size=64m|/run:size=16m") into
    the mapping Docker expects (mount path -> options).
    """
    mounts: Dict[str, str] = {}
    for entry in (spec or "").split("|"):
        entry = entry.strip()
        if not entry:
            continue
        path, _, opts = entry.partition(":")
        if path:
            mounts[path] = opts
    return mounts


def _hydrate_env_from_dotenv(dotenv_path: Optional[Path], allowed_keys: set[str]) -> None:
    """
    Copy allowed keys from a .env file into os.environ when they are not already set.
    """
    if dotenv_path is not None:
        path = str(dotenv_path)
    else:
        path = find_dotenv(usecwd=True)
    if not path or not Path(path).is_file():
        return
    for key, val in dotenv_values(path).items():
        if key in allowed_keys and key not in os.environ and val is not None:
            os.environ[key] = val


# ----------------------------
# Unified configuration object
# ----------------------------

@dataclass(frozen=True)
class ServerConfig:
    """
    Unified configuration for DevSpace.

    All fields are immutable once created. Use from_env() to construct an instance.
    """

    # Security
    instance_secret: str

    # Service metadata
    service_version: str
    log_level: str
    cors_allow_origins: List[str]
    docker_client_timeout: int

    # Image policy
    base_image: str
    allowlist_images: List[str]
    digest_required: bool

    # Sandbox shape
    network_mode: str
    read_only_root: bool
    memory_limit: str
    cpu_limit: str
    auto_remove: bool
    container_runtime: Optional[str]
    pids_limit: int
    tmpfs: Dict[str, str]
    sandbox_user: Optional[str]
    stop_timeout_seconds: int
    retain_cap_drop_all: bool
    allowed_extra_caps: List[str]
    enable_apt_caps: bool
    ulimit_nofile: int
    ulimit_nproc: int
    blkio_read_bps: int
    blkio_write_bps: int
    blkio_read_iops: int
    blkio_write_iops: int
    minimal_resource_mode: bool
    use_host_workspace: bool
    workspaces_root: str
    workspace_path: str

    # Sessions
    session_grace_period_ms: int
    socket_init_rate_window_ms: int
    socket_init_max: int
    max_concurrent_sessions: int
    max_sessions_per_user: int
    input_max_tokens_per_sec: int
    input_burst_bytes: int

    # Idle monitor
    session_idle_max_ms: int
    session_idle_ping_ms: int
    session_idle_ping_timeout_ms: int
    session_idle_check_ms: int

    # Resource guard (0 disables a threshold)
    resource_kill_mem_percent: int
    resource_kill_cpu_percent: int
    resource_kill_sustain_ms: int
    resource_kill_grace_ms: int
    resource_check_interval_ms: int

    # File tree synchronizer
    tree_scan_ms: int
    tree_warmup_scans: int
    tree_warmup_interval_ms: int
    tree_nudge_delay_ms: int
    tree_nudge_max_wait_ms: int
    tree_dedup_leading_chars: str

    # Filesystem proxy
    max_inline_read: int
    download_token_ttl_seconds: int

    @staticmethod
    def from_env(dotenv: bool = True, dotenv_path: Optional[str | Path] = None) -> "ServerConfig":
        """
        Construct ServerConfig with values pulled from the current environment,
        optionally hydrated by a .env file if dotenv=True.
        """
        if dotenv:
            _hydrate_env_from_dotenv(Path(dotenv_path) if dotenv_path else None, _ALLOWED_DOTENV_KEYS)

        base_image = (os.getenv("FORCED_BASE_IMAGE") or "dev-base:latest").strip()
        allowlist = _split_csv(os.getenv("ALLOWLIST_IMAGES")) or [base_image]

        minimal = _str2bool(os.getenv("MINIMAL_RESOURCE_MODE"), default=False)
        memory = os.getenv("SANDBOX_MEMORY", "1g")
        cpus = os.getenv("SANDBOX_CPUS", "1.0")
        read_only = _str2bool(os.getenv("READONLY_ROOT"), default=False)
        if minimal:
            memory, cpus, read_only = "128m", "0.05", False

        uid = (os.getenv("SANDBOX_USER_UID") or "").strip()
        gid = (os.getenv("SANDBOX_USER_GID") or "").strip()
        sandbox_user = (f"{uid}:{gid}" if gid else uid) if uid else None

        cors_allow = _split_csv(os.getenv("CORS_ALLOW_ORIGINS")) or _split_csv(
            os.getenv("CLIENT_URL", "http://localhost:3000")
        )

        return ServerConfig(
            instance_secret=(os.getenv("SERVER_INSTANCE_SECRET") or "").strip(),
            service_version=os.getenv("DEVSPACE_VERSION", "0.1.0"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            cors_allow_origins=cors_allow,
            docker_client_timeout=_int_env("DOCKER_CLIENT_TIMEOUT", 60),
            base_image=base_image,
            allowlist_images=allowlist,
            digest_required=_str2bool(os.getenv("DIGEST_REQUIRED"), default=False),
            network_mode=os.getenv("FORCED_NETWORK_MODE", "none"),
            read_only_root=read_only,
            memory_limit=memory,
            cpu_limit=cpus,
            auto_remove=_str2bool(os.getenv("SANDBOX_AUTOREMOVE"), default=True),
            container_runtime=os.getenv("SANDBOX_RUNTIME") or None,
            pids_limit=max(0, _int_env("SANDBOX_PIDS_LIMIT", 256)),
            tmpfs=_parse_tmpfs(os.getenv("SANDBOX_TMPFS")),
            sandbox_user=sandbox_user,
            stop_timeout_seconds=max(0, _int_env("SANDBOX_STOP_TIMEOUT_SECONDS", 1)),
            retain_cap_drop_all=_str2bool(os.getenv("RETAIN_CAP_DROP_ALL"), default=True),
            allowed_extra_caps=(os.getenv("ALLOWED_EXTRA_CAPS") or "").split(),
            enable_apt_caps=_str2bool(os.getenv("ENABLE_APT_CAPS"), default=True),
            ulimit_nofile=max(0, _int_env("ULIMIT_NOFILE", 0)),
            ulimit_nproc=max(0, _int_env("ULIMIT_NPROC", 0)),
            blkio_read_bps=max(0, _int_env("BLKIO_READ_BPS", 0)),
            blkio_write_bps=max(0, _int_env("BLKIO_WRITE_BPS", 0)),
            blkio_read_iops=max(0, _int_env("BLKIO_READ_IOPS", 0)),
            blkio_write_iops=max(0, _int_env("BLKIO_WRITE_IOPS", 0)),
            minimal_resource_mode=minimal,
            use_host_workspace=_str2bool(os.getenv("USE_HOST_WORKSPACE"), default=False),
            workspaces_root=os.getenv("WORKSPACES_ROOT") or str(Path.cwd() / "workspaces"),
            workspace_path=os.getenv("WORKSPACE_PATH", "/workspace").rstrip("/") or "/workspace",
            session_grace_period_ms=max(0, _int_env("SESSION_GRACE_PERIOD_MS", 120_000)),
            socket_init_rate_window_ms=max(1, _int_env("SOCKET_INIT_RATE_WINDOW_MS", 60_000)),
            socket_init_max=max(1, _int_env("SOCKET_INIT_MAX", 10)),
            max_concurrent_sessions=max(0, _int_env("MAX_CONCURRENT_SESSIONS", 0)),
            max_sessions_per_user=max(0, _int_env("MAX_SESSIONS_PER_USER", 0)),
            input_max_tokens_per_sec=max(1, _int_env("INPUT_MAX_TOKENS_PER_SEC", 8000)),
            input_burst_bytes=max(1, _int_env("INPUT_BURST_BYTES", 16000)),
            session_idle_max_ms=max(0, _int_env("SESSION_IDLE_MAX_MS", 600_000)),
            session_idle_ping_ms=max(0, _int_env("SESSION_IDLE_PING_MS", 480_000)),
            session_idle_ping_timeout_ms=max(0, _int_env("SESSION_IDLE_PING_TIMEOUT_MS", 120_000)),
            session_idle_check_ms=max(100, _int_env("SESSION_IDLE_CHECK_MS", 5000)),
            resource_kill_mem_percent=max(0, _int_env("RESOURCE_KILL_MEM_PERCENT", 0)),
            resource_kill_cpu_percent=max(0, _int_env("RESOURCE_KILL_CPU_PERCENT", 0)),
            resource_kill_sustain_ms=max(0, _int_env("RESOURCE_KILL_SUSTAIN_MS", 15_000)),
            resource_kill_grace_ms=max(0, _int_env("RESOURCE_KILL_GRACE_MS", 5000)),
            resource_check_interval_ms=max(100, _int_env("RESOURCE_CHECK_INTERVAL_MS", 2000)),
            tree_scan_ms=max(100, _int_env("SIMPLE_TREE_SCAN_MS", 2000)),
            tree_warmup_scans=max(0, _int_env("SIMPLE_TREE_WARMUP_SCANS", 3)),
            tree_warmup_interval_ms=max(0, _int_env("SIMPLE_TREE_WARMUP_INTERVAL_MS", 250)),
            tree_nudge_delay_ms=max(0, _int_env("SIMPLE_TREE_NUDGE_DELAY_MS", 120)),
            tree_nudge_max_wait_ms=max(0, _int_env("SIMPLE_TREE_NUDGE_MAX_WAIT_MS", 600)),
            tree_dedup_leading_chars=os.getenv("SIMPLE_TREE_DEDUP_LEADING_CHARS", ""),
            max_inline_read=max(1, _int_env("MAX_INLINE_READ", 256 * 1024)),
            download_token_ttl_seconds=max(1, _int_env("DOWNLOAD_TOKEN_TTL_SECONDS", 60)),
        )

    # ----------------------------
    # Derived helpers / utilities
    # ----------------------------

    def validate(self) -> "ServerConfig":
        """
        Refuse configurations the server must not start with.

        Raises:
            ConfigError: when SERVER_INSTANCE_SECRET is missing or too short.
        """
        if len(self.instance_secret) < _MIN_SECRET_LENGTH:
            raise ConfigError(
                f"SERVER_INSTANCE_SECRET must be set to at least {_MIN_SECRET_LENGTH} characters"
            )
        return self

    @property
    def idle_ping_after_ms(self) -> int:
        """
        Idle duration after which a liveness ping is sent; always leaves at least
        one minute before the hard ceiling for the client to answer.
        """
        return max(0, min(self.session_idle_ping_ms, self.session_idle_max_ms - 60_000))

    @property
    def idle_minutes(self) -> int:
        return round(self.session_idle_max_ms / 60_000)

    def build_run_resource_kwargs(self) -> Dict[str, object]:
        """
        Convert configured cpu/mem strings into Docker run/create kwargs.
        """
        kwargs: Dict[str, object] = {}
        nano = _parse_cpu_limit_to_nano_cpus(self.cpu_limit)
        if nano is not None and nano > 0:
            kwargs["nano_cpus"] = nano
        mem_bytes = _parse_mem_limit_to_bytes(self.memory_limit)
        if mem_bytes is not None and mem_bytes > 0:
            kwargs["mem_limit"] = mem_bytes
        if self.pids_limit > 0:
            kwargs["pids_limit"] = self.pids_limit
        return kwargs

    def session_workspace_dir(self, session_id: str) -> str:
        """
        Host directory bound into the sandbox when USE_HOST_WORKSPACE is enabled.
        """
        return str(Path(self.workspaces_root) / session_id)


# ----------------------------
# Cached accessor
# ----------------------------

@lru_cache(maxsize=1)
def get_settings() -> ServerConfig:
    """
    Cached settings accessor. Safe to import and call across the app.
    """
    return ServerConfig.from_env(dotenv=True)


__all__ = [
    "ServerConfig",
    "get_settings",
]
