"""
Centralized rotating file logging for DevSpace (ds_server).

A RotatingFileHandler always writes DEBUG and above to a file, chosen from a
prioritized list of candidate paths so the server can start from read-only
checkouts and containers alike. Session lifecycle events (provision, resume,
termination with reason) are logged under the ``devspace`` logger hierarchy.

Usage (call once during app startup, before creating the FastAPI app):

    from ds_server.app.logging_setup import initialize_from_env

    log_path = initialize_from_env(service_name="devspace")

Environment variables (optional):
- DS_LOG_FILE: Absolute path to the desired log file.
- DS_LOG_DIR:  Directory where the log file should be created.
- DS_LOG_NAME: File name to use (default: "<service_name>.log").
- DS_LOG_MAX_BYTES: Max file size before rotate (default: 10485760 = 10MB).
- DS_LOG_BACKUP_COUNT: Number of rotated files to keep (default: 5).
- DS_LOG_LEVEL: Base log level for app logs (default: INFO).
- LOG_LEVEL: Fallback for DS_LOG_LEVEL when unset.
- DS_LOG_CONSOLE: "0"/"false" to skip the console handler.
"""

from __future__ import annotations

import logging
import logging.handlers
import os
import sys
import tempfile
from pathlib import Path
from typing import List, Optional, Tuple, Union

__all__ = [
    "initialize_from_env",
    "setup_logging",
    "configure_third_party_loggers",
]

APP_LOGGER = "devspace"

_DEFAULT_MAX_BYTES = 10 * 1024 * 1024
_DEFAULT_BACKUP_COUNT = 5
_DEFAULT_FORMAT_FILE = "%(asctime)s %(levelname)s [ds_server] %(name)s pid=%(process)d %(filename)s:%(lineno)d - %(message)s"
_DEFAULT_FORMAT_CONSOLE = "%(asctime)s %(levelname)s [ds_server] %(name)s - %(message)s"
_DEFAULT_DATEFMT = "%Y-%m-%d %H:%M:%S"

_ATTACHED_LOG_PATHS: set[str] = set()


def _coerce_level(level: Optional[Union[int, str]], default: int = logging.INFO) -> int:
    if isinstance(level, int):
        return level
    if isinstance(level, str):
        return getattr(logging, level.strip().upper(), default)
    return default


def _candidate_paths(service_name: str, log_dir: Optional[Union[str, Path]]) -> List[Path]:
    """
    Prioritized candidate log files: explicit file, explicit/env dir, project
    root, then per-user and temp fallbacks.
    """
    file_name = (os.getenv("DS_LOG_NAME") or f"{service_name}.log").strip()
    candidates: List[Path] = []

    env_file = os.getenv("DS_LOG_FILE")
    if env_file:
        candidates.append(Path(env_file).expanduser())
    if log_dir:
        candidates.append(Path(log_dir).expanduser() / file_name)
    env_dir = os.getenv("DS_LOG_DIR")
    if env_dir:
        candidates.append(Path(env_dir).expanduser() / file_name)

    # ds_server/src/ds_server/app/logging_setup.py -> project root is four levels up
    here = Path(__file__).resolve()
    if len(here.parents) > 4:
        candidates.append(here.parents[4] / "logs" / file_name)

    candidates.append(Path.home() / ".devspace" / "logs" / file_name)
    candidates.append(Path(tempfile.gettempdir()) / "devspace" / "logs" / file_name)
    return candidates


def _ensure_writable_file(path: Path) -> Tuple[bool, Optional[str]]:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, mode="a", encoding="utf-8"):
            pass
        return True, None
    except OSError as e:
        return False, f"{e.__class__.__name__}: {e}"


def _pick_log_path(service_name: str, log_dir: Optional[Union[str, Path]]) -> Path:
    """
    Choose the first writable candidate. Raises RuntimeError if none are writable.
    """
    attempts: List[Tuple[str, str]] = []
    for candidate in _candidate_paths(service_name, log_dir):
        ok, reason = _ensure_writable_file(candidate)
        if ok:
            return candidate
        attempts.append((str(candidate), reason or "unknown error"))
    reasons = "; ".join(f"{p} -> {r}" for p, r in attempts) or "no candidates were attempted"
    raise RuntimeError(f"Failed to initialize ds_server file logging (no writable paths). Attempts: {reasons}")


def configure_third_party_loggers(base_level: int) -> None:
    """
    Quiet chatty libraries unless the app itself runs at DEBUG.
    """
    lib_level = logging.INFO if base_level <= logging.DEBUG else logging.WARNING
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access", "fastapi", "httpx", "urllib3", "docker", "websockets"):
        logging.getLogger(name).setLevel(lib_level)
    for name in ("urllib3.connectionpool", "asyncio", "concurrent.futures"):
        logging.getLogger(name).setLevel(logging.WARNING)


def setup_logging(
    service_name: str = APP_LOGGER,
    *,
    level: Optional[Union[int, str]] = None,
    log_dir: Optional[Union[str, Path]] = None,
    max_bytes: Optional[int] = None,
    backup_count: Optional[int] = None,
    add_console: bool = False,
) -> Path:
    """
    Configure root logging with a rotating file handler that always writes to disk.

    Returns:
        Path to the active log file.

    Raises:
        RuntimeError if no writable log path could be created.
    """
    base_level = _coerce_level(
        level if level is not None else (os.getenv("DS_LOG_LEVEL") or os.getenv("LOG_LEVEL") or "INFO"),
    )
    bytes_limit = int(os.getenv("DS_LOG_MAX_BYTES", str(max_bytes if max_bytes is not None else _DEFAULT_MAX_BYTES)))
    keep_files = int(os.getenv("DS_LOG_BACKUP_COUNT", str(backup_count if backup_count is not None else _DEFAULT_BACKUP_COUNT)))

    log_path = _pick_log_path(service_name, log_dir)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    target_key = str(log_path.resolve())
    already_attached = any(
        getattr(h, "baseFilename", None) and str(Path(h.baseFilename).resolve()) == target_key
        for h in root.handlers
    )
    if not already_attached and target_key not in _ATTACHED_LOG_PATHS:
        file_handler = logging.handlers.RotatingFileHandler(
            filename=log_path,
            maxBytes=max(1, bytes_limit),
            backupCount=max(1, keep_files),
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(_DEFAULT_FORMAT_FILE, datefmt=_DEFAULT_DATEFMT))
        root.addHandler(file_handler)
        _ATTACHED_LOG_PATHS.add(target_key)

    if add_console:
        has_console = any(
            isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) in (sys.stdout, sys.stderr)
            for h in root.handlers
        )
        if not has_console:
            ch = logging.StreamHandler(stream=sys.stdout)
            ch.setLevel(base_level)
            ch.setFormatter(logging.Formatter(_DEFAULT_FORMAT_CONSOLE, datefmt=_DEFAULT_DATEFMT))
            root.addHandler(ch)

    logging.getLogger(APP_LOGGER).setLevel(base_level)
    configure_third_party_loggers(base_level)

    logging.getLogger(APP_LOGGER).info(
        "Logging initialized: file=%s level=%s backup=%s",
        log_path,
        logging.getLevelName(base_level),
        keep_files,
    )
    return log_path


def initialize_from_env(service_name: str = APP_LOGGER) -> Path:
    """
    Startup initializer: file logging plus a console handler unless
    DS_LOG_CONSOLE disables it.
    """
    console = (os.getenv("DS_LOG_CONSOLE") or "1").strip().lower() not in ("0", "false", "no", "off")
    return setup_logging(service_name=service_name, add_console=console)
