# Pytest configuration for DevSpace tests.
# - Makes ds_server importable from the source tree (no editable install needed).
# - Provides a server secret so settings validate.
# - Registers a "docker" marker for tests that require a running Docker daemon
#   and skips them automatically when Docker is unavailable.

from __future__ import annotations

import contextlib
import os
import sys
from pathlib import Path
from typing import Tuple

import docker
import pytest


def _add_sys_path(p: Path) -> None:
    """
    Prepend a filesystem path to sys.path if it's not already present.
    """
    rp = str(p.resolve())
    if rp not in sys.path:
        sys.path.insert(0, rp)


_THIS_FILE = Path(__file__).resolve()
_TESTS_DIR = _THIS_FILE.parent                  # .../tests
_PROJECT_DIR = _TESTS_DIR.parent                # project root

_DS_SERVER_SRC = _PROJECT_DIR / "ds_server" / "src"
if _DS_SERVER_SRC.exists():
    _add_sys_path(_DS_SERVER_SRC)
# Shared fakes (tests/fakes.py)
_add_sys_path(_TESTS_DIR)

os.environ.setdefault("SERVER_INSTANCE_SECRET", "test-secret-0123456789abcdef")
os.environ.setdefault("DS_LOG_CONSOLE", "0")


def _docker_available() -> Tuple[bool, str]:
    """
    Check if Docker daemon is reachable.
    Returns (available, reason_if_unavailable).
    """
    try:
        with contextlib.closing(docker.from_env()) as client:
            client.ping()
        return True, ""
    except Exception as e:
        return False, f"Docker daemon not reachable: {e} (ensure the Docker daemon is running; set DOCKER_HOST for a remote engine)"


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "docker: mark test as requiring Docker (skipped if Docker is unavailable)",
    )
    available, reason = _docker_available()
    setattr(config, "_ds_docker_available", available)
    setattr(config, "_ds_docker_unavailable_reason", reason)


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    if getattr(config, "_ds_docker_available", False):
        return
    skip_marker = pytest.mark.skip(
        reason=getattr(config, "_ds_docker_unavailable_reason", "") or "Docker daemon not reachable"
    )
    for item in items:
        if "docker" in item.keywords:
            item.add_marker(skip_marker)
