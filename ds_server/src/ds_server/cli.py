"""Command-line entry points for ds_server."""

from __future__ import annotations

import sys

from uvicorn.main import main as uvicorn_main

from ds_server.app.config import get_settings
from ds_server.app.errors import ConfigError

DEFAULT_APP = "ds_server.app.main:app"


def main() -> None:
    """Validate configuration, then delegate to uvicorn's CLI entry point.

    Invoked without arguments it serves ``ds_server.app.main:app``; any
    arguments are passed to uvicorn unchanged.
    """
    try:
        get_settings().validate()
    except ConfigError as exc:
        raise SystemExit(f"devspace-server: {exc}")

    if len(sys.argv) == 1:
        sys.argv.append(DEFAULT_APP)
    sys.exit(uvicorn_main())
