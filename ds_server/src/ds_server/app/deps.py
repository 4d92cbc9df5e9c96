from __future__ import annotations

"""
Shared FastAPI dependencies for DevSpace.

Contents:
- get_settings(): the ServerConfig the running app was built with.
- get_controller(): the process-wide SessionController.

Both read ``app.state`` so that an app built with explicit settings (tests,
embedding) never falls back to the environment by accident. They take an
HTTPConnection so they resolve for HTTP routes and WebSocket routes alike.
"""

from starlette.requests import HTTPConnection

from ds_server.app.config import ServerConfig, get_settings as _config_get_settings
from ds_server.app.sessions.controller import SessionController


def get_settings(conn: HTTPConnection) -> ServerConfig:
    settings = getattr(conn.app.state, "settings", None)
    return settings if settings is not None else _config_get_settings()


def get_controller(conn: HTTPConnection) -> SessionController:
    """
    Raises:
        RuntimeError: if called before the lifespan created the controller.
    """
    controller = getattr(conn.app.state, "controller", None)
    if controller is None:
        raise RuntimeError("SessionController is not initialized; app lifespan has not run")
    return controller


__all__ = [
    "get_settings",
    "get_controller",
]
