from __future__ import annotations

import asyncio
import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Optional

from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

# Load environment from optional .env file before instantiating settings
_SERVER_ENV_FILE = os.getenv("DS_SERVER_ENV_FILE", ".env.server")
if _SERVER_ENV_FILE and Path(_SERVER_ENV_FILE).is_file():
    load_dotenv(_SERVER_ENV_FILE)

from ds_server.app.config import ServerConfig, get_settings
from ds_server.app.errors import ConfigError
from ds_server.app.logging_setup import initialize_from_env
from ds_server.app.routers import http, socket
from ds_server.app.sandbox.runtime import SandboxRuntime
from ds_server.app.sessions.controller import SessionController

logger = logging.getLogger("devspace")
_LOG_PATH = initialize_from_env(service_name="devspace")
logger.info(f"DevSpace logging to file: {_LOG_PATH}")


def ensure_docker_available_on_startup(runtime: SandboxRuntime) -> None:
    """
    Verify Docker Engine is reachable before the server accepts connections.
    Every session needs a sandbox, so there is nothing useful to serve without it.
    Exits the process with a non-zero status if Docker is unavailable.
    """
    try:
        runtime.ping()
    except Exception as e:
        logger.critical(
            "Docker is not available. DevSpace cannot start without Docker. "
            "Ensure Docker Engine is running and accessible. "
            f"Details: {e}"
        )
        raise SystemExit(1)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    settings: ServerConfig = app.state.settings
    try:
        settings.validate()
    except ConfigError as e:
        logger.critical(f"Refusing to start: {e}")
        raise SystemExit(1)

    runtime: Optional[SandboxRuntime] = app.state.runtime
    owns_runtime = runtime is None
    if runtime is None:
        runtime = SandboxRuntime(settings)
    if app.state.check_docker:
        ensure_docker_available_on_startup(runtime)

    controller = SessionController(settings, runtime)
    app.state.controller = controller

    monitor_task = asyncio.create_task(controller.idle_monitor().run(), name="idle-monitor")
    logger.info(
        f"DevSpace startup complete (image={settings.base_image}, network={settings.network_mode}, "
        f"max_sessions={settings.max_concurrent_sessions or 'unlimited'})"
    )
    try:
        yield
    finally:
        monitor_task.cancel()
        await controller.shutdown()
        if owns_runtime:
            runtime.close()
        logger.info("DevSpace shutdown complete.")


def create_app(
    settings: Optional[ServerConfig] = None,
    runtime: Optional[SandboxRuntime] = None,
    *,
    check_docker: bool = True,
) -> FastAPI:
    """
    Build the FastAPI application. ``runtime`` and ``check_docker`` exist so
    the whole surface can run against a fake sandbox runtime.
    """
    cfg = settings or get_settings()
    app = FastAPI(
        title="DevSpace",
        version=cfg.service_version,
        description="Per-user sandboxed shells and workspace file sync over WebSocket.",
        lifespan=lifespan,
    )
    app.state.settings = cfg
    app.state.runtime = runtime
    app.state.check_docker = check_docker
    app.state.controller = None

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(http.router)
    app.include_router(socket.router)
    return app


app = create_app()
