"""
Render gateway HTTP service.

create_app() builds the FastAPI application around one RenderGateway.
The gateway's worker starts with the application and stops with it.

Security Warning:
-----------------
By default the server binds to localhost (127.0.0.1) only. No
authentication is implemented; expose it beyond localhost only on a
trusted network or behind an authenticating proxy.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Optional

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from .config import GatewaySettings
from .gateway import RenderGateway
from .responses import install_exception_handlers
from .routes import errors, execute, health, jobs, uploads

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[GatewaySettings] = None,
    gateway: Optional[RenderGateway] = None,
    **gateway_kwargs: Any,
) -> FastAPI:
    """
    Create the render gateway application.

    Args:
        settings: Settings; read from the environment when omitted
        gateway: Pre-built gateway (its settings win over `settings`)
        **gateway_kwargs: Passed to RenderGateway (runner, ffmpeg, http_client)

    Returns:
        FastAPI application with the gateway on app.state.gateway
    """
    if gateway is None:
        settings = settings or GatewaySettings.from_env()
        gateway = RenderGateway(settings, **gateway_kwargs)
    settings = gateway.settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        gateway.start()
        try:
            yield
        finally:
            gateway.stop()

    app = FastAPI(
        title="Render Gateway",
        description=(
            "Turns Execution Plans into FFmpeg renders.\n\n"
            "- POST /api/upload, /api/execute, /api/execute-plan\n"
            "- GET /api/jobs/{id} to poll until done, error or partial_success"
        ),
        version="0.1.0",
        lifespan=lifespan,
    )
    app.state.gateway = gateway

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials="*" not in settings.cors_origins,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )
    install_exception_handlers(app)

    app.include_router(health.router)
    app.include_router(uploads.router)
    app.include_router(execute.router)
    app.include_router(errors.router)
    app.include_router(jobs.router)

    app.mount("/outputs", StaticFiles(directory=str(settings.outputs_dir)), name="outputs")
    app.mount("/uploads", StaticFiles(directory=str(settings.uploads_dir)), name="uploads")

    @app.get("/")
    def root():
        return {"ok": True, "service": "render-gateway", "health": "/api/health"}

    return app


def run_server(settings: Optional[GatewaySettings] = None) -> None:
    """
    Run the gateway with uvicorn. Blocks until shutdown.

    A single process is required: the queue and job table live in memory.
    """
    settings = settings or GatewaySettings.from_env()
    if settings.host not in ("127.0.0.1", "localhost"):
        logger.warning(
            f"[Gateway] Binding to {settings.host}: the API has no authentication"
        )
    logger.info(f"[Gateway] Starting on http://{settings.host}:{settings.port}")
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        workers=1,
    )
