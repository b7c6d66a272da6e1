"""HTTP surface: service info and health check."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, FastAPI
from fastapi.responses import JSONResponse

from . import __version__
from .config import RelayerSettings
from .status import collect_status
from .stores import RelayerStore

logger = logging.getLogger(__name__)


class ShutdownState:
    """Flipped by the service when it starts draining."""

    def __init__(self) -> None:
        self.is_shutting_down = False


def create_health_router(
    *,
    store: RelayerStore,
    settings: RelayerSettings,
    shutdown_state: ShutdownState,
) -> APIRouter:
    """Build the health router closed over runtime dependencies."""

    health_router = APIRouter(tags=["health"])

    @health_router.get("/")
    def root():
        """Root endpoint with service information."""
        return {
            "service": "AutoPay Relayer",
            "version": __version__,
            "health": "/health",
        }

    @health_router.get("/health")
    async def health_check():
        """Store-backed health: 200 ok, 503 degraded or draining, 500 on errors."""
        if shutdown_state.is_shutting_down:
            return JSONResponse(
                status_code=503,
                content={"status": "shutting_down", "message": "Service is shutting down"},
            )

        try:
            status = await collect_status(store, settings)
        except Exception as e:
            logger.error(f"Health check failed: {e}", exc_info=True)
            return JSONResponse(status_code=500, content={"status": "error", "error": str(e)})

        status_code = 200 if status["status"] == "ok" else 503
        return JSONResponse(status_code=status_code, content=status)

    return health_router


def create_app(
    store: RelayerStore,
    settings: RelayerSettings,
    shutdown_state: Optional[ShutdownState] = None,
) -> FastAPI:
    app = FastAPI(title="AutoPay Relayer", version=__version__, docs_url=None, redoc_url=None)
    app.include_router(
        create_health_router(
            store=store,
            settings=settings,
            shutdown_state=shutdown_state or ShutdownState(),
        )
    )
    return app
