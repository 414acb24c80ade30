"""Berth FastAPI application entry point."""

from __future__ import annotations

import uuid
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from berth import __version__
from berth.config import get_settings
from berth.db import close_db, init_db
from berth.drivers.k8s import K8sDriver
from berth.errors import BerthError
from berth.services.maintenance.lifecycle import (
    init_maintenance_scheduler,
    shutdown_maintenance_scheduler,
)

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    settings = get_settings()

    # Startup
    logger.info("berth.startup", version=__version__)
    await init_db()

    driver = K8sDriver(settings.cluster)
    app.state.driver = driver

    await init_maintenance_scheduler(driver)

    yield

    # Shutdown
    logger.info("berth.shutdown")

    await shutdown_maintenance_scheduler()
    await driver.close()
    await close_db()


def create_app() -> FastAPI:
    """Create and configure FastAPI application."""
    app = FastAPI(
        title="Berth",
        description="Tenant isolation and sandbox lifecycle orchestrator",
        version=__version__,
        lifespan=lifespan,
    )

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        """Add request ID to all requests."""
        request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        request.state.request_id = request_id
        response = await call_next(request)
        response.headers["X-Request-Id"] = request_id
        return response

    @app.exception_handler(BerthError)
    async def berth_error_handler(request: Request, exc: BerthError):
        """Handle Berth errors with consistent format."""
        request_id = getattr(request.state, "request_id", None)
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_dict(request_id),
        )

    @app.get("/health")
    async def health() -> dict[str, str]:
        """Health check endpoint."""
        return {"status": "ok"}

    from berth.api.v1 import router as v1_router

    app.include_router(v1_router, prefix="/v1")

    return app


# Create default app instance
app = create_app()


def run() -> None:
    """Console entry point."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "berth.main:app",
        host=settings.server.host,
        port=settings.server.port,
    )


if __name__ == "__main__":
    run()
