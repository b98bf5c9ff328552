"""
FastAPI application entry point.
"""

import logging
import time
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from mailqueue import __version__
from mailqueue.api.routes import auth_router, emails_router, health_router
from mailqueue.config import get_settings
from mailqueue.db import close_db, get_engine, init_db
from mailqueue.observability.logging import setup_logging
from mailqueue.observability.metrics import get_metrics, setup_metrics
from mailqueue.observability.tracing import (
    instrument_fastapi,
    instrument_sqlalchemy,
    setup_tracing,
    shutdown_tracing,
)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    setup_logging()
    setup_metrics()
    setup_tracing()
    await init_db()
    instrument_sqlalchemy(get_engine().sync_engine)

    logger.info("Application started")

    yield

    await close_db()
    shutdown_tracing()
    logger.info("Application shutdown")


async def record_request(request: Request, call_next):
    """Count API requests by route template and response status."""
    start = time.monotonic()
    response = await call_next(request)

    route = request.scope.get("route")
    endpoint = getattr(route, "path", request.url.path)
    get_metrics().record_api_request(request.method, endpoint, response.status_code)

    logger.debug(
        "Request handled",
        extra={
            "method": request.method,
            "endpoint": endpoint,
            "status": response.status_code,
            "duration_ms": round((time.monotonic() - start) * 1000, 1),
        },
    )
    return response


def create_app(use_lifespan: bool = True) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        use_lifespan: Set to False when the caller manages the database
            (tests inject their own session factory).

    Returns:
        FastAPI: The configured application instance.
    """
    app = FastAPI(
        title="Mail Queue API",
        description="Durable email dispatch queue backed by PostgreSQL",
        version=__version__,
        lifespan=lifespan if use_lifespan else None,
        docs_url="/docs",
        redoc_url="/redoc",
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(record_request)

    app.include_router(health_router)
    app.include_router(auth_router)
    app.include_router(emails_router)

    instrument_fastapi(app)

    return app


def run() -> None:
    """Run the API server."""
    settings = get_settings()

    uvicorn.run(
        "mailqueue.api.main:create_app",
        factory=True,
        host=settings.api_host,
        port=settings.api_port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
