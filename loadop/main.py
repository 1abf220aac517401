"""
loadop - Main Application Entry Point

FastAPI application hosting the test-run controller: the reconcile scheduler,
the agent dispatch pool and the HTTP API used to create and stop runs.
"""

from contextlib import asynccontextmanager
from typing import Any
import logging

from fastapi import FastAPI

from loadop import __version__
from loadop.config import settings
from loadop.core.controller import controller
from loadop.core.log_context import TestRunContextFilter

# Configure logging
# Use uvicorn's colored "LEVEL:" format for all loggers, with the current
# test run stamped on every record.
from uvicorn.logging import DefaultFormatter

console_handler = logging.StreamHandler()
console_handler.setFormatter(
    DefaultFormatter(
        fmt=settings.LOG_FORMAT + " [%(test_run)s %(test_run_id)s]", use_colors=True
    )
)
console_handler.addFilter(TestRunContextFilter())

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    handlers=[console_handler],
)

# httpx logs every request at INFO; readiness polling makes that very noisy.
logging.getLogger("httpx").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager - handles startup and shutdown events.
    """
    logger.info("loadop %s starting up (cluster backend: %s)", __version__, settings.CLUSTER_BACKEND)
    await controller.start()

    yield

    logger.info("loadop shutting down...")
    try:
        await controller.shutdown(timeout_seconds=5.0)
    except Exception as e:
        logger.warning("Controller shutdown encountered an error: %s", e)


app = FastAPI(
    title="loadop",
    description="Distributed load-test run controller",
    version=__version__,
    lifespan=lifespan,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
)


# ============================================================================
# Health Check
# ============================================================================


@app.get("/health")
async def health_check():
    """
    Health check endpoint for monitoring and load balancers.

    Returns:
        dict: Service health status and controller statistics
    """
    stats = controller.stats()
    health_status: dict[str, Any] = {
        "status": "healthy",
        "service": "loadop",
        "version": __version__,
        "checks": {"controller": stats},
    }
    if not stats["started"] or not stats["dispatch"]["running"]:
        health_status["status"] = "degraded"
    return health_status


# ============================================================================
# API Routes
# ============================================================================

from loadop.api.routes import testruns  # noqa: E402

app.include_router(testruns.router, prefix="/api/testruns", tags=["testruns"])


def run() -> None:
    import uvicorn

    # log_config=None keeps uvicorn from overriding the logging setup above.
    uvicorn.run(
        "loadop.main:app",
        host=settings.APP_HOST,
        port=settings.APP_PORT,
        reload=settings.APP_RELOAD,
        log_level=settings.LOG_LEVEL.lower(),
        log_config=None,
    )


if __name__ == "__main__":
    run()
