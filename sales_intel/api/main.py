"""
Sales Intel API - Main Application

Read-only operational endpoints for the sales analysis pipeline.

Run with:
    uvicorn sales_intel.api.main:app --port 8000

API Documentation available at:
    - Swagger UI: http://localhost:8000/docs
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from sales_intel import __version__
from sales_intel.api.deps import close_database
from sales_intel.api.routers import health, status
from sales_intel.errors import ConfigurationError
from sales_intel.logging_utils import configure_safe_logging, resolve_log_level

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown tasks."""
    configure_safe_logging(resolve_log_level())
    yield
    close_database()


app = FastAPI(
    lifespan=lifespan,
    title="Sales Intel API",
    description="Status and reports for the WhatsApp sales analysis pipeline.",
    version=__version__,
    docs_url="/docs",
    redoc_url="/redoc",
)


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    logger.error(f"Configuration error serving {request.url.path}: {exc}")
    return JSONResponse(status_code=500, content={"detail": f"Configuration error: {exc}"})


app.include_router(health.router)
app.include_router(status.router)


@app.get("/")
def root():
    """Root endpoint with API information."""
    return {
        "name": "Sales Intel API",
        "version": __version__,
        "docs": "/docs",
        "health": "/health",
        "status": "/status",
    }
