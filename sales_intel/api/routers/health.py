"""
Health Check Endpoints

Liveness and database reachability, for process supervisors and uptime checks.
"""

import time
from datetime import datetime, timezone
from typing import Optional

import psycopg2
from fastapi import APIRouter, Depends
from pydantic import BaseModel

from sales_intel.api.deps import get_database


router = APIRouter(tags=["health"])


class HealthResponse(BaseModel):
    """Basic health check response."""
    status: str
    timestamp: datetime


class DatabaseHealthResponse(BaseModel):
    """Database connectivity check response."""
    connected: bool
    latency_ms: Optional[float] = None
    error: Optional[str] = None


@router.get("/health", response_model=HealthResponse)
def health_check():
    """
    Basic health check endpoint.

    Returns 200 OK if the API is running.
    Does not check external dependencies.
    """
    return HealthResponse(status="ok", timestamp=datetime.now(timezone.utc))


@router.get("/health/db", response_model=DatabaseHealthResponse)
def database_health_check(db=Depends(get_database)):
    """
    Database connectivity check.

    Round-trips a trivial query and reports the latency.
    """
    try:
        start = time.time()
        db.ping()
        latency = (time.time() - start) * 1000  # Convert to ms
        return DatabaseHealthResponse(connected=True, latency_ms=round(latency, 2))
    except psycopg2.Error as e:
        return DatabaseHealthResponse(connected=False, error=str(e).strip())
