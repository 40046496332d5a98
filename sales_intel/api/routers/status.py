"""
Status and Report Endpoints

Read-only view of configuration and stored analyses. Runs are started from
cron or the CLI, never from here.
"""

import logging
from typing import Any, Dict, Optional

import psycopg2
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from sales_intel.api.deps import get_config, get_result_store
from sales_intel.config import PipelineConfig
from sales_intel.db.result_store import ResultStore
from sales_intel.report import SalesReport, generate_report

logger = logging.getLogger(__name__)

router = APIRouter(tags=["status"])


class ConfigSummary(BaseModel):
    openai_configured: bool
    database_configured: bool
    model: str
    io_concurrency: int
    ai_concurrency: int
    checkpoint_interval: int
    analysis_window_days: int
    cache_policy: str


class StatusResponse(BaseModel):
    status: str
    config: Optional[ConfigSummary] = None
    analysis_stats: Optional[Dict[str, Any]] = None
    database_error: Optional[str] = None


def _summarize(config: PipelineConfig) -> ConfigSummary:
    return ConfigSummary(
        openai_configured=bool(config.openai_api_key),
        database_configured=bool(config.database_url),
        model=config.model,
        io_concurrency=config.io_concurrency,
        ai_concurrency=config.ai_concurrency,
        checkpoint_interval=config.checkpoint_interval,
        analysis_window_days=config.analysis_window_days,
        cache_policy=config.cache_policy.value,
    )


@router.get("/status", response_model=StatusResponse)
def get_status(
    config: PipelineConfig = Depends(get_config),
    store: ResultStore = Depends(get_result_store),
):
    """
    Configuration summary plus stored-analysis statistics.

    A database failure is reported in the body, not as an error status, so
    the endpoint stays useful while the database is down.
    """
    response = StatusResponse(status="ok", config=_summarize(config))
    try:
        response.analysis_stats = store.get_analysis_stats()
    except psycopg2.Error as e:
        logger.warning(f"Status: analysis stats unavailable: {e}")
        response.status = "degraded"
        response.database_error = str(e).strip()
    return response


@router.get("/api/report", response_model=SalesReport)
def get_report(
    limit: int = Query(default=10, ge=1, le=100, description="Number of priority leads"),
    store: ResultStore = Depends(get_result_store),
):
    """The sales intelligence report as JSON."""
    try:
        return generate_report(store, top_leads=limit)
    except psycopg2.Error as e:
        logger.error(f"Report generation failed: {e}")
        raise HTTPException(status_code=503, detail="Database unavailable")
