"""
FastAPI Dependency Injection

Provides the shared connection pool, result store and configuration to
endpoints. Tests replace these through app.dependency_overrides.
"""

from typing import Optional

from sales_intel.config import PipelineConfig
from sales_intel.db.connection import Database
from sales_intel.db.result_store import ResultStore

_database: Optional[Database] = None


def get_config() -> PipelineConfig:
    """Configuration as the pipeline would see it right now."""
    return PipelineConfig.from_env()


def get_database() -> Database:
    """
    Process-wide connection pool, opened on first use.

    The API only reads, so a small pool is enough.
    """
    global _database
    if _database is None:
        config = PipelineConfig.from_env()
        _database = Database(
            config.database_url,
            minconn=1,
            maxconn=4,
            statement_timeout=config.request_timeout,
        )
    return _database


def close_database() -> None:
    global _database
    if _database is not None:
        _database.close()
        _database = None


def get_result_store() -> ResultStore:
    return ResultStore(get_database())
