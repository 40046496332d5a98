"""Shared logging utilities.

The pipeline runs from cron or under a process supervisor, where stdout can be
closed or piped into something that goes away mid-run. SafeStreamHandler keeps
a dead stdout from turning a log call into a crash.
"""
import json
import logging
import logging.handlers
import os
from typing import Any, Dict, Optional

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

logger = logging.getLogger(__name__)


class SafeStreamHandler(logging.StreamHandler):
    """StreamHandler that ignores broken pipe and closed file errors."""

    def emit(self, record):
        try:
            super().emit(record)
        except BrokenPipeError:
            pass  # stdout closed
        except ValueError:
            pass  # I/O operation on closed file


def resolve_log_level(value: Optional[str] = None) -> int:
    """Map a LOG_LEVEL name to a logging level, defaulting to INFO."""
    name = (value or os.getenv("LOG_LEVEL", "INFO")).strip().upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def configure_safe_logging(level=logging.INFO, log_file: Optional[str] = None):
    """Configure root logger with SafeStreamHandler (and an optional rotating file).

    Safe to call multiple times (guards against duplicate handlers).

    Args:
        level: Logging level to set (default: INFO)
        log_file: Optional path for a rotating file handler (default: $LOG_FILE)
    """
    root = logging.getLogger()
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)

    if not any(isinstance(h, SafeStreamHandler) for h in root.handlers):
        handler = SafeStreamHandler()
        handler.setFormatter(formatter)
        handler.setLevel(level)
        root.addHandler(handler)

    log_file = log_file or os.getenv("LOG_FILE")
    if log_file and not any(
        isinstance(h, logging.handlers.RotatingFileHandler) for h in root.handlers
    ):
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=3,
        )
        file_handler.setFormatter(formatter)
        file_handler.setLevel(level)
        root.addHandler(file_handler)

    # Some libraries (e.g., OpenAI) set root logger to WARNING during import.
    if root.level == logging.NOTSET or root.level > level:
        root.setLevel(level)

    for noisy in ("httpx", "httpcore", "openai"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def _log_structured(label: str, payload: Dict[str, Any]) -> None:
    logger.info(f"{label} {json.dumps(payload, default=str, sort_keys=True)}")


def log_run_metrics(metrics: Dict[str, Any]) -> None:
    """Emit a run's performance metrics as one structured line."""
    _log_structured("PERFORMANCE_METRICS", metrics)


def log_analysis_stats(stats: Dict[str, Any]) -> None:
    """Emit stored-analysis statistics as one structured line."""
    _log_structured("ANALYSIS_STATISTICS", stats)
