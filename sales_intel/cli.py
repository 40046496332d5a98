#!/usr/bin/env python
"""
Sales Intel CLI - run the analysis pipeline or print a report.

Usage:
    sales-intel run                  # Analyze the unanalyzed backlog once
    sales-intel run --skip-schema    # Same, without applying schema.sql first
    sales-intel report               # Print the sales intelligence report
    sales-intel report --json        # Same, as JSON

Exit status:
    0  success
    1  finished with partial failures
    2  nothing persisted (e.g. AI quota exhausted), or report unavailable
    3  setup or configuration error
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

import psycopg2

from .analysis_client import AnalysisClient
from .config import PipelineConfig
from .db.connection import Database, init_db
from .db.result_store import ResultStore
from .db.source_reader import SourceReader
from .db.transcript_cache import TranscriptCache
from .errors import ConfigurationError
from .logging_utils import configure_safe_logging, log_analysis_stats, resolve_log_level
from .pipeline import EXIT_CODES, PipelineOrchestrator, RunOutcome
from .report import format_report, generate_report

logger = logging.getLogger(__name__)


def _install_stop_handlers(orchestrator: PipelineOrchestrator) -> None:
    """SIGINT/SIGTERM let the current chunk finish, then flush and report."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, orchestrator.request_stop)
        except NotImplementedError:
            # Event loops without signal support (Windows)
            signal.signal(sig, lambda *_: orchestrator.request_stop())


async def _run_pipeline(orchestrator: PipelineOrchestrator):
    _install_stop_handlers(orchestrator)
    return await orchestrator.run()


def build_orchestrator(config: PipelineConfig, db: Database) -> PipelineOrchestrator:
    """Wire the production components around one shared connection pool."""
    return PipelineOrchestrator(
        reader=SourceReader(db),
        cache=TranscriptCache(db),
        analyzer=AnalysisClient(
            model=config.model,
            timeout=config.request_timeout,
            max_retries=config.ai_max_retries,
            api_key=config.openai_api_key,
        ),
        store=ResultStore(db, max_consecutive_errors=config.max_consecutive_row_errors),
        config=config,
    )


def cmd_run(args) -> int:
    """Run the pipeline once over the unanalyzed backlog."""
    try:
        config = PipelineConfig.from_env()
        config.validate_for_run()
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_CODES[RunOutcome.ABORTED]

    db = Database(
        config.database_url,
        minconn=config.db_pool_min,
        maxconn=config.effective_pool_size,
        statement_timeout=config.request_timeout,
    )
    try:
        if not args.skip_schema:
            try:
                init_db(db)
            except (psycopg2.Error, OSError) as e:
                logger.error(f"Database setup failed: {e}")
                return EXIT_CODES[RunOutcome.ABORTED]

        orchestrator = build_orchestrator(config, db)
        report = asyncio.run(_run_pipeline(orchestrator))

        if report.outcome != RunOutcome.ABORTED:
            try:
                log_analysis_stats(orchestrator.store.get_analysis_stats())
            except psycopg2.Error as e:
                logger.warning(f"Could not read analysis statistics: {e}")

        return report.exit_code
    finally:
        db.close()


def cmd_report(args) -> int:
    """Print the sales intelligence report."""
    try:
        config = PipelineConfig.from_env()
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_CODES[RunOutcome.ABORTED]

    db = Database(config.database_url, minconn=1, maxconn=2, statement_timeout=config.request_timeout)
    try:
        report = generate_report(ResultStore(db), top_leads=args.limit)
    except psycopg2.Error as e:
        logger.error(f"Could not generate report: {e}")
        return EXIT_CODES[RunOutcome.NO_DATA_PERSISTED]
    finally:
        db.close()

    if args.json:
        print(report.model_dump_json(indent=2))
    else:
        print(format_report(report))
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="sales-intel",
        description="WhatsApp sales conversation analysis",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("--log-level", default=None, help="Overrides LOG_LEVEL (default INFO)")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    p_run = subparsers.add_parser("run", help="Analyze unanalyzed conversations once")
    p_run.add_argument("--skip-schema", action="store_true", help="Do not apply schema.sql before the run")
    p_run.set_defaults(func=cmd_run)

    p_report = subparsers.add_parser("report", help="Print the sales intelligence report")
    p_report.add_argument("--limit", type=int, default=10, help="Priority leads to include")
    p_report.add_argument("--json", action="store_true", help="Print the report as JSON")
    p_report.set_defaults(func=cmd_report)

    args = parser.parse_args(argv)
    if not args.command:
        parser.print_help()
        return EXIT_CODES[RunOutcome.ABORTED]

    configure_safe_logging(resolve_log_level(args.log_level))
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
