#!/usr/bin/env python3
"""
Idempotent persistence of analysis results.

One row per conversation in "SalesAnalysisReport". Re-analysis overwrites
every field (last write wins) and refreshes updated_at. A batch is committed
all-or-nothing; if a row violates a constraint the batch is rolled back and
retried one row at a time to isolate the bad rows.
"""
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import psycopg2
from psycopg2.extras import Json, RealDictCursor, execute_values

from ..errors import PersistenceConstraintError
from .connection import Database
from .models import AnalysisResult, BulkUpsertResult, RowError

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONSECUTIVE_ERRORS = 50
TRUNCATION_MARKER = "..."

# Column limits (see schema.sql)
MAX_LENGTHS = {
    "product_category": 200,
    "primary_sales_agent": 255,
    "lead_stage": 100,
    "sales_status": 200,
    "urgency_level": 20,
    "customer_name": 255,
    "customer_location": 255,
    "budget_range": 200,
    "purchase_timeline": 200,
    "decision_maker_status": 200,
    "lead_source": 200,
    "customer_sentiment": 50,
    "ai_model_used": 50,
}

COLUMNS = [
    '"remoteJid"', "analysis_time", "product_category", "specific_products", "product_models",
    "quantity_mentioned", "primary_sales_agent", "additional_agents", "agent_handoff_detected",
    "lead_stage", "next_action_required", "sales_status", "customer_objections", "urgency_level",
    "customer_name", "customer_location", "budget_range", "purchase_timeline",
    "decision_maker_status", "product_specifications", "accessories_discussed",
    "warranty_service_needs", "color_preferences", "lead_source", "competitive_products",
    "upsell_opportunities", "customer_sentiment", "pain_points_identified", "pricing_discussed",
    "demo_scheduled", "follow_up_required", "total_messages", "conversation_duration_days",
    "last_customer_message_time", "analysis_confidence", "ai_model_used", "processing_time_ms",
]

_UPDATE_SET = ",\n    ".join(
    f"{col} = EXCLUDED.{col}" for col in COLUMNS if col != '"remoteJid"'
)

UPSERT_SQL = f"""
INSERT INTO "SalesAnalysisReport" (
    {", ".join(COLUMNS)}
) VALUES %s
ON CONFLICT ("remoteJid") DO UPDATE SET
    {_UPDATE_SET},
    updated_at = NOW()
"""

# analysis_time is filled by the database so a whole batch shares one timestamp
ROW_TEMPLATE = "(%s, NOW(), " + ", ".join(["%s"] * (len(COLUMNS) - 2)) + ")"

# Errors caused by the row's data rather than the database being unavailable
ROW_LEVEL_ERRORS = (psycopg2.IntegrityError, psycopg2.DataError)


def truncate_string(value: Optional[str], max_length: int) -> Optional[str]:
    """Cut strings longer than max_length, ending them with a visible marker."""
    if value is None or not isinstance(value, str):
        return value
    if len(value) <= max_length:
        return value
    return value[:max_length - len(TRUNCATION_MARKER)] + TRUNCATION_MARKER


def prepare_row(result: AnalysisResult) -> Tuple[Any, ...]:
    """Values for one row, in COLUMNS order minus analysis_time."""

    def text(name: str) -> Optional[str]:
        return truncate_string(getattr(result, name), MAX_LENGTHS[name])

    meta = result.metadata
    return (
        result.conversation_id,
        text("product_category"),
        Json(result.specific_products),
        Json(result.product_models),
        result.quantity_mentioned,
        text("primary_sales_agent"),
        Json(result.additional_agents),
        result.agent_handoff_detected,
        text("lead_stage"),
        result.next_action_required,
        text("sales_status"),
        Json(result.customer_objections),
        text("urgency_level"),
        text("customer_name"),
        text("customer_location"),
        text("budget_range"),
        text("purchase_timeline"),
        text("decision_maker_status"),
        Json(result.product_specifications) if result.product_specifications is not None else None,
        Json(result.accessories_discussed),
        result.warranty_service_needs,
        Json(result.color_preferences),
        text("lead_source"),
        Json(result.competitive_products),
        Json(result.upsell_opportunities),
        text("customer_sentiment"),
        Json(result.pain_points_identified),
        result.pricing_discussed,
        result.demo_scheduled,
        result.follow_up_required,
        meta.total_message_count,
        meta.duration_in_days,
        meta.last_customer_message_at,
        round(result.analysis_confidence, 2),
        text("ai_model_used"),
        result.processing_time_ms,
    )


def _dedupe(results: Sequence[AnalysisResult]) -> List[AnalysisResult]:
    """One row per conversation; the later result wins.

    A single INSERT ... ON CONFLICT cannot touch the same row twice.
    """
    latest: Dict[str, AnalysisResult] = {}
    for r in results:
        latest[r.conversation_id] = r
    return list(latest.values())


class ResultStore:
    """Writes and reads "SalesAnalysisReport" rows."""

    def __init__(self, db: Database, max_consecutive_errors: int = DEFAULT_MAX_CONSECUTIVE_ERRORS):
        self.db = db
        self.max_consecutive_errors = max_consecutive_errors

    def bulk_upsert(self, results: Sequence[AnalysisResult]) -> BulkUpsertResult:
        """
        Upsert a batch of results in one transaction.

        If any row violates a constraint the transaction is rolled back and
        every row is retried in its own transaction; the rows that succeed on
        that pass are reported as succeeded. Too many consecutive row failures
        abort the call early, since that points at a systemic problem.

        Returns:
            BulkUpsertResult with succeeded/failed counts and per-row errors
        """
        if not results:
            logger.info("No analysis results to insert")
            return BulkUpsertResult()

        batch = _dedupe(results)
        logger.info(f"Starting bulk upsert of {len(batch)} analysis results")

        try:
            with self.db.connection() as conn:
                with conn.cursor() as cur:
                    execute_values(
                        cur,
                        UPSERT_SQL,
                        [prepare_row(r) for r in batch],
                        template=ROW_TEMPLATE,
                        page_size=len(batch),
                    )
        except ROW_LEVEL_ERRORS as e:
            logger.warning(
                f"Bulk upsert rolled back ({type(e).__name__}: {str(e).strip()[:200]}), "
                f"retrying {len(batch)} rows individually"
            )
            return self._upsert_one_by_one(batch)
        except psycopg2.Error as e:
            logger.error(f"Bulk upsert failed, nothing committed: {e}")
            return BulkUpsertResult(
                succeeded=0,
                failed=len(batch),
                errors=[RowError(error=str(e).strip(), code=getattr(e, "pgcode", None))],
                aborted=True,
            )

        logger.info(f"Bulk upsert committed: {len(batch)} rows")
        return BulkUpsertResult(
            succeeded=len(batch),
            failed=0,
            succeeded_ids=[r.conversation_id for r in batch],
        )

    def _upsert_one_by_one(self, batch: List[AnalysisResult]) -> BulkUpsertResult:
        outcome = BulkUpsertResult()
        consecutive_errors = 0

        with self.db.connection() as conn:
            with conn.cursor() as cur:
                for index, result in enumerate(batch):
                    try:
                        execute_values(cur, UPSERT_SQL, [prepare_row(result)], template=ROW_TEMPLATE)
                        conn.commit()
                    except ROW_LEVEL_ERRORS as e:
                        conn.rollback()
                        err = PersistenceConstraintError(
                            result.conversation_id, str(e).strip(), code=getattr(e, "pgcode", None)
                        )
                        logger.error(f"Error inserting analysis for {result.conversation_id}: {err}")
                        outcome.errors.append(RowError(
                            conversation_id=result.conversation_id,
                            error=str(err),
                            code=err.code,
                        ))
                        outcome.failed += 1
                        consecutive_errors += 1
                    except psycopg2.Error as e:
                        conn.rollback()
                        logger.error(f"Database error during row-by-row upsert, aborting: {e}")
                        remaining = len(batch) - index
                        # Not this row's fault, so no conversation_id
                        outcome.errors.append(RowError(
                            error=str(e).strip(),
                            code=getattr(e, "pgcode", None),
                        ))
                        outcome.failed += remaining
                        outcome.aborted = True
                        break
                    else:
                        outcome.succeeded += 1
                        outcome.succeeded_ids.append(result.conversation_id)
                        consecutive_errors = 0
                        continue

                    if consecutive_errors >= self.max_consecutive_errors:
                        remaining = len(batch) - index - 1
                        logger.error(
                            f"{consecutive_errors} consecutive row errors, aborting upsert "
                            f"({remaining} rows not attempted)"
                        )
                        outcome.failed += remaining
                        outcome.aborted = True
                        break

        logger.info(
            f"Row-by-row upsert finished: {outcome.succeeded} succeeded, {outcome.failed} failed"
        )
        return outcome

    # -------------------------------------------------------------------------
    # Reporting
    # -------------------------------------------------------------------------

    def _fetch(self, sql: str, params: Optional[tuple] = None) -> List[Dict[str, Any]]:
        with self.db.connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(sql, params)
                return [dict(row) for row in cur.fetchall()]

    def get_analysis_stats(self) -> Dict[str, Any]:
        """Totals over every stored analysis."""
        rows = self._fetch("""
            SELECT
                COUNT(*) AS total_analyzed,
                COUNT(*) FILTER (WHERE product_category = 'Apple Products') AS apple_inquiries,
                COUNT(*) FILTER (WHERE lead_stage = 'Purchase') AS purchases,
                COUNT(*) FILTER (WHERE urgency_level = 'High') AS high_urgency,
                AVG(analysis_confidence) AS avg_confidence,
                COUNT(DISTINCT primary_sales_agent) AS unique_agents,
                MIN(analysis_time) AS first_analysis,
                MAX(analysis_time) AS last_analysis
            FROM "SalesAnalysisReport"
        """)
        return rows[0] if rows else {}

    def get_category_breakdown(self) -> List[Dict[str, Any]]:
        """Count and share of each product category."""
        return self._fetch("""
            SELECT
                product_category,
                COUNT(*) AS count,
                ROUND(COUNT(*) * 100.0 / SUM(COUNT(*)) OVER (), 2) AS percentage
            FROM "SalesAnalysisReport"
            WHERE product_category IS NOT NULL
            GROUP BY product_category
            ORDER BY count DESC
        """)

    def get_high_priority_leads(self, limit: int = 50) -> List[Dict[str, Any]]:
        """Urgent, late-stage or follow-up leads, most urgent and most recent first."""
        return self._fetch("""
            SELECT
                s."remoteJid" AS conversation_id,
                c."name" AS chat_name,
                s.product_category,
                s.lead_stage,
                s.urgency_level,
                s.next_action_required,
                s.customer_sentiment,
                s.analysis_time
            FROM "SalesAnalysisReport" s
            LEFT JOIN "Chat" c ON s."remoteJid" = c."remoteJid"
            WHERE s.urgency_level = 'High'
               OR s.lead_stage IN ('Intent', 'Consideration')
               OR s.follow_up_required = true
            ORDER BY
                CASE s.urgency_level
                    WHEN 'High' THEN 1
                    WHEN 'Medium' THEN 2
                    ELSE 3
                END,
                s.analysis_time DESC
            LIMIT %s
        """, (limit,))

    def cleanup_old_analysis(self, days_to_keep: int = 90) -> int:
        """Delete analyses older than the retention window. Returns rows deleted."""
        with self.db.connection() as conn:
            with conn.cursor() as cur:
                cur.execute(
                    """
                    DELETE FROM "SalesAnalysisReport"
                    WHERE analysis_time < NOW() - make_interval(days => %s)
                    """,
                    (days_to_keep,),
                )
                deleted = cur.rowcount
        logger.info(f"Cleaned up {deleted} old analysis records")
        return deleted
