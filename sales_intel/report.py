"""
Sales intelligence report over stored analyses.

    report = generate_report(store)
    print(format_report(report))
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List

from pydantic import BaseModel, Field

from .db.result_store import ResultStore

logger = logging.getLogger(__name__)

TOP_LEADS = 10


class ReportSummary(BaseModel):
    total_conversations_analyzed: int = 0
    apple_product_inquiries: int = 0
    completed_purchases: int = 0
    high_priority_leads: int = 0
    average_confidence: float = 0.0
    unique_sales_agents: int = 0


class SalesReport(BaseModel):
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    overview: Dict[str, Any] = Field(default_factory=dict)
    product_categories: List[Dict[str, Any]] = Field(default_factory=list)
    priority_leads: List[Dict[str, Any]] = Field(default_factory=list)
    summary: ReportSummary = Field(default_factory=ReportSummary)


def _as_int(value: Any) -> int:
    return int(value) if value is not None else 0


def generate_report(store: ResultStore, top_leads: int = TOP_LEADS) -> SalesReport:
    """Build a SalesReport from the result store. Database errors propagate."""
    stats = store.get_analysis_stats()
    categories = store.get_category_breakdown()
    leads = store.get_high_priority_leads(limit=top_leads)

    avg_confidence = stats.get("avg_confidence")
    summary = ReportSummary(
        total_conversations_analyzed=_as_int(stats.get("total_analyzed")),
        apple_product_inquiries=_as_int(stats.get("apple_inquiries")),
        completed_purchases=_as_int(stats.get("purchases")),
        high_priority_leads=_as_int(stats.get("high_urgency")),
        average_confidence=round(float(avg_confidence), 2) if avg_confidence is not None else 0.0,
        unique_sales_agents=_as_int(stats.get("unique_agents")),
    )

    logger.info(f"Generated sales report: {summary.total_conversations_analyzed} analyses")
    return SalesReport(
        overview=stats,
        product_categories=categories,
        priority_leads=leads[:top_leads],
        summary=summary,
    )


def format_report(report: SalesReport) -> str:
    """Render a report as plain text for the terminal."""
    s = report.summary
    lines = [
        "=" * 60,
        f"SALES INTELLIGENCE REPORT ({report.timestamp.strftime('%Y-%m-%d %H:%M UTC')})",
        "=" * 60,
        f"Conversations analyzed:   {s.total_conversations_analyzed}",
        f"Apple product inquiries:  {s.apple_product_inquiries}",
        f"Completed purchases:      {s.completed_purchases}",
        f"High urgency leads:       {s.high_priority_leads}",
        f"Average confidence:       {s.average_confidence:.2f}",
        f"Unique sales agents:      {s.unique_sales_agents}",
        "",
        "Product categories:",
    ]

    if report.product_categories:
        for row in report.product_categories:
            lines.append(
                f"  {row.get('product_category', '?'):<24} {_as_int(row.get('count')):>6}"
                f"  ({float(row.get('percentage') or 0):.1f}%)"
            )
    else:
        lines.append("  (none)")

    lines.append("")
    lines.append(f"Top {len(report.priority_leads)} priority leads:")
    if report.priority_leads:
        for lead in report.priority_leads:
            name = lead.get("chat_name") or lead.get("conversation_id")
            lines.append(
                f"  [{lead.get('urgency_level', '?')}] {name}: "
                f"{lead.get('product_category', '?')} / {lead.get('lead_stage', '?')}"
            )
            if lead.get("next_action_required"):
                lines.append(f"      next: {lead['next_action_required']}")
    else:
        lines.append("  (none)")

    return "\n".join(lines)
