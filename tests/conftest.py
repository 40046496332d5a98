"""
Pytest configuration for sales_intel tests.

Test Tier System:
- fast (default): Pure unit tests, all I/O mocked
- medium: API TestClient tests
- slow: External APIs, real pipeline runs

Run tiers:
- pytest                  # Everything
- pytest -m "not slow"    # Skip anything that could reach a real service

Note: Unmarked tests are auto-assigned to 'fast' tier.

API Key Safety:
- A fake OPENAI_API_KEY is always set so no test can reach the real service.
"""

import json
import os
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

os.environ["OPENAI_API_KEY"] = "sk-test-fake-key-for-testing"

from sales_intel.config import PipelineConfig  # noqa: E402
from sales_intel.db.models import (  # noqa: E402
    AnalysisResult,
    BulkUpsertResult,
    CacheEntry,
    ChatSummary,
    ConversationRecord,
    MessageRow,
    RowError,
    Transcript,
)
from sales_intel.errors import SourceReadError  # noqa: E402


# =============================================================================
# Tier Auto-Assignment
# =============================================================================

def pytest_collection_modifyitems(config, items):
    """Add the 'fast' marker to tests without a tier marker."""
    for item in items:
        has_tier = (
            list(item.iter_markers(name="fast")) or
            list(item.iter_markers(name="medium")) or
            list(item.iter_markers(name="slow"))
        )
        if has_tier:
            continue
        if list(item.iter_markers(name="integration")):
            item.add_marker(pytest.mark.medium)
            continue
        item.add_marker(pytest.mark.fast)


# =============================================================================
# Sample data
# =============================================================================

T0 = datetime(2024, 5, 1, 10, 0, 0, tzinfo=timezone.utc)


def make_messages(count: int = 4, start: datetime = T0) -> List[MessageRow]:
    """Alternating customer/agent text messages, one minute apart."""
    return [
        MessageRow(
            sender_name="Agent" if i % 2 else "Customer",
            message_type="conversation",
            from_me=bool(i % 2),
            text_content=f"message {i}",
            sent_at=start + timedelta(minutes=i),
        )
        for i in range(count)
    ]


def make_transcript(conversation_id: str, text: str = "[2024-05-01 10:00:00] Customer: hi\n") -> Transcript:
    return Transcript(conversation_id=conversation_id, text=text)


def ai_payload(**overrides) -> Dict:
    """A complete, valid AI answer."""
    payload = {
        "product_category": "Apple Products",
        "specific_products": ["iPhone 15"],
        "product_models": ["A3090"],
        "quantity_mentioned": 1,
        "primary_sales_agent": "Agent",
        "additional_agents": [],
        "agent_handoff_detected": False,
        "lead_stage": "Consideration",
        "next_action_required": "Send quote",
        "sales_status": "Awaiting customer reply",
        "customer_objections": ["price"],
        "urgency_level": "High",
        "customer_name": "Ana",
        "customer_location": "Lagos",
        "budget_range": None,
        "purchase_timeline": "this week",
        "decision_maker_status": "decision maker",
        "product_specifications": {"storage": "128GB"},
        "accessories_discussed": [],
        "warranty_service_needs": None,
        "color_preferences": ["blue"],
        "lead_source": None,
        "competitive_products": [],
        "upsell_opportunities": ["case"],
        "customer_sentiment": "Positive",
        "pain_points_identified": [],
        "pricing_discussed": True,
        "demo_scheduled": False,
        "follow_up_required": True,
        "analysis_confidence": 0.85,
    }
    payload.update(overrides)
    return payload


def mock_completion(content: Optional[str]) -> MagicMock:
    """Shape of an openai chat completion response."""
    response = MagicMock()
    choice = MagicMock()
    choice.message.content = content
    response.choices = [choice]
    return response


def mock_openai_client(payload: Optional[Dict] = None) -> MagicMock:
    client = MagicMock()
    client.chat.completions.create = AsyncMock(
        return_value=mock_completion(json.dumps(payload or ai_payload()))
    )
    return client


def success_result(conversation_id: str, **overrides) -> AnalysisResult:
    fields = dict(
        conversation_id=conversation_id,
        product_category="Phones",
        ai_model_used="gpt-3.5-turbo",
        processing_time_ms=120,
        analysis_success=True,
    )
    fields.update(overrides)
    return AnalysisResult(**fields)


# =============================================================================
# In-memory collaborators for orchestrator tests
# =============================================================================

class FakeSourceReader:
    """SourceReader over in-memory chats; counts message loads."""

    def __init__(
        self,
        chats: Dict[str, List[MessageRow]],
        failing: Iterable[str] = (),
        updated: Optional[Dict[str, datetime]] = None,
    ):
        self.chats = chats
        self.failing = set(failing)
        self.updated = updated or {}
        self.load_calls: List[str] = []
        self.list_calls = 0

    def list_unanalyzed(self, window_days: int = 90) -> List[ChatSummary]:
        self.list_calls += 1
        return [
            ChatSummary(chat_id=chat_id, chat_name=f"Chat {chat_id}", last_updated=self.updated.get(chat_id))
            for chat_id in self.chats
        ]

    def load_messages(self, conversation_id: str) -> List[MessageRow]:
        self.load_calls.append(conversation_id)
        if conversation_id in self.failing:
            raise SourceReadError(conversation_id, RuntimeError("connection reset"))
        return self.chats[conversation_id]

    def load_conversation(self, chat: ChatSummary) -> ConversationRecord:
        return ConversationRecord(
            conversation_id=chat.chat_id,
            chat_name=chat.chat_name,
            messages=self.load_messages(chat.chat_id),
        )


class FakeTranscriptCache:
    """TranscriptCache over a dict; records every write."""

    def __init__(self, entries: Optional[Dict[str, Transcript]] = None, cached_at: datetime = T0):
        self.entries = {
            cid: CacheEntry(transcript=t, cached_at=cached_at) for cid, t in (entries or {}).items()
        }
        self.writes: List[str] = []

    def get_many(self, conversation_ids):
        return {cid: self.entries[cid] for cid in conversation_ids if cid in self.entries}

    def put_many(self, transcripts) -> int:
        written = 0
        for t in transcripts:
            if t.is_empty:
                continue
            self.entries[t.conversation_id] = CacheEntry(
                transcript=t, cached_at=datetime.now(timezone.utc)
            )
            self.writes.append(t.conversation_id)
            written += 1
        return written


class FakeResultStore:
    """ResultStore over a dict keyed by conversation id.

    fail_calls: 1-based bulk_upsert call numbers that raise (systemic failure)
    reject_ids: conversation ids rejected as constraint violations
    """

    def __init__(self, fail_calls: Iterable[int] = (), reject_ids: Iterable[str] = ()):
        self.rows: Dict[str, AnalysisResult] = {}
        self.calls: List[List[str]] = []
        self.fail_calls = set(fail_calls)
        self.reject_ids = set(reject_ids)

    def bulk_upsert(self, results) -> BulkUpsertResult:
        self.calls.append([r.conversation_id for r in results])
        if len(self.calls) in self.fail_calls:
            raise ConnectionError("database went away")

        outcome = BulkUpsertResult()
        for r in results:
            if r.conversation_id in self.reject_ids:
                outcome.failed += 1
                outcome.errors.append(RowError(
                    conversation_id=r.conversation_id, error="value too long", code="22001"
                ))
                continue
            self.rows[r.conversation_id] = r
            outcome.succeeded += 1
            outcome.succeeded_ids.append(r.conversation_id)
        return outcome

    def get_analysis_stats(self):
        return {"total_analyzed": len(self.rows)}


class FakeAnalyzer:
    """Analyzer returning canned results; records which transcripts it saw."""

    def __init__(self, results: Optional[Dict[str, AnalysisResult]] = None, raise_for: Iterable[str] = ()):
        self.results = results or {}
        self.raise_for = set(raise_for)
        self.seen: List[str] = []

    async def analyze(self, transcript: Transcript) -> AnalysisResult:
        self.seen.append(transcript.conversation_id)
        if transcript.conversation_id in self.raise_for:
            raise RuntimeError("analyzer crashed")
        return self.results.get(transcript.conversation_id) or success_result(transcript.conversation_id)


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def config():
    """Fast config: no delays, tiny windows."""
    return PipelineConfig(
        openai_api_key="sk-test-fake-key-for-testing",
        io_concurrency=2,
        ai_concurrency=2,
        io_chunk_delay=0,
        ai_chunk_delay=0,
        checkpoint_interval=1,
        request_timeout=5,
    )


@pytest.fixture
def sample_messages():
    return make_messages()


@pytest.fixture
def mock_db():
    """Database double whose connection() yields a MagicMock connection."""
    db = MagicMock()
    conn = MagicMock()
    cursor = MagicMock()
    conn.cursor.return_value.__enter__.return_value = cursor
    db.connection.return_value.__enter__.return_value = conn
    db.connection.return_value.__exit__.return_value = False
    db._conn = conn
    db._cursor = cursor
    return db
