"""Pydantic models for source records, transcripts and analysis results."""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..errors import FailureKind

# Classification vocabulary (matches the prompt in prompts/sales_analysis.py)
ProductCategory = Literal[
    "Apple Products", "Non-Apple Laptops", "Tablets", "Phones", "Watches",
    "TVs", "Air Conditioners", "Refrigerators", "Other Electronics",
    "No Product Mentioned",
]

LeadStage = Literal["Inquiry", "Interest", "Consideration", "Intent", "Purchase", "Closed"]

Sentiment = Literal["Positive", "Neutral", "Negative", "Frustrated"]

Urgency = Literal["High", "Medium", "Low"]

# Confidence tiers express relative trust, not anything the service returns
CONFIDENCE_UNSCORED = 0.5  # real response that omitted its own score
CONFIDENCE_EMPTY = 0.3     # nothing to analyze, defaults only
CONFIDENCE_ERROR = 0.1     # analysis failed, defaults only

GROUP_CHAT_SUFFIX = "@g.us"


class ChatSummary(BaseModel):
    """A chat returned by the unanalyzed listing."""

    chat_id: str
    chat_name: Optional[str] = None
    last_updated: Optional[datetime] = None


class MessageRow(BaseModel):
    """One message as read from the source store."""

    model_config = ConfigDict(frozen=True)

    sender_name: Optional[str] = None
    message_type: str = "conversation"
    from_me: bool = False
    text_content: Optional[str] = None
    sent_at: Optional[datetime] = None


class ConversationRecord(BaseModel):
    """A chat with its full, timestamp-ordered message history."""

    model_config = ConfigDict(frozen=True)

    conversation_id: str
    chat_name: Optional[str] = None
    messages: List[MessageRow] = Field(default_factory=list)


class TranscriptMetadata(BaseModel):
    """Summary numbers about a conversation, computed over all its messages."""

    total_message_count: int = 0
    duration_in_days: int = 0
    last_customer_message_at: Optional[datetime] = None
    display_name: Optional[str] = None


class Transcript(BaseModel):
    """Rendered text of the most recent messages of one conversation."""

    conversation_id: str
    text: str = ""
    metadata: TranscriptMetadata = Field(default_factory=TranscriptMetadata)

    @property
    def is_empty(self) -> bool:
        return not self.text or not self.text.strip()


class CacheEntry(BaseModel):
    """A previously assembled transcript and when it was cached."""

    transcript: Transcript
    cached_at: datetime


class AnalysisResult(BaseModel):
    """Structured sales intelligence extracted from one conversation.

    Every field has a default so a result can always be produced, even when
    the AI service returned nothing for it.
    """

    conversation_id: str

    # Product classification
    product_category: ProductCategory = "No Product Mentioned"
    specific_products: List[str] = Field(default_factory=list)
    product_models: List[str] = Field(default_factory=list)
    quantity_mentioned: Optional[int] = None

    # Sales agents
    primary_sales_agent: Optional[str] = None
    additional_agents: List[str] = Field(default_factory=list)
    agent_handoff_detected: bool = False

    # Sales process
    lead_stage: LeadStage = "Inquiry"
    next_action_required: Optional[str] = None
    sales_status: Optional[str] = None
    customer_objections: List[str] = Field(default_factory=list)
    urgency_level: Urgency = "Low"

    # Customer
    customer_name: Optional[str] = None
    customer_location: Optional[str] = None
    budget_range: Optional[str] = None
    purchase_timeline: Optional[str] = None
    decision_maker_status: Optional[str] = None

    # Product details
    product_specifications: Optional[Dict[str, Any]] = None
    accessories_discussed: List[str] = Field(default_factory=list)
    warranty_service_needs: Optional[str] = None
    color_preferences: List[str] = Field(default_factory=list)

    # Business intelligence
    lead_source: Optional[str] = None
    competitive_products: List[str] = Field(default_factory=list)
    upsell_opportunities: List[str] = Field(default_factory=list)
    customer_sentiment: Sentiment = "Neutral"
    pain_points_identified: List[str] = Field(default_factory=list)
    pricing_discussed: bool = False
    demo_scheduled: bool = False
    follow_up_required: bool = True

    # Analysis metadata
    analysis_confidence: float = Field(default=CONFIDENCE_UNSCORED, ge=0.0, le=1.0)
    ai_model_used: Optional[str] = None
    processing_time_ms: int = 0

    # Pipeline bookkeeping (not produced by the AI service)
    metadata: TranscriptMetadata = Field(default_factory=TranscriptMetadata)
    analysis_success: bool = False
    failure_kind: Optional[FailureKind] = None
    error: Optional[str] = None

    @property
    def is_failure(self) -> bool:
        return self.failure_kind is not None


# Fields the AI service is asked to fill (everything except bookkeeping)
AI_FIELDS = [
    name for name in AnalysisResult.model_fields
    if name not in {
        "conversation_id", "ai_model_used", "processing_time_ms",
        "metadata", "analysis_success", "failure_kind", "error",
    }
]


class RowError(BaseModel):
    """Why one row could not be persisted."""

    conversation_id: Optional[str] = None
    error: str
    code: Optional[str] = None


class BulkUpsertResult(BaseModel):
    """Outcome of one ResultStore.bulk_upsert call."""

    succeeded: int = 0
    failed: int = 0
    errors: List[RowError] = Field(default_factory=list)
    aborted: bool = False
    succeeded_ids: List[str] = Field(default_factory=list)
