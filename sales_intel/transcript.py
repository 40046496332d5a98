"""
Transcript assembly.

Turns a chat's message history into the text blob the analyzer sees, plus
summary metadata. Rendering is deterministic: the same messages and the same
window always give the same text.
"""

import math
from datetime import datetime, timezone
from typing import List, Optional

from .db.models import MessageRow, Transcript, TranscriptMetadata

DEFAULT_MAX_MESSAGES = 200
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

AGENT_LABEL = "Sales Agent"
CUSTOMER_LABEL = "Customer"
TEXT_MESSAGE_TYPE = "conversation"


def _format_time(sent_at: Optional[datetime]) -> str:
    if sent_at is None:
        return "unknown time"
    if sent_at.tzinfo is not None:
        sent_at = sent_at.astimezone(timezone.utc)
    return sent_at.strftime(TIMESTAMP_FORMAT)


def _message_text(message: MessageRow) -> Optional[str]:
    """Plain text for text messages, a [TYPE] marker for everything else."""
    if message.message_type == TEXT_MESSAGE_TYPE:
        return message.text_content
    return f"[{(message.message_type or 'unknown').upper()}]"


def build_conversation_text(
    messages: List[MessageRow],
    max_messages: int = DEFAULT_MAX_MESSAGES,
) -> str:
    """
    Render the most recent messages as one line each.

    Format:
        [2024-05-01 10:15:00] Customer: Do you have the iPhone 15 in blue?
        [2024-05-01 10:17:12] Sales Agent: Yes, 128GB and 256GB.
        [2024-05-01 10:18:40] Customer: [IMAGE]

    Args:
        messages: Timestamp-ordered (ascending) message history
        max_messages: Only the last N messages are rendered

    Returns:
        Transcript text, empty string if there is nothing to render.
    """
    if not messages:
        return ""

    lines = []
    for message in messages[-max_messages:]:
        text = _message_text(message)
        if not text or not text.strip():
            continue
        sender = AGENT_LABEL if message.from_me else CUSTOMER_LABEL
        lines.append(f"[{_format_time(message.sent_at)}] {sender}: {text}\n")

    return "".join(lines)


def build_metadata(messages: List[MessageRow], display_name: Optional[str] = None) -> TranscriptMetadata:
    """Summary numbers over the whole history, not just the rendered window."""
    if not messages:
        return TranscriptMetadata(display_name=display_name)

    first_at = messages[0].sent_at
    last_at = messages[-1].sent_at
    duration_days = 0
    if first_at and last_at:
        duration_days = max(0, math.ceil((last_at - first_at).total_seconds() / 86400))

    last_customer_at = None
    for message in reversed(messages):
        if not message.from_me:
            last_customer_at = message.sent_at
            break

    return TranscriptMetadata(
        total_message_count=len(messages),
        duration_in_days=duration_days,
        last_customer_message_at=last_customer_at,
        display_name=display_name,
    )


def build_transcript(
    conversation_id: str,
    messages: List[MessageRow],
    display_name: Optional[str] = None,
    max_messages: int = DEFAULT_MAX_MESSAGES,
) -> Transcript:
    """Assemble the transcript and metadata for one conversation."""
    return Transcript(
        conversation_id=conversation_id,
        text=build_conversation_text(messages, max_messages=max_messages),
        metadata=build_metadata(messages, display_name=display_name),
    )
