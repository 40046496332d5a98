"""
Cache-aside store for assembled transcripts.

Assembling a transcript means reading every message of a chat; the cache
turns that into a one-off cost so reruns (e.g. after an AI quota reset) go
straight to analysis. Empty transcripts are never cached.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional

import psycopg2
from psycopg2.extras import RealDictCursor, execute_values

from ..config import CachePolicy
from .connection import Database
from .models import CacheEntry, ChatSummary, Transcript, TranscriptMetadata

logger = logging.getLogger(__name__)

SELECT_CACHED_SQL = """
SELECT
    "remoteJid" AS conversation_id,
    conversation_text,
    total_messages,
    conversation_duration_days,
    last_customer_message_time,
    chat_name,
    processed_at
FROM "ConversationCache"
WHERE "remoteJid" = ANY(%s)
"""

UPSERT_CACHE_SQL = """
INSERT INTO "ConversationCache" (
    "remoteJid",
    conversation_text,
    total_messages,
    conversation_duration_days,
    last_customer_message_time,
    chat_name,
    processed_at
) VALUES %s
ON CONFLICT ("remoteJid") DO UPDATE SET
    conversation_text = EXCLUDED.conversation_text,
    total_messages = EXCLUDED.total_messages,
    conversation_duration_days = EXCLUDED.conversation_duration_days,
    last_customer_message_time = EXCLUDED.last_customer_message_time,
    chat_name = EXCLUDED.chat_name,
    processed_at = NOW(),
    updated_at = NOW()
"""


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_fresh(
    entry: CacheEntry,
    chat: Optional[ChatSummary] = None,
    policy: CachePolicy = CachePolicy.NEVER,
    max_age_days: int = 30,
    now: Optional[datetime] = None,
) -> bool:
    """Decide whether a cache hit may be used under the configured policy."""
    if policy == CachePolicy.NEVER:
        return True

    cached_at = _as_utc(entry.cached_at)
    if policy == CachePolicy.SOURCE_UPDATED:
        last_updated = _as_utc(chat.last_updated) if chat else None
        return last_updated is None or last_updated <= cached_at

    now = now or datetime.now(timezone.utc)
    return now - cached_at <= timedelta(days=max_age_days)


class TranscriptCache:
    """Read/write access to the "ConversationCache" table."""

    def __init__(self, db: Database):
        self.db = db

    def get_many(self, conversation_ids: List[str]) -> Dict[str, CacheEntry]:
        """Return cache entries for every id with a hit; misses are simply absent.

        A failed cache read degrades to "everything missed" so the run
        rebuilds transcripts rather than stopping.
        """
        if not conversation_ids:
            return {}

        try:
            with self.db.connection() as conn:
                with conn.cursor(cursor_factory=RealDictCursor) as cur:
                    cur.execute(SELECT_CACHED_SQL, (list(conversation_ids),))
                    rows = cur.fetchall()
        except psycopg2.Error as e:
            logger.warning(f"Cache lookup failed, treating all {len(conversation_ids)} as misses: {e}")
            return {}

        entries = {}
        for row in rows:
            transcript = Transcript(
                conversation_id=row["conversation_id"],
                text=row["conversation_text"] or "",
                metadata=TranscriptMetadata(
                    total_message_count=row["total_messages"] or 0,
                    duration_in_days=row["conversation_duration_days"] or 0,
                    last_customer_message_at=_as_utc(row["last_customer_message_time"]),
                    display_name=row["chat_name"],
                ),
            )
            entries[transcript.conversation_id] = CacheEntry(
                transcript=transcript,
                cached_at=_as_utc(row["processed_at"]) or datetime.now(timezone.utc),
            )

        logger.info(f"Found {len(entries)} cached conversations out of {len(conversation_ids)} requested")
        return entries

    def put_many(self, transcripts: Iterable[Transcript]) -> int:
        """Upsert transcripts in one transaction. Returns the number cached.

        Empty transcripts are dropped, never cached.
        """
        rows = [
            (
                t.conversation_id,
                t.text,
                t.metadata.total_message_count,
                t.metadata.duration_in_days,
                t.metadata.last_customer_message_at,
                t.metadata.display_name,
            )
            for t in transcripts
            if not t.is_empty
        ]
        if not rows:
            return 0

        # Later duplicates win, matching ON CONFLICT semantics across calls
        deduped = list({row[0]: row for row in rows}.values())

        with self.db.connection() as conn:
            with conn.cursor() as cur:
                execute_values(
                    cur,
                    UPSERT_CACHE_SQL,
                    deduped,
                    template="(%s, %s, %s, %s, %s, %s, NOW())",
                )

        logger.info(f"Saved {len(deduped)} conversations to cache")
        return len(deduped)
