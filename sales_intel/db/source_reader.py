"""
Read access to the WhatsApp source store.

The source tables ("Chat", "Message") are owned by the messaging gateway;
this module only reads them.
"""

import logging
from datetime import datetime, timezone
from typing import List

from psycopg2.extras import RealDictCursor

from ..errors import SourceReadError
from .connection import Database
from .models import GROUP_CHAT_SUFFIX, ChatSummary, ConversationRecord, MessageRow

logger = logging.getLogger(__name__)

UNANALYZED_CHATS_SQL = """
SELECT
    c."remoteJid" AS chat_id,
    c."name" AS chat_name,
    c."updatedAt" AS last_updated
FROM "Chat" c
WHERE
    c."remoteJid" NOT LIKE %(group_pattern)s
    AND (
        c."updatedAt" >= NOW() - make_interval(days => %(window_days)s)
        OR EXISTS (
            SELECT 1 FROM "Message" m
            WHERE m."key"->>'remoteJid' = c."remoteJid"
            AND TO_TIMESTAMP(m."messageTimestamp") >= NOW() - make_interval(days => %(window_days)s)
        )
    )
    AND NOT EXISTS (
        SELECT 1 FROM "SalesAnalysisReport" a
        WHERE a."remoteJid" = c."remoteJid"
    )
ORDER BY c."updatedAt" DESC
"""

MESSAGES_FOR_CHAT_SQL = """
SELECT
    c."name" AS chat_name,
    m."pushName" AS sender_name,
    m."messageType" AS message_type,
    m."key"->>'fromMe' AS from_me,
    m.message->>'conversation' AS text_content,
    TO_TIMESTAMP(m."messageTimestamp") AS sent_at
FROM "Message" m
JOIN "Chat" c ON m."key"->>'remoteJid' = c."remoteJid"
WHERE c."remoteJid" = %s
ORDER BY m."messageTimestamp" ASC
"""


def is_group_chat(chat_id: str) -> bool:
    """Broadcast/group chats carry the @g.us suffix."""
    return chat_id.endswith(GROUP_CHAT_SUFFIX)


def _to_message(row: dict) -> MessageRow:
    sent_at = row.get("sent_at")
    if isinstance(sent_at, datetime) and sent_at.tzinfo is None:
        sent_at = sent_at.replace(tzinfo=timezone.utc)
    return MessageRow(
        sender_name=row.get("sender_name"),
        message_type=row.get("message_type") or "unknown",
        from_me=str(row.get("from_me")).lower() == "true",
        text_content=row.get("text_content"),
        sent_at=sent_at,
    )


class SourceReader:
    """Lists chats needing analysis and loads their message histories."""

    def __init__(self, db: Database):
        self.db = db

    def list_unanalyzed(self, window_days: int = 90) -> List[ChatSummary]:
        """Individual chats active within the window that have no analysis yet.

        Most recently updated first. A failure here is not per-identifier,
        so it propagates.
        """
        with self.db.connection() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(UNANALYZED_CHATS_SQL, {
                    "group_pattern": f"%{GROUP_CHAT_SUFFIX}",
                    "window_days": window_days,
                })
                rows = cur.fetchall()

        chats = [
            ChatSummary(
                chat_id=row["chat_id"],
                chat_name=row.get("chat_name"),
                last_updated=row.get("last_updated"),
            )
            for row in rows
            if not is_group_chat(row["chat_id"])
        ]
        logger.info(f"Found {len(chats)} unanalyzed chats (last {window_days} days)")
        return chats

    def load_messages(self, conversation_id: str) -> List[MessageRow]:
        """Full message history for one chat, oldest first.

        Raises:
            SourceReadError: If the query fails for this chat
        """
        try:
            with self.db.connection() as conn:
                with conn.cursor(cursor_factory=RealDictCursor) as cur:
                    cur.execute(MESSAGES_FOR_CHAT_SQL, (conversation_id,))
                    rows = cur.fetchall()
        except Exception as e:
            raise SourceReadError(conversation_id, e) from e

        return [_to_message(row) for row in rows]

    def load_conversation(self, chat: ChatSummary) -> ConversationRecord:
        """Hydrate a listing row into a full conversation record."""
        messages = self.load_messages(chat.chat_id)
        return ConversationRecord(
            conversation_id=chat.chat_id,
            chat_name=chat.chat_name,
            messages=messages,
        )
