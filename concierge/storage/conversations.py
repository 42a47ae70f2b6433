"""SQL-backed conversation store, one JSON blob per user."""

from __future__ import annotations

import logging
from typing import Any

from concierge.storage.database import Database
from concierge.storage.models import ChatConversation

logger = logging.getLogger(__name__)


class SqlConversationStore:
    """Implements ConversationStore on the chat_conversations table."""

    def __init__(self, db: Database) -> None:
        self.db = db

    async def get(self, user_id: str) -> dict[str, Any] | None:
        async with self.db.session() as session:
            row = await session.get(ChatConversation, user_id)
            return dict(row.context) if row is not None else None

    async def put(self, user_id: str, blob: dict[str, Any]) -> None:
        """Upsert the user's blob."""
        async with self.db.session() as session:
            row = await session.get(ChatConversation, user_id)
            if row is None:
                session.add(ChatConversation(user_id=user_id, context=blob))
            else:
                row.context = blob
            await session.commit()
        logger.debug("Stored conversation for user %s (%d messages)", user_id, len(blob.get("messages", [])))
