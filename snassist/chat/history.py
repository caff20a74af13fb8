"""Chat history: conversations and their messages.

Conversation and message rows are written in one transaction. Reads log
failures and return None / [] so the UI can render an empty state.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.orm import selectinload

from snassist.chat.schemas import ChatMessage, CodeSnippet, ConversationDetail, ConversationSummary
from snassist.storage.database import READ_ERRORS, Database
from snassist.storage.models import Conversation, Message

logger = logging.getLogger(__name__)


def _to_row(conversation_id: UUID, message: ChatMessage) -> Message:
    # Rows get database-assigned ids so the same message can be saved again
    return Message(
        conversation_id=conversation_id,
        content=message.content,
        sender=message.sender,
        created_at=message.timestamp,
        metadata_=message.to_metadata(),
    )


def _to_message(row: Message) -> ChatMessage:
    snippets = (row.metadata_ or {}).get("codeSnippets")
    return ChatMessage(
        id=row.id,
        content=row.content,
        sender=row.sender,
        timestamp=row.created_at,
        code_snippets=[CodeSnippet(**s) for s in snippets] if snippets else None,
    )


class ChatHistory:
    """Persists chat conversations in public.conversations / public.messages."""

    def __init__(self, database: Database) -> None:
        self._db = database

    async def save_conversation(
        self,
        user_id: UUID,
        title: str,
        messages: Sequence[ChatMessage],
    ) -> UUID:
        """Create a conversation with all its messages. Returns its id."""
        logger.info("Saving conversation %r for user %s (%d messages)", title, user_id, len(messages))
        now = datetime.now(UTC)
        async with self._db.session(user_id) as session:
            conversation = Conversation(user_id=user_id, title=title, created_at=now, updated_at=now)
            session.add(conversation)
            await session.flush()
            session.add_all([_to_row(conversation.id, m) for m in messages])
            await session.commit()
            logger.info("Conversation saved with ID: %s", conversation.id)
            return conversation.id

    async def append_messages(
        self,
        conversation_id: UUID,
        messages: Sequence[ChatMessage],
        user_id: UUID | None = None,
    ) -> bool:
        """Add messages to an existing conversation. False if it does not exist."""
        async with self._db.session(user_id) as session:
            q = (
                update(Conversation)
                .where(Conversation.id == conversation_id)
                .values(updated_at=datetime.now(UTC))
            )
            if user_id is not None:
                q = q.where(Conversation.user_id == user_id)
            result = await session.execute(q)
            if result.rowcount == 0:
                await session.rollback()
                return False
            session.add_all([_to_row(conversation_id, m) for m in messages])
            await session.commit()
            logger.debug("Appended %d messages to conversation %s", len(messages), conversation_id)
            return True

    async def get_conversations(self, user_id: UUID) -> list[ConversationSummary]:
        """A user's conversations, most recently updated first."""
        try:
            async with self._db.session(user_id) as session:
                result = await session.scalars(
                    select(Conversation)
                    .where(Conversation.user_id == user_id)
                    .order_by(Conversation.updated_at.desc())
                )
                rows = list(result.all())
        except READ_ERRORS:
            logger.exception("Error getting conversations for user %s", user_id)
            return []
        return [ConversationSummary.model_validate(row) for row in rows]

    async def get_conversation_with_messages(
        self,
        conversation_id: UUID,
        user_id: UUID | None = None,
    ) -> ConversationDetail | None:
        """One conversation with messages oldest first, or None."""
        try:
            async with self._db.session(user_id) as session:
                q = (
                    select(Conversation)
                    .where(Conversation.id == conversation_id)
                    .options(selectinload(Conversation.messages))
                )
                if user_id is not None:
                    q = q.where(Conversation.user_id == user_id)
                conversation = await session.scalar(q)
        except READ_ERRORS:
            logger.exception("Error getting conversation %s", conversation_id)
            return None

        if conversation is None:
            return None
        messages = sorted(conversation.messages, key=lambda m: (m.created_at, m.id))
        return ConversationDetail(
            id=conversation.id,
            title=conversation.title,
            created_at=conversation.created_at,
            updated_at=conversation.updated_at,
            messages=[_to_message(m) for m in messages],
        )

    async def update_conversation_title(
        self,
        conversation_id: UUID,
        title: str,
        user_id: UUID | None = None,
    ) -> bool:
        """Rename a conversation. False if it does not exist."""
        async with self._db.session(user_id) as session:
            q = (
                update(Conversation)
                .where(Conversation.id == conversation_id)
                .values(title=title, updated_at=datetime.now(UTC))
            )
            if user_id is not None:
                q = q.where(Conversation.user_id == user_id)
            result = await session.execute(q)
            await session.commit()
            return result.rowcount > 0

    async def delete_conversation(self, conversation_id: UUID, user_id: UUID | None = None) -> bool:
        """Delete a conversation's messages, then the conversation."""
        async with self._db.session(user_id) as session:
            owned = select(Conversation.id).where(Conversation.id == conversation_id)
            if user_id is not None:
                owned = owned.where(Conversation.user_id == user_id)
            # Messages first; the FK cascade covers the same rows
            await session.execute(delete(Message).where(Message.conversation_id.in_(owned)))
            q = delete(Conversation).where(Conversation.id == conversation_id)
            if user_id is not None:
                q = q.where(Conversation.user_id == user_id)
            result = await session.execute(q)
            await session.commit()
        deleted = result.rowcount > 0
        if deleted:
            logger.info("Deleted conversation %s", conversation_id)
        return deleted
