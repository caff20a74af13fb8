"""Pydantic DTOs for chat messages, conversations and LLM settings."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Literal
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

Sender = Literal["user", "ai"]
QueryType = Literal["general", "servicenow", "docs", "generate"]


class CodeSnippet(BaseModel):
    """A fenced code block lifted out of an AI reply."""

    id: str
    code: str
    language: str


class ChatMessage(BaseModel):
    """One message as shown in the chat and stored in public.messages."""

    id: UUID = Field(default_factory=uuid4)
    content: str
    sender: Sender
    timestamp: datetime = Field(default_factory=lambda: datetime.now(UTC))
    code_snippets: list[CodeSnippet] | None = None

    @field_validator("timestamp")
    @classmethod
    def _aware(cls, value: datetime) -> datetime:
        # Naive timestamps are taken as UTC
        return value if value.tzinfo is not None else value.replace(tzinfo=UTC)

    def to_metadata(self) -> dict | None:
        """The JSONB metadata column value (camelCase key kept from the stored contract)."""
        if not self.code_snippets:
            return None
        return {"codeSnippets": [s.model_dump() for s in self.code_snippets]}


class ConversationSummary(BaseModel):
    """Conversation without its messages, for history listings."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    title: str
    created_at: datetime
    updated_at: datetime


class ConversationDetail(ConversationSummary):
    """Conversation with messages ordered oldest first."""

    messages: list[ChatMessage] = []


class LLMSettingsDetail(BaseModel):
    """A user's completion-API settings row."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    api_key: str
    is_enabled: bool
    created_at: datetime
    updated_at: datetime

    def public(self) -> dict:
        """JSON-safe view with the key masked."""
        data = self.model_dump(mode="json", exclude={"api_key"})
        data["api_key_set"] = bool(self.api_key)
        return data
