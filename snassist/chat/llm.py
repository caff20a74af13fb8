"""Chat completions via an OpenAI-compatible API, plus per-user key storage.

Uses httpx.AsyncClient for async HTTP with connection pooling. API keys are
stored per user in public.chatgpt_settings; a user without an enabled key
simply gets no client.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

import httpx
from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert

from snassist.chat.schemas import LLMSettingsDetail
from snassist.config import Settings
from snassist.errors import CompletionError
from snassist.storage.database import READ_ERRORS, Database
from snassist.storage.models import ChatGptSettings

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You are a helpful AI assistant for ServiceNow. Provide concise, accurate "
    "information about ServiceNow platform, best practices, and code examples "
    "when requested."
)
EMPTY_REPLY = "I'm sorry, I couldn't generate a response."


@dataclass
class CompletionResponse:
    """Parsed body of a /chat/completions response."""

    content: str
    model: str = ""
    finish_reason: str | None = None
    usage: dict[str, int] = field(default_factory=dict)


class CompletionClient:
    """Async chat-completion client bound to one API key."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-3.5-turbo",
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 60.0,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=timeout,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, api_key: str, settings: Settings, **kwargs: Any) -> CompletionClient:
        return cls(
            api_key,
            model=settings.openai_model,
            base_url=settings.openai_base_url,
            timeout=settings.llm_timeout,
            temperature=settings.llm_temperature,
            max_tokens=settings.llm_max_tokens,
            **kwargs,
        )

    async def create_chat_completion(
        self,
        messages: list[dict[str, str]],
        temperature: float | None = None,
        max_tokens: int | None = None,
        stream: bool = False,
    ) -> CompletionResponse:
        """POST /chat/completions and return the first choice."""
        body = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature if temperature is None else temperature,
            "max_tokens": self.max_tokens if max_tokens is None else max_tokens,
            "stream": stream,
        }
        logger.info("Sending %d messages to %s", len(messages), self.model)
        try:
            response = await self._client.post("/chat/completions", json=body)
        except httpx.TimeoutException as e:
            raise CompletionError("Completion request timed out") from e
        except httpx.TransportError as e:
            raise CompletionError(f"Could not reach completion API: {e}") from e

        if not response.is_success:
            raise CompletionError(_error_message(response), status=response.status_code)

        try:
            data = response.json()
        except ValueError as e:
            raise CompletionError("Invalid JSON in completion response", status=response.status_code) from e

        choices = data.get("choices") or []
        first = choices[0] if choices else {}
        return CompletionResponse(
            content=(first.get("message") or {}).get("content") or "",
            model=data.get("model", self.model),
            finish_reason=first.get("finish_reason"),
            usage=data.get("usage") or {},
        )

    async def send_message(self, message: str, history: list[dict[str, str]] | None = None) -> str:
        """Answer ``message`` given prior turns, prepending the system prompt if absent."""
        messages = list(history or [])
        if not messages or messages[0].get("role") != "system":
            messages.insert(0, {"role": "system", "content": SYSTEM_PROMPT})
        messages.append({"role": "user", "content": message})

        response = await self.create_chat_completion(messages)
        reply = response.content or EMPTY_REPLY
        logger.debug("Got reply of length %d", len(reply))
        return reply

    async def close(self) -> None:
        """Close the underlying httpx client."""
        await self._client.aclose()


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        data = None
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return error["message"]
    return f"Error {response.status_code}: {response.reason_phrase}"


class LLMSettingsStore:
    """Per-user completion API settings in public.chatgpt_settings."""

    def __init__(self, database: Database, settings: Settings) -> None:
        self._db = database
        self._settings = settings

    async def save(self, user_id: UUID, api_key: str, is_enabled: bool) -> LLMSettingsDetail:
        """Insert or replace the user's settings row."""
        logger.info("Saving LLM settings for user %s (key provided: %s, enabled: %s)", user_id, bool(api_key), is_enabled)
        now = datetime.now(UTC)
        stmt = insert(ChatGptSettings).values(
            user_id=user_id,
            api_key=api_key,
            is_enabled=is_enabled,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[ChatGptSettings.user_id],
            set_={"api_key": api_key, "is_enabled": is_enabled, "updated_at": now},
        ).returning(ChatGptSettings)
        async with self._db.session(user_id) as session:
            row = await session.scalar(stmt)
            await session.commit()
            return LLMSettingsDetail.model_validate(row)

    async def get(self, user_id: UUID) -> LLMSettingsDetail | None:
        """The user's settings, or None when none are stored or the lookup fails."""
        try:
            async with self._db.session(user_id) as session:
                row = await session.scalar(
                    select(ChatGptSettings).where(ChatGptSettings.user_id == user_id)
                )
        except READ_ERRORS:
            logger.exception("Error getting LLM settings for user %s", user_id)
            return None
        if row is None:
            logger.debug("No LLM settings found for user %s", user_id)
            return None
        return LLMSettingsDetail.model_validate(row)

    async def get_api_key(self, user_id: UUID) -> str | None:
        """The user's key if one is stored and enabled."""
        detail = await self.get(user_id)
        if detail is None or not detail.is_enabled or not detail.api_key:
            return None
        return detail.api_key

    async def create_client(self, user_id: UUID) -> CompletionClient | None:
        api_key = await self.get_api_key(user_id)
        if api_key is None:
            return None
        return CompletionClient.from_settings(api_key, self._settings)
