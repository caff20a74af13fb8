"""Chat session: one visible conversation driven by the LLM.

Combines user input, optional ServiceNow context and the completion API into
an ordered list of ChatMessage, and saves it through ChatHistory. The
completion client is passed per turn so sessions never own network
resources.
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from uuid import UUID

from snassist.chat.history import ChatHistory
from snassist.chat.llm import CompletionClient
from snassist.chat.schemas import ChatMessage, QueryType
from snassist.errors import CompletionError
from snassist.utils import extract_code_snippets, strip_code_blocks

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New Conversation"
LLM_NOT_CONFIGURED = (
    "OpenAI integration is not configured. Please add your API key in the "
    "Settings → AI Integration to enable AI responses."
)

_DOCS_PROMPT = (
    "The user is asking about documentation. Provide detailed information "
    "with references where possible. "
)
_GENERATE_PROMPT = (
    "The user is asking for code generation. Provide well-commented, "
    "production-ready code examples. "
)


def context_prompt(query_type: QueryType, instance_name: str | None = None) -> str:
    """Prefix added to the user's message for the given query type."""
    if query_type == "servicenow" and instance_name:
        return (
            "The user is asking about ServiceNow. They are connected to a "
            f'ServiceNow instance named "{instance_name}". '
        )
    if query_type == "docs":
        return _DOCS_PROMPT
    if query_type == "generate":
        return _GENERATE_PROMPT
    return ""


class ChatSession:
    """In-memory conversation state of one user plus its link to a saved conversation."""

    def __init__(
        self,
        session_id: str,
        history: ChatHistory,
        user_id: UUID,
        messages: list[ChatMessage] | None = None,
        conversation_id: UUID | None = None,
        title: str | None = None,
    ) -> None:
        self.session_id = session_id
        self.user_id = user_id
        self.messages: list[ChatMessage] = list(messages or [])
        self.conversation_id = conversation_id
        self.title = title
        self._history = history
        # Messages before this index are already persisted
        self._saved_count = len(self.messages) if conversation_id else 0

    @property
    def is_saved(self) -> bool:
        return self.conversation_id is not None and self._saved_count == len(self.messages)

    def _llm_history(self) -> list[dict[str, str]]:
        return [
            {"role": "user" if m.sender == "user" else "assistant", "content": m.content}
            for m in self.messages
        ]

    async def send(
        self,
        message: str,
        query_type: QueryType = "general",
        llm: CompletionClient | None = None,
        instance_name: str | None = None,
    ) -> ChatMessage | None:
        """Add the user's message and the AI reply. Blank input is ignored."""
        if not message.strip():
            logger.debug("Empty message, not sending")
            return None

        history = self._llm_history()
        self.messages.append(ChatMessage(content=message, sender="user"))

        if llm is None:
            logger.warning("Completion client not available for session %s", self.session_id)
            reply = ChatMessage(content=LLM_NOT_CONFIGURED, sender="ai")
        else:
            prompt = context_prompt(query_type, instance_name) + message
            try:
                text = await llm.send_message(prompt, history)
            except CompletionError as e:
                logger.error("Error getting response for session %s: %s", self.session_id, e)
                reason = str(e) or "Please try again later."
                reply = ChatMessage(
                    content=f"I'm sorry, I encountered an error processing your request. {reason}",
                    sender="ai",
                )
            else:
                snippets = extract_code_snippets(text)
                logger.debug("Extracted %d code snippets", len(snippets))
                reply = ChatMessage(
                    content=strip_code_blocks(text) if snippets else text,
                    sender="ai",
                    code_snippets=snippets or None,
                )

        self.messages.append(reply)
        return reply

    async def save(self, title: str | None = None) -> UUID:
        """Persist unsaved messages for the owner; the first save creates the conversation."""
        user_id = self.user_id
        if title:
            self.title = title

        if self.conversation_id is not None:
            pending = self.messages[self._saved_count:]
            appended = await self._history.append_messages(self.conversation_id, pending, user_id)
            if appended:
                if title:
                    await self._history.update_conversation_title(self.conversation_id, title, user_id)
                self._saved_count = len(self.messages)
                return self.conversation_id
            logger.warning("Conversation %s no longer exists, saving a new one", self.conversation_id)

        self.conversation_id = await self._history.save_conversation(
            user_id, self.title or DEFAULT_TITLE, self.messages
        )
        self._saved_count = len(self.messages)
        return self.conversation_id

    @classmethod
    async def load(
        cls,
        session_id: str,
        history: ChatHistory,
        conversation_id: UUID,
        user_id: UUID,
    ) -> ChatSession | None:
        """Resume one of the user's saved conversations, or None when it cannot be loaded."""
        detail = await history.get_conversation_with_messages(conversation_id, user_id)
        if detail is None:
            return None
        return cls(
            session_id,
            history,
            user_id,
            messages=detail.messages,
            conversation_id=detail.id,
            title=detail.title,
        )


class SessionRegistry:
    """Bounded map of live chat sessions keyed by (user, session id).

    A session id only resolves for the user who started it; least recently
    used sessions are dropped.
    """

    def __init__(self, history: ChatHistory, max_sessions: int = 100) -> None:
        self._history = history
        self._max_sessions = max_sessions
        self._sessions: OrderedDict[tuple[UUID, str], ChatSession] = OrderedDict()

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, user_id: UUID, session_id: str) -> ChatSession | None:
        key = (user_id, session_id)
        session = self._sessions.get(key)
        if session is not None:
            self._sessions.move_to_end(key)
        return session

    def get_or_create(self, user_id: UUID, session_id: str) -> ChatSession:
        session = self.get(user_id, session_id)
        if session is None:
            session = ChatSession(session_id, self._history, user_id)
            self.put(session)
        return session

    def put(self, session: ChatSession) -> None:
        key = (session.user_id, session.session_id)
        self._sessions[key] = session
        self._sessions.move_to_end(key)
        while len(self._sessions) > self._max_sessions:
            (user_id, session_id), _ = self._sessions.popitem(last=False)
            logger.debug("Evicted chat session %s of user %s", session_id, user_id)

    def remove(self, user_id: UUID, session_id: str) -> bool:
        return self._sessions.pop((user_id, session_id), None) is not None
