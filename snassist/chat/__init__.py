"""Chat module: conversation persistence and LLM completions.

Public API: ChatHistory, CompletionClient, LLMSettingsStore + schema types.
ChatSession lives in snassist.chat.session.
"""

from snassist.chat.history import ChatHistory
from snassist.chat.llm import CompletionClient, CompletionResponse, LLMSettingsStore
from snassist.chat.schemas import (
    ChatMessage,
    CodeSnippet,
    ConversationDetail,
    ConversationSummary,
    LLMSettingsDetail,
    QueryType,
    Sender,
)

__all__ = [
    "ChatHistory",
    "CompletionClient",
    "CompletionResponse",
    "LLMSettingsStore",
    # Types
    "QueryType",
    "Sender",
    # Schemas
    "ChatMessage",
    "CodeSnippet",
    "ConversationDetail",
    "ConversationSummary",
    "LLMSettingsDetail",
]
