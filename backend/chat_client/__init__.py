"""
dealchat Chat Client - Python client for the chat API.

- ChatApiClient: httpx wrapper for every /api/chat endpoint
- ChatSessionState: optimistic conversation/turn state for a chat UI
"""

from .api import ChatApiClient, ChatApiError, ProposalReply, TurnReply
from .session_state import (
    ChatSessionState,
    LocalConversation,
    LocalMessage,
    MessageStatus,
    PendingTurn,
    TurnState,
)

__all__ = [
    "ChatApiClient",
    "ChatApiError",
    "ProposalReply",
    "TurnReply",
    "ChatSessionState",
    "LocalConversation",
    "LocalMessage",
    "MessageStatus",
    "PendingTurn",
    "TurnState",
]
