"""
Turn Session - per-turn conversation state.

Holds what one newTurn needs: the resolved conversation (or the id minted
for a new one), its prior history, and the incoming user message.
"""

from dataclasses import dataclass, field
from typing import Dict, List

from services.conversation_store import Conversation


@dataclass
class TurnSession:
    """State for a single user turn.

    Attributes:
        conversation_id: Existing conversation id, or the id reserved for a new one
        user_id: Owner of the conversation
        user_message: The validated incoming message
        is_new: True when the conversation row does not exist yet
        title: Current title (placeholder for new conversations)
        conversation_history: Prior messages as {role, content} dicts
    """

    conversation_id: str
    user_id: str
    user_message: str
    is_new: bool = False
    title: str = ""
    conversation_history: List[Dict[str, str]] = field(default_factory=list)

    @classmethod
    def for_existing(cls, conversation: Conversation, user_message: str) -> "TurnSession":
        return cls(
            conversation_id=conversation.id,
            user_id=conversation.user_id,
            user_message=user_message,
            is_new=False,
            title=conversation.title,
            conversation_history=[{"role": m.role, "content": m.content} for m in conversation.messages],
        )

    @property
    def is_first_exchange(self) -> bool:
        return not self.conversation_history

    def get_messages_for_llm(self) -> List[Dict[str, str]]:
        """Build the turn list for the model: prior history then the new message.

        The system prompt is supplied separately by the gateway.
        """
        messages = list(self.conversation_history)
        messages.append({"role": "user", "content": self.user_message})
        return messages
