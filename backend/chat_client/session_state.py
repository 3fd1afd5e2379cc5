"""
Client-side chat session state.

Holds the user's conversations (most recent first), the active conversation,
and one PendingTurn per submitted message. Messages are shown optimistically
while the reply streams, then replaced by the server's persisted copy.

Turn lifecycle:
    PENDING -> CONFIRMED               reply streamed and reconciled
    PENDING -> FAILED                  send, reconcile or save failed, optimistic
                                       messages kept as UNCONFIRMED
    PENDING -> AWAITING_CONFIRMATION   model proposed a tool
        -> CONFIRMED                   user approved, results attached
        -> CANCELLED                   user declined (or server cancelled)
        -> FAILED                      the confirmation call failed

A turn always ends in one of CONFIRMED, FAILED or CANCELLED, or waits in
AWAITING_CONFIRMATION for the user.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from .api import ChatApiClient, ChatApiError, ProposalReply

logger = logging.getLogger(__name__)

PLACEHOLDER_TITLE = "New Chat"
TITLE_LENGTH = 30
DRAFT_PREFIX = "draft_"


class TurnState(str, Enum):
    PENDING = "pending"
    AWAITING_CONFIRMATION = "awaiting_confirmation"
    CONFIRMED = "confirmed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class MessageStatus(str, Enum):
    PENDING = "pending"          # optimistic, reply in flight
    CONFIRMED = "confirmed"      # persisted copy from the server
    UNCONFIRMED = "unconfirmed"  # optimistic, server copy never arrived
    LOCAL = "local"              # never sent for persistence (tool proposal turn)


def generate_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:8]}_{int(time.time() * 1000)}"


def _now_ms() -> int:
    return int(time.time() * 1000)


@dataclass
class LocalMessage:
    id: str
    role: str
    content: str
    created_at: int
    status: MessageStatus = MessageStatus.CONFIRMED

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "LocalMessage":
        return cls(
            id=data["id"],
            role=data["role"],
            content=data.get("content", ""),
            created_at=int(data.get("createdAt", 0)),
        )


@dataclass
class LocalConversation:
    id: str
    title: str
    created_at: int
    messages: List[LocalMessage] = field(default_factory=list)

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "LocalConversation":
        return cls(
            id=data["id"],
            title=data.get("title") or PLACEHOLDER_TITLE,
            created_at=int(data.get("createdAt", 0)),
            messages=[LocalMessage.from_api(m) for m in data.get("messages") or []],
        )

    def sorted_messages(self) -> List[LocalMessage]:
        # sorted() is stable, so equal timestamps keep insertion order
        return sorted(self.messages, key=lambda m: m.created_at)

    def find_message(self, message_id: str) -> Optional[LocalMessage]:
        for message in self.messages:
            if message.id == message_id:
                return message
        return None


@dataclass
class PendingTurn:
    """Client record of one submitted message and how it resolved."""

    turn_id: str
    conversation_id: str
    user_message_id: str
    assistant_message_id: str
    state: TurnState = TurnState.PENDING
    proposal: Optional[ProposalReply] = None
    results: Any = None
    error: Optional[ChatApiError] = None


def derive_local_title(conversation: LocalConversation, placeholder: str = PLACEHOLDER_TITLE, length: int = TITLE_LENGTH) -> str:
    """Show the first message as the title while the server still has the placeholder."""
    if conversation.title == placeholder:
        messages = conversation.sorted_messages()
        if messages and messages[0].content:
            return messages[0].content[:length]
    return conversation.title


def _holds_exchange(conversation: LocalConversation, user_text: str, persisted_before: int) -> bool:
    """True when the persisted copy ends with this turn's user/assistant pair."""
    messages = conversation.sorted_messages()
    if len(messages) < persisted_before + 2:
        return False
    user, assistant = messages[-2], messages[-1]
    return user.role == "user" and user.content == user_text and assistant.role == "assistant"


class ChatSessionState:
    """Conversation list, active conversation and in-flight turns for one user."""

    def __init__(self, api: ChatApiClient, clock: Callable[[], int] = _now_ms):
        self.api = api
        self.clock = clock
        self.conversations: List[LocalConversation] = []
        self.active_id: Optional[str] = None
        self.turns: Dict[str, PendingTurn] = {}
        self._listeners: List[Callable[["ChatSessionState"], None]] = []
        self._background: Set[asyncio.Task] = set()

    # =========================================================================
    # Observation
    # =========================================================================

    def subscribe(self, listener: Callable[["ChatSessionState"], None]) -> Callable[[], None]:
        """Register a change listener. Returns a function that unsubscribes it."""
        self._listeners.append(listener)
        return lambda: self._listeners.remove(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception as e:
                logger.warning(f"[Session] Listener failed: {e}")

    def get(self, conversation_id: Optional[str]) -> Optional[LocalConversation]:
        for conversation in self.conversations:
            if conversation.id == conversation_id:
                return conversation
        return None

    @property
    def active(self) -> Optional[LocalConversation]:
        return self.get(self.active_id)

    def active_messages(self) -> List[LocalMessage]:
        conversation = self.active
        return conversation.sorted_messages() if conversation else []

    def unresolved_turns(self) -> List[PendingTurn]:
        return [t for t in self.turns.values() if t.state in (TurnState.PENDING, TurnState.AWAITING_CONFIRMATION)]

    # =========================================================================
    # Conversation list
    # =========================================================================

    async def load(self) -> None:
        """Fetch the conversation list and activate the most recent one."""
        try:
            data = await self.api.list_conversations()
        except ChatApiError as e:
            logger.error(f"[Session] Failed to load conversations: {e}")
            raise

        conversations = [LocalConversation.from_api(c) for c in data]
        for conversation in conversations:
            conversation.title = derive_local_title(conversation)
        self.conversations = conversations
        self.active_id = conversations[0].id if conversations else None
        self._notify()

    async def new_chat(self) -> LocalConversation:
        data = await self.api.create_conversation(PLACEHOLDER_TITLE)
        conversation = self.get(data["id"])
        if conversation is None:
            conversation = LocalConversation.from_api(data)
            self.conversations.insert(0, conversation)
        self.active_id = conversation.id
        self._notify()
        return conversation

    def select(self, conversation_id: str) -> None:
        if self.get(conversation_id) is None:
            raise KeyError(conversation_id)
        self.active_id = conversation_id
        self._notify()

    async def delete(self, conversation_id: str) -> None:
        """
        Remove a conversation immediately and delete it on the server in the
        background. A failed server delete is logged; the item stays removed.
        """
        remaining = [c for c in self.conversations if c.id != conversation_id]
        if len(remaining) == len(self.conversations):
            return
        self.conversations = remaining
        if self.active_id == conversation_id:
            self.active_id = remaining[0].id if remaining else None
        self._notify()

        if conversation_id.startswith(DRAFT_PREFIX):
            return

        task = asyncio.ensure_future(self.api.delete_conversation(conversation_id))
        self._background.add(task)
        task.add_done_callback(self._on_delete_done(conversation_id))

    def _on_delete_done(self, conversation_id: str) -> Callable[[asyncio.Task], None]:
        def callback(task: asyncio.Task) -> None:
            self._background.discard(task)
            if task.cancelled():
                return
            error = task.exception()
            if error is not None:
                logger.error(f"[Session] Failed to delete conversation {conversation_id}: {error}")
        return callback

    async def drain(self) -> None:
        """Wait for background deletes."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # =========================================================================
    # Turns
    # =========================================================================

    def _ensure_active(self) -> LocalConversation:
        conversation = self.active
        if conversation is None:
            conversation = LocalConversation(id=generate_id("draft"), title=PLACEHOLDER_TITLE, created_at=self.clock())
            self.conversations.insert(0, conversation)
            self.active_id = conversation.id
        return conversation

    async def submit(self, text: str) -> Optional[PendingTurn]:
        """
        Send a message in the active conversation (a new one if none is active).

        The user message (T) and an empty assistant placeholder (T+1) appear
        at once; the placeholder fills as chunks arrive. When the stream ends
        the conversation is re-fetched and replaced by its persisted copy.
        """
        trimmed = text.strip()
        if not trimmed:
            return None

        conversation = self._ensure_active()
        persisted_before = sum(1 for m in conversation.messages if m.status == MessageStatus.CONFIRMED)
        now = self.clock()
        user_message = LocalMessage(generate_id("user"), "user", trimmed, now, MessageStatus.PENDING)
        assistant_message = LocalMessage(generate_id("assistant"), "assistant", "", now + 1, MessageStatus.PENDING)
        conversation.messages.extend([user_message, assistant_message])

        turn = PendingTurn(
            turn_id=generate_id("turn"),
            conversation_id=conversation.id,
            user_message_id=user_message.id,
            assistant_message_id=assistant_message.id,
        )
        self.turns[turn.turn_id] = turn
        self._notify()

        streamed: List[str] = []

        def on_chunk(chunk: str) -> None:
            streamed.append(chunk)
            assistant_message.content = "".join(streamed)
            self._notify()

        server_id = None if conversation.id.startswith(DRAFT_PREFIX) else conversation.id
        try:
            reply = await self.api.send_turn(trimmed, server_id, on_chunk=on_chunk)
        except ChatApiError as e:
            logger.warning(f"[Session] Turn failed: {e}")
            self._fail_turn(turn, conversation, e)
            return turn

        if reply.proposal is not None:
            conversation.messages.remove(assistant_message)
            user_message.status = MessageStatus.LOCAL
            turn.proposal = reply.proposal
            turn.state = TurnState.AWAITING_CONFIRMATION
            self._notify()
            return turn

        await self._reconcile(turn, conversation, reply.conversation_id, trimmed, persisted_before)
        return turn

    async def _reconcile(
        self,
        turn: PendingTurn,
        local: LocalConversation,
        conversation_id: Optional[str],
        user_text: str,
        persisted_before: int,
    ) -> None:
        try:
            persisted_list = await self.api.list_conversations()
        except ChatApiError as e:
            logger.warning(f"[Session] Reconcile failed for {conversation_id}: {e}")
            self._fail_turn(turn, local, e)
            return

        match = next((c for c in persisted_list if c.get("id") == conversation_id), None)
        if match is None:
            logger.warning(f"[Session] Conversation {conversation_id} missing after turn")
            self._fail_turn(turn, local, ChatApiError(404, "Conversation not found after reply", code="NOT_FOUND"))
            return

        persisted = LocalConversation.from_api(match)
        if not _holds_exchange(persisted, user_text, persisted_before):
            logger.warning(f"[Session] Conversation {conversation_id} was not saved with this turn")
            self._fail_turn(turn, local, ChatApiError(0, "Reply was not saved", code="PERSISTENCE_FAILED"))
            return

        persisted.title = derive_local_title(persisted)
        others = [c for c in self.conversations if c.id not in (local.id, persisted.id)]
        self.conversations = [persisted] + others
        if self.active_id == local.id:
            self.active_id = persisted.id

        turn.conversation_id = persisted.id
        turn.state = TurnState.CONFIRMED
        self._notify()

    def _fail_turn(self, turn: PendingTurn, conversation: LocalConversation, error: ChatApiError) -> None:
        assistant = conversation.find_message(turn.assistant_message_id)
        if assistant is not None and not assistant.content:
            conversation.messages.remove(assistant)
        for message_id in (turn.user_message_id, turn.assistant_message_id):
            message = conversation.find_message(message_id)
            if message is not None:
                message.status = MessageStatus.UNCONFIRMED
        turn.state = TurnState.FAILED
        turn.error = error
        self._notify()

    # =========================================================================
    # Tool proposals
    # =========================================================================

    def _awaiting(self, turn_id: str) -> PendingTurn:
        turn = self.turns.get(turn_id)
        if turn is None or turn.state != TurnState.AWAITING_CONFIRMATION:
            raise ValueError(f"Turn {turn_id} is not awaiting confirmation")
        return turn

    async def confirm_proposal(self, turn_id: str) -> PendingTurn:
        """Approve the proposed tool and attach its results to the turn."""
        turn = self._awaiting(turn_id)
        try:
            result = await self.api.confirm_tool(**turn.proposal.confirmation(True))
        except ChatApiError as e:
            logger.warning(f"[Session] Tool {turn.proposal.tool_name} failed: {e}")
            turn.state = TurnState.FAILED
            turn.error = e
            self._notify()
            return turn

        if isinstance(result, dict) and result.get("success") is False:
            turn.state = TurnState.CANCELLED
        else:
            turn.state = TurnState.CONFIRMED
            turn.results = result
        self._notify()
        return turn

    async def cancel_proposal(self, turn_id: str) -> PendingTurn:
        turn = self._awaiting(turn_id)
        try:
            await self.api.confirm_tool(**turn.proposal.confirmation(False))
        except ChatApiError as e:
            # Declining has no server-side effect, so the local outcome stands
            logger.info(f"[Session] Cancel for {turn.proposal.tool_name} not acknowledged: {e}")
        turn.state = TurnState.CANCELLED
        self._notify()
        return turn
