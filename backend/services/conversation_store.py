"""
Conversation Store - durable per-user conversation transcripts.

A conversation is owned by exactly one user and holds an append-only list of
messages. The only mutation besides appending is renaming the title.

Two interchangeable backends:
- InMemoryConversationStore: process-local, used in development, tests, and
  whenever PostgreSQL is unavailable
- PostgresConversationStore: asyncpg via DatabaseManager

A user turn and its assistant reply are always written together by
append_exchange(); neither backend can leave one without the other.

Usage:
    store = InMemoryConversationStore()
    conv = await store.create("user-1", "New Chat")
    await store.append_exchange(conv.id, "user-1", "hi", "hello!", now_ms())
"""

import asyncio
import logging
import time
import uuid
from abc import ABC, abstractmethod
from typing import Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field

from errors import PersistenceError
from services.database import DatabaseManager

logger = logging.getLogger(__name__)


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def new_id() -> str:
    return uuid.uuid4().hex


class Message(BaseModel):
    """A persisted chat message. Immutable once stored."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    id: str
    role: Literal["user", "assistant"]
    content: str
    created_at: int = Field(alias="createdAt")


class Conversation(BaseModel):
    """A conversation with its messages in (created_at, insertion) order."""

    model_config = ConfigDict(populate_by_name=True)

    id: str
    user_id: str = Field(exclude=True)
    title: str
    created_at: int = Field(alias="createdAt")
    messages: List[Message] = Field(default_factory=list)

    def to_api(self) -> dict:
        """Client-facing shape: {id, title, createdAt, messages[...]}."""
        return self.model_dump(by_alias=True)


class ConversationStore(ABC):
    """Abstract repository for conversations and their messages."""

    @abstractmethod
    async def create(
        self,
        user_id: str,
        title: str,
        conversation_id: Optional[str] = None,
        created_at: Optional[int] = None,
    ) -> Conversation:
        pass

    @abstractmethod
    async def append_exchange(
        self,
        conversation_id: str,
        user_id: str,
        user_content: str,
        assistant_content: str,
        timestamp_ms: int,
        new_conversation_title: Optional[str] = None,
    ) -> Tuple[Message, Message]:
        """
        Append a user message at timestamp_ms and the assistant reply at
        timestamp_ms + 1, atomically.

        When new_conversation_title is given and the conversation does not
        exist yet, it is created with that title in the same write.
        """

    @abstractmethod
    async def rename(self, conversation_id: str, title: str) -> Optional[Conversation]:
        pass

    @abstractmethod
    async def rename_if_title(self, conversation_id: str, expected_title: str, title: str) -> bool:
        """Rename only while the current title equals expected_title."""

    @abstractmethod
    async def delete(self, conversation_id: str) -> bool:
        pass

    @abstractmethod
    async def get(self, conversation_id: str) -> Optional[Conversation]:
        pass

    @abstractmethod
    async def list_for_user(self, user_id: str) -> List[Conversation]:
        """All of a user's conversations, newest first, messages embedded."""


def _exchange(timestamp_ms: int, user_content: str, assistant_content: str) -> Tuple[Message, Message]:
    user_msg = Message(id=new_id(), role="user", content=user_content, created_at=timestamp_ms)
    assistant_msg = Message(id=new_id(), role="assistant", content=assistant_content, created_at=timestamp_ms + 1)
    return user_msg, assistant_msg


class InMemoryConversationStore(ConversationStore):
    """Process-local store. All mutations run under one asyncio lock."""

    def __init__(self):
        self._conversations: Dict[str, Conversation] = {}
        self._created_seq: Dict[str, int] = {}
        # Per-conversation list of (created_at, seq, message)
        self._messages: Dict[str, List[Tuple[int, int, Message]]] = {}
        self._seq = 0
        self._lock = asyncio.Lock()

    def _next_seq(self) -> int:
        self._seq += 1
        return self._seq

    def _snapshot(self, conversation_id: str) -> Conversation:
        conv = self._conversations[conversation_id]
        ordered = sorted(self._messages.get(conversation_id, []), key=lambda t: (t[0], t[1]))
        return conv.model_copy(update={"messages": [m for _, _, m in ordered]})

    async def create(self, user_id, title, conversation_id=None, created_at=None) -> Conversation:
        async with self._lock:
            conv_id = conversation_id or new_id()
            if conv_id in self._conversations:
                raise PersistenceError("Conversation already exists", operation="create", conversation_id=conv_id)
            conv = Conversation(
                id=conv_id,
                user_id=user_id,
                title=title,
                created_at=created_at if created_at is not None else now_ms(),
            )
            self._conversations[conv_id] = conv
            self._created_seq[conv_id] = self._next_seq()
            self._messages[conv_id] = []
            return self._snapshot(conv_id)

    async def append_exchange(
        self,
        conversation_id,
        user_id,
        user_content,
        assistant_content,
        timestamp_ms,
        new_conversation_title=None,
    ) -> Tuple[Message, Message]:
        async with self._lock:
            if conversation_id not in self._conversations:
                if new_conversation_title is None:
                    raise PersistenceError(
                        "Conversation does not exist",
                        operation="append_exchange",
                        conversation_id=conversation_id,
                    )
                self._conversations[conversation_id] = Conversation(
                    id=conversation_id,
                    user_id=user_id,
                    title=new_conversation_title,
                    created_at=timestamp_ms,
                )
                self._created_seq[conversation_id] = self._next_seq()
                self._messages[conversation_id] = []

            user_msg, assistant_msg = _exchange(timestamp_ms, user_content, assistant_content)
            bucket = self._messages[conversation_id]
            bucket.append((user_msg.created_at, self._next_seq(), user_msg))
            bucket.append((assistant_msg.created_at, self._next_seq(), assistant_msg))
            return user_msg, assistant_msg

    async def rename(self, conversation_id, title) -> Optional[Conversation]:
        async with self._lock:
            conv = self._conversations.get(conversation_id)
            if conv is None:
                return None
            self._conversations[conversation_id] = conv.model_copy(update={"title": title})
            return self._snapshot(conversation_id)

    async def rename_if_title(self, conversation_id, expected_title, title) -> bool:
        async with self._lock:
            conv = self._conversations.get(conversation_id)
            if conv is None or conv.title != expected_title:
                return False
            self._conversations[conversation_id] = conv.model_copy(update={"title": title})
            return True

    async def delete(self, conversation_id) -> bool:
        async with self._lock:
            if self._conversations.pop(conversation_id, None) is None:
                return False
            self._messages.pop(conversation_id, None)
            self._created_seq.pop(conversation_id, None)
            return True

    async def get(self, conversation_id) -> Optional[Conversation]:
        async with self._lock:
            if conversation_id not in self._conversations:
                return None
            return self._snapshot(conversation_id)

    async def list_for_user(self, user_id) -> List[Conversation]:
        async with self._lock:
            owned = [c for c in self._conversations.values() if c.user_id == user_id]
            owned.sort(key=lambda c: (c.created_at, self._created_seq[c.id]), reverse=True)
            return [self._snapshot(c.id) for c in owned]


class PostgresConversationStore(ConversationStore):
    """asyncpg-backed store. Driver errors surface as PersistenceError."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    async def create(self, user_id, title, conversation_id=None, created_at=None) -> Conversation:
        conv_id = conversation_id or new_id()
        created = created_at if created_at is not None else now_ms()
        try:
            await self.db.execute(
                "INSERT INTO conversations (id, user_id, title, created_at) VALUES ($1, $2, $3, $4)",
                conv_id, user_id, title, created,
            )
        except Exception as e:
            raise PersistenceError("Could not create conversation", details=str(e), operation="create") from e
        return Conversation(id=conv_id, user_id=user_id, title=title, created_at=created)

    async def append_exchange(
        self,
        conversation_id,
        user_id,
        user_content,
        assistant_content,
        timestamp_ms,
        new_conversation_title=None,
    ) -> Tuple[Message, Message]:
        user_msg, assistant_msg = _exchange(timestamp_ms, user_content, assistant_content)
        try:
            async with self.db.transaction() as conn:
                if new_conversation_title is not None:
                    await conn.execute(
                        """
                        INSERT INTO conversations (id, user_id, title, created_at)
                        VALUES ($1, $2, $3, $4)
                        ON CONFLICT (id) DO NOTHING
                        """,
                        conversation_id, user_id, new_conversation_title, timestamp_ms,
                    )
                for msg in (user_msg, assistant_msg):
                    await conn.execute(
                        """
                        INSERT INTO messages (id, conversation_id, role, content, created_at)
                        VALUES ($1, $2, $3, $4, $5)
                        """,
                        msg.id, conversation_id, msg.role, msg.content, msg.created_at,
                    )
        except Exception as e:
            raise PersistenceError(
                "Could not append exchange",
                details=str(e),
                operation="append_exchange",
                conversation_id=conversation_id,
            ) from e
        return user_msg, assistant_msg

    async def rename(self, conversation_id, title) -> Optional[Conversation]:
        try:
            status = await self.db.execute(
                "UPDATE conversations SET title = $2 WHERE id = $1", conversation_id, title
            )
        except Exception as e:
            raise PersistenceError("Could not rename conversation", details=str(e), operation="rename") from e
        if status.endswith(" 0"):
            return None
        return await self.get(conversation_id)

    async def rename_if_title(self, conversation_id, expected_title, title) -> bool:
        try:
            status = await self.db.execute(
                "UPDATE conversations SET title = $3 WHERE id = $1 AND title = $2",
                conversation_id, expected_title, title,
            )
        except Exception as e:
            raise PersistenceError("Could not rename conversation", details=str(e), operation="rename") from e
        return not status.endswith(" 0")

    async def delete(self, conversation_id) -> bool:
        try:
            status = await self.db.execute("DELETE FROM conversations WHERE id = $1", conversation_id)
        except Exception as e:
            raise PersistenceError("Could not delete conversation", details=str(e), operation="delete") from e
        return not status.endswith(" 0")

    async def get(self, conversation_id) -> Optional[Conversation]:
        try:
            row = await self.db.fetchrow(
                "SELECT id, user_id, title, created_at FROM conversations WHERE id = $1", conversation_id
            )
            if row is None:
                return None
            messages = await self.db.fetch(
                """
                SELECT id, role, content, created_at FROM messages
                WHERE conversation_id = $1
                ORDER BY created_at, seq
                """,
                conversation_id,
            )
        except Exception as e:
            raise PersistenceError("Could not load conversation", details=str(e), operation="get") from e
        return Conversation(**row, messages=[Message(**m) for m in messages])

    async def list_for_user(self, user_id) -> List[Conversation]:
        try:
            rows = await self.db.fetch(
                """
                SELECT id, user_id, title, created_at FROM conversations
                WHERE user_id = $1
                ORDER BY created_at DESC, seq DESC
                """,
                user_id,
            )
            messages = await self.db.fetch(
                """
                SELECT m.conversation_id, m.id, m.role, m.content, m.created_at
                FROM messages m JOIN conversations c ON c.id = m.conversation_id
                WHERE c.user_id = $1
                ORDER BY m.created_at, m.seq
                """,
                user_id,
            )
        except Exception as e:
            raise PersistenceError("Could not list conversations", details=str(e), operation="list") from e

        by_conversation: Dict[str, List[Message]] = {}
        for m in messages:
            conv_id = m.pop("conversation_id")
            by_conversation.setdefault(conv_id, []).append(Message(**m))
        return [Conversation(**row, messages=by_conversation.get(row["id"], [])) for row in rows]
