"""
Conversation Manager - ownership-checked conversation operations.

Every access by id goes through load_owned(), which fails closed: an id that
does not exist is NotFound and an id owned by someone else is Forbidden.
"""

import logging
from typing import List, Optional

from config import runtime_config
from errors import ForbiddenError, InvalidInputError, NotFoundError, log_error
from services.conversation_store import Conversation, ConversationStore

logger = logging.getLogger(__name__)

MAX_TITLE_LENGTH = 255


def derive_title(content: str, length: Optional[int] = None) -> str:
    """Title for a conversation from its first message: the leading characters."""
    return content[: length if length is not None else runtime_config.title_length]


class ConversationManager:
    def __init__(self, store: ConversationStore):
        self.store = store

    async def load_owned(self, user_id: str, conversation_id: str) -> Conversation:
        """
        Fetch a conversation the caller owns.

        Raises:
            NotFoundError: no conversation with this id
            ForbiddenError: the conversation belongs to another user
        """
        conversation = await self.store.get(conversation_id)
        if conversation is None:
            raise NotFoundError(
                "Conversation not found", resource_type="conversation", resource_id=conversation_id
            )
        if conversation.user_id != user_id:
            logger.warning(f"[Conversations] User {user_id} denied access to {conversation_id}")
            raise ForbiddenError("Conversation belongs to another user", resource_id=conversation_id)
        return conversation

    async def list(self, user_id: str) -> List[Conversation]:
        return await self.store.list_for_user(user_id)

    async def create(self, user_id: str, title: Optional[str] = None) -> Conversation:
        title = self._clean_title(title) if title is not None else runtime_config.placeholder_title
        conversation = await self.store.create(user_id, title)
        logger.info(f"[Conversations] Created {conversation.id} for {user_id}")
        return conversation

    async def rename(self, user_id: str, conversation_id: str, title: Optional[str]) -> Conversation:
        cleaned = self._clean_title(title)
        await self.load_owned(user_id, conversation_id)
        renamed = await self.store.rename(conversation_id, cleaned)
        if renamed is None:
            # Deleted between the ownership check and the update
            raise NotFoundError("Conversation not found", resource_type="conversation", resource_id=conversation_id)
        return renamed

    async def delete(self, user_id: str, conversation_id: Optional[str]) -> None:
        if not conversation_id:
            raise InvalidInputError("Conversation ID is required", parameter="conversationId")
        await self.load_owned(user_id, conversation_id)
        await self.store.delete(conversation_id)
        logger.info(f"[Conversations] Deleted {conversation_id}")

    async def apply_derived_title(self, conversation_id: str, first_message: str) -> Optional[str]:
        """
        Replace the placeholder title with one derived from the first message.

        Best-effort: failures are logged and never raised. A title the user
        already changed is left alone.
        """
        title = derive_title(first_message)
        if not title.strip():
            return None
        try:
            changed = await self.store.rename_if_title(conversation_id, runtime_config.placeholder_title, title)
        except Exception as e:
            log_error(logger, e, context="Title", include_traceback=False)
            return None
        return title if changed else None

    @staticmethod
    def _clean_title(title: Optional[str]) -> str:
        if not isinstance(title, str) or not title.strip():
            raise InvalidInputError("Title must be a non-empty string", parameter="title")
        cleaned = title.strip()
        if len(cleaned) > MAX_TITLE_LENGTH:
            raise InvalidInputError(
                "Title is too long", parameter="title", expected=f"at most {MAX_TITLE_LENGTH} characters"
            )
        return cleaned
