"""
dealchat Conversation Orchestrator - one user turn, end to end

Order of work for every turn:
1. Identity required (Unauthorized)
2. Rate limit, before anything else touches state (RateLimited)
3. Confirmation decisions run or cancel a proposed tool and stop there
4. New messages are validated, history is loaded with ownership checks
5. The model either proposes a tool (surfaced, never persisted) or streams
   prose, which is forwarded chunk by chunk and persisted as one
   user/assistant pair once the stream ends

Persistence never fails a turn whose reply was delivered; it is logged. Once
the save step has started it is shielded from client disconnects so an
exchange is never left half written.
"""

import asyncio
import logging
from typing import Any, AsyncIterator, Callable, Dict, Optional, Set, Union

from config import runtime_config
from errors import InvalidInputError, ModelUnavailableError, PersistenceError, UnauthorizedError, log_error
from logging_config import log_message_in, log_message_out, log_proposal
from middleware.rate_limit import RateLimiter, RateLimitType, rate_limit_key
from services.auth import Identity
from services.conversation_store import ConversationStore, new_id, now_ms
from services.model_gateway import ModelGateway, ReplyStream, ToolProposal
from tools.executor import ToolExecutor
from tools.registry import ToolRegistry

from .conversations import ConversationManager
from .prompts import build_system_prompt
from .proposals import ProposalSigner
from .session import TurnSession
from .turns import (
    CancelledTool,
    ConfirmationDecision,
    NewTurnRequest,
    ProposedTurn,
    StreamedTurn,
    ToolRunResult,
    TurnOutcome,
    TurnRequest,
    parse_turn_request,
)

logger = logging.getLogger(__name__)


class ConversationOrchestrator:
    """Coordinates rate limiting, history, the model gateway, tools and persistence."""

    def __init__(
        self,
        store: ConversationStore,
        gateway: ModelGateway,
        executor: ToolExecutor,
        rate_limiter: Optional[RateLimiter] = None,
        signer: Optional[ProposalSigner] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.store = store
        self.conversations = ConversationManager(store)
        self.gateway = gateway
        self.executor = executor
        self.rate_limiter = rate_limiter or RateLimiter(RateLimitType.CHAT_TURN)
        self.signer = signer or ProposalSigner()
        self.clock = clock
        self._pending: Set[asyncio.Task] = set()

    async def handle_turn(
        self,
        identity: Optional[Identity],
        request: Union[TurnRequest, Dict[str, Any]],
        origin: Optional[str] = None,
        confirmation: Optional[bool] = None,
    ) -> TurnOutcome:
        """
        Process one turn.

        `request` may be a raw JSON body; it is parsed only after the caller
        has been authenticated and rate limited. `confirmation` forces the
        body to be read as a ConfirmationDecision (True) or a new message (False).

        Raises:
            UnauthorizedError, RateLimitedError, InvalidInputError, NotFoundError,
            ForbiddenError, ModelUnavailableError, InvalidToolInputError,
            ToolExecutionFailedError
        """
        if identity is None:
            raise UnauthorizedError("Authentication required")

        await self.rate_limiter.enforce(rate_limit_key(identity.user_id, origin))

        if isinstance(request, dict):
            request = parse_turn_request(request, confirmation)

        if isinstance(request, ConfirmationDecision):
            return await self._handle_confirmation(identity, request)
        return await self._handle_new_turn(identity, request)

    # =========================================================================
    # Confirmation branch
    # =========================================================================

    async def _handle_confirmation(self, identity: Identity, decision: ConfirmationDecision) -> TurnOutcome:
        tool_name = decision.tool_name

        if not decision.confirmed:
            log_proposal(logger, tool_name, "cancelled")
            return CancelledTool(tool_name)

        if not self.executor.is_known(tool_name):
            logger.warning(f"[Confirm] Unknown tool {tool_name!r}, treating as cancelled")
            return CancelledTool(tool_name)

        if runtime_config.require_proposal_token and not self.signer.verify(
            decision.proposal_token, identity.user_id, tool_name, decision.input
        ):
            logger.warning(f"[Confirm] Proposal token missing or mismatched for {tool_name}, treating as cancelled")
            return CancelledTool(tool_name)

        log_proposal(logger, tool_name, "confirmed")
        results = await self.executor.execute(tool_name, decision.input)
        return ToolRunResult(tool_name=tool_name, results=results)

    # =========================================================================
    # New message branch
    # =========================================================================

    async def _handle_new_turn(self, identity: Identity, request: NewTurnRequest) -> TurnOutcome:
        message = self._validate_message(request.message)
        timestamp = self.clock()

        if request.conversation_id:
            conversation = await self.conversations.load_owned(identity.user_id, request.conversation_id)
            session = TurnSession.for_existing(conversation, message)
        else:
            session = TurnSession(
                conversation_id=new_id(),
                user_id=identity.user_id,
                user_message=message,
                is_new=True,
                title=runtime_config.placeholder_title,
            )

        log_message_in(
            logger,
            message,
            user=identity.user_id,
            conversation="new" if session.is_new else session.conversation_id,
            history=len(session.conversation_history),
        )

        outcome = await self.gateway.reply(
            build_system_prompt(),
            session.get_messages_for_llm(),
            ToolRegistry.get_tools_schema(),
        )

        if isinstance(outcome, ToolProposal):
            log_proposal(logger, outcome.tool_name, "proposed")
            return ProposedTurn(
                conversation_id=None if session.is_new else session.conversation_id,
                proposal=outcome,
                proposal_token=self.signer.sign(identity.user_id, outcome),
            )

        return StreamedTurn(
            conversation_id=session.conversation_id,
            is_new=session.is_new,
            chunks=self._stream_and_persist(session, outcome, timestamp),
        )

    async def _stream_and_persist(self, session: TurnSession, stream: ReplyStream, timestamp: int) -> AsyncIterator[str]:
        parts = []
        finished = False
        try:
            async for chunk in stream:
                parts.append(chunk)
                yield chunk
            finished = True
        except ModelUnavailableError as e:
            finished = True
            partial = "".join(parts)
            if partial.strip():
                logger.warning(
                    f"[Stream] Model failed after {len(partial)} chars, persisting partial reply "
                    f"for {session.conversation_id}"
                )
                await self._persist_shielded(session, partial, timestamp)
            else:
                log_error(logger, e, context="Stream", include_traceback=False)
            raise
        finally:
            if not finished:
                # Consumer went away before the reply finished: stop reading, save nothing
                logger.info(f"[Stream] Client stopped reading {session.conversation_id}, reply discarded")
                await stream.aclose()

        await self._persist_shielded(session, "".join(parts), timestamp)

    async def _persist_shielded(self, session: TurnSession, reply: str, timestamp: int) -> None:
        task = asyncio.ensure_future(self._persist_exchange(session, reply, timestamp))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        await asyncio.shield(task)

    async def _persist_exchange(self, session: TurnSession, reply: str, timestamp: int) -> bool:
        try:
            await self.store.append_exchange(
                session.conversation_id,
                session.user_id,
                session.user_message,
                reply,
                timestamp,
                new_conversation_title=session.title if session.is_new else None,
            )
        except Exception as e:
            error = e if isinstance(e, PersistenceError) else PersistenceError("Could not save exchange", details=str(e))
            log_error(logger, error, context="Persist", include_traceback=False)
            log_message_out(logger, session.conversation_id, chars=len(reply), persisted=False)
            return False

        log_message_out(logger, session.conversation_id, chars=len(reply), persisted=True)

        if session.is_first_exchange:
            title = await self.conversations.apply_derived_title(session.conversation_id, session.user_message)
            if title:
                logger.info(f"[Title] {session.conversation_id} -> {title!r}")
        return True

    async def drain(self) -> None:
        """Wait for in-flight persistence (shutdown, tests)."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    @staticmethod
    def _validate_message(message: object) -> str:
        if not isinstance(message, str):
            raise InvalidInputError("Message must be a string", parameter="message", expected="string")
        cleaned = message.strip()
        if not cleaned:
            raise InvalidInputError("Message cannot be empty", parameter="message")
        limit = runtime_config.max_message_length
        if len(cleaned) > limit:
            raise InvalidInputError(
                f"Message too long ({len(cleaned)} chars, max {limit})",
                parameter="message",
                expected=f"at most {limit} characters",
            )
        return cleaned
