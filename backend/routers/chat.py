"""
dealchat Chat Router - HTTP surface for chat turns and conversations

Endpoints (all under /api/chat, all require a bearer token):
- POST   /turn             new message (text stream) or tool proposal (JSON)
- POST   /confirm-tool     approve or decline a proposed tool
- GET    /conversations    the caller's conversations, newest first
- GET    /conversations/{id}
- POST   /create           new empty conversation
- DELETE /delete           ?conversationId=
- POST   /update-title     rename

Services are read from app.state (set up in main.lifespan, or directly by
tests): `orchestrator` and `conversation_limiter`.
"""

import json
import logging
from typing import Any, Dict, Optional, Type, TypeVar

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from errors import InvalidInputError, rate_limit_headers, success_response
from middleware.rate_limit import RateLimiter, get_client_ip, rate_limit_key
from services.auth import Identity, verify_user
from routers.chat_orchestration import (
    CancelledTool,
    ConversationOrchestrator,
    ProposedTurn,
    StreamedTurn,
    ToolRunResult,
    TurnOutcome,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/chat")

# Hard cap on request bodies for chat endpoints
MAX_BODY_BYTES = 64 * 1024

M = TypeVar("M", bound=BaseModel)


class CreateConversationBody(BaseModel):
    title: Optional[str] = None


class RenameConversationBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    title: Any = None


def get_orchestrator(request: Request) -> ConversationOrchestrator:
    return request.app.state.orchestrator


async def _read_json(request: Request) -> Dict[str, Any]:
    body = await request.body()
    if len(body) > MAX_BODY_BYTES:
        raise InvalidInputError("Request body too large", expected=f"at most {MAX_BODY_BYTES} bytes")
    if not body:
        return {}
    try:
        payload = json.loads(body)
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise InvalidInputError("Request body is not valid JSON")
    if not isinstance(payload, dict):
        raise InvalidInputError("Request body must be a JSON object")
    return payload


def _parse(model: Type[M], payload: Dict[str, Any]) -> M:
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        first = e.errors()[0]
        field_name = ".".join(str(p) for p in first["loc"]) or None
        raise InvalidInputError(f"Invalid request: {first['msg']}", parameter=field_name) from e


async def conversation_caller(request: Request, identity: Identity = Depends(verify_user)) -> Identity:
    """Authenticate and rate limit conversation-management calls."""
    limiter: RateLimiter = request.app.state.conversation_limiter
    decision = await limiter.enforce(rate_limit_key(identity.user_id, get_client_ip(request)))
    request.state.rate_headers = rate_limit_headers(decision.limit, decision.remaining, decision.reset_in)
    return identity


def _json(request: Request, content: Any, status_code: int = 200) -> JSONResponse:
    headers = getattr(request.state, "rate_headers", None)
    return JSONResponse(status_code=status_code, content=content, headers=headers)


def _render_outcome(outcome: TurnOutcome) -> Any:
    if isinstance(outcome, StreamedTurn):
        return StreamingResponse(
            outcome.chunks,
            media_type="text/plain; charset=utf-8",
            headers={
                "X-Conversation-Id": outcome.conversation_id,
                "X-Conversation-New": "true" if outcome.is_new else "false",
                "Cache-Control": "no-cache",
            },
        )
    if isinstance(outcome, ProposedTurn):
        return JSONResponse(content=outcome.to_api())
    if isinstance(outcome, ToolRunResult):
        return JSONResponse(content=outcome.results)
    if isinstance(outcome, CancelledTool):
        return JSONResponse(content=outcome.to_api())
    raise TypeError(f"Unhandled turn outcome: {type(outcome).__name__}")


# =============================================================================
# Turns
# =============================================================================


@router.post("/turn")
async def new_turn(
    request: Request,
    identity: Identity = Depends(verify_user),
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    """
    Send a message. Replies with a text/plain stream, or with a JSON tool
    proposal when the model asks for a tool. A body carrying toolName and
    input is treated as a confirmation decision.
    """
    payload = await _read_json(request)
    outcome = await orchestrator.handle_turn(identity, payload, origin=get_client_ip(request))
    return _render_outcome(outcome)


@router.post("/confirm-tool")
async def confirm_tool(
    request: Request,
    identity: Identity = Depends(verify_user),
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    """Approve (confirmed=true) or decline a proposed tool call."""
    payload = await _read_json(request)
    outcome = await orchestrator.handle_turn(identity, payload, origin=get_client_ip(request), confirmation=True)
    return _render_outcome(outcome)


# =============================================================================
# Conversations
# =============================================================================


@router.get("/conversations")
async def list_conversations(
    request: Request,
    identity: Identity = Depends(conversation_caller),
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    conversations = await orchestrator.conversations.list(identity.user_id)
    return _json(request, {"conversations": [c.to_api() for c in conversations]})


@router.get("/conversations/{conversation_id}")
async def get_conversation(
    conversation_id: str,
    request: Request,
    identity: Identity = Depends(conversation_caller),
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    conversation = await orchestrator.conversations.load_owned(identity.user_id, conversation_id)
    return _json(request, {"conversation": conversation.to_api()})


@router.post("/create")
async def create_conversation(
    request: Request,
    identity: Identity = Depends(conversation_caller),
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    body = _parse(CreateConversationBody, await _read_json(request))
    conversation = await orchestrator.conversations.create(identity.user_id, body.title)
    return _json(request, {"conversation": conversation.to_api()})


@router.delete("/delete")
async def delete_conversation(
    request: Request,
    conversationId: Optional[str] = None,
    identity: Identity = Depends(conversation_caller),
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    await orchestrator.conversations.delete(identity.user_id, conversationId)
    return _json(request, success_response())


@router.post("/update-title")
async def update_title(
    request: Request,
    identity: Identity = Depends(conversation_caller),
    orchestrator: ConversationOrchestrator = Depends(get_orchestrator),
):
    body = _parse(RenameConversationBody, await _read_json(request))
    if not body.conversation_id:
        raise InvalidInputError("Conversation ID is required", parameter="conversationId")
    conversation = await orchestrator.conversations.rename(identity.user_id, body.conversation_id, body.title)
    return _json(request, {"conversation": conversation.to_api()})
