"""
Request and outcome types for a chat turn.

Requests arrive as JSON from the HTTP layer (camelCase on the wire). Outcomes
are what ConversationOrchestrator.handle_turn hands back to the transport.
"""

from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from errors import InvalidInputError
from services.model_gateway import ToolProposal


class NewTurnRequest(BaseModel):
    """A user message, optionally continuing an existing conversation."""

    model_config = ConfigDict(populate_by_name=True)

    message: str
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")


class ConfirmationDecision(BaseModel):
    """The user's answer to a ToolProposal, echoing the proposed call."""

    model_config = ConfigDict(populate_by_name=True)

    tool_name: str = Field(alias="toolName")
    input: Dict[str, Any] = Field(default_factory=dict)
    confirmed: bool = False
    proposal_token: Optional[str] = Field(default=None, alias="proposalToken")


TurnRequest = Union[NewTurnRequest, ConfirmationDecision]


@dataclass
class StreamedTurn:
    """Prose reply. Iterate `chunks` exactly once to drive the turn to completion."""

    conversation_id: str
    is_new: bool
    chunks: AsyncIterator[str]


@dataclass
class ProposedTurn:
    """The model asked for a tool; nothing was persisted or executed."""

    conversation_id: Optional[str]
    proposal: ToolProposal
    proposal_token: Optional[str] = None

    def to_api(self) -> Dict[str, Any]:
        payload = self.proposal.to_api()
        payload["conversationId"] = self.conversation_id
        if self.proposal_token:
            payload["proposalToken"] = self.proposal_token
        return payload


@dataclass
class ToolRunResult:
    """A confirmed tool ran; `results` is returned to the caller verbatim."""

    tool_name: str
    results: List[Dict[str, Any]] = field(default_factory=list)


@dataclass
class CancelledTool:
    """The proposal was declined (or named an unknown tool). No side effects."""

    tool_name: str

    def to_api(self) -> Dict[str, Any]:
        return {"success": False, "message": "cancelled"}


TurnOutcome = Union[StreamedTurn, ProposedTurn, ToolRunResult, CancelledTool]


def parse_turn_request(payload: Dict[str, Any], confirmation: Optional[bool] = None) -> TurnRequest:
    """
    Build a typed request from a JSON body.

    With confirmation=None the shape decides: a body carrying both toolName
    and input is a ConfirmationDecision, anything else a NewTurnRequest.

    Raises:
        InvalidInputError: the body does not match the expected shape
    """
    if confirmation is None:
        confirmation = "toolName" in payload and "input" in payload
    model = ConfirmationDecision if confirmation else NewTurnRequest
    try:
        return model.model_validate(payload)
    except ValidationError as e:
        first = e.errors()[0]
        field_name = ".".join(str(p) for p in first["loc"]) or None
        raise InvalidInputError(f"Invalid request: {first['msg']}", parameter=field_name) from e
