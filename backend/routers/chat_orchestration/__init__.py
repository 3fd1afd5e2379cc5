"""
dealchat Chat Orchestration - the conversation turn pipeline

Components:
- ConversationOrchestrator: one turn end to end (rate limit, history,
  model, proposal or stream, persistence)
- ConversationManager: ownership-checked conversation CRUD and titles
- TurnSession: per-turn state and the message list sent to the model
- ProposalSigner: binds confirmations to surfaced proposals
- Request/outcome types: NewTurnRequest, ConfirmationDecision, StreamedTurn,
  ProposedTurn, ToolRunResult, CancelledTool

Tool proposals are never executed without an explicit confirmation, and a
confirmation never writes chat history.
"""

from .conversations import ConversationManager, derive_title
from .orchestrator import ConversationOrchestrator
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

__all__ = [
    "ConversationOrchestrator",
    "ConversationManager",
    "derive_title",
    "ProposalSigner",
    "TurnSession",
    "CancelledTool",
    "ConfirmationDecision",
    "NewTurnRequest",
    "ProposedTurn",
    "StreamedTurn",
    "ToolRunResult",
    "TurnOutcome",
    "TurnRequest",
    "parse_turn_request",
]
