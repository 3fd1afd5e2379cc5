"""
Model Gateway - turns one model call into either a text stream or a tool proposal.

The model answers in one of two ways:
- prose, which is forwarded to the caller chunk by chunk as it arrives
- exactly one tool request, surfaced as a ToolProposal for human approval

Classification peeks at the start of the reply. The moment the first
non-whitespace character is not "{" the reply is prose and streams straight
through. A reply that opens with "{" (or a native function call) is buffered
to the end and accepted as a proposal only if it is a single, well-formed
request for a registered tool with valid input. Anything else falls back to
prose.

Usage:
    gateway = ModelGateway(LLMClient(base_url))
    outcome = await gateway.reply(SYSTEM_PROMPT, history, ToolRegistry.get_tools_schema())
    if isinstance(outcome, ToolProposal):
        ...
    else:
        async for chunk in outcome:
            ...
"""

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Optional, Union

from errors import InvalidToolInputError, ModelUnavailableError
from logging_config import log_llm
from services.llm_client import LLMClient
from tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolProposal:
    """A model-requested tool call awaiting human confirmation. Never persisted."""

    tool_name: str
    input: Dict[str, Any] = field(default_factory=dict)

    def to_api(self) -> Dict[str, Any]:
        return {"toolName": self.tool_name, "input": self.input}


class ReplyStream:
    """
    Single-pass async iterator over the text chunks of a prose reply.

    Chunks buffered while classifying are replayed first, then the rest of
    the provider stream is forwarded as it arrives.
    """

    def __init__(self, prefix: List[str], rest: Optional[AsyncIterator[Dict[str, Any]]] = None, model: str = ""):
        self._prefix = list(prefix)
        self._rest = rest
        self._model = model
        self._consumed = False

    def __aiter__(self) -> AsyncIterator[str]:
        if self._consumed:
            raise RuntimeError("ReplyStream can only be iterated once")
        self._consumed = True
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[str]:
        for chunk in self._prefix:
            yield chunk
        if self._rest is None:
            return

        try:
            async for event in self._rest:
                text = event.get("content")
                if text:
                    yield text
                elif event.get("tool_call"):
                    logger.debug("[Gateway] Ignoring tool-call fragment inside prose reply")
        except ModelUnavailableError:
            raise
        except Exception as e:
            raise ModelUnavailableError("Model stream interrupted", details=str(e), model=self._model) from e

    async def aclose(self) -> None:
        """Stop reading from the provider."""
        if self._rest is not None and hasattr(self._rest, "aclose"):
            await self._rest.aclose()


def _validated_proposal(name: Any, args: Any) -> Optional[ToolProposal]:
    if not isinstance(name, str) or not isinstance(args, dict):
        return None
    if ToolRegistry.get_tool(name) is None:
        logger.info(f"[Gateway] Model requested unknown tool {name!r}, treating reply as prose")
        return None
    try:
        ToolRegistry.validate_input(name, args)
    except InvalidToolInputError as e:
        logger.info(f"[Gateway] Tool request for {name} failed validation ({e.details}), treating reply as prose")
        return None
    return ToolProposal(tool_name=name, input=args)


def parse_inline_proposal(text: str) -> Optional[ToolProposal]:
    """
    Parse a whole reply as a tool request.

    Accepts exactly {"toolName": str, "input": {...}} or
    {"name": str, "arguments": {...}} with no surrounding text.
    """
    stripped = text.strip()
    if not (stripped.startswith("{") and stripped.endswith("}")):
        return None
    try:
        obj = json.loads(stripped)
    except json.JSONDecodeError:
        return None
    if not isinstance(obj, dict):
        return None

    keys = set(obj.keys())
    if keys == {"toolName", "input"}:
        return _validated_proposal(obj["toolName"], obj["input"])
    if keys == {"name", "arguments"}:
        return _validated_proposal(obj["name"], obj["arguments"])
    return None


class _ToolCallAccumulator:
    """Reassembles streamed native tool-call fragments by index."""

    def __init__(self):
        self.calls: Dict[int, Dict[str, str]] = {}

    def add(self, fragment: Dict[str, Any]) -> None:
        call = self.calls.setdefault(fragment.get("index") or 0, {"name": "", "arguments": ""})
        if fragment.get("name"):
            call["name"] = fragment["name"]
        call["arguments"] += fragment.get("arguments") or ""

    def proposal(self) -> Optional[ToolProposal]:
        if len(self.calls) != 1:
            if self.calls:
                logger.info(f"[Gateway] Model requested {len(self.calls)} tools at once, not proposing")
            return None
        call = next(iter(self.calls.values()))
        try:
            args = json.loads(call["arguments"]) if call["arguments"].strip() else {}
        except json.JSONDecodeError:
            logger.info(f"[Gateway] Unparseable tool arguments for {call['name']}")
            return None
        return _validated_proposal(call["name"], args)


class ModelGateway:
    """Single call to the language model with stream/proposal classification."""

    def __init__(self, client: LLMClient, model: Optional[str] = None):
        self.client = client
        self._model = model

    @property
    def model(self) -> str:
        from config import runtime_config
        return self._model or runtime_config.model_chat

    async def reply(
        self,
        system: str,
        history: List[Dict[str, str]],
        tools: Optional[List[Dict[str, Any]]] = None,
    ) -> Union[ToolProposal, ReplyStream]:
        """
        Ask the model for the next assistant turn.

        Args:
            system: System instructions
            history: Ordered {role, content} turns ending with the new user message
            tools: OpenAI-style tool catalog the model may request from

        Raises:
            ModelUnavailableError: provider failure before classification, or an
                entirely empty reply
        """
        from config import runtime_config

        model = self.model
        messages = [{"role": "system", "content": system}] + [
            {"role": m["role"], "content": m["content"]} for m in history
        ]

        log_llm(logger, "start", model=model)
        start = time.monotonic()

        source = self.client.stream_chat(model, messages, tools=tools, options=runtime_config.get_llm_params())
        buffered: List[str] = []
        native = _ToolCallAccumulator()

        try:
            async for event in source:
                if event.get("tool_call"):
                    native.add(event["tool_call"])
                    continue

                text = event.get("content")
                if not text:
                    continue
                buffered.append(text)

                head = "".join(buffered).lstrip()
                if head and not head.startswith("{"):
                    log_llm(logger, "end", model=model, duration=time.monotonic() - start)
                    return ReplyStream(buffered, source, model=model)
        except ModelUnavailableError:
            raise
        except Exception as e:
            raise ModelUnavailableError("Model request failed", details=str(e), model=model) from e

        log_llm(logger, "end", model=model, duration=time.monotonic() - start)
        text = "".join(buffered)

        if native.calls and not text.strip():
            proposal = native.proposal()
            if proposal is not None:
                return proposal
            raise ModelUnavailableError("Model returned an unusable tool request", model=model)

        if not text.strip():
            raise ModelUnavailableError("Model returned an empty reply", model=model)

        if not native.calls:
            proposal = parse_inline_proposal(text)
            if proposal is not None:
                return proposal

        return ReplyStream(buffered, None, model=model)
