"""
HTTP client for the dealchat chat API.

Wraps every /api/chat endpoint on one httpx.AsyncClient. Non-2xx responses
raise ChatApiError with the server's error code and message; 429s also carry
the rate-limit headers so callers can tell the user when to retry.

Usage:
    async with ChatApiClient("http://localhost:8000", token) as api:
        reply = await api.send_turn("Show deals above $5M EBITDA", on_chunk=print)
        if reply.proposal:
            results = await api.confirm_tool(**reply.proposal.confirmation(True))
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

import httpx

logger = logging.getLogger(__name__)

TIMEOUT = 60.0


class ChatApiError(Exception):
    """A chat API call failed (HTTP error status or transport failure)."""

    def __init__(
        self,
        status: int,
        message: str,
        code: Optional[str] = None,
        rate_limit: Optional[Dict[str, int]] = None,
    ):
        self.status = status
        self.message = message
        self.code = code
        self.rate_limit = rate_limit or {}
        super().__init__(f"{status} {code or ''} {message}".strip())

    @property
    def retry_after(self) -> Optional[int]:
        return self.rate_limit.get("retry_after")


@dataclass
class ProposalReply:
    """A tool the model wants to run, awaiting the user's decision."""

    tool_name: str
    input: Dict[str, Any] = field(default_factory=dict)
    proposal_token: Optional[str] = None
    conversation_id: Optional[str] = None

    def confirmation(self, confirmed: bool) -> Dict[str, Any]:
        """Keyword arguments for ChatApiClient.confirm_tool()."""
        return {
            "tool_name": self.tool_name,
            "tool_input": self.input,
            "confirmed": confirmed,
            "proposal_token": self.proposal_token,
        }


@dataclass
class TurnReply:
    """Result of send_turn: either streamed text or a proposal."""

    conversation_id: Optional[str] = None
    is_new: bool = False
    text: str = ""
    proposal: Optional[ProposalReply] = None


def _rate_limit_info(headers: httpx.Headers) -> Dict[str, int]:
    info = {}
    for header, key in (
        ("X-RateLimit-Limit", "limit"),
        ("X-RateLimit-Remaining", "remaining"),
        ("X-RateLimit-Reset", "reset_in"),
        ("Retry-After", "retry_after"),
    ):
        value = headers.get(header)
        if value is not None and value.isdigit():
            info[key] = int(value)
    return info


def _error_from_response(response: httpx.Response) -> ChatApiError:
    code = None
    message = response.reason_phrase or "Request failed"
    try:
        body = response.json()
        error = body.get("error") or {}
        code = error.get("code")
        message = error.get("message") or message
    except Exception:
        if response.text:
            message = response.text[:200]
    return ChatApiError(response.status_code, message, code=code, rate_limit=_rate_limit_info(response.headers))


class ChatApiClient:
    """Async client for one signed-in user."""

    def __init__(
        self,
        base_url: str,
        token: str,
        timeout: float = TIMEOUT,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers={"Authorization": f"Bearer {token}"},
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "ChatApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            logger.error(f"[ChatApi] {method} {path} failed: {e}")
            raise ChatApiError(0, f"Cannot reach chat API: {e}") from e
        if response.status_code >= 400:
            raise _error_from_response(response)
        return response.json()

    # =========================================================================
    # Turns
    # =========================================================================

    async def send_turn(
        self,
        message: str,
        conversation_id: Optional[str] = None,
        on_chunk: Optional[Callable[[str], None]] = None,
    ) -> TurnReply:
        """
        Send a message and read the reply.

        Prose replies are streamed: on_chunk is called with each text chunk in
        arrival order. A JSON reply is a tool proposal and nothing is streamed.
        """
        body: Dict[str, Any] = {"message": message}
        if conversation_id:
            body["conversationId"] = conversation_id

        try:
            async with self._client.stream("POST", "/api/chat/turn", json=body) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise _error_from_response(response)

                if response.headers.get("content-type", "").startswith("application/json"):
                    await response.aread()
                    data = response.json()
                    return TurnReply(
                        conversation_id=data.get("conversationId") or conversation_id,
                        proposal=ProposalReply(
                            tool_name=data["toolName"],
                            input=data.get("input") or {},
                            proposal_token=data.get("proposalToken"),
                            conversation_id=data.get("conversationId"),
                        ),
                    )

                parts: List[str] = []
                async for chunk in response.aiter_text():
                    if not chunk:
                        continue
                    parts.append(chunk)
                    if on_chunk is not None:
                        on_chunk(chunk)

                return TurnReply(
                    conversation_id=response.headers.get("X-Conversation-Id") or conversation_id,
                    is_new=response.headers.get("X-Conversation-New") == "true",
                    text="".join(parts),
                )
        except httpx.HTTPError as e:
            logger.error(f"[ChatApi] turn stream failed: {e}")
            raise ChatApiError(0, f"Chat stream failed: {e}") from e

    async def confirm_tool(
        self,
        tool_name: str,
        tool_input: Dict[str, Any],
        confirmed: bool,
        proposal_token: Optional[str] = None,
    ) -> Any:
        """Approve or decline a proposal. Returns the result list, or the cancelled marker."""
        body: Dict[str, Any] = {"toolName": tool_name, "input": tool_input, "confirmed": confirmed}
        if proposal_token:
            body["proposalToken"] = proposal_token
        return await self._request("POST", "/api/chat/confirm-tool", json=body)

    # =========================================================================
    # Conversations
    # =========================================================================

    async def list_conversations(self) -> List[Dict[str, Any]]:
        data = await self._request("GET", "/api/chat/conversations")
        return data.get("conversations", [])

    async def get_conversation(self, conversation_id: str) -> Dict[str, Any]:
        data = await self._request("GET", f"/api/chat/conversations/{conversation_id}")
        return data["conversation"]

    async def create_conversation(self, title: Optional[str] = None) -> Dict[str, Any]:
        body = {"title": title} if title is not None else {}
        data = await self._request("POST", "/api/chat/create", json=body)
        return data["conversation"]

    async def delete_conversation(self, conversation_id: str) -> None:
        await self._request("DELETE", "/api/chat/delete", params={"conversationId": conversation_id})

    async def rename_conversation(self, conversation_id: str, title: str) -> Dict[str, Any]:
        data = await self._request(
            "POST", "/api/chat/update-title", json={"conversationId": conversation_id, "title": title}
        )
        return data["conversation"]
