"""
LLM Client - wraps the OpenAI SDK to stream from any OpenAI-compatible server.

Streaming events are simplified dicts:
    {"content": "text fragment"}
    {"tool_call": {"index": 0, "id": "call_0", "name": "search_deals", "arguments": "{\"min"}}

Tool-call arguments arrive as string fragments; callers concatenate them per
index. Provider failures surface as ModelUnavailableError.
"""

import logging
from typing import Any, AsyncIterator, Dict, List, Optional

import httpx
from openai import APITimeoutError, AsyncOpenAI, OpenAIError

from errors import ModelUnavailableError

logger = logging.getLogger(__name__)


def _translate_tools_for_openai(tools: Optional[List[Dict]]) -> Optional[List[Dict]]:
    """Pass through tool definitions (already OpenAI-compatible)."""
    if not tools:
        return None
    return tools


class LLMClient:
    """Async OpenAI SDK client pointed at a chat-completions endpoint."""

    def __init__(self, base_url: str, api_key: str = "not-needed", timeout: float = 120.0):
        """
        Args:
            base_url: API root including /v1 (e.g., "http://localhost:8081/v1")
            api_key: Bearer key for hosted providers; local servers ignore it
            timeout: Request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._openai = AsyncOpenAI(
            base_url=self.base_url,
            api_key=api_key,
            timeout=timeout,
            max_retries=0,
        )

    async def is_healthy(self, timeout: float = 3.0) -> bool:
        """Probe the server's /models listing."""
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                resp = await client.get(f"{self.base_url}/models")
            return resp.status_code == 200
        except httpx.HTTPError:
            return False

    async def stream_chat(
        self,
        model: str,
        messages: List[Dict[str, str]],
        tools: Optional[List[Dict]] = None,
        options: Optional[Dict[str, Any]] = None,
    ) -> AsyncIterator[Dict[str, Any]]:
        """Stream a chat completion as simplified event dicts."""
        options = options or {}
        kwargs: Dict[str, Any] = {"model": model or "default", "messages": messages}
        if "temperature" in options:
            kwargs["temperature"] = options["temperature"]
        if "max_tokens" in options:
            kwargs["max_tokens"] = options["max_tokens"]

        openai_tools = _translate_tools_for_openai(tools)
        if openai_tools:
            kwargs["tools"] = openai_tools

        try:
            stream = await self._openai.chat.completions.create(stream=True, **kwargs)
            async for chunk in stream:
                delta = chunk.choices[0].delta if chunk.choices else None
                if not delta:
                    continue

                if delta.content:
                    yield {"content": delta.content}

                for tc in delta.tool_calls or []:
                    fn = tc.function
                    yield {
                        "tool_call": {
                            "index": tc.index,
                            "id": tc.id,
                            "name": fn.name if fn else None,
                            "arguments": (fn.arguments if fn else None) or "",
                        }
                    }
        except APITimeoutError as e:
            raise ModelUnavailableError("Model request timed out", model=model, error_type="timeout") from e
        except OpenAIError as e:
            raise ModelUnavailableError("Model request failed", details=str(e), model=model) from e
        except httpx.HTTPError as e:
            raise ModelUnavailableError("Model connection failed", details=str(e), model=model) from e
