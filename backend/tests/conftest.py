"""
Shared pytest fixtures and fakes for the dealchat test suite.

Nothing here needs a running Redis, PostgreSQL or model server: the rate
limiter runs on RedisManager's in-process fallback with a controllable
clock, conversations live in InMemoryConversationStore, and the model is a
scripted async generator.
"""

from typing import Any, Dict, List, Optional

import pytest

from config import runtime_config
from services.redis_client import RedisManager
from tools.registry import ToolRegistry, register_all_tools


class FakeClock:
    """Wall clock in seconds that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class MsClock:
    """Epoch-millisecond clock for the orchestrator. Advances by `step` after each read."""

    def __init__(self, start: int = 1_700_000_000_000, step: int = 0):
        self.now = start
        self.step = step

    def __call__(self) -> int:
        value = self.now
        self.now += self.step
        return value


def fallback_redis(clock: Optional[FakeClock] = None) -> RedisManager:
    """A RedisManager already in in-memory fallback mode."""
    manager = RedisManager(enabled=False, clock=clock or FakeClock())
    manager._fallback_mode = True
    manager._initialized = True
    return manager


def redis_provider(manager: RedisManager):
    async def provide() -> RedisManager:
        return manager
    return provide


class FakeLLMClient:
    """
    Stands in for LLMClient.stream_chat.

    Each entry of `script` is the event list for one call. An event that is
    an Exception instance is raised at that point in the stream.
    """

    def __init__(self, *script: List[Any]):
        self.script = list(script)
        self.calls: List[Dict[str, Any]] = []
        self.closed = 0

    async def stream_chat(self, model, messages, tools=None, options=None):
        self.calls.append({"model": model, "messages": messages, "tools": tools, "options": options})
        events = self.script.pop(0) if self.script else [{"content": "ok"}]
        try:
            for event in events:
                if isinstance(event, Exception):
                    raise event
                yield event
        finally:
            self.closed += 1

    async def is_healthy(self, timeout: float = 3.0) -> bool:
        return True


def text_events(*chunks: str) -> List[Dict[str, str]]:
    return [{"content": c} for c in chunks]


def tool_call_events(name: str, arguments: str, index: int = 0) -> List[Dict[str, Any]]:
    """A native function call streamed in two fragments."""
    half = len(arguments) // 2
    return [
        {"tool_call": {"index": index, "id": f"call_{index}", "name": name, "arguments": arguments[:half]}},
        {"tool_call": {"index": index, "id": None, "name": None, "arguments": arguments[half:]}},
    ]


@pytest.fixture(autouse=True)
def _reset_runtime_config():
    """Every test starts from default config in development mode."""
    runtime_config.reset_to_defaults()
    runtime_config.dealchat_env = "development"
    runtime_config.require_proposal_token = False
    yield
    runtime_config.reset_to_defaults()


@pytest.fixture(autouse=True)
def _registered_tools():
    ToolRegistry.clear()
    register_all_tools()
    yield
    ToolRegistry.clear()


@pytest.fixture
def fake_clock():
    return FakeClock()
