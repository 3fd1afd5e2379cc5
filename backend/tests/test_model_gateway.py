"""
Tests for ModelGateway reply classification: prose stream vs tool proposal.
"""

import asyncio
import json

import pytest

from errors import ModelUnavailableError
from services.model_gateway import ModelGateway, ReplyStream, ToolProposal, parse_inline_proposal

from conftest import FakeLLMClient, text_events, tool_call_events


def _reply(*script, history=None):
    client = FakeLLMClient(*script)
    gateway = ModelGateway(client, model="test-model")

    async def run():
        outcome = await gateway.reply("system", history or [{"role": "user", "content": "hi"}], tools=[])
        if isinstance(outcome, ReplyStream):
            return [chunk async for chunk in outcome], client
        return outcome, client

    return asyncio.run(run())


class TestProse:
    def test_chunks_forwarded_in_order(self):
        chunks, _ = _reply(text_events("Hel", "lo ", "there"))
        assert chunks == ["Hel", "lo ", "there"]

    def test_prompt_is_system_then_history(self):
        history = [
            {"role": "user", "content": "a"},
            {"role": "assistant", "content": "b"},
            {"role": "user", "content": "c"},
        ]
        _, client = _reply(text_events("ok"), history=history)
        messages = client.calls[0]["messages"]
        assert messages[0] == {"role": "system", "content": "system"}
        assert messages[1:] == history
        assert client.calls[0]["model"] == "test-model"

    def test_leading_whitespace_then_prose(self):
        chunks, _ = _reply(text_events("  ", "\n", "Sure"))
        assert "".join(chunks) == "  \nSure"

    def test_json_that_is_not_a_tool_request_is_prose(self):
        text = json.dumps({"answer": 42})
        chunks, _ = _reply(text_events(text))
        assert "".join(chunks) == text

    def test_unknown_tool_is_prose(self):
        text = json.dumps({"toolName": "drop_tables", "input": {}})
        chunks, _ = _reply(text_events(text))
        assert "".join(chunks) == text

    def test_invalid_tool_input_is_prose(self):
        text = json.dumps({"toolName": "search_deals", "input": {"nonsense": True}})
        chunks, _ = _reply(text_events(text))
        assert "".join(chunks) == text

    def test_json_followed_by_text_is_prose(self):
        text = json.dumps({"toolName": "search_deals", "input": {}}) + " Let me know!"
        chunks, _ = _reply(text_events(text))
        assert "".join(chunks) == text

    def test_stream_is_single_pass(self):
        client = FakeLLMClient(text_events("a", "b"))
        gateway = ModelGateway(client, model="m")

        async def run():
            stream = await gateway.reply("s", [{"role": "user", "content": "x"}])
            [c async for c in stream]
            with pytest.raises(RuntimeError):
                stream.__aiter__()

        asyncio.run(run())


class TestProposals:
    def test_inline_tool_request(self):
        text = json.dumps({"toolName": "search_deals", "input": {"minEbitda": 5000000}})
        outcome, _ = _reply(text_events(text[:10], text[10:]))
        assert outcome == ToolProposal(tool_name="search_deals", input={"minEbitda": 5000000})
        assert outcome.to_api() == {"toolName": "search_deals", "input": {"minEbitda": 5000000}}

    def test_name_arguments_form(self):
        text = json.dumps({"name": "search_deals", "arguments": {"companyLocation": "OH"}})
        outcome, _ = _reply(text_events(text))
        assert outcome.tool_name == "search_deals"
        assert outcome.input == {"companyLocation": "OH"}

    def test_native_function_call(self):
        outcome, _ = _reply(tool_call_events("search_deals", json.dumps({"title": "ohio"})))
        assert outcome == ToolProposal(tool_name="search_deals", input={"title": "ohio"})

    def test_native_call_with_empty_arguments(self):
        outcome, _ = _reply([{"tool_call": {"index": 0, "id": "c", "name": "search_deals", "arguments": ""}}])
        assert outcome == ToolProposal(tool_name="search_deals", input={})

    def test_native_call_with_text_is_prose(self):
        events = text_events("Looking that up") + tool_call_events("search_deals", "{}")
        chunks, _ = _reply(events)
        assert chunks == ["Looking that up"]

    def test_parse_inline_proposal_rejects_extra_keys(self):
        text = json.dumps({"toolName": "search_deals", "input": {}, "why": "because"})
        assert parse_inline_proposal(text) is None


class TestFailures:
    def test_empty_reply(self):
        with pytest.raises(ModelUnavailableError):
            _reply([])

    def test_whitespace_only_reply(self):
        with pytest.raises(ModelUnavailableError):
            _reply(text_events("   ", "\n"))

    def test_provider_error_before_first_token(self):
        with pytest.raises(ModelUnavailableError):
            _reply([ModelUnavailableError("down")])

    def test_unexpected_error_becomes_model_unavailable(self):
        with pytest.raises(ModelUnavailableError):
            _reply([ConnectionResetError("reset")])

    def test_unusable_native_calls(self):
        events = tool_call_events("search_deals", "{}", index=0) + tool_call_events("search_deals", "{}", index=1)
        with pytest.raises(ModelUnavailableError):
            _reply(events)

    def test_error_mid_stream_surfaces_after_partial_text(self):
        client = FakeLLMClient(text_events("Part", "ial") + [RuntimeError("connection dropped")])
        gateway = ModelGateway(client, model="m")
        received = []

        async def run():
            stream = await gateway.reply("s", [{"role": "user", "content": "x"}])
            async for chunk in stream:
                received.append(chunk)

        with pytest.raises(ModelUnavailableError):
            asyncio.run(run())
        assert received == ["Part", "ial"]

    def test_aclose_stops_provider(self):
        client = FakeLLMClient(text_events("a", "b", "c"))
        gateway = ModelGateway(client, model="m")

        async def run():
            stream = await gateway.reply("s", [{"role": "user", "content": "x"}])
            await stream.aclose()

        asyncio.run(run())
        assert client.closed == 1
