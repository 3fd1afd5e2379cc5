"""
Tests for the dealchat error handling module.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from starlette.testclient import TestClient

from errors import (
    ErrorCode,
    ChatError,
    UnauthorizedError,
    ForbiddenError,
    RateLimitedError,
    InvalidInputError,
    InvalidToolInputError,
    NotFoundError,
    ModelUnavailableError,
    ToolExecutionFailedError,
    PersistenceError,
    error_response,
    success_response,
    log_error,
    rate_limit_headers,
    register_error_handlers,
)


class TestErrorCodes:
    """Test error code enum."""

    def test_error_codes_are_strings(self):
        """Error codes should be string values."""
        assert ErrorCode.RATE_LIMITED.value == "RATE_LIMITED"
        assert ErrorCode.PERSISTENCE_FAILED == "PERSISTENCE_FAILED"

    def test_taxonomy_is_complete(self):
        expected = {
            "UNAUTHORIZED",
            "FORBIDDEN",
            "RATE_LIMITED",
            "INVALID_INPUT",
            "INVALID_TOOL_INPUT",
            "NOT_FOUND",
            "MODEL_UNAVAILABLE",
            "MODEL_TIMEOUT",
            "TOOL_EXECUTION_FAILED",
            "PERSISTENCE_FAILED",
            "INTERNAL_UNEXPECTED",
        }
        assert {c.value for c in ErrorCode} == expected


class TestChatError:
    """Test base ChatError exception."""

    def test_basic_creation(self):
        err = ChatError("Test error")
        assert err.message == "Test error"
        assert err.details is None
        assert err.code == ErrorCode.INTERNAL_UNEXPECTED
        assert err.recoverable is False
        assert err.status_code == 500

    def test_with_context(self):
        err = ChatError("Test error", foo="bar", count=42)
        assert err.context == {"foo": "bar", "count": 42}

    def test_str_representation(self):
        """String representation includes message and details."""
        assert str(ChatError("Test error", details="More info")) == "Test error - More info"
        assert str(ChatError("Test error")) == "Test error"

    def test_to_dict(self):
        err = ChatError("Test error", details="More info", key="value")
        d = err.to_dict()
        assert d["code"] == "INTERNAL_UNEXPECTED"
        assert d["message"] == "Test error"
        assert d["details"] == "More info"
        assert d["recoverable"] is False
        assert d["context"] == {"key": "value"}

    def test_override_code_and_recoverable(self):
        err = ChatError("x", code=ErrorCode.NOT_FOUND, recoverable=True)
        assert err.code == ErrorCode.NOT_FOUND
        assert err.recoverable is True


class TestSubclasses:
    """Each taxonomy entry maps to its HTTP status."""

    def test_status_codes(self):
        assert UnauthorizedError("x").status_code == 401
        assert ForbiddenError("x").status_code == 403
        assert RateLimitedError("x", limit=10, remaining=0, reset_in=5).status_code == 429
        assert InvalidInputError("x").status_code == 400
        assert InvalidToolInputError("x").status_code == 400
        assert NotFoundError("x").status_code == 404
        assert ModelUnavailableError("x").status_code == 503
        assert ToolExecutionFailedError("x").status_code == 502
        assert PersistenceError("x").status_code == 500

    def test_rate_limited_carries_budget(self):
        err = RateLimitedError("Slow down", limit=10, remaining=0, reset_in=42)
        assert (err.limit, err.remaining, err.reset_in) == (10, 0, 42)
        assert err.context == {"limit": 10, "remaining": 0, "reset_in": 42}
        assert err.recoverable is True

    def test_invalid_input_context(self):
        err = InvalidInputError("Bad", parameter="message", expected="string", received="int")
        assert err.context == {"parameter": "message", "expected": "string", "received": "int"}

    def test_invalid_tool_input_is_invalid_input(self):
        err = InvalidToolInputError("Bad input", tool="search_deals")
        assert isinstance(err, InvalidInputError)
        assert err.code == ErrorCode.INVALID_TOOL_INPUT
        assert err.context == {"tool": "search_deals"}

    def test_not_found_context(self):
        err = NotFoundError("Missing", resource_type="conversation", resource_id="c1")
        assert err.context == {"resource_type": "conversation", "resource_id": "c1"}

    def test_model_timeout_code(self):
        assert ModelUnavailableError("slow", error_type="timeout").code == ErrorCode.MODEL_TIMEOUT
        assert ModelUnavailableError("down", model="m").code == ErrorCode.MODEL_UNAVAILABLE
        assert ModelUnavailableError("down", model="m").context == {"model": "m"}


class TestResponses:
    """Test the response builders."""

    def test_error_response_for_chat_error(self):
        resp = error_response(InvalidInputError("Message is empty", parameter="message"))
        assert resp["success"] is False
        assert resp["error"]["code"] == "INVALID_INPUT"
        assert resp["error"]["message"] == "Message is empty"
        assert resp["error"]["recoverable"] is True
        assert resp["error"]["context"] == {"parameter": "message"}

    def test_error_response_for_error_without_context(self):
        resp = error_response(UnauthorizedError("Authentication required"))
        assert resp["error"]["code"] == "UNAUTHORIZED"
        assert resp["error"]["tool"] is None
        assert resp["error"]["context"] is None

    def test_error_response_lifts_tool(self):
        resp = error_response(InvalidToolInputError("Bad input", tool="search_deals"))
        assert resp["error"]["tool"] == "search_deals"

    def test_error_response_without_context(self):
        resp = error_response(InvalidInputError("x", parameter="message"), include_context=False)
        assert resp["error"]["context"] is None

    def test_error_response_hides_unknown_exceptions(self):
        resp = error_response(RuntimeError("db password is hunter2"))
        assert resp["error"]["code"] == "INTERNAL_UNEXPECTED"
        assert "hunter2" not in resp["error"]["message"]

    def test_success_response(self):
        assert success_response() == {"success": True}
        assert success_response({"a": 1}, b=2) == {"success": True, "a": 1, "b": 2}


class TestRateLimitHeaders:
    def test_allowed_headers(self):
        headers = rate_limit_headers(10, 3, 20)
        assert headers == {"X-RateLimit-Limit": "10", "X-RateLimit-Remaining": "3", "X-RateLimit-Reset": "20"}

    def test_denied_adds_retry_after(self):
        headers = rate_limit_headers(10, 0, 20, denied=True)
        assert headers["Retry-After"] == "20"

    def test_remaining_never_negative(self):
        assert rate_limit_headers(10, -4, 1)["X-RateLimit-Remaining"] == "0"


class TestLogError:
    def test_chat_error_format(self, caplog):
        logger = logging.getLogger("test.errors")
        with caplog.at_level(logging.ERROR, logger="test.errors"):
            log_error(logger, PersistenceError("Could not save"), context="Persist", include_traceback=False)
        assert "[Persist] PERSISTENCE_FAILED: Could not save" in caplog.text

    def test_plain_exception_format(self, caplog):
        logger = logging.getLogger("test.errors")
        with caplog.at_level(logging.ERROR, logger="test.errors"):
            log_error(logger, ValueError("boom"), include_traceback=False)
        assert "boom" in caplog.text


def _error_app() -> FastAPI:
    @asynccontextmanager
    async def noop_lifespan(app):
        yield

    app = FastAPI(lifespan=noop_lifespan)
    register_error_handlers(app)

    @app.get("/limited")
    async def limited():
        raise RateLimitedError("Rate limit exceeded", limit=10, remaining=0, reset_in=30)

    @app.get("/missing")
    async def missing():
        raise NotFoundError("Conversation not found", resource_type="conversation", resource_id="c1")

    @app.get("/anonymous")
    async def anonymous():
        raise UnauthorizedError("Authentication required")

    @app.get("/bad-body")
    async def bad_body():
        raise InvalidInputError("Request body must be a JSON object")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("secret internals")

    return app


class TestErrorHandlers:
    """ChatErrors become JSON with their status; anything else is a bare 500."""

    def test_rate_limited_response(self):
        client = TestClient(_error_app())
        resp = client.get("/limited")
        assert resp.status_code == 429
        assert resp.headers["Retry-After"] == "30"
        assert resp.headers["X-RateLimit-Remaining"] == "0"
        body = resp.json()
        assert body["error"]["code"] == "RATE_LIMITED"
        assert body["error"]["context"]["reset_in"] == 30

    def test_not_found_response(self):
        client = TestClient(_error_app())
        resp = client.get("/missing")
        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "NOT_FOUND"

    def test_errors_without_context_keep_their_status(self):
        client = TestClient(_error_app())
        anonymous = client.get("/anonymous")
        assert anonymous.status_code == 401
        assert anonymous.json()["error"]["code"] == "UNAUTHORIZED"
        bad_body = client.get("/bad-body")
        assert bad_body.status_code == 400
        assert bad_body.json()["error"]["code"] == "INVALID_INPUT"

    def test_unexpected_error_is_generic(self):
        client = TestClient(_error_app(), raise_server_exceptions=False)
        resp = client.get("/boom")
        assert resp.status_code == 500
        assert resp.json()["error"]["message"] == "Internal server error"
        assert "secret" not in resp.text
