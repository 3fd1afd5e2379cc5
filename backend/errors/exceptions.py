"""
Custom exception hierarchy for dealchat.

All exceptions inherit from ChatError and include:
- code: ErrorCode for categorization
- message: Human-readable error message
- details: Optional additional context
- recoverable: Whether the user can retry/fix the issue
- status_code: HTTP status the API layer answers with
- context: Additional key-value pairs for debugging
"""

from typing import Any, Optional
from .codes import ErrorCode


class ChatError(Exception):
    """Base exception for all dealchat errors.

    Attributes:
        code: The ErrorCode categorizing this error
        message: Human-readable error message
        details: Optional additional context for the user
        recoverable: Whether the error can be resolved by user action
        status_code: HTTP status code for API responses
        context: Additional debugging information
    """

    code: ErrorCode = ErrorCode.INTERNAL_UNEXPECTED
    recoverable: bool = False
    status_code: int = 500

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        code: Optional[ErrorCode] = None,
        recoverable: Optional[bool] = None,
        **context: Any,
    ):
        self.message = message
        self.details = details
        self.context = context if context else None

        # Allow overriding class defaults
        if code is not None:
            self.code = code
        if recoverable is not None:
            self.recoverable = recoverable

        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message

    def to_dict(self) -> dict:
        """Convert exception to dictionary for JSON serialization."""
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
            "context": self.context,
        }


class UnauthorizedError(ChatError):
    """No verified identity on the request."""

    code = ErrorCode.UNAUTHORIZED
    recoverable = True
    status_code = 401


class ForbiddenError(ChatError):
    """Identity does not own the addressed conversation."""

    code = ErrorCode.FORBIDDEN
    recoverable = False
    status_code = 403

    def __init__(self, message: str, details: Optional[str] = None, resource_id: Optional[str] = None, **context: Any):
        ctx = {**context}
        if resource_id:
            ctx["resource_id"] = resource_id
        super().__init__(message, details, **ctx)


class RateLimitedError(ChatError):
    """Request budget for the current window is exhausted.

    Always carries the limit, the remaining budget and seconds until reset so
    the API layer can surface them as headers.
    """

    code = ErrorCode.RATE_LIMITED
    recoverable = True
    status_code = 429

    def __init__(self, message: str, limit: int, remaining: int, reset_in: int, **context: Any):
        self.limit = limit
        self.remaining = remaining
        self.reset_in = reset_in
        super().__init__(message, limit=limit, remaining=remaining, reset_in=reset_in, **context)


class InvalidInputError(ChatError):
    """Error during request validation."""

    code = ErrorCode.INVALID_INPUT
    recoverable = True
    status_code = 400

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        parameter: Optional[str] = None,
        expected: Optional[str] = None,
        received: Optional[str] = None,
        **context: Any,
    ):
        ctx = {**context}
        if parameter:
            ctx["parameter"] = parameter
        if expected:
            ctx["expected"] = expected
        if received:
            ctx["received"] = received
        super().__init__(message, details, **ctx)


class InvalidToolInputError(InvalidInputError):
    """Tool input did not match the tool's declared schema."""

    code = ErrorCode.INVALID_TOOL_INPUT

    def __init__(self, message: str, details: Optional[str] = None, tool: Optional[str] = None, **context: Any):
        ctx = {**context}
        if tool:
            ctx["tool"] = tool
        super().__init__(message, details, **ctx)


class NotFoundError(ChatError):
    """Error when a referenced resource does not exist."""

    code = ErrorCode.NOT_FOUND
    recoverable = True
    status_code = 404

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
        **context: Any,
    ):
        ctx = {**context}
        if resource_type:
            ctx["resource_type"] = resource_type
        if resource_id:
            ctx["resource_id"] = resource_id
        super().__init__(message, details, **ctx)


class ModelUnavailableError(ChatError):
    """Error during model interactions (provider down, timeout, empty reply)."""

    code = ErrorCode.MODEL_UNAVAILABLE
    recoverable = True
    status_code = 503

    def __init__(
        self,
        message: str,
        details: Optional[str] = None,
        model: Optional[str] = None,
        error_type: Optional[str] = None,
        **context: Any,
    ):
        code = ErrorCode.MODEL_TIMEOUT if error_type == "timeout" else ErrorCode.MODEL_UNAVAILABLE

        ctx = {**context}
        if model:
            ctx["model"] = model
        super().__init__(message, details, code=code, **ctx)


class ToolExecutionFailedError(ChatError):
    """A confirmed tool raised while running. Never retried."""

    code = ErrorCode.TOOL_EXECUTION_FAILED
    recoverable = True
    status_code = 502

    def __init__(self, message: str, details: Optional[str] = None, tool: Optional[str] = None, **context: Any):
        ctx = {**context}
        if tool:
            ctx["tool"] = tool
        super().__init__(message, details, **ctx)


class PersistenceError(ChatError):
    """Storage read or write failed."""

    code = ErrorCode.PERSISTENCE_FAILED
    recoverable = True
    status_code = 500

    def __init__(self, message: str, details: Optional[str] = None, operation: Optional[str] = None, **context: Any):
        ctx = {**context}
        if operation:
            ctx["operation"] = operation
        super().__init__(message, details, **ctx)
