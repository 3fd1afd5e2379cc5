"""
dealchat Error Handling Module

Provides standardized error codes, exceptions, and response builders
for consistent error handling across the application.

Usage:
    from errors import (
        # Error codes
        ErrorCode,

        # Exceptions
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

        # Response builders
        error_response,
        success_response,

        # Handlers
        log_error,
        register_error_handlers,
    )

Example:
    from errors import NotFoundError, ForbiddenError

    conversation = await store.get(conversation_id)
    if conversation is None:
        raise NotFoundError("Conversation not found", resource_type="conversation", resource_id=conversation_id)
    if conversation.user_id != identity.user_id:
        raise ForbiddenError("Conversation belongs to another user", resource_id=conversation_id)
"""

from .codes import ErrorCode
from .exceptions import (
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
)
from .response import (
    error_response,
    success_response,
)
from .handlers import (
    log_error,
    rate_limit_headers,
    register_error_handlers,
)

__all__ = [
    # Error codes
    "ErrorCode",
    # Exceptions
    "ChatError",
    "UnauthorizedError",
    "ForbiddenError",
    "RateLimitedError",
    "InvalidInputError",
    "InvalidToolInputError",
    "NotFoundError",
    "ModelUnavailableError",
    "ToolExecutionFailedError",
    "PersistenceError",
    # Response builders
    "error_response",
    "success_response",
    # Handlers
    "log_error",
    "rate_limit_headers",
    "register_error_handlers",
]
