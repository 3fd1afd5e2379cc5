"""
Error codes for the deal chat service.

Provides a standardized taxonomy of error codes organized by category.
Use these codes consistently across all error responses.
"""

from enum import Enum


class ErrorCode(str, Enum):
    """Standardized error codes for dealchat.

    Categories:
    - Access: identity and ownership failures
    - Input: request and tool-input validation failures
    - MODEL_*: language model errors
    - TOOL_*: tool execution errors
    - PERSISTENCE_*: storage errors
    - INTERNAL_*: internal/unexpected errors
    """

    # Access
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    RATE_LIMITED = "RATE_LIMITED"

    # Input
    INVALID_INPUT = "INVALID_INPUT"
    INVALID_TOOL_INPUT = "INVALID_TOOL_INPUT"
    NOT_FOUND = "NOT_FOUND"

    # Model
    MODEL_UNAVAILABLE = "MODEL_UNAVAILABLE"
    MODEL_TIMEOUT = "MODEL_TIMEOUT"

    # Tools
    TOOL_EXECUTION_FAILED = "TOOL_EXECUTION_FAILED"

    # Storage
    PERSISTENCE_FAILED = "PERSISTENCE_FAILED"

    # Internal
    INTERNAL_UNEXPECTED = "INTERNAL_UNEXPECTED"
