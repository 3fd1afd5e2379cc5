"""
JSON bodies for dealchat API responses.

Errors always have the shape {"success": false, "error": {...}} so clients
can branch on error.code; plain acknowledgements are {"success": true, ...}.
"""

from typing import Any, Optional

from .codes import ErrorCode
from .exceptions import ChatError


def error_response(error: Exception, include_context: bool = True) -> dict:
    """Serialize an exception for the client.

    A ChatError keeps its code, message and context; the offending tool (if
    any) is lifted out of the context. Anything else becomes a generic
    INTERNAL_UNEXPECTED whose message reveals nothing about the failure.

        >>> error_response(InvalidInputError("Message is empty", parameter="message"))["error"]["code"]
        'INVALID_INPUT'
    """
    if not isinstance(error, ChatError):
        return {
            "success": False,
            "error": {
                "code": ErrorCode.INTERNAL_UNEXPECTED.value,
                "message": "Internal server error",
                "details": None,
                "tool": None,
                "recoverable": False,
                "context": None,
            },
        }

    body = error.to_dict()
    body["tool"] = (error.context or {}).get("tool")
    if not include_context:
        body["context"] = None
    return {"success": False, "error": body}


def success_response(data: Optional[dict] = None, **fields: Any) -> dict:
    """{"success": True} merged with `data` and any keyword fields."""
    return {"success": True, **(data or {}), **fields}
