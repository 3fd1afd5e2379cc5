"""
Error logging and FastAPI exception handlers for dealchat.
"""

import logging
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .exceptions import ChatError, RateLimitedError
from .response import error_response

logger = logging.getLogger(__name__)


def log_error(
    logger: logging.Logger, error: Exception, context: Optional[str] = None, include_traceback: bool = True
) -> None:
    """Log an error with consistent formatting.

    Example:
        >>> log_error(logger, err, context="Persist")
        # Logs: "[Persist] PERSISTENCE_FAILED: Could not append exchange"
    """
    if isinstance(error, ChatError):
        message = f"{error.code.value}: {error.message}"
    else:
        message = str(error)

    if context:
        message = f"[{context}] {message}"

    logger.error(message, exc_info=include_traceback)


def rate_limit_headers(limit: int, remaining: int, reset_in: int, denied: bool = False) -> dict:
    """Headers describing the caller's rate-limit budget."""
    headers = {
        "X-RateLimit-Limit": str(limit),
        "X-RateLimit-Remaining": str(max(0, remaining)),
        "X-RateLimit-Reset": str(reset_in),
    }
    if denied:
        headers["Retry-After"] = str(reset_in)
    return headers


async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    headers = None
    if isinstance(exc, RateLimitedError):
        headers = rate_limit_headers(exc.limit, exc.remaining, exc.reset_in, denied=True)
        logger.warning(f"[RateLimit] {request.url.path} denied, retry in {exc.reset_in}s")
    elif exc.status_code >= 500:
        log_error(logger, exc, context=request.url.path, include_traceback=False)
    else:
        logger.info(f"[API] {request.url.path} -> {exc.status_code} {exc.code.value}")

    return JSONResponse(status_code=exc.status_code, content=error_response(exc), headers=headers)


async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    log_error(logger, exc, context=request.url.path)
    return JSONResponse(status_code=500, content=error_response(exc))


def register_error_handlers(app: FastAPI) -> None:
    """Install the ChatError and catch-all handlers on an app."""
    app.add_exception_handler(ChatError, chat_error_handler)
    app.add_exception_handler(Exception, unexpected_error_handler)
