"""
dealchat Logging Configuration - color-coded container logs

Provides:
- ColorFormatter: compact ANSI output, one color per level
- setup_logging(): root handler on stdout, level from LOG_LEVEL
- Event helpers for the turn pipeline: log_message_in, log_message_out,
  log_proposal, log_tool, log_llm

Usage:
    from logging_config import setup_logging, log_message_in
    setup_logging()
    logger = logging.getLogger(__name__)
    log_message_in(logger, "Show me deals over 5M EBITDA", conversation="new")
"""

import logging
import os
import sys

RESET = "\033[0m"
DIM = "\033[2m"

# Event colors
MSG_IN = "\033[96m"  # cyan
MSG_OUT = "\033[92m"  # green
PROPOSAL = "\033[95m"  # magenta
TOOL = "\033[93m"  # yellow
LLM = "\033[94m"  # blue

PREVIEW_CHARS = 80


class ColorFormatter(logging.Formatter):
    """`HH:MM:SS [LEVL] message`, colored by level."""

    LEVEL_COLORS = {
        logging.DEBUG: "\033[90m",
        logging.INFO: RESET,
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[91m",
        logging.CRITICAL: "\033[1m\033[91m",
    }

    def __init__(self, use_color: bool = True):
        super().__init__()
        self.use_color = use_color

    def format(self, record: logging.LogRecord) -> str:
        timestamp = self.formatTime(record, "%H:%M:%S")
        level = record.levelname[:4]
        if self.use_color:
            color = self.LEVEL_COLORS.get(record.levelno, RESET)
            line = f"{DIM}{timestamp}{RESET} [{color}{level}{RESET}] {record.getMessage()}"
        else:
            line = f"{timestamp} [{level}] {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(level: str = None) -> None:
    """Install the color handler on the root logger and quiet chatty libraries."""
    level = (level or os.environ.get("LOG_LEVEL", "INFO")).upper()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(ColorFormatter(use_color=os.environ.get("DEALCHAT_NO_COLOR") is None))

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers = [handler]

    for name in ("httpx", "httpcore", "openai", "asyncpg", "uvicorn.access"):
        logging.getLogger(name).setLevel(logging.WARNING)


# =============================================================================
# Event helpers
# =============================================================================


def _event(logger: logging.Logger, color: str, tag: str, text: str) -> None:
    logger.info(f"{color}{tag}{RESET} {text}")


def _kv(context: dict) -> str:
    return " ".join(f"{k}={v}" for k, v in context.items())


def log_message_in(logger: logging.Logger, message: str, **context) -> None:
    """Incoming user message, truncated, with context such as user and conversation."""
    preview = message if len(message) <= PREVIEW_CHARS else message[:PREVIEW_CHARS] + "..."
    _event(logger, MSG_IN, ">>> MESSAGE", f"{preview} [{_kv(context)}]")


def log_message_out(logger: logging.Logger, conversation_id: str, chars: int = 0, persisted: bool = True) -> None:
    state = "persisted" if persisted else "NOT persisted"
    _event(logger, MSG_OUT, "<<< REPLY", f"conversation={conversation_id} chars={chars} {state}")


def log_proposal(logger: logging.Logger, tool_name: str, state: str) -> None:
    """state: proposed, confirmed or cancelled."""
    _event(logger, PROPOSAL, "??? PROPOSAL", f"{tool_name} {state}")


def log_tool(logger: logging.Logger, tool_name: str, state: str, **context) -> None:
    arrow = ">>>" if state == "start" else "<<<"
    _event(logger, TOOL, f"{arrow} TOOL", f"{tool_name} {_kv(context)}".rstrip())


def log_llm(logger: logging.Logger, state: str, model: str = "", duration: float = 0) -> None:
    if state == "start":
        _event(logger, LLM, ">>> LLM", f"calling {model}")
    else:
        _event(logger, LLM, "<<< LLM", f"{model} classified in {duration:.1f}s")
