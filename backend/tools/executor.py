"""
Tool Executor - runs a tool the user has explicitly approved.

The executor validates the echoed input against the tool's schema again
(the client may have altered it), runs the tool exactly once, and wraps any
failure in ToolExecutionFailedError. Nothing here retries.
"""

import inspect
import logging
from typing import Any, Dict

from errors import ChatError, InvalidToolInputError, ToolExecutionFailedError
from tools.registry import ToolRegistry

logger = logging.getLogger(__name__)


class ToolExecutor:
    """
    Executes registered tools with injected dependencies.

    Usage:
        executor = ToolExecutor(deal_store=store)
        results = await executor.execute("search_deals", {"minEbitda": 5000000})
    """

    def __init__(self, **context: Any):
        # Dependencies offered to executors by parameter name (deal_store, ...)
        self.context: Dict[str, Any] = context

    def is_known(self, name: str) -> bool:
        return ToolRegistry.get_tool(name) is not None

    async def execute(self, name: str, args: Any) -> Any:
        """
        Validate args and run the tool once.

        Raises:
            InvalidToolInputError: unknown tool or input not matching the schema
            ToolExecutionFailedError: the tool raised while running
        """
        tool = ToolRegistry.get_tool(name)
        if tool is None:
            raise InvalidToolInputError(f"Unknown tool: {name}", tool=name)

        params = ToolRegistry.validate_input(name, args)

        # Offer only the dependencies the executor accepts
        sig = inspect.signature(tool.executor)
        accepted = set(sig.parameters.keys())
        kwargs = {k: v for k, v in self.context.items() if k in accepted}

        try:
            result = tool.executor(params, **kwargs)
            if inspect.isawaitable(result):
                result = await result
        except ChatError as e:
            logger.error(f"[{name}] {e.code.value}: {e.message}")
            raise ToolExecutionFailedError(f"Tool {name} failed", details=e.message, tool=name) from e
        except Exception as e:
            logger.error(f"[{name}] Unexpected error: {e}", exc_info=True)
            raise ToolExecutionFailedError(f"Tool {name} failed", details=str(e), tool=name) from e

        return result
