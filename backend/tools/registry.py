"""
Tool Registry - the catalog of tools the model may propose.

Each tool is a self-contained definition with a pydantic input model. The
input model is the single source of truth for both the schema advertised to
the model and the validation applied before anything runs.

Tools are never executed from here directly; see tools.executor for the
human-confirmed execution path.
"""

from dataclasses import dataclass
from typing import Dict, Any, List, Callable, Optional, Type
import logging

from pydantic import BaseModel, ValidationError

from errors import InvalidToolInputError

logger = logging.getLogger(__name__)


@dataclass
class ToolDefinition:
    """Definition of a tool for the registry."""

    name: str
    description: str
    input_model: Type[BaseModel]
    executor: Callable[..., Any]
    friendly_name: str = ""  # Human-readable name (e.g., "Deal Search")
    brief: str = ""  # One-line summary for the system prompt

    @property
    def parameters(self) -> Dict[str, Any]:
        """JSON schema of the input, as the model should emit it."""
        schema = self.input_model.model_json_schema(by_alias=True)
        schema.pop("title", None)
        return schema


class ToolRegistry:
    """
    Central registry for all dealchat tools.

    Usage:
        # Register a tool
        ToolRegistry.register(ToolDefinition(...))

        # Get OpenAI-compatible schema
        tools_schema = ToolRegistry.get_tools_schema()

        # Validate proposed input
        params = ToolRegistry.validate_input("search_deals", {"minEbitda": 5e6})
    """

    _tools: Dict[str, ToolDefinition] = {}
    _initialized: bool = False

    @classmethod
    def register(cls, tool: ToolDefinition) -> None:
        """Register a tool definition."""
        cls._tools[tool.name] = tool
        logger.debug(f"Registered tool: {tool.name}")

    @classmethod
    def get_tool(cls, name: str) -> Optional[ToolDefinition]:
        """Get a tool definition by name."""
        return cls._tools.get(name)

    @classmethod
    def get_tools_schema(cls) -> List[Dict[str, Any]]:
        """Generate OpenAI-compatible tools schema for function calling."""
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.parameters,
                },
            }
            for tool in cls._tools.values()
        ]

    @classmethod
    def validate_input(cls, name: str, args: Any) -> BaseModel:
        """
        Validate raw tool input against the tool's input model.

        Raises:
            InvalidToolInputError: unknown tool, non-object input, or schema mismatch
        """
        tool = cls._tools.get(name)
        if tool is None:
            raise InvalidToolInputError(f"Unknown tool: {name}", tool=name)
        if not isinstance(args, dict):
            raise InvalidToolInputError("Tool input must be an object", tool=name, received=type(args).__name__)
        try:
            return tool.input_model.model_validate(args)
        except ValidationError as e:
            errors = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
            raise InvalidToolInputError("Tool input does not match schema", details="; ".join(errors), tool=name) from e

    @classmethod
    def generate_tools_section(cls) -> str:
        """Generate the TOOLS section of the system prompt from the registry."""
        lines = ["TOOLS YOU HAVE:"]
        for i, tool in enumerate(t for t in cls._tools.values() if t.friendly_name and t.brief):
            lines.append(f"{i + 1}. {tool.friendly_name} ({tool.name}): {tool.brief}")
        lines.append("")
        lines.append("Tool calls are shown to the user for approval before they run.")
        lines.append("Request at most one tool per reply, with no other text around it.")
        return "\n".join(lines)

    @classmethod
    def clear(cls) -> None:
        """Clear all registered tools (for testing)."""
        cls._tools.clear()
        cls._initialized = False


def register_all_tools() -> None:
    """Register every built-in tool. Safe to call more than once."""
    if ToolRegistry._initialized:
        return

    from tools.deal_search import DealSearchInput, execute_search_deals

    ToolRegistry.register(
        ToolDefinition(
            name="search_deals",
            friendly_name="Deal Search",
            brief="Find deals by EBITDA, revenue, location, margin or title",
            description=(
                "Search for deal information in the database. Use this tool when users ask about deals "
                "with specific criteria like EBITDA amounts, revenue, location, or other deal "
                "characteristics. You can filter by minimum/maximum EBITDA, exact revenue, company "
                "location, and EBITDA margin."
            ),
            input_model=DealSearchInput,
            executor=execute_search_deals,
        )
    )

    ToolRegistry._initialized = True
    logger.info(f"Total tools: {len(ToolRegistry._tools)}")
