"""
Tool catalog and call classification.

The browser server advertises its own tool vocabulary. The registry keeps
that catalog (minus tools that are never safe to hand to a model, such as
arbitrary script execution), renders it for the chat API, checks required
arguments, and classifies each call so the governor can tell tab-creating
operations apart from everything else.
"""

import logging
from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)

NAVIGATE_TOOL = "browser_navigate"
TABS_TOOL = "browser_tabs"
SNAPSHOT_TOOL = "browser_snapshot"


class ToolAction(Enum):
    """What a tool call does to the tab set."""
    NAVIGATE = "navigate"
    TAB_NEW = "tab_new"
    TAB_CLOSE = "tab_close"
    TAB_SELECT = "tab_select"
    TAB_LIST = "tab_list"
    SNAPSHOT = "snapshot"
    OTHER = "other"
    UNKNOWN = "unknown"


def classify_call(
    name: str,
    arguments: dict[str, Any],
    known: Iterable[str] | None = None,
) -> ToolAction:
    """
    Map a tool call onto a ToolAction.

    When a catalog of known names is given, names outside it classify as
    UNKNOWN regardless of what they look like.
    """
    if known is not None and name not in known:
        return ToolAction.UNKNOWN
    if name == NAVIGATE_TOOL:
        return ToolAction.NAVIGATE
    if name == SNAPSHOT_TOOL:
        return ToolAction.SNAPSHOT
    if name == TABS_TOOL:
        action = arguments.get("action")
        if action == "new":
            return ToolAction.TAB_NEW
        if action == "close":
            return ToolAction.TAB_CLOSE
        if action == "select":
            return ToolAction.TAB_SELECT
        if action == "list":
            return ToolAction.TAB_LIST
    return ToolAction.OTHER


@dataclass
class Tool:
    """
    Definition of a tool advertised by the browser server.

    parameters is the JSON Schema of the tool's arguments, passed through
    to the model unchanged.
    """
    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=lambda: {"type": "object", "properties": {}})

    def to_openai_schema(self) -> dict[str, Any]:
        """Convert to OpenAI tool format."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }

    def missing_arguments(self, arguments: dict[str, Any]) -> list[str]:
        """Required parameters absent from arguments."""
        required = self.parameters.get("required") or []
        return [p for p in required if p not in arguments]


@dataclass
class ToolRegistry:
    """
    Registry of tools the model may call.

    Tools named in blocked are dropped on registration and resolve like
    any other unknown name.
    """

    blocked: frozenset[str] = frozenset()
    _tools: dict[str, Tool] = field(default_factory=dict)

    def register(self, tool: Tool) -> None:
        """Register a tool."""
        if tool.name in self.blocked:
            logger.debug(f"Not exposing blocked tool: {tool.name}")
            return
        if tool.name in self._tools:
            logger.warning(f"Overwriting existing tool: {tool.name}")
        self._tools[tool.name] = tool

    def replace_all(self, tools: Iterable[Tool]) -> None:
        """Swap the catalog for a freshly listed one."""
        self._tools.clear()
        for tool in tools:
            self.register(tool)

    def get(self, name: str) -> Tool | None:
        """Get a tool by name."""
        return self._tools.get(name)

    def describe_unknown(self, name: str) -> str:
        """Error message for a name outside the catalog."""
        if name in self.blocked:
            return f"Error: Tool '{name}' is disabled in this session."
        available = ", ".join(sorted(self._tools)) or "none"
        return f"Error: Unknown tool '{name}'. Available tools: {available}"

    def check_arguments(self, name: str, arguments: dict[str, Any]) -> str | None:
        """Error message if a known tool is missing required arguments."""
        tool = self._tools[name]
        missing = tool.missing_arguments(arguments)
        if missing:
            return f"Error: Missing required argument(s) for {name}: {', '.join(missing)}"
        return None

    def check_call(self, name: str, arguments: dict[str, Any]) -> str | None:
        """
        Validate a call against the catalog.

        Returns an error message for the model, or None if the call may be
        forwarded.
        """
        if name not in self._tools:
            return self.describe_unknown(name)
        return self.check_arguments(name, arguments)

    def get_schemas(self) -> list[dict[str, Any]]:
        """Get OpenAI-format schemas for all registered tools."""
        return [tool.to_openai_schema() for tool in self._tools.values()]

    @property
    def tools(self) -> list[Tool]:
        return list(self._tools.values())

    @property
    def tool_names(self) -> list[str]:
        """List of registered tool names."""
        return list(self._tools.keys())

    def __len__(self) -> int:
        return len(self._tools)

    def __contains__(self, name: str) -> bool:
        return name in self._tools
