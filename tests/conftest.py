"""Shared fakes for the browser agent tests."""

from typing import Any

import pytest

from browsepilot.gateway import GatewayError, ToolGateway
from browsepilot.tools import Tool
from browsepilot.types import ImagePart, TextPart, ToolResult


def _schema(*required: str) -> dict[str, Any]:
    return {
        "type": "object",
        "properties": {name: {"type": "string"} for name in required},
        "required": list(required),
    }


DEFAULT_TOOLS = [
    Tool("browser_navigate", "Navigate to a URL", _schema("url")),
    Tool("browser_tabs", "List, create, close or select tabs", _schema("action")),
    Tool("browser_snapshot", "Accessibility snapshot of the page", _schema()),
    Tool("browser_take_screenshot", "Take a screenshot", _schema()),
    Tool("browser_evaluate", "Run JavaScript", _schema("function")),
    Tool("click", "Click an element", _schema("selector")),
    Tool("explode", "Always fails at the transport level", _schema()),
]


class FakeGateway(ToolGateway):
    """
    In-memory browser with tabs.

    Every invoke is recorded in calls; tab listings are also recorded so
    tests can filter them out.
    """

    def __init__(self, tools: list[Tool] | None = None) -> None:
        self.tools = list(tools or DEFAULT_TOOLS)
        self.tabs: list[dict[str, str]] = []
        self.active = -1
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.connected = False
        self.restarts = 0
        self.snapshot_text = "- heading \"Welcome\""

    def open_tab(self, url: str, title: str = "Page", activate: bool = True) -> int:
        self.tabs.append({"url": url, "title": title})
        if activate or self.active < 0:
            self.active = len(self.tabs) - 1
        return len(self.tabs) - 1

    def listing(self) -> str:
        lines = ["### Open tabs"]
        for i, tab in enumerate(self.tabs):
            current = "(current) " if i == self.active else ""
            lines.append(f"- {i}: {current}[{tab['title']}] ({tab['url']})")
        return "\n".join(lines)

    def forwarded(self, name: str | None = None) -> list[tuple[str, dict[str, Any]]]:
        """Calls other than tab listings, optionally filtered by name."""
        return [
            (n, a) for n, a in self.calls
            if not (n == "browser_tabs" and a.get("action") == "list")
            and (name is None or n == name)
        ]

    async def connect(self) -> None:
        self.connected = True

    async def list_tools(self) -> list[Tool]:
        return list(self.tools)

    async def invoke(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        self.calls.append((name, dict(arguments)))
        if name == "explode":
            raise GatewayError("connection closed")
        if name == "browser_tabs":
            return self._tabs(arguments)
        if name == "browser_navigate":
            if not self.tabs:
                self.open_tab(arguments["url"])
            else:
                self.tabs[self.active]["url"] = arguments["url"]
            return ToolResult.ok(f"Navigated to {arguments['url']}")
        if name == "browser_snapshot":
            return ToolResult.ok(self.snapshot_text)
        if name == "browser_take_screenshot":
            return ToolResult(content=[
                TextPart("Took the viewport screenshot"),
                ImagePart(data="aGVsbG8=", mime_type="image/png"),
            ])
        return ToolResult.ok(f"Ran {name}")

    def _tabs(self, arguments: dict[str, Any]) -> ToolResult:
        action = arguments.get("action")
        if action == "list":
            return ToolResult.ok(self.listing())
        if action == "new":
            self.open_tab(arguments.get("url", "about:blank"), "New Tab")
            return ToolResult.ok(self.listing())
        if action == "select":
            self.active = int(arguments["index"])
            return ToolResult.ok(self.listing())
        if action == "close":
            index = int(arguments.get("index", self.active))
            if not 0 <= index < len(self.tabs):
                return ToolResult.error(f"No tab at index {index}")
            del self.tabs[index]
            if index < self.active or self.active >= len(self.tabs):
                self.active -= 1
            return ToolResult.ok(self.listing())
        return ToolResult.error(f"Unknown action {action}")

    async def close(self) -> None:
        self.connected = False

    async def restart(self) -> None:
        self.restarts += 1
        self.tabs.clear()
        self.active = -1


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def no_sleep(seconds: float) -> None:
    return None


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()
