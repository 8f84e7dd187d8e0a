"""
Session Governor - resource limits on the shared browser session.

A model driving a browser cannot be trusted with tab hygiene. Every tool
call goes through the governor, which:

1. closes at most one idle background tab before the call,
2. refuses tab-creating calls once the page ceiling is reached,
3. forwards the call to the gateway,
4. stamps the tab that is active afterwards,
5. closes excess background tabs spawned behind its back, oldest first,
6. restarts the browser after a configured number of page creations.

Tab indices shift whenever a tab closes, so tab state is re-listed before
every decision and tracked timestamps are renumbered after every successful
close, whether the governor or the model asked for it.
"""

import asyncio
import logging
import re
import time
from collections.abc import Awaitable, Callable
from typing import Any

from browsepilot.config import GovernorConfig
from browsepilot.gateway import ToolGateway
from browsepilot.tools import TABS_TOOL, Tool, ToolAction, ToolRegistry, classify_call
from browsepilot.types import TabRecord, ToolResult

logger = logging.getLogger(__name__)

# "- 0: (current) [Title] (https://example.com)"; brackets around the title are optional
TAB_LINE = re.compile(r"^\s*-\s+(\d+):\s+(\(current\)\s+)?(.*?)\s+\(([^()\s]*)\)\s*$")


def parse_tab_listing(text: str) -> list[TabRecord]:
    """Parse the text of a tab listing. Lines that do not match are skipped."""
    tabs = []
    for line in text.splitlines():
        match = TAB_LINE.match(line)
        if not match:
            continue
        title = match.group(3)
        if title.startswith("[") and title.endswith("]"):
            title = title[1:-1]
        tabs.append(TabRecord(
            index=int(match.group(1)),
            active=match.group(2) is not None,
            title=title,
            url=match.group(4),
        ))
    return tabs


class SessionGovernor:
    """
    Guarded front for a ToolGateway.

    Has the same invoke/list_tools/connect/close surface as the gateway,
    plus get_tabs() for the loop's per-turn context.
    """

    def __init__(
        self,
        gateway: ToolGateway,
        config: GovernorConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.gateway = gateway
        self.config = config or GovernorConfig.from_env()
        self.registry = ToolRegistry(blocked=frozenset(self.config.blocked_tools))
        self.pages_created = 0
        self._clock = clock
        self._sleep = sleep
        self._tab_activity: dict[int, float] = {}
        self._catalog_loaded = False

    async def connect(self) -> None:
        await self.gateway.connect()

    async def close(self) -> None:
        await self.gateway.close()
        self._tab_activity.clear()

    async def list_tools(self) -> list[Tool]:
        """Tools the model may call; blocked tools are filtered out."""
        await self._ensure_catalog()
        return self.registry.tools

    async def tool_schemas(self) -> list[dict[str, Any]]:
        await self._ensure_catalog()
        return self.registry.get_schemas()

    async def _ensure_catalog(self, reload: bool = False) -> None:
        if self._catalog_loaded and not reload:
            return
        self.registry.replace_all(await self.gateway.list_tools())
        self._catalog_loaded = True
        logger.debug(f"Loaded {len(self.registry)} tools")

    async def get_tabs(self) -> list[TabRecord]:
        """
        List open tabs with governor-tracked activity times.

        A failed listing reads as no tabs.
        """
        try:
            result = await self.gateway.invoke(TABS_TOOL, {"action": "list"})
        except Exception as e:
            logger.warning(f"Failed to list tabs: {e}")
            return []
        if result.is_error:
            logger.debug(f"Tab listing reported an error: {result.text[:200]}")
            return []
        tabs = parse_tab_listing(result.text)
        for tab in tabs:
            tab.last_active = self._tab_activity.get(tab.index)
        return tabs

    def _stamp_active(self, tabs: list[TabRecord]) -> None:
        now = self._clock()
        for tab in tabs:
            if tab.active:
                self._tab_activity[tab.index] = now
                tab.last_active = now

    def _forget_tab(self, index: int) -> None:
        """Drop a closed tab and shift tracked indices above it down by one."""
        shifted = {}
        for tracked, stamp in self._tab_activity.items():
            if tracked < index:
                shifted[tracked] = stamp
            elif tracked > index:
                shifted[tracked - 1] = stamp
        self._tab_activity = shifted

    async def _close_tab(self, index: int) -> bool:
        try:
            result = await self.gateway.invoke(TABS_TOOL, {"action": "close", "index": index})
        except Exception as e:
            logger.error(f"Failed to close tab {index}: {e}")
            return False
        if result.is_error:
            logger.error(f"Failed to close tab {index}: {result.text[:200]}")
            return False
        self._forget_tab(index)
        return True

    @staticmethod
    def _close_target(arguments: dict[str, Any], tabs: list[TabRecord]) -> int | None:
        """Index a model-requested close will remove; no index means the current tab."""
        index = arguments.get("index")
        if index is not None:
            try:
                return int(index)
            except (TypeError, ValueError):
                return None
        return next((t.index for t in tabs if t.active), None)

    async def sweep_idle_tabs(self) -> int | None:
        """
        Close one background tab idle longer than the timeout.

        Returns the closed tab's index. At most one tab closes per sweep
        because the close renumbers every tab after it.
        """
        if self.config.page_idle_timeout <= 0:
            return None

        tabs = await self.get_tabs()
        now = self._clock()
        self._stamp_active(tabs)

        for tab in tabs:
            if tab.active:
                continue
            last_active = self._tab_activity.get(tab.index)
            if last_active is None:
                self._tab_activity[tab.index] = now
                continue
            idle = now - last_active
            if idle >= self.config.page_idle_timeout:
                logger.info(f"Closing idle tab {tab.index} ({tab.url}), idle for {idle:.0f}s")
                if await self._close_tab(tab.index):
                    return tab.index
        return None

    async def enforce_page_limit(self, tabs: list[TabRecord] | None = None) -> list[str]:
        """
        Close background tabs, least recently active first, until the tab
        count is back under the ceiling. Never closes the active tab.

        Returns the URLs of the closed tabs.
        """
        closed: list[str] = []
        if self.config.max_pages <= 0:
            return closed

        if tabs is None:
            tabs = await self.get_tabs()
        attempts = max(0, len(tabs) - self.config.max_pages)
        for _ in range(attempts):
            if len(tabs) <= self.config.max_pages:
                break
            candidates = [t for t in tabs if not t.active]
            if not candidates:
                logger.warning("Tab count over the limit but every tab is active")
                break
            victim = min(
                candidates,
                key=lambda t: (t.last_active if t.last_active is not None else float("-inf"), t.index),
            )
            logger.info(
                f"Tab limit ({self.config.max_pages}) exceeded with {len(tabs)} tabs; "
                f"closing tab {victim.index} ({victim.url})"
            )
            if not await self._close_tab(victim.index):
                break
            closed.append(victim.url)
            await self._sleep(self.config.close_settle_delay)
            tabs = await self.get_tabs()
        return closed

    async def invoke(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        """Execute a tool call under the session's resource limits."""
        await self._ensure_catalog()

        action = classify_call(name, arguments, known=self.registry.tool_names)
        if action == ToolAction.UNKNOWN:
            problem = self.registry.describe_unknown(name)
        else:
            problem = self.registry.check_arguments(name, arguments)
        if problem is not None:
            logger.warning(problem)
            return ToolResult.error(problem)

        await self.sweep_idle_tabs()

        creates_page = False
        if action in (ToolAction.NAVIGATE, ToolAction.TAB_NEW):
            open_tabs = len(await self.get_tabs())
            creates_page = action == ToolAction.TAB_NEW or open_tabs == 0
            if creates_page and 0 < self.config.max_pages <= open_tabs:
                logger.warning(f"Refusing {name}: {open_tabs} tabs open, limit {self.config.max_pages}")
                return ToolResult.error(
                    f"Error: Tab limit reached ({self.config.max_pages}). Cannot open a new tab. "
                    f"Please close a tab first using {TABS_TOOL} with action 'close'."
                )

        closing: int | None = None
        if action == ToolAction.TAB_CLOSE:
            closing = self._close_target(arguments, await self.get_tabs())

        result = await self.gateway.invoke(name, arguments)

        if closing is not None and not result.is_error:
            self._forget_tab(closing)

        tabs = await self.get_tabs()
        self._stamp_active(tabs)
        await self.enforce_page_limit(tabs)

        if creates_page and not result.is_error:
            self.pages_created += 1
            limit = self.config.restart_after_pages or "unlimited"
            logger.info(f"Total pages created: {self.pages_created}/{limit}")
            if 0 < self.config.restart_after_pages <= self.pages_created:
                await self.restart()

        return result

    async def close_all_tabs(self) -> int:
        """Close every open tab, highest index first. Returns how many closed."""
        closed = 0
        tabs = await self.get_tabs()
        while tabs:
            last = max(tabs, key=lambda t: t.index)
            if not await self._close_tab(last.index):
                break
            closed += 1
            remaining = await self.get_tabs()
            if len(remaining) >= len(tabs):
                break
            tabs = remaining
        return closed

    async def restart(self) -> None:
        """Restart the browser session and reset page accounting."""
        logger.warning(f"Restart threshold reached after {self.pages_created} pages; restarting browser")
        await self.gateway.restart()
        self.pages_created = 0
        self._tab_activity.clear()
        await self._ensure_catalog(reload=True)
        logger.info("Browser restarted")
