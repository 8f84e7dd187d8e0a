"""
AgentLoop - observe, decide, act against a governed browser session.

Each turn:
1. List open tabs and build an ephemeral context note
2. Send the conversation plus that note to the model
3. Record token usage and append the model's message
4. Execute requested tool calls one by one through the governor
5. Fold results back into the conversation (images as a follow-up user message)
6. Prune old turns
7. Stop when the model answers without tool calls, or fail past max_turns

Failures inside a single tool call never end the task: malformed arguments,
refused calls and transport errors all become error tool-results the model
can react to. Only a non-retryable model error or the turn limit ends a
run_task call early.
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from browsepilot.config import LoopConfig
from browsepilot.context import Conversation, HistoryPruner, format_tab_context
from browsepilot.governor import SessionGovernor
from browsepilot.llm import LLMClient
from browsepilot.types import (
    ImagePart,
    Message,
    Role,
    TextPart,
    TokenUsage,
    ToolCall,
    ToolResult,
)

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_INSTRUCTIONS = (
    "You are a helpful assistant that can control a web browser using Playwright tools."
)

BROWSER_GUIDANCE = """

**Vision tools:**
- Coordinate tools (browser_mouse_click_xy, browser_mouse_move_xy, browser_mouse_drag_xy)
  are available for elements that are easier to locate visually than by reference.
- Take a screenshot when you need to see the page; it will be shown to you as an image.

**Tab Management:**
- The list of open tabs is provided every turn under "Current Browser Tabs".
- If a new tab opens, switch to it with browser_tabs (action "select") before acting.
- Always verify you are on the correct tab before performing actions.
- Close tabs you no longer need with browser_tabs (action "close").

**Error Handling:**
- "Ref not found" means your snapshot is stale: call browser_snapshot before retrying.
- "Execution context was destroyed" means the page navigated: call browser_snapshot.
- If a tool reports an error, read it and adapt instead of repeating the same call.

**Narration:**
- Before calling a tool, briefly state what you are about to do and why.
"""

IMAGE_FOLLOWUP_TEXT = "Here is the image captured by the tool:"

REPORT_STATUS_TOOL: dict[str, Any] = {
    "type": "function",
    "function": {
        "name": "report_status",
        "description": "Report whether the task shown on the current page is complete",
        "parameters": {
            "type": "object",
            "properties": {
                "is_complete": {
                    "type": "boolean",
                    "description": "Whether the task is fully completed",
                },
                "summary": {
                    "type": "string",
                    "description": "Brief summary of the page state",
                },
            },
            "required": ["is_complete", "summary"],
        },
    },
}

DEFAULT_COMPLETION_CRITERIA = (
    "a confirmation or thank-you message, a completion indicator, "
    "or a redirect back to the starting dashboard"
)


class TurnLimitExceeded(Exception):
    """The model kept requesting tools past the turn budget."""

    def __init__(self, max_turns: int) -> None:
        super().__init__(f"Task exceeded the limit of {max_turns} turns")
        self.max_turns = max_turns


class LoopPhase(Enum):
    """Where a run_task call is in its cycle."""
    RUNNING = "running"
    AWAITING_MODEL = "awaiting_model"
    EXECUTING_TOOLS = "executing_tools"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class AgentState:
    """State of the most recent run_task call."""
    conversation: Conversation = field(default_factory=Conversation)
    turn_count: int = 0
    tool_call_count: int = 0
    phase: LoopPhase = LoopPhase.RUNNING
    final_response: str = ""

    @property
    def messages(self) -> list[Message]:
        return self.conversation.messages


def parse_arguments(raw: str) -> dict[str, Any]:
    """Decode a tool call's JSON arguments; blank means no arguments."""
    if not raw or not raw.strip():
        return {}
    parsed = json.loads(raw)
    if not isinstance(parsed, dict):
        raise ValueError(f"arguments must be a JSON object, got {type(parsed).__name__}")
    return parsed


def result_to_messages(tool_call_id: str, result: ToolResult) -> list[Message]:
    """
    Convert a ToolResult into conversation messages.

    Tool messages are text-only, so images become a placeholder line and
    travel in a user message right after the tool message.
    """
    lines: list[str] = []
    images: list[ImagePart] = []
    for part in result.content:
        if isinstance(part, ImagePart):
            images.append(part)
            lines.append(f"[Image captured: {part.mime_type}]")
        else:
            lines.append(part.text)

    text = "\n".join(lines)
    if result.is_error and not text.startswith("Error"):
        text = f"Error: {text}" if text else "Error: tool reported a failure"

    messages = [Message(role=Role.TOOL, content=text, tool_call_id=tool_call_id)]
    if images:
        messages.append(Message(
            role=Role.USER,
            content=[TextPart(IMAGE_FOLLOWUP_TEXT), *images],
        ))
    return messages


class AgentLoop:
    """
    Turn-based tool-calling loop over a SessionGovernor.

    One instance may run many tasks in sequence; token usage accumulates
    across all of them and is reset only by constructing a new loop.
    """

    def __init__(
        self,
        governor: SessionGovernor,
        llm_client: LLMClient,
        config: LoopConfig | None = None,
    ) -> None:
        self.governor = governor
        self.llm_client = llm_client
        self.config = config or LoopConfig()
        self.state = AgentState()
        self._pruner = HistoryPruner(self.config.history_window)
        self._usage = TokenUsage()

    @property
    def token_usage(self) -> TokenUsage:
        """Accumulated token usage across every call made by this loop."""
        return TokenUsage(**self._usage.to_dict())

    def _record_usage(self, usage: TokenUsage | None) -> None:
        if usage is not None:
            self._usage.add(usage)

    async def run_task(
        self,
        task: str,
        system_instructions: str = DEFAULT_SYSTEM_INSTRUCTIONS,
        max_turns: int | None = None,
    ) -> str:
        """
        Run the loop until the model answers without tool calls.

        Returns the model's final text (possibly empty).

        Raises:
            TurnLimitExceeded: If the model is still calling tools after max_turns
            LLMError: On a non-retryable model failure
        """
        limit = max_turns if max_turns is not None else self.config.max_turns
        self.state = AgentState(
            conversation=Conversation.start(system_instructions + BROWSER_GUIDANCE, task),
        )
        state = self.state
        logger.info(f"Starting task: {task.strip()[:200]}")

        tools = await self.governor.tool_schemas()

        while True:
            state.phase = LoopPhase.RUNNING
            state.turn_count += 1
            if state.turn_count > limit:
                state.phase = LoopPhase.FAILED
                logger.error(f"Turn limit of {limit} exceeded")
                raise TurnLimitExceeded(limit)

            tab_note = format_tab_context(await self.governor.get_tabs())

            state.phase = LoopPhase.AWAITING_MODEL
            try:
                response = await self.llm_client.chat(
                    messages=[*state.messages, tab_note],
                    tools=tools or None,
                )
            except Exception:
                state.phase = LoopPhase.FAILED
                raise
            self._record_usage(response.usage)

            if response.content:
                logger.info(f"[Agent thought] {response.content}")
            state.conversation.append(response.to_message())

            if not response.has_tool_calls:
                state.phase = LoopPhase.COMPLETED
                state.final_response = response.content
                logger.info(f"Task completed after {state.turn_count} turns")
                return response.content

            state.phase = LoopPhase.EXECUTING_TOOLS
            logger.info(f"Model requested tools: {[tc.name for tc in response.tool_calls]}")
            for tool_call in response.tool_calls:
                state.tool_call_count += 1
                for message in await self._execute(tool_call):
                    state.conversation.append(message)

            self._pruner.prune(state.conversation)

    async def _execute(self, tool_call: ToolCall) -> list[Message]:
        try:
            arguments = parse_arguments(tool_call.arguments)
        except ValueError as e:
            logger.warning(
                f"Invalid arguments for {tool_call.name}: {e}. Raw: {tool_call.arguments!r}"
            )
            return [Message(
                role=Role.TOOL,
                content=f"Error: Invalid JSON arguments provided ({e}).",
                tool_call_id=tool_call.id,
            )]

        logger.info(f"Executing {tool_call.name} with args: {arguments}")
        try:
            result = await self.governor.invoke(tool_call.name, arguments)
        except Exception as e:
            logger.error(f"Error executing {tool_call.name}: {e}")
            return [Message(
                role=Role.TOOL,
                content=f"Error: {e}",
                tool_call_id=tool_call.id,
            )]

        messages = result_to_messages(tool_call.id, result)
        if len(messages) > 1:
            logger.info("Injecting captured image into conversation")
        logger.debug(f"Tool {tool_call.name} output: {messages[0].text[:100]}")
        return messages

    async def check_if_complete(
        self,
        criteria: str = DEFAULT_COMPLETION_CRITERIA,
    ) -> bool:
        """
        Ask the model whether the current page shows the task as complete.

        Any failure reads as "not complete": a false negative only costs
        another round of work, a false positive would end it early.
        """
        logger.info("Checking whether the task is complete")
        try:
            snapshot = await self.governor.invoke(self.config.snapshot_tool, {})
        except Exception as e:
            logger.error(f"Failed to get snapshot for completion check: {e}")
            return False
        if snapshot.is_error:
            logger.warning(f"Snapshot failed for completion check: {snapshot.text[:200]}")
            return False

        page = snapshot.text[: self.config.snapshot_char_limit]
        prompt = (
            "Look at the current page snapshot and determine if the task is complete.\n\n"
            f"Signs of completion include: {criteria}.\n\n"
            f"Page Snapshot:\n{page}"
        )
        forced = {"type": "function", "function": {"name": "report_status"}}

        try:
            response = await self.llm_client.chat(
                messages=[Message(role=Role.USER, content=prompt)],
                tools=[REPORT_STATUS_TOOL],
                tool_choice=forced,
            )
            self._record_usage(response.usage)
            for tool_call in response.tool_calls:
                if tool_call.name == "report_status":
                    args = parse_arguments(tool_call.arguments)
                    is_complete = args.get("is_complete") is True
                    logger.info(f"Completion check: {is_complete} - {args.get('summary', '')}")
                    return is_complete
            logger.warning("Completion check returned no report_status call")
        except Exception as e:
            logger.error(f"Error checking completion: {e}")
        return False
