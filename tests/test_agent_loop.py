"""
Tests for the AgentLoop: turn handling, tool-result folding, completion checks.
"""

import json

import pytest
from conftest import FakeGateway, no_sleep

from browsepilot.agent_loop import (
    AgentLoop,
    LoopPhase,
    TurnLimitExceeded,
    parse_arguments,
    result_to_messages,
)
from browsepilot.config import GovernorConfig, LoopConfig
from browsepilot.governor import SessionGovernor
from browsepilot.llm import ChatResponse, LLMError
from browsepilot.types import ImagePart, Message, Role, TextPart, TokenUsage, ToolCall, ToolResult


class MockLLMClient:
    """Scripted LLM client that records every request."""

    def __init__(self, responses=None):
        self._responses = list(responses or [])
        self.calls: list[dict] = []

    async def chat(self, messages, tools=None, tool_choice=None):
        self.calls.append({"messages": list(messages), "tools": tools, "tool_choice": tool_choice})
        if not self._responses:
            return text_response("Default response")
        response = self._responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


def tool_response(name, arguments, call_id="call_1", content=None, usage=None):
    raw = arguments if isinstance(arguments, str) else json.dumps(arguments)
    return ChatResponse(
        content=content,
        tool_calls=[ToolCall(id=call_id, name=name, arguments=raw)],
        finish_reason="tool_calls",
        usage=usage,
    )


def text_response(text, usage=None):
    return ChatResponse(content=text, tool_calls=[], usage=usage)


def make_loop(responses, gateway=None, **loop_overrides):
    gateway = gateway or FakeGateway()
    governor = SessionGovernor(
        gateway,
        GovernorConfig(page_idle_timeout=0, close_settle_delay=0),
        sleep=no_sleep,
    )
    llm = MockLLMClient(responses)
    return AgentLoop(governor, llm, LoopConfig(**loop_overrides)), gateway, llm


class TestHelpers:
    """Tests for argument parsing and result conversion."""

    def test_parse_arguments(self):
        assert parse_arguments("") == {}
        assert parse_arguments('{"a": 1}') == {"a": 1}
        with pytest.raises(ValueError):
            parse_arguments("{broken")
        with pytest.raises(ValueError):
            parse_arguments("[1, 2]")

    def test_single_image_becomes_followup_user_message(self):
        result = ToolResult(content=[
            TextPart("Took screenshot"),
            ImagePart(data="aGVsbG8=", mime_type="image/jpeg"),
        ])
        messages = result_to_messages("call_9", result)

        assert len(messages) == 2
        tool_message, image_message = messages
        assert tool_message.role == Role.TOOL
        assert tool_message.tool_call_id == "call_9"
        assert tool_message.content == "Took screenshot\n[Image captured: image/jpeg]"
        assert "aGVsbG8=" not in tool_message.content
        assert image_message.role == Role.USER
        assert image_message.has_image
        assert image_message.to_dict()["content"][1]["image_url"]["url"] == "data:image/jpeg;base64,aGVsbG8="

    def test_error_flag_is_visible(self):
        messages = result_to_messages("c", ToolResult(content=[TextPart("selector not found")], is_error=True))
        assert messages[0].content == "Error: selector not found"


class TestRunTask:
    """Tests for AgentLoop.run_task."""

    @pytest.mark.asyncio
    async def test_click_then_done(self):
        loop, gateway, llm = make_loop([
            tool_response("click", {"selector": "text=Surveys"}),
            text_response("Done clicking Surveys"),
        ])

        result = await loop.run_task("click Surveys")

        assert result == "Done clicking Surveys"
        assert loop.state.turn_count == 2
        assert loop.state.phase == LoopPhase.COMPLETED
        roles = [m.role for m in loop.state.messages]
        assert roles == [Role.SYSTEM, Role.USER, Role.ASSISTANT, Role.TOOL, Role.ASSISTANT]
        assert gateway.forwarded("click") == [("click", {"selector": "text=Surveys"})]

    @pytest.mark.asyncio
    async def test_turn_limit_exceeded(self):
        loop, gateway, llm = make_loop(
            [tool_response("click", {"selector": "#x"}, call_id=f"c{i}") for i in range(10)]
        )

        with pytest.raises(TurnLimitExceeded) as exc_info:
            await loop.run_task("loop forever", max_turns=3)

        assert exc_info.value.max_turns == 3
        assert len(llm.calls) == 3
        assert loop.state.phase == LoopPhase.FAILED

    @pytest.mark.asyncio
    async def test_malformed_arguments_do_not_abort_turn(self):
        loop, gateway, llm = make_loop([
            ChatResponse(content=None, tool_calls=[
                ToolCall(id="bad", name="click", arguments="{selector: oops"),
                ToolCall(id="good", name="click", arguments='{"selector": "#ok"}'),
            ]),
            text_response("finished"),
        ])

        result = await loop.run_task("task")

        tool_messages = [m for m in loop.state.messages if m.role == Role.TOOL]
        assert result == "finished"
        assert tool_messages[0].tool_call_id == "bad"
        assert "Invalid JSON arguments" in tool_messages[0].content
        assert tool_messages[1].tool_call_id == "good"
        assert gateway.forwarded("click") == [("click", {"selector": "#ok"})]

    @pytest.mark.asyncio
    async def test_transport_failure_becomes_error_result(self):
        loop, gateway, llm = make_loop([
            tool_response("explode", {}),
            text_response("recovered"),
        ])

        result = await loop.run_task("task")

        tool_message = loop.state.messages[3]
        assert result == "recovered"
        assert tool_message.role == Role.TOOL
        assert tool_message.content.startswith("Error: ")
        assert "connection closed" in tool_message.content

    @pytest.mark.asyncio
    async def test_screenshot_injects_image_message(self):
        loop, gateway, llm = make_loop([
            tool_response("browser_take_screenshot", {}),
            text_response("I can see it"),
        ])

        await loop.run_task("look at the page")

        messages = loop.state.messages
        assert messages[3].role == Role.TOOL
        assert "[Image captured: image/png]" in messages[3].content
        assert messages[4].role == Role.USER
        assert messages[4].has_image
        second_request = llm.calls[1]["messages"]
        assert any(m.role == Role.USER and m.has_image for m in second_request)

    @pytest.mark.asyncio
    async def test_tab_note_is_sent_but_not_kept(self):
        gateway = FakeGateway()
        gateway.open_tab("https://site.test", "Dashboard")
        loop, gateway, llm = make_loop([text_response("ok")], gateway=gateway)

        await loop.run_task("task")

        sent = llm.calls[0]["messages"]
        assert sent[-1].role == Role.SYSTEM
        assert "(current) [Dashboard] (https://site.test)" in sent[-1].content
        assert len(loop.state.messages) == 3
        assert not any(m.text.startswith("Current Context:") for m in loop.state.messages)

    @pytest.mark.asyncio
    async def test_text_with_tool_calls_continues(self):
        loop, gateway, llm = make_loop([
            tool_response("click", {"selector": "#a"}, content="I will click the button"),
            text_response(""),
        ])

        result = await loop.run_task("task")

        assert result == ""
        assert loop.state.turn_count == 2

    @pytest.mark.asyncio
    async def test_history_is_pruned(self):
        responses = [tool_response("click", {"selector": "#x"}, call_id=f"c{i}") for i in range(6)]
        loop, gateway, llm = make_loop(responses + [text_response("done")], history_window=2)

        await loop.run_task("task", system_instructions="base")

        messages = loop.state.messages
        assert messages[0].content.startswith("base")
        assert messages[1].content == "task"
        assert "earlier messages were removed" in messages[2].content
        assert loop.state.conversation.assistant_turns() == 3

    @pytest.mark.asyncio
    async def test_non_retryable_model_error_propagates(self):
        loop, gateway, llm = make_loop([LLMError("HTTP 401", status_code=401)])

        with pytest.raises(LLMError):
            await loop.run_task("task")
        assert loop.state.phase == LoopPhase.FAILED

    @pytest.mark.asyncio
    async def test_token_usage_accumulates_across_tasks(self):
        loop, gateway, llm = make_loop([
            tool_response("click", {"selector": "#a"}, usage=TokenUsage(10, 2, 12)),
            text_response("one", usage=TokenUsage(20, 3, 23)),
            text_response("two", usage=TokenUsage(5, 1, 6)),
        ])

        await loop.run_task("first")
        await loop.run_task("second")

        usage = loop.token_usage
        assert usage.prompt_tokens == 35
        assert usage.completion_tokens == 6
        assert usage.total_tokens == 41


class TestCheckIfComplete:
    """Tests for AgentLoop.check_if_complete."""

    @pytest.mark.asyncio
    async def test_reports_completion(self):
        loop, gateway, llm = make_loop([
            tool_response("report_status", {"is_complete": True, "summary": "Thank you page"}),
        ])
        gateway.snapshot_text = "- heading \"Thank you for your participation\""

        assert await loop.check_if_complete() is True
        request = llm.calls[0]
        assert request["tool_choice"] == {"type": "function", "function": {"name": "report_status"}}
        assert "Thank you for your participation" in request["messages"][0].content

    @pytest.mark.asyncio
    async def test_not_complete(self):
        loop, gateway, llm = make_loop([
            tool_response("report_status", {"is_complete": False, "summary": "Question 4"}),
        ])
        assert await loop.check_if_complete() is False

    @pytest.mark.asyncio
    async def test_snapshot_exception_returns_false(self):
        gateway = FakeGateway()
        loop, gateway, llm = make_loop([], gateway=gateway)

        async def broken(name, arguments):
            raise RuntimeError("browser gone")

        loop.governor.invoke = broken

        assert await loop.check_if_complete() is False
        assert llm.calls == []

    @pytest.mark.asyncio
    async def test_model_error_returns_false(self):
        loop, gateway, llm = make_loop([LLMError("HTTP 500", status_code=500, retryable=True)])
        assert await loop.check_if_complete() is False

    @pytest.mark.asyncio
    async def test_malformed_report_returns_false(self):
        loop, gateway, llm = make_loop([tool_response("report_status", "{nope")])
        assert await loop.check_if_complete() is False

    @pytest.mark.asyncio
    async def test_snapshot_is_truncated(self):
        loop, gateway, llm = make_loop(
            [tool_response("report_status", {"is_complete": False, "summary": ""})],
            snapshot_char_limit=50,
        )
        gateway.snapshot_text = "x" * 500

        await loop.check_if_complete()

        prompt = llm.calls[0]["messages"][0].content
        assert "x" * 50 in prompt
        assert "x" * 51 not in prompt


class TestMessageSerialization:
    """Messages sent to the model are plain OpenAI dicts."""

    def test_text_message(self):
        assert Message(role=Role.USER, content="hi").to_dict() == {"role": "user", "content": "hi"}
