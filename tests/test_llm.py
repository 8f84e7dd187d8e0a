"""Tests for the chat client: response parsing and retry classification."""

import json

import httpx
import pytest

from browsepilot.config import LLMConfig
from browsepilot.llm import ChatResponse, LLMClient, LLMError
from browsepilot.types import Message, Role


def completion(content=None, tool_calls=None, usage=None):
    message = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    data = {"choices": [{"message": message, "finish_reason": "stop"}]}
    if usage:
        data["usage"] = usage
    return data


class Recorder:
    """Scripted transport handler that records requests."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        item = self.responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


def make_client(handler, delays):
    async def fake_sleep(seconds):
        delays.append(seconds)

    config = LLMConfig(base_url="http://llm.test/v1", api_key="k", model="test-model")
    return LLMClient(config, transport=httpx.MockTransport(handler), sleep=fake_sleep)


MESSAGES = [Message(role=Role.USER, content="hi")]


class TestChatResponse:
    """Tests for ChatResponse parsing."""

    def test_parses_tool_calls_and_usage(self):
        data = completion(
            content="Clicking now",
            tool_calls=[{
                "id": "call_1",
                "type": "function",
                "function": {"name": "click", "arguments": '{"selector": "text=Surveys"}'},
            }],
            usage={"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15},
        )
        response = ChatResponse.from_api_response(data)

        assert response.content == "Clicking now"
        assert response.has_tool_calls
        assert response.tool_calls[0].name == "click"
        assert response.tool_calls[0].arguments == '{"selector": "text=Surveys"}'
        assert response.usage.total_tokens == 15

    def test_keeps_malformed_arguments_raw(self):
        data = completion(tool_calls=[{
            "id": "call_1",
            "function": {"name": "click", "arguments": "{not json"},
        }])
        response = ChatResponse.from_api_response(data)
        assert response.tool_calls[0].arguments == "{not json"

    def test_missing_choices_raises(self):
        with pytest.raises(LLMError):
            ChatResponse.from_api_response({"error": {"message": "bad"}})

    def test_to_message_serializes_tool_calls(self):
        data = completion(tool_calls=[{
            "id": "call_1",
            "function": {"name": "click", "arguments": "{}"},
        }])
        message = ChatResponse.from_api_response(data).to_message().to_dict()
        assert message["role"] == "assistant"
        assert message["tool_calls"][0]["function"]["name"] == "click"


class TestLLMClient:
    """Tests for LLMClient request and retry behavior."""

    @pytest.mark.asyncio
    async def test_sends_model_messages_and_tool_choice(self):
        recorder = Recorder([httpx.Response(200, json=completion(content="ok"))])
        client = make_client(recorder, [])
        tools = [{"type": "function", "function": {"name": "report_status", "parameters": {}}}]
        choice = {"type": "function", "function": {"name": "report_status"}}

        response = await client.chat(MESSAGES, tools=tools, tool_choice=choice)

        body = json.loads(recorder.requests[0].content)
        assert response.content == "ok"
        assert body["model"] == "test-model"
        assert body["messages"] == [{"role": "user", "content": "hi"}]
        assert body["tool_choice"] == choice
        assert recorder.requests[0].url.path == "/v1/chat/completions"
        await client.close()

    @pytest.mark.asyncio
    async def test_rate_limit_is_retried(self):
        recorder = Recorder([
            httpx.Response(429, text="slow down"),
            httpx.Response(200, json=completion(content="ok")),
        ])
        delays = []
        client = make_client(recorder, delays)

        response = await client.chat(MESSAGES)

        assert response.content == "ok"
        assert delays == [1.0]
        await client.close()

    @pytest.mark.asyncio
    async def test_backoff_doubles_until_attempts_exhausted(self):
        recorder = Recorder([httpx.Response(503, text="down") for _ in range(5)])
        delays = []
        client = make_client(recorder, delays)

        with pytest.raises(LLMError) as exc_info:
            await client.chat(MESSAGES)

        assert len(recorder.requests) == 5
        assert delays == [1.0, 2.0, 4.0, 8.0]
        assert exc_info.value.retryable is True
        await client.close()

    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self):
        recorder = Recorder([httpx.Response(400, text="bad request")])
        delays = []
        client = make_client(recorder, delays)

        with pytest.raises(LLMError) as exc_info:
            await client.chat(MESSAGES)

        assert len(recorder.requests) == 1
        assert delays == []
        assert exc_info.value.status_code == 400
        assert exc_info.value.retryable is False
        await client.close()

    @pytest.mark.asyncio
    async def test_network_error_is_retried(self):
        recorder = Recorder([
            httpx.ConnectError("refused"),
            httpx.Response(200, json=completion(content="back")),
        ])
        client = make_client(recorder, [])

        response = await client.chat(MESSAGES)

        assert response.content == "back"
        assert len(recorder.requests) == 2
        await client.close()

    @pytest.mark.asyncio
    async def test_truncated_body_is_retried(self):
        recorder = Recorder([
            httpx.Response(200, content=b'{"choices": [{"mess'),
            httpx.Response(200, json=completion(content="whole")),
        ])
        delays = []
        client = make_client(recorder, delays)

        response = await client.chat(MESSAGES)

        assert response.content == "whole"
        assert len(recorder.requests) == 2
        assert delays == [1.0]
        await client.close()

    @pytest.mark.asyncio
    async def test_error_body_with_ok_status_is_retried(self):
        recorder = Recorder([
            httpx.Response(200, json={"error": {"message": "upstream overloaded"}}),
            httpx.Response(200, json=completion(content="recovered")),
        ])
        client = make_client(recorder, [])

        response = await client.chat(MESSAGES)

        assert response.content == "recovered"
        assert len(recorder.requests) == 2
        await client.close()

    @pytest.mark.asyncio
    async def test_persistently_malformed_body_fails_as_retryable(self):
        recorder = Recorder([httpx.Response(200, content=b"<html>") for _ in range(5)])
        client = make_client(recorder, [])

        with pytest.raises(LLMError) as exc_info:
            await client.chat(MESSAGES)

        assert len(recorder.requests) == 5
        assert exc_info.value.retryable is True
        await client.close()
