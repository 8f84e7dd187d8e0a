"""
LLM Client - chat completions with tool definitions.

This client works with any OpenAI-compatible API:
- OpenRouter (the default)
- vLLM (http://localhost:8000/v1)
- Ollama (http://localhost:11434/v1)
- OpenAI itself

Transient failures (rate limits, 5xx, network errors, truncated bodies) are
retried with exponential backoff; any other 4xx is surfaced at once.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

import httpx

from browsepilot.config import LLMConfig
from browsepilot.types import Message, Role, TokenUsage, ToolCall

logger = logging.getLogger(__name__)

DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_WRITE_TIMEOUT = 10.0
DEFAULT_POOL_TIMEOUT = 10.0


class LLMError(Exception):
    """Error from the LLM client."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


def is_retryable_status(status_code: int) -> bool:
    """Rate limits and server errors are worth another attempt."""
    return status_code == 429 or status_code >= 500


class LLMClient:
    """
    Async client for OpenAI-compatible chat completion APIs.

    Backoff starts at config.retry_base_delay and doubles after each failed
    attempt, for at most config.max_attempts attempts in total.
    """

    def __init__(
        self,
        config: LLMConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config or LLMConfig.from_env()
        self._sleep = sleep

        timeout = httpx.Timeout(
            connect=DEFAULT_CONNECT_TIMEOUT,
            read=self.config.timeout,
            write=DEFAULT_WRITE_TIMEOUT,
            pool=DEFAULT_POOL_TIMEOUT,
        )

        self._client = httpx.AsyncClient(
            base_url=self.config.base_url,
            headers={
                "Authorization": f"Bearer {self.config.api_key}",
                "Content-Type": "application/json",
            },
            timeout=timeout,
            transport=transport,
        )

    def build_payload(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        tool_choice: str | dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": self.config.model,
            "messages": [m.to_dict() for m in messages],
        }
        if self.config.temperature is not None:
            payload["temperature"] = self.config.temperature
        if self.config.max_tokens is not None:
            payload["max_tokens"] = self.config.max_tokens
        if tools:
            payload["tools"] = tools
            if tool_choice:
                payload["tool_choice"] = tool_choice
        return payload

    async def chat(
        self,
        messages: list[Message],
        tools: list[dict[str, Any]] | None = None,
        tool_choice: str | dict[str, Any] | None = None,
    ) -> "ChatResponse":
        """
        Send a chat completion request, retrying transient failures.

        Args:
            messages: The conversation to send, in order
            tools: Optional OpenAI-format tool definitions
            tool_choice: Optional tool choice constraint (e.g. a forced function)

        Returns:
            ChatResponse with the assistant's message and token usage

        Raises:
            LLMError: On a non-retryable error, or once all attempts are spent
        """
        payload = self.build_payload(messages, tools, tool_choice)
        attempts = self.config.max_attempts
        delay = self.config.retry_base_delay
        last_error: LLMError | None = None

        for attempt in range(1, attempts + 1):
            if attempt > 1:
                logger.info(f"Retry attempt {attempt}/{attempts} after {delay:.1f}s delay")
                await self._sleep(delay)
                delay *= 2

            logger.debug(f"Sending chat request with {len(messages)} messages (attempt {attempt})")

            try:
                response = await self._client.post("/chat/completions", json=payload)
                response.raise_for_status()
                data = response.json()
            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                if not is_retryable_status(status):
                    logger.error(f"HTTP error: {status} - {e.response.text}")
                    raise LLMError(
                        f"HTTP {status}: {e.response.text}", status_code=status
                    ) from e
                logger.warning(f"Retryable HTTP {status} (attempt {attempt}/{attempts})")
                last_error = LLMError(
                    f"HTTP {status}: {e.response.text}", status_code=status, retryable=True
                )
                continue
            except httpx.RequestError as e:
                logger.warning(f"Request error (attempt {attempt}/{attempts}): {e!r}")
                last_error = LLMError(f"Request failed: {e!r}", retryable=True)
                continue
            except ValueError as e:
                logger.warning(f"Response body is not JSON (attempt {attempt}/{attempts}): {e}")
                last_error = LLMError(f"Response body is not JSON: {e}", retryable=True)
                continue

            try:
                return ChatResponse.from_api_response(data)
            except LLMError as e:
                # OpenRouter reports upstream failures as a 200 with an error body
                logger.warning(f"Malformed completion (attempt {attempt}/{attempts}): {e}")
                last_error = LLMError(str(e), retryable=True)

        logger.error(f"All {attempts} attempts failed. Last error: {last_error}")
        raise LLMError(
            f"Request failed after {attempts} attempts: {last_error}",
            status_code=last_error.status_code if last_error else None,
            retryable=True,
        ) from last_error

    async def close(self) -> None:
        """Close the HTTP client."""
        await self._client.aclose()

    async def __aenter__(self) -> "LLMClient":
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()


class ChatResponse:
    """
    Response from a chat completion request.

    Wraps the first choice's message. Tool calls take precedence over text:
    a response carrying both is a continuation, and the text is narration.
    """

    def __init__(
        self,
        content: str | None,
        tool_calls: list[ToolCall] | None,
        finish_reason: str = "stop",
        usage: TokenUsage | None = None,
        raw_response: dict[str, Any] | None = None,
    ) -> None:
        self.content = content or ""
        self.tool_calls = tool_calls or []
        self.finish_reason = finish_reason
        self.usage = usage
        self.raw_response = raw_response or {}

    @classmethod
    def from_api_response(cls, data: dict[str, Any]) -> "ChatResponse":
        """Parse an API response into a ChatResponse."""
        try:
            choice = data["choices"][0]
            message = choice["message"]
        except (KeyError, IndexError, TypeError) as e:
            error = data.get("error") if isinstance(data, dict) else None
            raise LLMError(f"Malformed chat response: {error or e!r}") from e

        tool_calls: list[ToolCall] = []
        for tc in message.get("tool_calls") or []:
            function = tc.get("function") or {}
            tool_calls.append(ToolCall(
                id=tc.get("id", ""),
                name=function.get("name", ""),
                arguments=function.get("arguments") or "",
            ))

        return cls(
            content=message.get("content"),
            tool_calls=tool_calls,
            finish_reason=choice.get("finish_reason") or "stop",
            usage=TokenUsage.from_dict(data.get("usage")),
            raw_response=data,
        )

    @property
    def has_tool_calls(self) -> bool:
        """Check if the response includes tool calls."""
        return len(self.tool_calls) > 0

    def to_message(self) -> Message:
        """The assistant message to append to the conversation."""
        return Message(
            role=Role.ASSISTANT,
            content=self.content,
            tool_calls=[tc.to_dict() for tc in self.tool_calls] or None,
        )
