"""
Core types for the browser agent.

These are the data structures that flow between the loop, the chat
client and the session governor. Messages serialize to the OpenAI chat
format; tool results keep the typed content parts returned by the tool
endpoint so images can be routed separately from text.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Role(str, Enum):
    """Message roles in the conversation."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


@dataclass
class TextPart:
    """A text segment inside a multi-part message or tool result."""
    text: str

    def to_dict(self) -> dict[str, Any]:
        return {"type": "text", "text": self.text}


@dataclass
class ImagePart:
    """An inline image, base64-encoded for transit."""
    data: str
    mime_type: str = "image/png"

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.data}"

    def to_dict(self) -> dict[str, Any]:
        return {"type": "image_url", "image_url": {"url": self.data_url}}


ContentPart = TextPart | ImagePart


@dataclass
class Message:
    """
    A single message in the conversation history.

    Content is either plain text or a short ordered list of parts. Only
    user messages carry images; tool messages are always text.
    """
    role: Role
    content: str | list[ContentPart]
    tool_call_id: str | None = None
    tool_calls: list[dict[str, Any]] | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to OpenAI API format."""
        content: Any = self.content
        if isinstance(content, list):
            content = [part.to_dict() for part in content]
        result: dict[str, Any] = {
            "role": Role(self.role).value,
            "content": content,
        }
        if self.tool_call_id is not None:
            result["tool_call_id"] = self.tool_call_id
        if self.tool_calls is not None:
            result["tool_calls"] = self.tool_calls
        return result

    @property
    def text(self) -> str:
        """The textual content, with image parts omitted."""
        if isinstance(self.content, str):
            return self.content
        return "\n".join(p.text for p in self.content if isinstance(p, TextPart))

    @property
    def has_image(self) -> bool:
        return isinstance(self.content, list) and any(
            isinstance(p, ImagePart) for p in self.content
        )


@dataclass
class ToolCall:
    """
    A request from the model to execute a tool.

    Arguments are kept as the raw JSON string the model produced; the loop
    parses them so that malformed arguments can be reported back to the
    model instead of failing the response parse.
    """
    id: str
    name: str
    arguments: str = "{}"

    def to_dict(self) -> dict[str, Any]:
        """Convert to the assistant-message tool_calls entry format."""
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass
class ToolResult:
    """
    Structured output of a tool execution.

    is_error marks tool-level failures (bad selector, timeout, refused by
    the governor). Transport failures are exceptions, not results.
    """
    content: list[ContentPart] = field(default_factory=list)
    is_error: bool = False

    @classmethod
    def error(cls, text: str) -> "ToolResult":
        return cls(content=[TextPart(text)], is_error=True)

    @classmethod
    def ok(cls, text: str) -> "ToolResult":
        return cls(content=[TextPart(text)])

    @property
    def text(self) -> str:
        """Text parts joined by newlines."""
        return "\n".join(p.text for p in self.content if isinstance(p, TextPart))

    @property
    def images(self) -> list[ImagePart]:
        return [p for p in self.content if isinstance(p, ImagePart)]


@dataclass
class TokenUsage:
    """Prompt, completion and total token counts."""
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0

    def add(self, other: "TokenUsage") -> None:
        self.prompt_tokens += other.prompt_tokens
        self.completion_tokens += other.completion_tokens
        self.total_tokens += other.total_tokens

    def to_dict(self) -> dict[str, int]:
        return {
            "prompt_tokens": self.prompt_tokens,
            "completion_tokens": self.completion_tokens,
            "total_tokens": self.total_tokens,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "TokenUsage | None":
        if not data:
            return None
        prompt = int(data.get("prompt_tokens") or 0)
        completion = int(data.get("completion_tokens") or 0)
        total = int(data.get("total_tokens") or prompt + completion)
        return cls(prompt, completion, total)


@dataclass
class TabRecord:
    """
    One open browser tab as observed by the latest listing.

    The index is only meaningful until the next tab closes; the browser
    renumbers tabs after a close, so records are never reused across a
    governor call.
    """
    index: int
    active: bool
    title: str
    url: str
    last_active: float | None = None
