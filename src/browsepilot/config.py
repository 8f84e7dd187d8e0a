"""
Configuration for the browser agent.

All configuration is loaded from environment variables, so the same build
can point at OpenRouter, a local vLLM or Ollama server, or any other
OpenAI-compatible endpoint without code changes.

Zero means "disabled" for every limit below: no page ceiling, no forced
restart, no idle cleanup.
"""

import os
import shlex
from dataclasses import dataclass, field

DEFAULT_MCP_COMMAND = "npx"
DEFAULT_MCP_ARGS = ["-y", "@playwright/mcp@latest", "--isolated", "--caps=vision"]
DEFAULT_BLOCKED_TOOLS = ("browser_evaluate", "browser_run_code")


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    parsed = int(value)
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative, got {parsed}")
    return parsed


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    parsed = float(value)
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative, got {parsed}")
    return parsed


def _env_optional_float(name: str) -> float | None:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return None
    return float(value)


@dataclass
class LLMConfig:
    """Configuration for the chat client."""
    base_url: str = "https://openrouter.ai/api/v1"
    api_key: str = "not-needed"
    model: str = "x-ai/grok-4.1-fast:free"
    temperature: float | None = None
    max_tokens: int | None = None
    max_attempts: int = 5
    retry_base_delay: float = 1.0
    timeout: float = 180.0

    @classmethod
    def from_env(cls) -> "LLMConfig":
        """Load configuration from environment variables."""
        max_tokens = os.getenv("LLM_MAX_TOKENS")
        return cls(
            base_url=(
                os.getenv("LLM_BASE_URL")
                or os.getenv("OPENROUTER_BASE_URL")
                or "https://openrouter.ai/api/v1"
            ),
            api_key=(
                os.getenv("LLM_API_KEY")
                or os.getenv("OPENROUTER_API_KEY")
                or "not-needed"
            ),
            model=os.getenv("MODEL_NAME", "x-ai/grok-4.1-fast:free"),
            temperature=_env_optional_float("LLM_TEMPERATURE"),
            max_tokens=int(max_tokens) if max_tokens else None,
            max_attempts=max(1, _env_int("LLM_MAX_ATTEMPTS", 5)),
            retry_base_delay=_env_float("LLM_RETRY_BASE_DELAY", 1.0),
            timeout=_env_float("LLM_TIMEOUT", 180.0),
        )


@dataclass
class GatewayConfig:
    """How to launch the MCP browser server and where to keep captured images."""
    command: str = DEFAULT_MCP_COMMAND
    args: list[str] = field(default_factory=lambda: list(DEFAULT_MCP_ARGS))
    image_output_dir: str = "output/images"

    @classmethod
    def from_env(cls) -> "GatewayConfig":
        """Load configuration from environment variables."""
        args = os.getenv("MCP_ARGS")
        return cls(
            command=os.getenv("MCP_COMMAND", DEFAULT_MCP_COMMAND),
            args=shlex.split(args) if args is not None else list(DEFAULT_MCP_ARGS),
            image_output_dir=os.getenv("IMAGE_OUTPUT_DIR", "output/images"),
        )


@dataclass
class GovernorConfig:
    """
    Resource limits enforced on the browser session.

    page_idle_timeout is in seconds; the environment variable is in
    minutes to match how operators think about it.
    """
    max_pages: int = 0
    restart_after_pages: int = 0
    page_idle_timeout: float = 600.0
    blocked_tools: tuple[str, ...] = DEFAULT_BLOCKED_TOOLS
    close_settle_delay: float = 0.5

    @classmethod
    def from_env(cls) -> "GovernorConfig":
        """Load configuration from environment variables."""
        blocked = os.getenv("BLOCKED_TOOLS")
        return cls(
            max_pages=_env_int("MAX_PAGES", 0),
            restart_after_pages=_env_int("RESTART_AFTER_PAGES", 0),
            page_idle_timeout=_env_float("PAGE_IDLE_TIMEOUT_MINUTES", 10.0) * 60.0,
            blocked_tools=(
                tuple(t.strip() for t in blocked.split(",") if t.strip())
                if blocked is not None
                else DEFAULT_BLOCKED_TOOLS
            ),
            close_settle_delay=_env_float("TAB_CLOSE_SETTLE_SECONDS", 0.5),
        )


@dataclass
class LoopConfig:
    """
    Configuration for the agent loop.

    max_turns is a safety limit against runaway tasks; history_window is
    the number of most recent assistant turns kept verbatim when pruning.
    """
    max_turns: int = 50
    history_window: int = 8
    snapshot_char_limit: int = 10000
    snapshot_tool: str = "browser_snapshot"

    @classmethod
    def from_env(cls) -> "LoopConfig":
        """Load configuration from environment variables."""
        return cls(
            max_turns=max(1, _env_int("AGENT_MAX_TURNS", 50)),
            history_window=max(1, _env_int("HISTORY_WINDOW_TURNS", 8)),
            snapshot_char_limit=_env_int("SNAPSHOT_CHAR_LIMIT", 10000),
        )


@dataclass
class AgentConfig:
    """Combined configuration for the entire agent."""
    llm: LLMConfig
    gateway: GatewayConfig
    governor: GovernorConfig
    loop: LoopConfig
    deadline_seconds: float = 0.0

    @classmethod
    def from_env(cls) -> "AgentConfig":
        """Load all configuration from environment variables."""
        return cls(
            llm=LLMConfig.from_env(),
            gateway=GatewayConfig.from_env(),
            governor=GovernorConfig.from_env(),
            loop=LoopConfig.from_env(),
            deadline_seconds=_env_float("RESTART_APP_AFTER_MINUTES", 0.0) * 60.0,
        )
