"""
BrowsePilot - an LLM-driven browser agent.

The agent asks a language model which browser action to take next,
executes it through a Model Context Protocol browser server, and feeds
the result (text and screenshots) back to the model until the model
reports it is done:

1. Tool Gateway: the MCP browser server connection
2. Chat Client: OpenAI-compatible chat completions with retries
3. Session Governor: tab ceilings, idle-tab cleanup, periodic restarts
4. Agent Loop: the observe/decide/act cycle with history pruning
"""

__version__ = "0.1.0"

from browsepilot.agent_loop import AgentLoop, LoopPhase, TurnLimitExceeded
from browsepilot.config import AgentConfig, GatewayConfig, GovernorConfig, LLMConfig, LoopConfig
from browsepilot.context import Conversation, HistoryPruner
from browsepilot.gateway import GatewayError, ImageSink, McpToolGateway, ToolGateway
from browsepilot.governor import SessionGovernor, parse_tab_listing
from browsepilot.llm import ChatResponse, LLMClient, LLMError
from browsepilot.persona import flatten_persona, format_persona, load_persona
from browsepilot.tools import Tool, ToolAction, ToolRegistry, classify_call
from browsepilot.workflow import Deadline, WorkflowRunner, WorkflowSpec, WorkflowStatus

__all__ = [
    "AgentLoop",
    "LoopPhase",
    "TurnLimitExceeded",
    "AgentConfig",
    "GatewayConfig",
    "GovernorConfig",
    "LLMConfig",
    "LoopConfig",
    "Conversation",
    "HistoryPruner",
    "GatewayError",
    "ImageSink",
    "McpToolGateway",
    "ToolGateway",
    "SessionGovernor",
    "parse_tab_listing",
    "ChatResponse",
    "LLMClient",
    "LLMError",
    "flatten_persona",
    "format_persona",
    "load_persona",
    "Tool",
    "ToolAction",
    "ToolRegistry",
    "classify_call",
    "Deadline",
    "WorkflowRunner",
    "WorkflowSpec",
    "WorkflowStatus",
]
