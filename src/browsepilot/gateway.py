"""
Tool Gateway - the remote browser tool endpoint.

The gateway speaks the Model Context Protocol to a browser automation
server (by default the Playwright MCP server launched over stdio). It
lists tool schemas and executes tools, converting MCP content blocks into
ToolResult parts.

Only transport failures raise (GatewayError). A tool that ran and failed
comes back as a ToolResult with is_error set.
"""

import base64
import binascii
import logging
import os
import time
from abc import ABC, abstractmethod
from contextlib import AsyncExitStack
from pathlib import Path
from typing import Any

from browsepilot.config import GatewayConfig
from browsepilot.tools import Tool
from browsepilot.types import ContentPart, ImagePart, TextPart, ToolResult

logger = logging.getLogger(__name__)

MIME_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/gif": "gif",
    "image/webp": "webp",
}


class GatewayError(Exception):
    """The tool endpoint could not be reached or the session is closed."""


class ToolGateway(ABC):
    """Interface to a remote tool-execution endpoint."""

    @abstractmethod
    async def connect(self) -> None:
        """Establish the remote session. Idempotent."""
        ...

    @abstractmethod
    async def list_tools(self) -> list[Tool]:
        """Return the tool schemas the endpoint offers."""
        ...

    @abstractmethod
    async def invoke(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        """Execute a tool. Raises GatewayError on transport failure only."""
        ...

    @abstractmethod
    async def close(self) -> None:
        """Release the remote session."""
        ...

    async def restart(self) -> None:
        """Tear down and re-establish the remote session."""
        logger.info("Restarting tool gateway session")
        await self.close()
        await self.connect()


class ImageSink:
    """
    Persists captured images for later inspection.

    Filenames embed a millisecond timestamp; a counter suffix resolves
    collisions within the same millisecond. Write failures are logged and
    never propagate.
    """

    def __init__(self, output_dir: str | Path) -> None:
        self.output_dir = Path(output_dir)

    def save(self, image: ImagePart, prefix: str = "capture") -> Path | None:
        ext = MIME_EXTENSIONS.get(image.mime_type.lower(), "bin")
        try:
            self.output_dir.mkdir(parents=True, exist_ok=True)
            stamp = int(time.time() * 1000)
            path = self.output_dir / f"{prefix}_{stamp}.{ext}"
            counter = 1
            while path.exists():
                path = self.output_dir / f"{prefix}_{stamp}_{counter}.{ext}"
                counter += 1
            path.write_bytes(base64.b64decode(image.data))
        except (OSError, binascii.Error, ValueError) as e:
            logger.warning(f"Could not persist captured image: {e}")
            return None
        logger.debug(f"Saved captured image to {path}")
        return path


def convert_content(blocks: list[Any]) -> list[ContentPart]:
    """Convert MCP content blocks to ToolResult parts."""
    parts: list[ContentPart] = []
    for block in blocks:
        kind = getattr(block, "type", None)
        if kind == "text":
            parts.append(TextPart(block.text))
        elif kind == "image":
            parts.append(ImagePart(data=block.data, mime_type=block.mimeType))
        elif kind == "resource" and hasattr(block.resource, "text"):
            parts.append(TextPart(block.resource.text))
        elif hasattr(block, "model_dump_json"):
            parts.append(TextPart(block.model_dump_json()))
        else:
            parts.append(TextPart(str(block)))
    return parts


class McpToolGateway(ToolGateway):
    """
    Tool gateway backed by an MCP server over stdio.

    Uses the official MCP Python SDK. The server process lives as long as
    the session; restart() launches a fresh one.
    """

    def __init__(
        self,
        config: GatewayConfig | None = None,
        image_sink: ImageSink | None = None,
    ) -> None:
        self.config = config or GatewayConfig.from_env()
        self.image_sink = image_sink or ImageSink(self.config.image_output_dir)
        self._stack: AsyncExitStack | None = None
        self._session: Any = None

    @property
    def is_connected(self) -> bool:
        return self._session is not None

    async def connect(self) -> None:
        if self._session is not None:
            return

        from mcp import ClientSession, StdioServerParameters
        from mcp.client.stdio import stdio_client

        server_params = StdioServerParameters(
            command=self.config.command,
            args=self.config.args,
            env=dict(os.environ),
        )

        logger.info(f"Starting MCP server: {self.config.command} {' '.join(self.config.args)}")
        stack = AsyncExitStack()
        try:
            read, write = await stack.enter_async_context(stdio_client(server_params))
            session = await stack.enter_async_context(ClientSession(read, write))
            await session.initialize()
        except Exception as e:
            await stack.aclose()
            raise GatewayError(f"Failed to connect to MCP server: {e}") from e

        self._stack = stack
        self._session = session
        logger.info("Connected to MCP server")

    async def list_tools(self) -> list[Tool]:
        await self.connect()
        try:
            response = await self._session.list_tools()
        except Exception as e:
            raise GatewayError(f"Failed to list tools: {e}") from e
        return [
            Tool(
                name=t.name,
                description=t.description or "",
                parameters=t.inputSchema or {"type": "object", "properties": {}},
            )
            for t in response.tools
        ]

    async def invoke(self, name: str, arguments: dict[str, Any]) -> ToolResult:
        await self.connect()
        try:
            response = await self._session.call_tool(name, arguments)
        except Exception as e:
            raise GatewayError(f"Tool '{name}' transport failure: {e}") from e

        result = ToolResult(
            content=convert_content(response.content),
            is_error=bool(response.isError),
        )
        for image in result.images:
            self.image_sink.save(image, prefix=name)
        return result

    async def close(self) -> None:
        if self._session is None:
            return
        try:
            await self._session.call_tool("browser_close", {})
        except Exception as e:
            logger.debug(f"browser_close during shutdown failed: {e}")
        stack, self._stack, self._session = self._stack, None, None
        try:
            await stack.aclose()
        except Exception as e:
            logger.warning(f"Error while closing MCP session: {e}")
        logger.info("MCP session closed")
