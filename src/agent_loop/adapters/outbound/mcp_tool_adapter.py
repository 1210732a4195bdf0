"""MCP implementation of ToolTransportPort.

Connects to one or more Model Context Protocol servers and exposes their
tools as a single catalog. Each tool name is routed to the session of the
server that advertised it; when two servers advertise the same name the
first connected server wins.
"""

from collections.abc import Sequence
from contextlib import AsyncExitStack
from typing import Any

import structlog
from mcp import ClientSession, StdioServerParameters
from mcp.client.sse import sse_client
from mcp.client.stdio import stdio_client
from mcp.client.streamable_http import streamablehttp_client

from agent_loop.adapters.config.settings import MCPServerSettings
from agent_loop.domain.errors import (
    InvalidServerConfigError,
    ToolInvocationError,
    ToolServerConnectionError,
    ToolTransportError,
)
from agent_loop.domain.value_objects import ContentBlock, ToolSpec, render_content_blocks

logger = structlog.get_logger(__name__)


def content_block_from_mcp(block: Any) -> ContentBlock:
    """Convert one MCP content item into a ContentBlock.

    Dispatches on the ``type`` discriminator so every MCP content model
    (text, image, audio, embedded resource, resource link) is handled.
    """
    block_type = getattr(block, "type", None)

    if block_type == "text":
        return ContentBlock(type="text", text=block.text)
    if block_type in ("image", "audio"):
        return ContentBlock(type=block_type, data=block.data, mime_type=block.mimeType)
    if block_type == "resource":
        resource = block.resource
        return ContentBlock(
            type="resource",
            text=getattr(resource, "text", None),
            mime_type=resource.mimeType,
            uri=str(resource.uri),
        )
    if block_type == "resource_link":
        return ContentBlock(type="resource", mime_type=block.mimeType, uri=str(block.uri))

    return ContentBlock(type=str(block_type or "unknown"), text=str(block))


def tool_spec_from_mcp(tool: Any) -> ToolSpec:
    schema = tool.inputSchema if isinstance(tool.inputSchema, dict) else {}
    parameters = dict(schema)
    parameters.setdefault("type", "object")
    parameters.setdefault("properties", {})
    return ToolSpec(name=tool.name, description=tool.description or "", parameters=parameters)


class MCPToolTransport:
    """Tool transport backed by MCP client sessions.

    Example:
        >>> async with MCPToolTransport() as transport:
        ...     await transport.connect([MCPServerSettings.git()])
        ...     tools = await transport.list_tools()
    """

    def __init__(self) -> None:
        self._stack = AsyncExitStack()
        self._sessions: dict[str, ClientSession] = {}
        self._routes: dict[str, ClientSession] = {}

    @property
    def server_names(self) -> list[str]:
        return list(self._sessions)

    async def __aenter__(self) -> "MCPToolTransport":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.disconnect()

    async def connect(self, servers: Sequence[MCPServerSettings]) -> None:
        """Connect to every server in order.

        Raises:
            InvalidServerConfigError: If a server lacks a command or URL
            ToolServerConnectionError: If a server cannot be reached
        """
        logger.info("mcp_connecting", servers=len(servers))
        for server in servers:
            name = server.display_name
            try:
                session = await self._open_session(server)
            except InvalidServerConfigError:
                raise
            except Exception as exc:
                logger.error("mcp_connect_failed", server=name, error=str(exc))
                raise ToolServerConnectionError(
                    f"Failed to connect to MCP server '{name}': {exc}"
                ) from exc
            self._sessions[name] = session
            logger.info("mcp_connected", server=name, type=server.type)

    async def _open_session(self, server: MCPServerSettings) -> ClientSession:
        if server.type == "stdio":
            if not server.command:
                raise InvalidServerConfigError("STDIO server requires a command")
            params = StdioServerParameters(
                command=server.command,
                args=server.args,
                env=server.env,
                cwd=server.cwd,
            )
            read, write = await self._stack.enter_async_context(stdio_client(params))
        elif server.type == "sse":
            if not server.url:
                raise InvalidServerConfigError("SSE server requires a url")
            read, write = await self._stack.enter_async_context(
                sse_client(server.url, headers=server.headers)
            )
        else:
            if not server.url:
                raise InvalidServerConfigError("HTTP server requires a url")
            read, write, _ = await self._stack.enter_async_context(
                streamablehttp_client(server.url, headers=server.headers)
            )

        session = await self._stack.enter_async_context(ClientSession(read, write))
        await session.initialize()
        return session

    async def disconnect(self) -> None:
        """Close every session and its transport."""
        if self._sessions:
            logger.info("mcp_disconnecting", servers=len(self._sessions))
        await self._stack.aclose()
        self._stack = AsyncExitStack()
        self._sessions.clear()
        self._routes.clear()

    async def list_tools(self) -> list[ToolSpec]:
        """Fetch the current tool catalog from every connected server.

        Raises:
            ToolTransportError: If any server fails to list its tools
        """
        specs: list[ToolSpec] = []
        routes: dict[str, ClientSession] = {}

        for server_name, session in self._sessions.items():
            try:
                result = await session.list_tools()
            except Exception as exc:
                raise ToolTransportError(
                    f"Failed to list tools from MCP server '{server_name}': {exc}"
                ) from exc

            for tool in result.tools:
                if tool.name in routes:
                    logger.warning("mcp_duplicate_tool", tool=tool.name, server=server_name)
                    continue
                routes[tool.name] = session
                specs.append(tool_spec_from_mcp(tool))

        self._routes = routes
        return specs

    async def call_tool(
        self,
        name: str,
        arguments: dict[str, Any] | None = None,
    ) -> list[ContentBlock]:
        """Invoke a tool on the server that advertised it.

        Raises:
            ToolInvocationError: If the tool is unknown, the call fails, or
                the server reports an error result
        """
        session = self._routes.get(name)
        if session is None:
            raise ToolInvocationError(f"Unknown tool: {name}")

        try:
            result = await session.call_tool(name, arguments=arguments)
        except Exception as exc:
            raise ToolInvocationError(str(exc)) from exc

        blocks = [content_block_from_mcp(block) for block in result.content or []]
        if result.isError:
            raise ToolInvocationError(render_content_blocks(blocks) or "tool reported an error")
        return blocks
