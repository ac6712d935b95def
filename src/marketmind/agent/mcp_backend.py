import json
import logging
import os
from typing import Any, Dict, List

from mcp import StdioServerParameters
from mcp.client.session import ClientSession
from mcp.client.stdio import stdio_client
from mcp.shared.exceptions import McpError
from pydantic import BaseModel

from ..errors import ToolExecutionError
from .market_tools import argument_model_for
from .tools import EMPTY_SCHEMA, Tool, ToolRegistry

logger = logging.getLogger(__name__)


class McpToolBackend:
    """Market-data tools served by an MCP server over stdio.

    A fresh stdio session is opened for discovery and for each call, so the
    backend holds no connection state between queries.
    """

    def __init__(self, name: str, command: str, env: Dict[str, str] | None = None) -> None:
        cmd_parts = command.split()
        if len(cmd_parts) < 2:
            raise ValueError(f"Invalid MCP command format for '{name}': {command}")
        self.name = name
        self._params = StdioServerParameters(
            command=cmd_parts[0],
            args=cmd_parts[1:],
            env={**os.environ, **(env or {})},
        )

    async def list_tools(self) -> List[Tool]:
        """Discover the server's tools and wrap them for the registry."""
        tools: List[Tool] = []
        async with stdio_client(self._params) as (read, write):
            async with ClientSession(read, write) as session:
                await session.initialize()
                tools_result = await session.list_tools()
                for tool_info in tools_result.tools:
                    tools.append(
                        Tool(
                            name=tool_info.name,
                            description=tool_info.description or "",
                            input_schema=tool_info.inputSchema or EMPTY_SCHEMA,
                            handler=self._handler_for(tool_info.name),
                            args_model=argument_model_for(tool_info.name),
                        )
                    )
        logger.info("MCP server '%s' offers %d tools", self.name, len(tools))
        return tools

    def _handler_for(self, tool_name: str):
        async def handler(arguments: Any) -> Any:
            if isinstance(arguments, BaseModel):
                arguments = arguments.model_dump(exclude_none=True)
            return await self.call_tool(tool_name, arguments)

        return handler

    async def call_tool(self, tool_name: str, arguments: Dict[str, Any]) -> Any:
        logger.info("Calling MCP tool %s on server %s", tool_name, self.name)
        try:
            async with stdio_client(self._params) as (read, write):
                async with ClientSession(read, write) as session:
                    await session.initialize()
                    result = await session.call_tool(tool_name, arguments)
        except McpError as e:
            raise ToolExecutionError(tool_name, f"MCP error: {e.error.message}") from e
        except ExceptionGroup as e:
            # stdio_client runs in a task group; a dead server surfaces as a group
            logger.error("MCP server '%s' failed during %s: %s", self.name, tool_name, e)
            raise ToolExecutionError(
                tool_name, f"MCP server '{self.name}' failed: {e.exceptions[0]}"
            ) from e
        except OSError as e:
            raise ToolExecutionError(tool_name, f"MCP server '{self.name}' unavailable: {e}") from e

        text = "".join(
            getattr(block, "text", "") or "" for block in (result.content or [])
        )
        if result.isError:
            raise ToolExecutionError(tool_name, text or "MCP tool reported an error")
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return text


async def register_mcp_tools(registry: ToolRegistry, backend: McpToolBackend) -> int:
    """Register every tool the backend offers. Returns how many were added."""
    try:
        tools = await backend.list_tools()
    except (OSError, ConnectionError, TimeoutError, McpError, ExceptionGroup) as e:
        logger.warning("Failed to connect to MCP server '%s': %s", backend.name, e)
        return 0
    for tool in tools:
        registry.register(tool)
    return len(tools)
