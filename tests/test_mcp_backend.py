from contextlib import asynccontextmanager
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from mcp.shared.exceptions import McpError
from mcp.types import ErrorData

from marketmind.agent.market_tools import SymbolArgs
from marketmind.agent.mcp_backend import McpToolBackend, register_mcp_tools
from marketmind.agent.tools import ToolRegistry
from marketmind.errors import ToolExecutionError

MODULE = "marketmind.agent.mcp_backend"


def fake_session(list_result=None, call_result=None) -> MagicMock:
    session = MagicMock()
    session.initialize = AsyncMock()
    session.list_tools = AsyncMock(return_value=list_result)
    session.call_tool = AsyncMock(return_value=call_result)
    return session


def patched_transport(session: MagicMock):
    @asynccontextmanager
    async def stdio_client(params):
        yield ("read", "write")

    @asynccontextmanager
    async def client_session(read, write):
        yield session

    return (
        patch(f"{MODULE}.stdio_client", stdio_client),
        patch(f"{MODULE}.ClientSession", client_session),
    )


def text_result(text: str, is_error: bool = False) -> SimpleNamespace:
    return SimpleNamespace(content=[SimpleNamespace(text=text)], isError=is_error)


def test_command_must_have_arguments() -> None:
    with pytest.raises(ValueError):
        McpToolBackend("nse_market", "node")


@pytest.mark.asyncio
async def test_registers_discovered_tools_with_argument_models() -> None:
    listed = SimpleNamespace(
        tools=[
            SimpleNamespace(
                name="get_equity_details",
                description="Equity details",
                inputSchema={
                    "type": "object",
                    "properties": {"symbol": {"type": "string"}},
                    "required": ["symbol"],
                },
            ),
            SimpleNamespace(name="get_market_status", description=None, inputSchema=None),
        ]
    )
    session = fake_session(list_result=listed, call_result=text_result('{"lastPrice": 3500}'))
    registry = ToolRegistry()
    stdio_patch, session_patch = patched_transport(session)

    with stdio_patch, session_patch:
        count = await register_mcp_tools(registry, McpToolBackend("nse_market", "node server.js"))
        outcome = await registry.execute("get_equity_details", '{"symbol": "TCS"}')

    assert count == 2
    assert registry.get("get_equity_details").args_model is SymbolArgs
    assert registry.get("get_market_status").input_schema["type"] == "object"
    assert outcome.payload() == {"lastPrice": 3500}
    session.call_tool.assert_awaited_once_with("get_equity_details", {"symbol": "TCS"})


@pytest.mark.asyncio
async def test_call_tool_returns_raw_text_and_raises_on_error() -> None:
    backend = McpToolBackend("nse_market", "node server.js")

    stdio_patch, session_patch = patched_transport(
        fake_session(call_result=text_result("Market is closed"))
    )
    with stdio_patch, session_patch:
        assert await backend.call_tool("get_market_status", {}) == "Market is closed"

    stdio_patch, session_patch = patched_transport(
        fake_session(call_result=text_result("Symbol not found", is_error=True))
    )
    with stdio_patch, session_patch:
        with pytest.raises(ToolExecutionError) as exc:
            await backend.call_tool("get_equity_details", {"symbol": "XYZ"})
    assert exc.value.message == "Symbol not found"


@pytest.mark.asyncio
async def test_unreachable_server_registers_nothing() -> None:
    @asynccontextmanager
    async def failing_stdio_client(params):
        raise OSError("spawn failed")
        yield

    registry = ToolRegistry()
    with patch(f"{MODULE}.stdio_client", failing_stdio_client):
        count = await register_mcp_tools(registry, McpToolBackend("nse_market", "node server.js"))
    assert count == 0
    assert registry.names() == []


@pytest.mark.asyncio
async def test_protocol_error_becomes_tool_error() -> None:
    session = fake_session()
    session.call_tool = AsyncMock(
        side_effect=McpError(ErrorData(code=-32602, message="Unknown tool"))
    )
    registry = ToolRegistry()
    backend = McpToolBackend("nse_market", "node server.js")
    registry.register_function(
        "get_glossary", "Glossary", lambda args: backend.call_tool("get_glossary", {})
    )
    stdio_patch, session_patch = patched_transport(session)

    with stdio_patch, session_patch:
        outcome = await registry.execute("get_glossary", "{}")

    assert outcome.error == "MCP error: Unknown tool"


@pytest.mark.asyncio
async def test_crashed_server_becomes_tool_error() -> None:
    @asynccontextmanager
    async def crashing_stdio_client(params):
        raise ExceptionGroup("task group failed", [BrokenPipeError("server exited")])
        yield

    backend = McpToolBackend("nse_market", "node server.js")
    with patch(f"{MODULE}.stdio_client", crashing_stdio_client):
        with pytest.raises(ToolExecutionError) as exc:
            await backend.call_tool("get_market_status", {})
    assert "server exited" in exc.value.message
