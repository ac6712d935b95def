from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from marketmind.errors import GatewayError
from marketmind.services.gateway import CompletionParams, OpenAIGateway


def fake_client(response=None, error=None) -> MagicMock:
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=response, side_effect=error)
    return client


def completion(content=None, tool_calls=None) -> SimpleNamespace:
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    return SimpleNamespace(choices=[SimpleNamespace(message=message)])


def tool_call(call_id: str, name: str, arguments: str) -> SimpleNamespace:
    return SimpleNamespace(
        id=call_id, function=SimpleNamespace(name=name, arguments=arguments)
    )


@pytest.mark.asyncio
async def test_decision_call_passes_tools_and_parses_tool_calls() -> None:
    client = fake_client(
        completion(tool_calls=[tool_call("c1", "get_equity_details", '{"symbol": "TCS"}')])
    )
    gateway = OpenAIGateway(client)
    tools = [{"type": "function", "function": {"name": "get_equity_details"}}]

    reply = await gateway.complete(
        [{"role": "user", "content": "TCS?"}], tools, CompletionParams(model="m", max_tokens=100)
    )

    kwargs = client.chat.completions.create.await_args.kwargs
    assert kwargs["tools"] == tools
    assert kwargs["tool_choice"] == "auto"
    assert kwargs["max_tokens"] == 100
    assert reply.wants_tools
    assert reply.tool_calls[0].name == "get_equity_details"
    assert reply.tool_calls[0].to_openai()["function"]["arguments"] == '{"symbol": "TCS"}'


@pytest.mark.asyncio
async def test_synthesis_call_sends_no_tools() -> None:
    client = fake_client(completion(content="Final answer"))
    reply = await OpenAIGateway(client).complete(
        [{"role": "user", "content": "hi"}], None, CompletionParams(model="m")
    )
    kwargs = client.chat.completions.create.await_args.kwargs
    assert "tools" not in kwargs
    assert "tool_choice" not in kwargs
    assert "max_tokens" not in kwargs
    assert reply.content == "Final answer"
    assert not reply.wants_tools


@pytest.mark.asyncio
async def test_transport_failure_becomes_gateway_error() -> None:
    gateway = OpenAIGateway(fake_client(error=ConnectionError("reset by peer")))
    with pytest.raises(GatewayError) as exc:
        await gateway.complete([], None, CompletionParams(model="m"))
    assert "reset by peer" in str(exc.value)
    assert exc.value.to_dict()["type"] == "gateway_error"


@pytest.mark.asyncio
async def test_empty_choices_become_gateway_error() -> None:
    gateway = OpenAIGateway(fake_client(SimpleNamespace(choices=[])))
    with pytest.raises(GatewayError):
        await gateway.complete([], None, CompletionParams(model="m"))
