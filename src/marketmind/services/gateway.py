import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Protocol, Sequence

import openai
from openai import AsyncOpenAI

from ..errors import GatewayError
from ..settings import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass
class ToolCallRequest:
    """One tool invocation requested by the model."""

    id: str
    name: str
    arguments: str = ""

    def to_openai(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass
class GatewayReply:
    content: str | None = None
    tool_calls: List[ToolCallRequest] = field(default_factory=list)

    @property
    def wants_tools(self) -> bool:
        return bool(self.tool_calls)


@dataclass
class CompletionParams:
    model: str
    temperature: float = 0.7
    max_tokens: int | None = None


class LanguageModelGateway(Protocol):
    """Decides the next action (tool calls) or produces final text."""

    async def complete(
        self,
        messages: Sequence[Dict[str, Any]],
        tools: Sequence[Dict[str, Any]] | None,
        params: CompletionParams,
    ) -> GatewayReply: ...


class OpenAIGateway:
    """Chat-completions gateway backed by openai.AsyncOpenAI."""

    def __init__(self, client: AsyncOpenAI) -> None:
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "OpenAIGateway":
        settings = settings or get_settings()
        return cls(
            AsyncOpenAI(
                api_key=settings.openai_api_key,
                base_url=settings.openai_base_url,
                timeout=settings.request_timeout_seconds,
            )
        )

    async def complete(
        self,
        messages: Sequence[Dict[str, Any]],
        tools: Sequence[Dict[str, Any]] | None,
        params: CompletionParams,
    ) -> GatewayReply:
        """Send one chat completion request.

        With `tools` the model may answer with tool calls (decision call);
        without them it must answer in text (synthesis call).
        """
        request: Dict[str, Any] = {
            "model": params.model,
            "messages": list(messages),
            "temperature": params.temperature,
        }
        if params.max_tokens:
            request["max_tokens"] = params.max_tokens
        if tools:
            request["tools"] = list(tools)
            request["tool_choice"] = "auto"

        try:
            response = await self._client.chat.completions.create(**request)
        except (openai.OpenAIError, TimeoutError, ConnectionError) as e:
            logger.error("Chat completion failed: %s", e)
            raise GatewayError(f"Language model request failed: {e}") from e

        try:
            message = response.choices[0].message
        except (AttributeError, IndexError, TypeError) as e:
            logger.error("Chat completion returned no choices: %s", e)
            raise GatewayError("Language model returned no message") from e

        tool_calls = [
            ToolCallRequest(
                id=tc.id,
                name=tc.function.name,
                arguments=tc.function.arguments or "",
            )
            for tc in (message.tool_calls or [])
            if tc.function and tc.function.name
        ]
        return GatewayReply(content=message.content, tool_calls=tool_calls)
