import copy
import sys
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, List

import pytest

_root = Path(__file__).resolve().parents[1]
_src = _root / "src"
if _src.exists() and str(_src) not in sys.path:
    sys.path.insert(0, str(_src))

from marketmind.services.gateway import GatewayReply, ToolCallRequest  # noqa: E402
from marketmind.services.session_store import SessionStore  # noqa: E402
from marketmind.services.storage import InMemoryStorage  # noqa: E402


class ScriptedGateway:
    """Gateway double that replays canned replies and records every call."""

    def __init__(self, replies: List[Any] | None = None, default: Any = None) -> None:
        self.replies = list(replies or [])
        self.default = default
        self.calls: List[Dict[str, Any]] = []

    async def complete(self, messages, tools, params) -> GatewayReply:
        self.calls.append(
            {"messages": copy.deepcopy(list(messages)), "tools": tools, "params": params}
        )
        reply = self.replies.pop(0) if self.replies else self.default
        if reply is None:
            raise AssertionError("ScriptedGateway ran out of replies")
        if isinstance(reply, Exception):
            raise reply
        return reply

    @property
    def decision_calls(self) -> List[Dict[str, Any]]:
        return [c for c in self.calls if c["tools"]]

    @property
    def synthesis_calls(self) -> List[Dict[str, Any]]:
        return [c for c in self.calls if not c["tools"]]


def text_reply(content: str) -> GatewayReply:
    return GatewayReply(content=content)


def tool_reply(*calls: tuple, content: str | None = None) -> GatewayReply:
    """Build a reply requesting tools; each call is (name, arguments_json)."""
    return GatewayReply(
        content=content,
        tool_calls=[
            ToolCallRequest(id=f"call_{i}_{name}", name=name, arguments=args)
            for i, (name, args) in enumerate(calls)
        ],
    )


@pytest.fixture
def storage() -> InMemoryStorage:
    return InMemoryStorage()


@pytest.fixture
def store(storage: InMemoryStorage) -> SessionStore:
    return SessionStore(
        storage,
        max_conversation_history=50,
        max_recent_queries=20,
        session_timeout=timedelta(minutes=30),
    )
