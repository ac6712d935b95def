from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, get_args

Role = Literal["user", "assistant", "system", "tool"]
AnalysisStyle = Literal["brief", "detailed", "technical"]
ANALYSIS_STYLES = get_args(AnalysisStyle)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value: Any) -> datetime:
    if isinstance(value, datetime):
        return value
    if not value:
        return utcnow()
    parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass
class Message:
    """One conversation turn fragment."""

    role: Role
    content: str
    timestamp: datetime = field(default_factory=utcnow)
    tools_used: List[str] | None = None
    metadata: Dict[str, Any] | None = None

    @property
    def is_summary(self) -> bool:
        return bool(self.metadata and self.metadata.get("is_summary"))

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.tools_used is not None:
            data["tools_used"] = list(self.tools_used)
        if self.metadata is not None:
            data["metadata"] = self.metadata
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Message":
        return cls(
            role=data["role"],
            content=data.get("content") or "",
            timestamp=_parse_time(data.get("timestamp")),
            tools_used=data.get("tools_used"),
            metadata=data.get("metadata"),
        )


@dataclass
class UserPreferences:
    """Per-session preferences; merged field by field, never replaced."""

    preferred_entities: List[str] = field(default_factory=list)
    preferred_categories: List[str] = field(default_factory=list)
    analysis_style: AnalysisStyle = "detailed"
    language: str = "en"
    timezone: str = "Asia/Kolkata"
    price_alerts: bool = False
    market_updates: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UserPreferences":
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass
class ContextSummary:
    """Structured digest of an archived conversation prefix."""

    summary_text: str
    key_points: List[str] = field(default_factory=list)
    important_entities: List[str] = field(default_factory=list)
    inferred_preferences: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)
    original_message_count: int = 0

    def render(self) -> str:
        """Text placed into the synthetic system message."""
        lines = [f"[CONTEXT SUMMARY] {self.summary_text}"]
        if self.key_points:
            lines.append(f"Key Points: {', '.join(self.key_points)}")
        if self.important_entities:
            lines.append(f"Important Entities: {', '.join(self.important_entities)}")
        if self.inferred_preferences:
            prefs = ", ".join(f"{k}={v}" for k, v in self.inferred_preferences.items())
            lines.append(f"User Preferences: {prefs}")
        return "\n".join(lines)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContextSummary":
        return cls(
            summary_text=data.get("summary_text", ""),
            key_points=list(data.get("key_points", [])),
            important_entities=list(data.get("important_entities", [])),
            inferred_preferences=dict(data.get("inferred_preferences", {})),
            timestamp=_parse_time(data.get("timestamp")),
            original_message_count=int(data.get("original_message_count", 0)),
        )


@dataclass
class SummarizationRecord:
    """Audit entry written every time history is compacted."""

    messages_before: int
    messages_after: int
    tokens_saved: int
    trigger_reason: str
    archived_original_messages: List[Message] = field(default_factory=list)
    summary: ContextSummary | None = None
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self, include_archive: bool = True) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "timestamp": self.timestamp.isoformat(),
            "messages_before": self.messages_before,
            "messages_after": self.messages_after,
            "tokens_saved": self.tokens_saved,
            "trigger_reason": self.trigger_reason,
            "summary": self.summary.to_dict() if self.summary else None,
        }
        if include_archive:
            data["archived_original_messages"] = [
                m.to_dict() for m in self.archived_original_messages
            ]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SummarizationRecord":
        summary = data.get("summary")
        return cls(
            messages_before=int(data.get("messages_before", 0)),
            messages_after=int(data.get("messages_after", 0)),
            tokens_saved=int(data.get("tokens_saved", 0)),
            trigger_reason=data.get("trigger_reason", ""),
            archived_original_messages=[
                Message.from_dict(m) for m in data.get("archived_original_messages", [])
            ],
            summary=ContextSummary.from_dict(summary) if summary else None,
            timestamp=_parse_time(data.get("timestamp")),
        )


@dataclass
class ContextData:
    """Usage statistics derived from a session's turns."""

    recent_queries: List[str] = field(default_factory=list)
    tool_use_count: Dict[str, int] = field(default_factory=dict)
    entity_access_count: Dict[str, int] = field(default_factory=dict)
    summarization_history: List[SummarizationRecord] = field(default_factory=list)
    last_summarization: SummarizationRecord | None = None

    def top_entities(self, limit: int = 5) -> List[str]:
        ranked = sorted(
            self.entity_access_count.items(), key=lambda item: (-item[1], item[0])
        )
        return [name for name, _ in ranked[:limit]]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recent_queries": list(self.recent_queries),
            "tool_use_count": dict(self.tool_use_count),
            "entity_access_count": dict(self.entity_access_count),
            "summarization_history": [r.to_dict() for r in self.summarization_history],
            "last_summarization": (
                self.last_summarization.to_dict() if self.last_summarization else None
            ),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContextData":
        last = data.get("last_summarization")
        return cls(
            recent_queries=list(data.get("recent_queries", [])),
            tool_use_count={k: int(v) for k, v in data.get("tool_use_count", {}).items()},
            entity_access_count={
                k: int(v) for k, v in data.get("entity_access_count", {}).items()
            },
            summarization_history=[
                SummarizationRecord.from_dict(r)
                for r in data.get("summarization_history", [])
            ],
            last_summarization=SummarizationRecord.from_dict(last) if last else None,
        )


@dataclass
class Session:
    """Per-session conversation state (history, preferences, statistics)."""

    session_id: str
    user_id: str | None = None
    start_time: datetime = field(default_factory=utcnow)
    last_activity: datetime = field(default_factory=utcnow)
    conversation_history: List[Message] = field(default_factory=list)
    preferences: UserPreferences = field(default_factory=UserPreferences)
    stats: ContextData = field(default_factory=ContextData)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "start_time": self.start_time.isoformat(),
            "last_activity": self.last_activity.isoformat(),
            "conversation_history": [m.to_dict() for m in self.conversation_history],
            "preferences": self.preferences.to_dict(),
            "stats": self.stats.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        return cls(
            session_id=data["session_id"],
            user_id=data.get("user_id"),
            start_time=_parse_time(data.get("start_time")),
            last_activity=_parse_time(data.get("last_activity")),
            conversation_history=[
                Message.from_dict(m) for m in data.get("conversation_history", [])
            ],
            preferences=UserPreferences.from_dict(data.get("preferences", {})),
            stats=ContextData.from_dict(data.get("stats", {})),
        )


@dataclass
class TokenCount:
    total: int
    message_tokens: List[int] = field(default_factory=list)
    system_prompt_tokens: int = 0
    reserved_tokens: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class IterationRecord:
    """What one loop iteration did; lives only as long as the response."""

    iteration_index: int
    tools_called: List[str]
    inferred_purpose: str
    tool_arguments: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Compaction:
    """A prefix replacement produced by the context window manager.

    `archived_messages` is the prefix being replaced; the store only applies
    the compaction while that prefix is still the head of the history.
    """

    archived_messages: List[Message]
    summary_message: Message
    record: SummarizationRecord

    @property
    def archived_count(self) -> int:
        return len(self.archived_messages)
