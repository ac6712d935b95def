import json
import logging
import math
import re
from collections import Counter
from dataclasses import asdict, dataclass, replace
from typing import Any, Dict, List, Sequence

from ..entities import extract_indices, extract_symbols
from ..errors import GatewayError, SummarizationFallback
from ..models import (
    Compaction,
    ContextSummary,
    Message,
    SummarizationRecord,
    TokenCount,
)
from ..settings import Settings, get_settings
from .gateway import CompletionParams, LanguageModelGateway

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$")
_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)


class TokenEstimator:
    """Length-based token estimate: about four characters per token.

    Deterministic and monotonic in the text length; swap in an exact
    tokenizer by overriding `estimate`.
    """

    chars_per_token = 4

    def estimate(self, text: str | None) -> int:
        if not text:
            return 0
        return math.ceil(len(text) / self.chars_per_token)

    def clip(self, text: str, max_tokens: int) -> str:
        """Longest prefix of text whose estimate is at most max_tokens."""
        if max_tokens <= 0:
            return ""
        return text[: max_tokens * self.chars_per_token]


@dataclass
class ContextWindowConfig:
    max_tokens: int = 8000
    reserved_tokens: int = 2000
    summarization_threshold: float = 0.6
    min_messages_to_summarize: int = 6
    tail_target_ratio: float = 0.4
    max_tail_messages: int = 10

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "ContextWindowConfig":
        settings = settings or get_settings()
        return cls(
            max_tokens=settings.context_max_tokens,
            reserved_tokens=settings.context_reserved_tokens,
            summarization_threshold=settings.context_summarization_threshold,
            min_messages_to_summarize=settings.context_min_messages_to_summarize,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class OptimizedContext:
    messages: List[Message]
    token_count: TokenCount
    was_summarized: bool = False
    summary: ContextSummary | None = None
    compaction: Compaction | None = None


SUMMARY_REQUEST_TEMPLATE = """Please create a concise summary of this conversation about Indian stock market data.
Focus on:

1. Key topics discussed
2. Important stock symbols and indices mentioned
3. User preferences and analysis style
4. Main queries and their outcomes

Conversation to summarize:
{conversation}

Format as JSON with these fields:
- summary: a brief summary (2-3 sentences)
- key_points: list of short strings
- important_entities: list of stock symbols and index names
- inferred_preferences: object of detected user preferences"""


def _as_str_list(value: Any) -> List[str]:
    if isinstance(value, list):
        return [str(v) for v in value if v is not None]
    if isinstance(value, str) and value:
        return [value]
    return []


def parse_summary_reply(text: str | None) -> Dict[str, Any]:
    """Pull the JSON object out of a summary reply.

    Tolerates code fences and prose around the object. Raises
    SummarizationFallback when no usable object is found.
    """
    cleaned = _FENCE_RE.sub("", (text or "").strip()).strip()
    match = _JSON_OBJECT_RE.search(cleaned)
    if not match:
        raise SummarizationFallback("summary reply contained no JSON object")
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise SummarizationFallback(f"summary reply is not valid JSON: {e}") from e
    if not isinstance(data, dict) or not data.get("summary"):
        raise SummarizationFallback("summary reply has no summary field")
    return data


class ContextWindowManager:
    """Keeps a conversation under the token budget by compacting old turns."""

    def __init__(
        self,
        gateway: LanguageModelGateway,
        config: ContextWindowConfig | None = None,
        *,
        estimator: TokenEstimator | None = None,
        summarizer_params: CompletionParams | None = None,
        summarizer_system_prompt: str | None = None,
    ) -> None:
        settings = get_settings()
        self._gateway = gateway
        self._config = config or ContextWindowConfig()
        self.estimator = estimator or TokenEstimator()
        self._summarizer_params = summarizer_params or CompletionParams(
            model=settings.summarizer_model,
            temperature=settings.summarizer_temperature,
            max_tokens=settings.summarizer_max_tokens,
        )
        self._summarizer_system_prompt = (
            summarizer_system_prompt or settings.summarize_context_system_prompt
        )

    def get_config(self) -> ContextWindowConfig:
        return replace(self._config)

    def update_config(self, **changes: Any) -> ContextWindowConfig:
        unknown = set(changes) - set(ContextWindowConfig.__dataclass_fields__)
        if unknown:
            raise ValueError(f"Unknown context window settings: {sorted(unknown)}")
        self._config = replace(self._config, **changes)
        logger.info("Context window config updated: %s", changes)
        return self.get_config()

    def count_tokens(self, messages: Sequence[Message], system_prompt: str) -> TokenCount:
        message_tokens = [self.estimator.estimate(m.content) for m in messages]
        system_tokens = self.estimator.estimate(system_prompt)
        reserved = self._config.reserved_tokens
        return TokenCount(
            total=system_tokens + sum(message_tokens) + reserved,
            message_tokens=message_tokens,
            system_prompt_tokens=system_tokens,
            reserved_tokens=reserved,
        )

    def threshold_tokens(self, max_tokens: int | None = None) -> float:
        return (max_tokens or self._config.max_tokens) * self._config.summarization_threshold

    def needs_summarization(
        self,
        messages: Sequence[Message],
        system_prompt: str,
        max_tokens: int | None = None,
    ) -> bool:
        if len(messages) < self._config.min_messages_to_summarize:
            return False
        total = self.count_tokens(messages, system_prompt).total
        return total > self.threshold_tokens(max_tokens)

    def _extractive_summary(self, messages: Sequence[Message]) -> ContextSummary:
        entity_counts: Counter[str] = Counter()
        queries: List[str] = []
        preferences: Dict[str, Any] = {}
        for message in messages:
            if message.role == "user" and message.content:
                queries.append(message.content)
                entity_counts.update(extract_symbols(message.content))
                entity_counts.update(extract_indices(message.content))
            if message.metadata and isinstance(message.metadata.get("preferences"), dict):
                preferences.update(message.metadata["preferences"])
        return ContextSummary(
            summary_text=(
                f"Conversation with {len(messages)} messages about Indian stock market data"
            ),
            key_points=queries[:5],
            important_entities=[name for name, _ in entity_counts.most_common(10)],
            inferred_preferences=preferences,
            original_message_count=len(messages),
        )

    async def create_context_summary(
        self, messages: Sequence[Message]
    ) -> tuple[ContextSummary, str | None]:
        """Summarize messages through the gateway.

        Returns the summary and, when the extractive fallback had to be used,
        the reason why.
        """
        conversation = "\n".join(
            f"{i}. [{m.role}]: {m.content}" for i, m in enumerate(messages, 1)
        )
        request = [
            {"role": "system", "content": self._summarizer_system_prompt},
            {
                "role": "user",
                "content": SUMMARY_REQUEST_TEMPLATE.format(conversation=conversation),
            },
        ]
        try:
            reply = await self._gateway.complete(request, None, self._summarizer_params)
            data = parse_summary_reply(reply.content)
        except (SummarizationFallback, GatewayError) as e:
            logger.warning("AI summarization failed, using fallback method: %s", e)
            return self._extractive_summary(messages), str(e)

        fallback = self._extractive_summary(messages)
        preferences = data.get("inferred_preferences")
        return (
            ContextSummary(
                summary_text=str(data["summary"]),
                key_points=_as_str_list(data.get("key_points")),
                important_entities=(
                    _as_str_list(data.get("important_entities"))
                    or fallback.important_entities
                ),
                inferred_preferences=(
                    preferences if isinstance(preferences, dict)
                    else fallback.inferred_preferences
                ),
                original_message_count=len(messages),
            ),
            None,
        )

    def _tail_size(
        self, messages: Sequence[Message], system_prompt: str, budget: int
    ) -> int:
        target = budget * self._config.tail_target_ratio
        count = min(self._config.max_tail_messages, len(messages) - 1)
        while count > 2:
            if self.count_tokens(messages[-count:], system_prompt).total <= target:
                break
            # drop one user/assistant pair at a time
            count -= 2
        if count < 2:
            count = min(2, len(messages))
        return count

    async def get_optimal_context(
        self,
        messages: Sequence[Message],
        system_prompt: str,
        max_tokens: int | None = None,
    ) -> OptimizedContext:
        """Return messages that fit the budget, compacting old turns if needed.

        Below the trigger this is a no-op that hands back the messages
        unchanged. Above it, the prefix before a recent tail is replaced by a
        single synthetic system message carrying a ContextSummary.
        """
        messages = list(messages)
        budget = max_tokens or self._config.max_tokens
        if not self.needs_summarization(messages, system_prompt, budget):
            return OptimizedContext(
                messages=messages, token_count=self.count_tokens(messages, system_prompt)
            )
        before = self.count_tokens(messages, system_prompt)
        reason = (
            f"Token threshold exceeded: {before.total} > "
            f"{self.threshold_tokens(budget):g}"
        )
        return await self.compact(messages, system_prompt, budget, reason)

    async def compact(
        self,
        messages: Sequence[Message],
        system_prompt: str,
        max_tokens: int | None = None,
        reason: str = "Forced summarization",
    ) -> OptimizedContext:
        """Replace everything before the recent tail with one summary message.

        Skips (was_summarized=False) when there is no prefix to archive, the
        prefix is too small for a summary to save tokens, or the tail alone
        already reaches the trigger threshold.
        """
        messages = list(messages)
        budget = max_tokens or self._config.max_tokens
        before = self.count_tokens(messages, system_prompt)
        if len(messages) < 2:
            return OptimizedContext(messages=messages, token_count=before)

        tail_count = self._tail_size(messages, system_prompt, budget)
        archived = messages[:-tail_count]
        tail = messages[-tail_count:]
        if not archived:
            return OptimizedContext(messages=messages, token_count=before)

        tail_total = self.count_tokens(tail, system_prompt).total
        archived_tokens = sum(before.message_tokens[: len(archived)])
        headroom = math.floor(self.threshold_tokens(budget)) - tail_total
        allowance = min(archived_tokens - 1, headroom)
        if allowance < 1:
            logger.info(
                "Nothing to gain from compaction (archived %d tokens, headroom %d)",
                archived_tokens,
                headroom,
            )
            return OptimizedContext(messages=messages, token_count=before)

        summary, fallback_reason = await self.create_context_summary(archived)
        summary_message = Message(
            role="system",
            content=self.estimator.clip(summary.render(), allowance),
            timestamp=archived[-1].timestamp,
            metadata={
                "is_summary": True,
                "original_message_count": len(archived),
                "summary": summary.to_dict(),
            },
        )
        compacted = [summary_message, *tail]
        after = self.count_tokens(compacted, system_prompt)

        if fallback_reason:
            reason += f"; fallback summary used ({fallback_reason})"
        record = SummarizationRecord(
            messages_before=len(messages),
            messages_after=len(compacted),
            tokens_saved=before.total - after.total,
            trigger_reason=reason,
            archived_original_messages=archived,
            summary=summary,
        )
        logger.info(
            "Compacted %d messages into a summary (%d -> %d tokens)",
            len(archived),
            before.total,
            after.total,
        )
        return OptimizedContext(
            messages=compacted,
            token_count=after,
            was_summarized=True,
            summary=summary,
            compaction=Compaction(
                archived_messages=archived,
                summary_message=summary_message,
                record=record,
            ),
        )
