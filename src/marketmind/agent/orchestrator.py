import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

from ..entities import extract_symbols
from ..errors import GatewayError, IterationExhausted, MarketMindError, QueryTimeout
from ..models import ContextSummary, IterationRecord, Message, Session, utcnow
from ..services.context_window import ContextWindowConfig, ContextWindowManager, OptimizedContext
from ..services.gateway import CompletionParams, GatewayReply, LanguageModelGateway
from ..services.session_store import SessionStore
from ..settings import Settings, get_settings
from .continuation import (
    ContinuationContext,
    ContinuationPolicy,
    MarketContinuationPolicy,
    infer_iteration_purpose,
)
from .preferences import infer_preference_changes, preference_digest
from .tools import ToolOutcome, ToolRegistry

logger = logging.getLogger(__name__)


@dataclass
class QueryOptions:
    max_iterations: int = 5
    use_memory: bool = True
    include_context: bool = True
    update_preferences: bool = True
    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    timeout_seconds: float | None = None


@dataclass
class QueryResult:
    response: str
    tools_used: List[str]
    iterations_used: int
    iteration_details: List[IterationRecord] = field(default_factory=list)
    session_metadata: Dict[str, Any] | None = None
    timestamp: str = field(default_factory=lambda: utcnow().isoformat())

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "response": self.response,
            "tools_used": self.tools_used,
            "iterations_used": self.iterations_used,
            "iteration_details": [d.to_dict() for d in self.iteration_details],
            "timestamp": self.timestamp,
        }
        if self.session_metadata is not None:
            data["session_metadata"] = self.session_metadata
        return data


@dataclass
class _QueryProgress:
    """How far a query got; read when it fails."""

    iterations: int = 0
    tools: List[str] = field(default_factory=list)
    # set once the answer exists and its turn is being committed
    result: "QueryResult | None" = None
    commit: "asyncio.Future[Session] | None" = None
    optimized: OptimizedContext | None = None


class MarketQueryOrchestrator:
    """Answers market questions by alternating model decisions and tool calls.

    Session state is only touched through the injected SessionStore, and a
    query's messages are committed to it in one step once the answer is ready.
    """

    def __init__(
        self,
        gateway: LanguageModelGateway,
        tools: ToolRegistry,
        store: SessionStore | None,
        context_manager: ContextWindowManager | None = None,
        *,
        policy: ContinuationPolicy | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._gateway = gateway
        self._tools = tools
        self._store = store
        self._context = context_manager or ContextWindowManager(
            gateway, ContextWindowConfig.from_settings(self._settings)
        )
        self._policy = policy or MarketContinuationPolicy()

    @property
    def memory_enabled(self) -> bool:
        return self._store is not None

    @property
    def store(self) -> SessionStore | None:
        return self._store

    def _require_store(self) -> SessionStore:
        if self._store is None:
            raise MarketMindError("Memory is not enabled for this orchestrator")
        return self._store

    def default_options(self) -> QueryOptions:
        return QueryOptions(max_iterations=self._settings.max_iterations)

    # -- prompts -----------------------------------------------------------

    def base_system_prompt(self) -> str:
        return self._settings.agent_system_prompt

    def contextual_system_prompt(self, session: Session) -> str:
        digest = preference_digest(
            session.preferences,
            session.stats.top_entities(),
            session.stats.recent_queries,
        )
        return (
            f"{self.base_system_prompt()}\n\nUser Context:\n{digest}\n\n"
            "Use this context to provide personalized responses and remember "
            "user preferences."
        )

    @staticmethod
    def _history_to_openai(history: List[Message]) -> List[Dict[str, Any]]:
        # tool messages are replayed only within the query that produced them
        return [
            {"role": m.role, "content": m.content}
            for m in history
            if m.role in ("user", "assistant", "system") and m.content
        ]

    # -- query loop --------------------------------------------------------

    async def process_query(
        self,
        query: str,
        session_id: str | None = None,
        user_id: str | None = None,
        options: QueryOptions | None = None,
    ) -> QueryResult:
        """Answer one query, running at most `options.max_iterations` decision calls.

        Raises GatewayError, IterationExhausted or QueryTimeout; each carries
        the iterations and tools attempted before the failure. Session history
        is left untouched when any of them is raised. A deadline that expires
        while the finished turn is being committed does not raise: the commit
        completes and its result is returned.
        """
        options = options or self.default_options()
        progress = _QueryProgress()
        run = self._run(query, session_id, user_id, options, progress)
        if not options.timeout_seconds:
            return await run
        try:
            return await asyncio.wait_for(run, options.timeout_seconds)
        except asyncio.TimeoutError as e:
            if progress.commit is not None:
                # the deadline hit while the finished turn was being committed
                session = await progress.commit
                logger.warning(
                    "Query deadline passed during commit; returning the committed answer"
                )
                progress.result.session_metadata = self._session_metadata(
                    session, options, progress.optimized, preferences_updated=False
                )
                return progress.result
            logger.warning(
                "Query timed out after %ss (iteration %d)",
                options.timeout_seconds,
                progress.iterations,
            )
            raise QueryTimeout(
                f"Query did not finish within {options.timeout_seconds}s",
                iterations_attempted=progress.iterations,
                tools_attempted=progress.tools,
            ) from e

    async def _decide(
        self,
        messages: List[Dict[str, Any]],
        tools: List[Dict[str, Any]] | None,
        params: CompletionParams,
        progress: _QueryProgress,
    ) -> GatewayReply:
        try:
            return await self._gateway.complete(messages, tools, params)
        except GatewayError as e:
            e.iterations_attempted = progress.iterations
            e.tools_attempted = list(progress.tools)
            raise

    async def _run(
        self,
        query: str,
        session_id: str | None,
        user_id: str | None,
        options: QueryOptions,
        progress: _QueryProgress,
    ) -> QueryResult:
        use_memory = bool(options.use_memory and self._store is not None and session_id)
        user_message = Message(role="user", content=query)
        optimized: OptimizedContext | None = None
        history: List[Message] = []
        system_prompt = self.base_system_prompt()

        if use_memory:
            session = await self._store.get_or_create(session_id, user_id)
            if options.include_context:
                system_prompt = self.contextual_system_prompt(session)
                optimized = await self._context.get_optimal_context(
                    [*session.conversation_history, user_message], system_prompt
                )
                # the staged user message is always the last one kept
                history = optimized.messages[:-1]

        messages: List[Dict[str, Any]] = [{"role": "system", "content": system_prompt}]
        messages.extend(self._history_to_openai(history))
        messages.append({"role": "user", "content": query})

        params = CompletionParams(
            model=options.model or self._settings.model,
            temperature=(
                options.temperature
                if options.temperature is not None
                else self._settings.temperature
            ),
            max_tokens=options.max_tokens or self._settings.max_tokens,
        )
        catalog = self._tools.catalog() or None
        turn: List[Message] = [user_message]
        tools_used: List[str] = []
        details: List[IterationRecord] = []

        iteration = 0
        while iteration < options.max_iterations:
            iteration += 1
            progress.iterations = iteration
            logger.debug("Iteration %d/%d", iteration, options.max_iterations)
            reply = await self._decide(messages, catalog, params, progress)

            if not reply.wants_tools:
                return await self._finish(
                    reply.content or "Unable to process query",
                    query, session_id, user_id, options, use_memory,
                    turn, tools_used, details, iteration, optimized, params, progress,
                )

            names = [tc.name for tc in reply.tool_calls]
            logger.info("Iteration %d: calling %d tools: %s", iteration, len(names), ", ".join(names))
            messages.append(
                {
                    "role": "assistant",
                    "content": reply.content,
                    "tool_calls": [tc.to_openai() for tc in reply.tool_calls],
                }
            )
            progress.tools.extend(names)
            outcomes = await self._tools.execute_many(
                [(tc.name, tc.arguments, tc.id) for tc in reply.tool_calls]
            )
            for tc, outcome in zip(reply.tool_calls, outcomes):
                payload = json.dumps(outcome.payload(), default=str)
                messages.append({"role": "tool", "tool_call_id": tc.id, "content": payload})
                turn.append(
                    Message(
                        role="tool",
                        content=payload,
                        metadata={
                            "tool_call_id": tc.id,
                            "tool_name": tc.name,
                            "is_error": not outcome.ok,
                        },
                    )
                )
                if tc.name not in tools_used:
                    tools_used.append(tc.name)

            details.append(
                IterationRecord(
                    iteration_index=iteration,
                    tools_called=names,
                    inferred_purpose=infer_iteration_purpose(names, iteration),
                    tool_arguments=[
                        self._describe_arguments(tc.arguments, outcome)
                        for tc, outcome in zip(reply.tool_calls, outcomes)
                    ],
                )
            )

            decision = self._policy.decide(
                ContinuationContext(
                    iteration=iteration,
                    max_iterations=options.max_iterations,
                    query=query,
                    tools_used=list(progress.tools),
                    assistant_text=reply.content,
                )
            )
            # the last iteration always goes to synthesis, whatever the policy says
            if decision.continue_iterating and iteration < options.max_iterations - 1:
                if decision.instruction:
                    messages.append({"role": "system", "content": decision.instruction})
                continue

            messages.append({"role": "system", "content": self._settings.final_synthesis_prompt})
            synthesis = await self._decide(messages, None, params, progress)
            return await self._finish(
                synthesis.content or "Unable to generate final response",
                query, session_id, user_id, options, use_memory,
                turn, tools_used, details, min(iteration + 1, options.max_iterations),
                optimized, params, progress,
            )

        raise IterationExhausted(
            options.max_iterations,
            iterations_attempted=iteration,
            tools_attempted=progress.tools,
        )

    @staticmethod
    def _describe_arguments(raw: str, outcome: ToolOutcome) -> Dict[str, Any]:
        if outcome.arguments is not None:
            return {"tool_name": outcome.name, "parameters": outcome.arguments}
        return {
            "tool_name": outcome.name,
            "parameters": {"raw_arguments": raw, "parse_error": outcome.error},
        }

    async def _finish(
        self,
        response: str,
        query: str,
        session_id: str | None,
        user_id: str | None,
        options: QueryOptions,
        use_memory: bool,
        turn: List[Message],
        tools_used: List[str],
        details: List[IterationRecord],
        iterations_used: int,
        optimized: OptimizedContext | None,
        params: CompletionParams,
        progress: _QueryProgress,
    ) -> QueryResult:
        result = QueryResult(
            response=response,
            tools_used=list(tools_used),
            iterations_used=iterations_used,
            iteration_details=details,
        )
        if not use_memory:
            return result

        turn.append(
            Message(
                role="assistant",
                content=response,
                tools_used=list(tools_used),
                metadata={
                    "model": params.model,
                    "temperature": params.temperature,
                    "max_tokens": params.max_tokens,
                    "iterations_used": iterations_used,
                },
            )
        )
        # shielded so a caller timeout cannot interrupt the commit halfway;
        # process_query picks the result up from progress if that happens
        progress.result = result
        progress.optimized = optimized
        progress.commit = asyncio.ensure_future(
            self._store.commit_turn(
                session_id,
                turn,
                entities=extract_symbols(query),
                compaction=optimized.compaction if optimized else None,
                user_id=user_id,
            )
        )
        session = await asyncio.shield(progress.commit)

        preferences_updated = False
        if options.update_preferences:
            changes = infer_preference_changes(session.preferences, query, tools_used)
            if changes:
                await self._store.update_preferences(session_id, changes)
                preferences_updated = True

        result.session_metadata = self._session_metadata(
            session, options, optimized, preferences_updated
        )
        return result

    @staticmethod
    def _session_metadata(
        session: Session,
        options: QueryOptions,
        optimized: OptimizedContext | None,
        preferences_updated: bool,
    ) -> Dict[str, Any]:
        return {
            "session_id": session.session_id,
            "context_used": options.include_context,
            "preferences_updated": preferences_updated,
            "conversation_length": len(session.conversation_history),
            "context_summarized": bool(optimized and optimized.was_summarized),
            "context_summary": (
                optimized.summary.to_dict() if optimized and optimized.summary else None
            ),
            "token_count": optimized.token_count.to_dict() if optimized else None,
        }

    # -- session API -------------------------------------------------------

    def get_session_info(self, session_id: str) -> Dict[str, Any] | None:
        return self._require_store().session_stats(session_id)

    def get_conversation_history(
        self, session_id: str, max_messages: int | None = None
    ) -> List[Message]:
        return self._require_store().get_history(session_id, max_messages)

    async def export_session(self, session_id: str) -> Dict[str, Any] | None:
        return await self._require_store().export_session(session_id)

    async def clear_session(self, session_id: str) -> bool:
        return await self._require_store().clear_session(session_id)

    async def cleanup_expired_sessions(self) -> List[str]:
        return await self._require_store().cleanup_expired()

    def needs_summarization(self, session_id: str) -> bool:
        session = self._require_store().get_session(session_id)
        if session is None:
            return False
        return self._context.needs_summarization(
            session.conversation_history, self.contextual_system_prompt(session)
        )

    def get_context_stats(self, session_id: str) -> Dict[str, Any]:
        session = self._require_store().get_session(session_id)
        if session is None:
            return {
                "message_count": 0,
                "token_count": {"total": 0},
                "needs_summarization": False,
                "context_window_usage": 0.0,
            }
        prompt = self.contextual_system_prompt(session)
        tokens = self._context.count_tokens(session.conversation_history, prompt)
        max_tokens = self._context.get_config().max_tokens
        return {
            "message_count": len(session.conversation_history),
            "token_count": tokens.to_dict(),
            "needs_summarization": self._context.needs_summarization(
                session.conversation_history, prompt
            ),
            "context_window_usage": tokens.total / max_tokens * 100,
        }

    async def force_summarization(self, session_id: str) -> ContextSummary | None:
        """Compact the session's history now, ignoring the trigger thresholds."""
        store = self._require_store()
        session = store.get_session(session_id)
        if session is None:
            return None
        optimized = await self._context.compact(
            list(session.conversation_history),
            self.contextual_system_prompt(session),
            reason="Forced summarization",
        )
        if optimized.compaction is None:
            return None
        if not await store.apply_compaction(session_id, optimized.compaction):
            return None
        return optimized.summary

    def get_context_window_config(self) -> ContextWindowConfig:
        return self._context.get_config()

    def update_context_window_config(self, **changes: Any) -> ContextWindowConfig:
        return self._context.update_config(**changes)

    def get_last_summarization(self, session_id: str):
        return self._require_store().get_last_summarization(session_id)

    def get_summarization_history(self, session_id: str, limit: int | None = None):
        return self._require_store().get_summarization_history(session_id, limit)

    def get_summarization_overview(self, session_id: str) -> Dict[str, Any] | None:
        return self._require_store().summarization_overview(session_id)

    def list_tools(self) -> List[Dict[str, Any]]:
        return self._tools.describe()
