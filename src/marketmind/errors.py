"""Exception taxonomy shared by the orchestrator, memory and tool layers."""

from typing import Any, Dict, List


class MarketMindError(Exception):
    """Base class for every error raised by this package."""


class ToolExecutionError(MarketMindError):
    """A single tool call failed. Recovered locally and reported as data."""

    def __init__(self, tool_name: str, message: str) -> None:
        super().__init__(f"{tool_name}: {message}")
        self.tool_name = tool_name
        self.message = message

    def to_payload(self) -> Dict[str, Any]:
        return {"error": self.message}


class PersistenceError(MarketMindError):
    """A durable snapshot could not be read or written."""


class SummarizationFallback(MarketMindError):
    """The model's summary reply could not be parsed."""


class OrchestrationError(MarketMindError):
    """A query-level failure that unwinds the whole query.

    Carries how far the query got so callers can report it as one
    structured error.
    """

    kind = "orchestration_error"

    def __init__(
        self,
        message: str,
        *,
        iterations_attempted: int = 0,
        tools_attempted: List[str] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.iterations_attempted = iterations_attempted
        self.tools_attempted = list(tools_attempted or [])

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.kind,
            "message": self.message,
            "iterations_attempted": self.iterations_attempted,
            "tools_attempted": self.tools_attempted,
        }


class GatewayError(OrchestrationError):
    """The language-model call failed (transport or malformed reply)."""

    kind = "gateway_error"


class IterationExhausted(OrchestrationError):
    """The iteration bound was reached without a final answer."""

    kind = "iteration_exhausted"

    def __init__(self, max_iterations: int, **kwargs: Any) -> None:
        super().__init__(
            f"Query exceeded maximum iterations ({max_iterations}). "
            "Consider simplifying the query or increasing max_iterations.",
            **kwargs,
        )
        self.max_iterations = max_iterations

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["max_iterations"] = self.max_iterations
        return data


class QueryTimeout(OrchestrationError):
    """The caller's deadline expired before the query finished."""

    kind = "query_timeout"
