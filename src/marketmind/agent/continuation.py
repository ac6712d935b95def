"""When to run another tool-calling iteration and when to synthesize.

The loop asks a ContinuationPolicy after every tool-calling iteration. The
loop itself still enforces the iteration bound, so a policy can only ask for
more work, never for more iterations than allowed.
"""

from dataclasses import dataclass, field
from typing import List, Protocol, Sequence

TECHNICAL_INDICATOR_TOOL = "get_equity_technical_indicators"

UNFINISHED_WORK_PHRASES = (
    "i need to",
    "let me analyze",
    "i should get",
    "need more information",
    "let me check",
    "i will analyze",
    "let me gather",
    "additional data needed",
)

ANALYSIS_CUES = ("invest", "recommend", "technical", "analysis", "indicators")

PURPOSE_BY_TOOL = (
    ("get_equity_stock_indices", "Getting index composition data"),
    (TECHNICAL_INDICATOR_TOOL, "Analyzing technical indicators"),
    ("get_equity_details", "Gathering stock details and trade information"),
    ("get_equity_trade_info", "Gathering stock details and trade information"),
    ("get_market_status", "Checking market status"),
    ("get_all_stock_symbols", "Getting available stock symbols"),
)


def infer_iteration_purpose(tools: Sequence[str], iteration: int) -> str:
    """Human-readable label for what an iteration's tool calls were for."""
    for tool_name, purpose in PURPOSE_BY_TOOL:
        if tool_name in tools:
            return purpose
    return f"Data collection (iteration {iteration})"


@dataclass
class ContinuationContext:
    iteration: int
    max_iterations: int
    query: str
    tools_used: List[str] = field(default_factory=list)
    assistant_text: str | None = None

    @property
    def is_last_decision(self) -> bool:
        return self.iteration >= self.max_iterations - 1


@dataclass
class ContinuationDecision:
    continue_iterating: bool
    instruction: str | None = None


class ContinuationPolicy(Protocol):
    def decide(self, ctx: ContinuationContext) -> ContinuationDecision: ...


class StopAfterToolsPolicy:
    """Synthesize as soon as one round of tools has run."""

    def decide(self, ctx: ContinuationContext) -> ContinuationDecision:
        return ContinuationDecision(False)


class MarketContinuationPolicy:
    """Keyword heuristics tuned for market research questions."""

    def __init__(self, technical_tool: str = TECHNICAL_INDICATOR_TOOL) -> None:
        self.technical_tool = technical_tool

    def should_continue(self, ctx: ContinuationContext) -> bool:
        if ctx.is_last_decision:
            return False

        query = ctx.query.lower()
        wants_invest = "invest" in query
        if (
            "technical indicators" in query
            and wants_invest
            and self.technical_tool not in ctx.tools_used
            and ctx.iteration <= 3
        ):
            return True
        if "nifty" in query and wants_invest and ctx.iteration <= 2:
            return True

        content = (ctx.assistant_text or "").lower()
        if any(cue in content for cue in ANALYSIS_CUES) and ctx.iteration <= 2:
            return True
        return any(phrase in content for phrase in UNFINISHED_WORK_PHRASES)

    def instruction(self, ctx: ContinuationContext) -> str:
        query = ctx.query.lower()
        text = f"You now have additional data from iteration {ctx.iteration}. "
        if "technical indicators" in query and self.technical_tool not in ctx.tools_used:
            return text + (
                "IMPORTANT: The user specifically asked about technical indicators "
                f"for investment decisions. You MUST call {self.technical_tool} for "
                "several promising stocks from the data you received. Do not provide "
                "investment recommendations without actual technical analysis data."
            )
        if "invest" in query and ctx.iteration <= 2:
            return text + (
                "The user is asking for investment recommendations. You need to "
                f"analyze the data more deeply by calling {self.technical_tool} or "
                "get_equity_details for specific stocks to make informed recommendations."
            )
        if "nifty" in query and "invest" in query:
            return text + (
                "You have NIFTY stock data. Now you need to select promising stocks "
                f"and get their technical indicators by calling {self.technical_tool} "
                "for informed investment recommendations."
            )
        return text + (
            "If you need more specific information to provide a comprehensive "
            "answer, call the appropriate tools. If you have sufficient data, "
            "provide your final analysis."
        )

    def decide(self, ctx: ContinuationContext) -> ContinuationDecision:
        if not self.should_continue(ctx):
            return ContinuationDecision(False)
        return ContinuationDecision(True, self.instruction(ctx))
