from __future__ import annotations

"""Agent package for the MarketMind market-data assistant.

This package exposes the query orchestrator while keeping the tool registry,
MCP wiring, continuation policy and preference inference in separate modules.
"""

from .continuation import ContinuationPolicy, MarketContinuationPolicy
from .orchestrator import MarketQueryOrchestrator, QueryOptions, QueryResult
from .tools import Tool, ToolOutcome, ToolRegistry

__all__ = [
    "ContinuationPolicy",
    "MarketContinuationPolicy",
    "MarketQueryOrchestrator",
    "QueryOptions",
    "QueryResult",
    "Tool",
    "ToolOutcome",
    "ToolRegistry",
]
