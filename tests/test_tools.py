import json

import pytest

from marketmind.agent.market_tools import (
    HistoricalDataArgs,
    SymbolArgs,
    TechnicalIndicatorArgs,
    argument_model_for,
)
from marketmind.agent.tools import Tool, ToolRegistry
from marketmind.errors import ToolExecutionError


def build_registry() -> ToolRegistry:
    registry = ToolRegistry()

    async def equity_details(args: SymbolArgs):
        if args.symbol == "BROKEN":
            raise ConnectionError("upstream unavailable")
        return {"symbol": args.symbol, "lastPrice": 3500.5}

    def historical(args: HistoricalDataArgs):
        return {"symbol": args.symbol, "from": args.start_date, "rows": 3}

    registry.register_function(
        "get_equity_details", "Get details for a stock", equity_details, args_model=SymbolArgs
    )
    registry.register_function(
        "get_equity_historical_data", "Historical prices", historical, args_model=HistoricalDataArgs
    )
    registry.register_function(
        "get_equity_technical_indicators",
        "Technical indicators",
        lambda args: {"period": args.period},
        args_model=TechnicalIndicatorArgs,
    )
    registry.register_function("get_market_status", "Market status", lambda args: {"open": True})
    return registry


def test_catalog_uses_openai_function_format() -> None:
    registry = build_registry()
    catalog = registry.catalog()
    assert [t["function"]["name"] for t in catalog] == registry.names()
    first = catalog[0]
    assert first["type"] == "function"
    assert first["function"]["description"] == "Get details for a stock"
    assert first["function"]["parameters"]["required"] == ["symbol"]
    assert registry.describe()[3]["input_schema"]["type"] == "object"


def test_register_rejects_invalid_schema() -> None:
    registry = ToolRegistry()
    bad = Tool(
        name="bad",
        description="",
        input_schema={"type": "not-a-type"},
        handler=lambda args: None,
    )
    with pytest.raises(ValueError):
        registry.register(bad)
    assert registry.get("bad") is None


def test_decode_arguments_into_typed_model() -> None:
    registry = build_registry()
    args = registry.decode_arguments("get_equity_historical_data", '{"symbol": "TCS"}')
    assert isinstance(args, HistoricalDataArgs)
    assert args.symbol == "TCS"
    assert args.start_date is None
    assert registry.decode_arguments("get_market_status", "") == {}


def test_decode_arguments_rejects_schema_violations() -> None:
    registry = build_registry()
    with pytest.raises(ToolExecutionError) as exc:
        registry.decode_arguments("get_equity_details", "{}")
    assert exc.value.message.startswith("invalid arguments")
    assert "symbol" in exc.value.message

    with pytest.raises(ToolExecutionError) as exc:
        registry.decode_arguments(
            "get_equity_technical_indicators", {"symbol": "TCS", "period": 0}
        )
    assert "period" in exc.value.message


@pytest.mark.asyncio
async def test_execute_success_with_async_handler() -> None:
    outcome = await build_registry().execute(
        "get_equity_details", '{"symbol": "TCS"}', call_id="c1"
    )
    assert outcome.ok
    assert outcome.call_id == "c1"
    assert outcome.arguments == {"symbol": "TCS"}
    assert outcome.payload() == {"symbol": "TCS", "lastPrice": 3500.5}


@pytest.mark.asyncio
async def test_execute_with_sync_handler() -> None:
    outcome = await build_registry().execute("get_market_status", None)
    assert outcome.payload() == {"open": True}


@pytest.mark.asyncio
async def test_execute_invalid_json_returns_error() -> None:
    outcome = await build_registry().execute("get_equity_details", "{symbol: TCS")
    assert not outcome.ok
    assert outcome.error.startswith("invalid arguments")
    assert outcome.payload() == {"error": outcome.error}


@pytest.mark.asyncio
async def test_execute_unknown_tool_returns_error() -> None:
    outcome = await build_registry().execute("get_weather", "{}")
    assert outcome.error == "Tool get_weather not found"


@pytest.mark.asyncio
async def test_execute_handler_failure_is_data() -> None:
    outcome = await build_registry().execute("get_equity_details", {"symbol": "BROKEN"})
    assert outcome.error == "upstream unavailable"


@pytest.mark.asyncio
async def test_execute_many_reports_every_call() -> None:
    """One failing call does not stop its siblings; order is preserved."""
    outcomes = await build_registry().execute_many(
        [
            ("get_equity_details", '{"symbol": "TCS"}', "a"),
            ("get_equity_details", '{"symbol": "BROKEN"}', "b"),
            ("get_equity_historical_data", '{"symbol": "INFY", "start_date": "2024-01-01"}', "c"),
        ]
    )
    assert [o.call_id for o in outcomes] == ["a", "b", "c"]
    assert [o.ok for o in outcomes] == [True, False, True]
    assert json.loads(json.dumps(outcomes[2].payload()))["from"] == "2024-01-01"


def test_argument_models_lookup() -> None:
    assert argument_model_for("get_equity_details") is SymbolArgs
    assert argument_model_for("unknown_tool") is None


class QuoteFeedError(Exception):
    pass


@pytest.mark.asyncio
async def test_unexpected_handler_exception_becomes_error_outcome() -> None:
    registry = build_registry()

    def glossary(args):
        raise QuoteFeedError("feed returned garbage")

    def broken_lookup(args):
        return args["missing"].upper()

    registry.register_function("get_glossary", "Glossary", glossary)
    registry.register_function("get_index_names", "Index names", lambda args: None.items())
    registry.register_function("get_trading_holidays", "Holidays", broken_lookup)

    outcomes = await registry.execute_many(
        [
            ("get_equity_details", '{"symbol": "TCS"}', "a"),
            ("get_glossary", "{}", "b"),
            ("get_index_names", "{}", "c"),
        ]
    )

    assert [o.ok for o in outcomes] == [True, False, False]
    assert outcomes[1].error == "QuoteFeedError: feed returned garbage"
    assert outcomes[2].error.startswith("AttributeError")
    holidays = await registry.execute("get_trading_holidays", "{}")
    assert holidays.error == "'missing'"
