"""Argument models for the NSE market-data tools, keyed by tool name.

The MCP server advertises JSON schemas; these models are what the registry
decodes validated arguments into before a handler sees them.
"""

from typing import Dict, List, Literal, Type

from pydantic import BaseModel, Field


class NoArgs(BaseModel):
    pass


class SymbolArgs(BaseModel):
    symbol: str = Field(description="Stock symbol (e.g., TCS, RELIANCE)")


class HistoricalDataArgs(BaseModel):
    symbol: str = Field(description="Stock symbol (e.g., TCS, RELIANCE)")
    start_date: str | None = Field(default=None, description="Start date (YYYY-MM-DD)")
    end_date: str | None = Field(default=None, description="End date (YYYY-MM-DD)")


class IndexArgs(BaseModel):
    index: str = Field(description="Index name (e.g., NIFTY 50, NIFTY BANK)")


class OptionChainArgs(BaseModel):
    index_symbol: str = Field(description="Index symbol (e.g., NIFTY, BANKNIFTY)")


class TechnicalIndicatorArgs(BaseModel):
    symbol: str = Field(description="Stock symbol (e.g., TCS, RELIANCE)")
    period: int = Field(default=200, ge=1, description="Days of history to analyse")
    sma_periods: List[int] | None = None
    ema_periods: List[int] | None = None
    rsi_period: int | None = None
    show_only_latest: bool = True


class GainersLosersArgs(BaseModel):
    index_symbol: str = Field(description="Index symbol (e.g., NIFTY 50)")


class MostActiveArgs(BaseModel):
    index_symbol: str = Field(description="Index symbol (e.g., NIFTY 50)")
    by: Literal["volume", "value"] = "volume"


TOOL_ARGUMENT_MODELS: Dict[str, Type[BaseModel]] = {
    "get_all_stock_symbols": NoArgs,
    "get_equity_details": SymbolArgs,
    "get_equity_trade_info": SymbolArgs,
    "get_equity_corporate_info": SymbolArgs,
    "get_equity_intraday_data": SymbolArgs,
    "get_equity_historical_data": HistoricalDataArgs,
    "get_equity_series": SymbolArgs,
    "get_equity_stock_indices": IndexArgs,
    "get_index_intraday_data": IndexArgs,
    "get_index_option_chain": OptionChainArgs,
    "get_equity_option_chain": SymbolArgs,
    "get_equity_technical_indicators": TechnicalIndicatorArgs,
    "get_gainers_and_losers_by_index": GainersLosersArgs,
    "get_most_active_equities": MostActiveArgs,
    "get_market_status": NoArgs,
    "get_market_turnover": NoArgs,
    "get_all_indices": NoArgs,
    "get_index_names": NoArgs,
    "get_trading_holidays": NoArgs,
    "get_clearing_holidays": NoArgs,
    "get_glossary": NoArgs,
    "get_pre_open_market_data": NoArgs,
}


def argument_model_for(tool_name: str) -> Type[BaseModel] | None:
    return TOOL_ARGUMENT_MODELS.get(tool_name)
