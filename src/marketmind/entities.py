"""Lexical extraction of market entities (ticker symbols and index names)."""

import re
from typing import List

SYMBOL_PATTERN = re.compile(r"\b[A-Z]{2,10}\b")

STOP_WORDS = frozenset(
    {"THE", "AND", "OR", "FOR", "WITH", "FROM", "TO", "IN", "ON", "AT", "BY"}
)

INDEX_KEYWORDS = ("nifty", "banknifty", "sensex", "midcap", "smallcap")


def extract_symbols(text: str) -> List[str]:
    """Upper-case ticker-like tokens in order of appearance, duplicates kept."""
    return [m for m in SYMBOL_PATTERN.findall(text or "") if m not in STOP_WORDS]


def extract_indices(text: str) -> List[str]:
    lowered = (text or "").lower()
    return [keyword.upper() for keyword in INDEX_KEYWORDS if keyword in lowered]
