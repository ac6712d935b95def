from marketmind.agent.preferences import (
    MAX_PREFERRED_ENTITIES,
    infer_preference_changes,
    preference_digest,
)
from marketmind.entities import extract_indices, extract_symbols
from marketmind.models import UserPreferences


def test_extract_entities() -> None:
    assert extract_symbols("Compare TCS AND INFY with the NIFTY") == ["TCS", "INFY", "NIFTY"]
    assert extract_indices("How is banknifty doing vs sensex?") == [
        "NIFTY",
        "BANKNIFTY",
        "SENSEX",
    ]


def test_style_and_entities_inferred() -> None:
    changes = infer_preference_changes(UserPreferences(), "Give me a brief update on TCS")
    assert changes == {"analysis_style": "brief", "preferred_entities": ["TCS"]}


def test_technical_style_from_tools() -> None:
    changes = infer_preference_changes(
        UserPreferences(), "how is it looking", ["get_equity_technical_indicators"]
    )
    assert changes == {"analysis_style": "technical"}


def test_no_changes_when_nothing_new() -> None:
    current = UserPreferences(analysis_style="brief", preferred_entities=["TCS"])
    assert infer_preference_changes(current, "brief note on TCS please") == {}


def test_preferred_entities_are_capped() -> None:
    current = UserPreferences(preferred_entities=[f"SYM{c}" for c in "ABCDEFGHIJ"])
    changes = infer_preference_changes(current, "what about WIPRO")
    entities = changes["preferred_entities"]
    assert len(entities) == MAX_PREFERRED_ENTITIES
    assert entities[-1] == "WIPRO"
    assert "SYMA" not in entities


def test_categories_from_indices() -> None:
    changes = infer_preference_changes(UserPreferences(), "midcap outlook")
    assert changes["preferred_categories"] == ["MIDCAP"]


def test_preference_digest() -> None:
    digest = preference_digest(
        UserPreferences(preferred_entities=["TCS"]),
        top_entities=["TCS", "INFY"],
        recent_queries=["q1", "q2", "q3", "q4"],
    )
    assert digest.startswith("User Preferences:\n- Analysis Style: detailed")
    assert "- Preferred Stocks: TCS" in digest
    assert "- Frequently Accessed Stocks: TCS, INFY" in digest
    assert "- Recent Queries: q1; q2; q3" in digest
    assert "q4" not in digest
