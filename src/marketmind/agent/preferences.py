from typing import Any, Dict, Sequence

from ..entities import extract_indices, extract_symbols
from ..models import UserPreferences

MAX_PREFERRED_ENTITIES = 10


def infer_preference_changes(
    current: UserPreferences, query: str, tools_used: Sequence[str] = ()
) -> Dict[str, Any]:
    """Preference fields that the query implies should change.

    Returns only the changed fields, ready for SessionStore.update_preferences.
    """
    changes: Dict[str, Any] = {}
    lowered = query.lower()

    style = None
    if "brief" in lowered or "summary" in lowered:
        style = "brief"
    elif "detailed" in lowered or "comprehensive" in lowered:
        style = "detailed"
    elif "technical" in lowered or "indicators" in lowered:
        style = "technical"
    elif any("technical" in tool for tool in tools_used):
        style = "technical"
    if style and style != current.analysis_style:
        changes["analysis_style"] = style

    entities = list(current.preferred_entities)
    for symbol in extract_symbols(query):
        if symbol not in entities:
            entities.append(symbol)
    entities = entities[-MAX_PREFERRED_ENTITIES:]
    if entities != current.preferred_entities:
        changes["preferred_entities"] = entities

    categories = list(current.preferred_categories)
    for index_name in extract_indices(query):
        if index_name not in categories:
            categories.append(index_name)
    if categories != current.preferred_categories:
        changes["preferred_categories"] = categories

    return changes


def preference_digest(
    preferences: UserPreferences,
    top_entities: Sequence[str] = (),
    recent_queries: Sequence[str] = (),
) -> str:
    """Plain-text digest appended to the system prompt."""
    lines = [
        "User Preferences:",
        f"- Analysis Style: {preferences.analysis_style}",
        f"- Language: {preferences.language}",
        f"- Timezone: {preferences.timezone}",
    ]
    if preferences.preferred_entities:
        lines.append(f"- Preferred Stocks: {', '.join(preferences.preferred_entities)}")
    if preferences.preferred_categories:
        lines.append(f"- Preferred Indices: {', '.join(preferences.preferred_categories)}")
    if top_entities:
        lines.append(f"- Frequently Accessed Stocks: {', '.join(top_entities)}")
    if recent_queries:
        lines.append(f"- Recent Queries: {'; '.join(recent_queries[:3])}")
    return "\n".join(lines)
