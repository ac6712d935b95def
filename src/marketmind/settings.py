from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = False
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    model: str = "gpt-4o-mini"
    temperature: float = 0.7
    max_tokens: int = 2000
    max_iterations: int = 5
    openai_api_key: str | None = None
    openai_base_url: str | None = "https://api.openai.com/v1"
    request_timeout_seconds: float = 60.0

    summarizer_model: str = "gpt-4o-mini"
    summarizer_temperature: float = 0.3
    summarizer_max_tokens: int = 500

    cors_origins: str = "*"

    memory_backend: Literal["memory", "file", "redis"] = "file"
    memory_file_path: Path = Path("data/memory-data.json")
    redis_url: str | None = None
    memory_redis_key: str = "marketmind:memory"

    max_conversation_history: int = 50
    max_recent_queries: int = 20
    session_timeout_minutes: int = 30

    context_max_tokens: int = 8000
    context_reserved_tokens: int = 2000
    context_summarization_threshold: float = 0.6
    context_min_messages_to_summarize: int = 6

    mcp_market_cmd: str | None = None

    agent_system_prompt: str = (
        "You are a helpful assistant that provides information about Indian "
        "stock market data from NSE India. You have access to various tools to "
        "fetch real-time market data, stock information, historical data, and "
        "more. When a user asks a question, use the appropriate tools to gather "
        "the necessary data and provide a comprehensive answer. Always format "
        "your responses in a clear, professional manner with proper markdown "
        "formatting when appropriate."
    )

    summarize_context_system_prompt: str = (
        "You are a helpful assistant that creates concise summaries of "
        "conversations. Always respond with valid JSON only, without any "
        "markdown formatting or code blocks."
    )

    final_synthesis_prompt: str = (
        "Based on all the data gathered from previous tool calls, provide your "
        "comprehensive final analysis and recommendations."
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="allow",
    )


def get_settings() -> Settings:
    """Return the application settings singleton (loaded from env / .env)."""
    global _SETTINGS
    try:
        return _SETTINGS
    except NameError:
        _SETTINGS = Settings()
        return _SETTINGS
