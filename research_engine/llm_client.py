"""OpenRouter client factory for the research strategist."""
from __future__ import annotations

from openai import AsyncOpenAI

from research_engine.config import settings

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"


def get_client() -> AsyncOpenAI:
    """Get OpenRouter client via OpenAI-compatible SDK."""
    base_url = settings.openrouter_base_url.strip() or DEFAULT_BASE_URL
    return AsyncOpenAI(
        api_key=settings.openrouter_api_key,
        base_url=base_url,
    )


def get_model() -> str:
    """Get the active OpenRouter model id for strategist calls."""
    if settings.strategist_model:
        return settings.strategist_model
    if settings.openrouter_model:
        return settings.openrouter_model
    return settings.default_model


_client: AsyncOpenAI | None = None


def client() -> AsyncOpenAI:
    """Get or create the LLM client."""
    global _client
    if _client is None:
        _client = get_client()
    return _client
