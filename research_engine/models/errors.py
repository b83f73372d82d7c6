from __future__ import annotations


class ResearchEngineError(Exception):
    """Base class for recoverable failures at the engine's external boundaries."""


class ProviderError(ResearchEngineError):
    """A provider call failed or timed out; the round continues without it."""

    def __init__(self, provider: str, message: str):
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.message = message


class StrategistParseError(ResearchEngineError):
    """The strategist returned a response that could not be parsed."""

    def __init__(self, operation: str, raw_text: str = ""):
        super().__init__(f"Unparseable {operation} response: {raw_text[:200]!r}")
        self.operation = operation
        self.raw_text = raw_text
