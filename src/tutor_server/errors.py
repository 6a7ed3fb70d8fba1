"""Failure taxonomy surfaced by the response generator.

Every generator call ends in either the reply text or exactly one of these
exceptions. Each class carries a short machine ``code`` and the HTTP status
the server maps it to.
"""

from __future__ import annotations


class GenerationError(Exception):
    """Base class for all generator failures."""

    code = "generation_error"
    http_status = 500
    default_message = "Failed to generate response."

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.default_message)
        self.message = message or self.default_message


class InvalidHistory(GenerationError):
    code = "invalid_history"
    http_status = 400
    default_message = "History must be non-empty and end with a user message."


class ConfigurationError(GenerationError):
    code = "configuration_error"
    http_status = 500
    default_message = "Invalid or missing Gemini API key. Please check your configuration."


class QuotaExceeded(GenerationError):
    code = "quota_exceeded"
    http_status = 429
    default_message = "API quota exceeded. Please try again later."


class ContentBlocked(GenerationError):
    code = "content_blocked"
    http_status = 422
    default_message = "Response blocked due to safety settings. Please rephrase your question."


class ModelUnavailable(GenerationError):
    code = "model_unavailable"
    http_status = 502
    default_message = "Model not found. Please check the model name configuration."


class ProviderBusy(GenerationError):
    code = "provider_busy"
    http_status = 503
    default_message = "AI service is currently busy. Please try again in a moment."


class ProviderTimeout(ProviderBusy):
    code = "provider_timeout"
    default_message = "AI service did not answer in time. Please try again in a moment."


class UnknownProviderError(GenerationError):
    code = "unknown_provider_error"
    http_status = 502

    def __init__(self, raw_message: str = "") -> None:
        self.raw_message = raw_message
        super().__init__(f"Failed to generate response: {raw_message}" if raw_message else "")
