"""Chat-completion provider boundary, with a Google Gemini implementation."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import httpx
from google import genai
from google.genai import errors as genai_errors
from google.genai import types

from .errors import ConfigurationError

logger = logging.getLogger(__name__)


# -----------------------------
# Types & defaults
# -----------------------------

DEFAULT_MODELS = ["gemini-2.5-flash", "gemini-2.0-flash"]


@dataclass
class GenerationConfig:
    max_output_tokens: int = 8192
    temperature: float = 0.8


@dataclass
class ProviderRequest:
    """One provider call: prior turns plus the new user message."""

    model: str
    message: str
    system_instruction: str
    history: List[Dict[str, str]] = field(default_factory=list)  # [{role, content}], role in {user, model}
    generation: GenerationConfig = field(default_factory=GenerationConfig)


class ProviderError(Exception):
    """Error reported by the provider, normalized to code/status/message.

    ``code`` is the HTTP-like status when the provider returned one,
    ``status`` the provider's status name (e.g. ``UNAVAILABLE``).
    """

    def __init__(self, message: str, *, code: Optional[int] = None, status: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.status = status


class ChatProvider(Protocol):
    async def send(self, request: ProviderRequest) -> str:
        ...


# -----------------------------
# Gemini
# -----------------------------

def _to_contents(history: List[Dict[str, str]]) -> List[types.Content]:
    return [
        types.Content(role=turn["role"], parts=[types.Part(text=turn["content"])])
        for turn in history
    ]


def _blocked_reason(response: Any) -> Optional[str]:
    feedback = getattr(response, "prompt_feedback", None)
    reason = getattr(feedback, "block_reason", None)
    if reason:
        return str(reason)
    for cand in getattr(response, "candidates", None) or []:
        finish = getattr(cand, "finish_reason", None)
        if finish is not None and "SAFETY" in str(finish):
            return str(finish)
    return None


class GeminiProvider:
    """Thin wrapper around :mod:`google.genai` using the async chat API.

    The underlying client is created once and shared; it holds no per-call
    state.
    """

    def __init__(self, api_key: str, *, client: Optional[genai.Client] = None) -> None:
        if not api_key and client is None:
            raise ConfigurationError("GEMINI_API_KEY environment variable is not set")
        self._client = client or genai.Client(api_key=api_key)

    async def send(self, request: ProviderRequest) -> str:
        chat = self._client.aio.chats.create(
            model=request.model,
            history=_to_contents(request.history),
            config=types.GenerateContentConfig(
                system_instruction=request.system_instruction,
                max_output_tokens=request.generation.max_output_tokens,
                temperature=request.generation.temperature,
            ),
        )
        try:
            response = await chat.send_message(request.message)
        except genai_errors.APIError as e:
            raise ProviderError(str(e.message or e), code=e.code, status=e.status) from e
        except httpx.HTTPError as e:
            raise ProviderError(f"UNAVAILABLE: {e}", status="UNAVAILABLE") from e

        text = response.text
        if text is None:
            reason = _blocked_reason(response)
            if reason:
                raise ProviderError(f"Response blocked by safety filter ({reason})", status="SAFETY")
            raise ProviderError("Provider returned an empty response")
        return text


# -----------------------------
# Convenience factory
# -----------------------------

def create_provider(cfg: Dict[str, Any]) -> GeminiProvider:
    """Create the provider from a config dict; fails fast without credentials."""
    prov_cfg = (cfg or {}).get("provider", {}) if isinstance(cfg, dict) else {}
    api_key = prov_cfg.get("api_key") or os.environ.get(prov_cfg.get("api_key_env", "GEMINI_API_KEY"), "")
    if not api_key:
        raise ConfigurationError(
            f"{prov_cfg.get('api_key_env', 'GEMINI_API_KEY')} environment variable is not set"
        )
    logger.info("Initialized Gemini provider")
    return GeminiProvider(api_key=api_key)
