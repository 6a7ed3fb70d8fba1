"""Conversation response generator.

Turns a stored chat history into one provider call and returns the reply:

1. keep only the last ``history_window`` messages,
2. build the personalized system instruction,
3. convert all but the last message to provider turns,
4. pick a model from the fallback list by attempt number,
5. call the provider, retrying overload/rate-limit failures with
   exponential backoff.

Every call ends in the reply text or exactly one :mod:`tutor_server.errors`
exception. Retries are only visible as latency and log records.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Type

from .errors import (
    ConfigurationError,
    ContentBlocked,
    GenerationError,
    InvalidHistory,
    ModelUnavailable,
    ProviderBusy,
    ProviderTimeout,
    QuotaExceeded,
    UnknownProviderError,
)
from .prompts import SYSTEM_PROMPT, build_system_instruction
from .provider import DEFAULT_MODELS, ChatProvider, GenerationConfig, ProviderRequest
from .typing import Profile

logger = logging.getLogger(__name__)

MAX_HISTORY_MESSAGES = 30  # 15 exchanges
MAX_RETRIES = 3
BASE_DELAY = 1.0
DEFAULT_DEADLINE = 60.0

_RETRYABLE_MARKERS = ("503", "429", "overloaded", "UNAVAILABLE")


# -----------------------------
# Pure helpers
# -----------------------------
def trim_history(messages: Sequence[Mapping[str, Any]], window: int = MAX_HISTORY_MESSAGES) -> List[Mapping[str, Any]]:
    """Keep the most recent ``window`` messages."""
    if len(messages) <= window:
        return list(messages)
    return list(messages[-window:])


def to_provider_history(messages: Sequence[Mapping[str, Any]]) -> List[Dict[str, str]]:
    """Map stored messages to provider turns; ``assistant`` becomes ``model``."""
    return [
        {"role": "user" if m.get("role") == "user" else "model", "content": str(m.get("content", ""))}
        for m in messages
    ]


def select_model(attempt: int, models: Sequence[str]) -> str:
    """Each model gets two consecutive attempts; the last one absorbs the rest."""
    index = min(attempt // 2, len(models) - 1)
    return models[index]


def backoff_delay(attempt: int, base_delay: float = BASE_DELAY) -> float:
    return base_delay * (2 ** attempt)


# -----------------------------
# Error classification
# -----------------------------
def _error_text(exc: BaseException) -> str:
    msg = getattr(exc, "message", None)
    if isinstance(msg, str) and msg:
        return msg
    return str(exc)


def _structured_signal(exc: BaseException) -> Tuple[Optional[int], Optional[str]]:
    code: Optional[int] = None
    for attr in ("code", "status_code"):
        value = getattr(exc, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            code = value
            break
    status = getattr(exc, "status", None)
    if isinstance(status, int) and not isinstance(status, bool):
        if code is None:
            code = status
        status = None
    name = status.upper() if isinstance(status, str) and status else None
    return code, name


def classify_error(exc: BaseException) -> Type[GenerationError]:
    """Map a provider failure to a taxonomy class.

    :class:`ProviderBusy` is the only retryable outcome. Structured fields
    (status code, status name) win; message substrings are consulted only
    when the error carries neither. Rate limits are always retryable; one
    that still mentions quota once retries run out becomes
    :class:`QuotaExceeded` in the generator.
    """
    code, name = _structured_signal(exc)
    text = _error_text(exc)
    lowered = text.lower()

    if code is not None or name is not None:
        if name == "SAFETY":
            return ContentBlocked
        if code == 503 or name == "UNAVAILABLE":
            return ProviderBusy
        if code == 429 or name == "RESOURCE_EXHAUSTED":
            return ProviderBusy
        if code in (401, 403) or name in ("UNAUTHENTICATED", "PERMISSION_DENIED"):
            return ConfigurationError
        if code == 400 and "api key" in lowered:
            return ConfigurationError
        if code == 404 or name == "NOT_FOUND":
            return ModelUnavailable
        return UnknownProviderError

    if "API key" in text or "API_KEY" in text:
        return ConfigurationError
    if any(marker in text for marker in _RETRYABLE_MARKERS) or "rate limit" in lowered:
        return ProviderBusy
    if "quota" in lowered:
        return QuotaExceeded
    if "safety" in lowered:
        return ContentBlocked
    if "not found" in lowered or "404" in text:
        return ModelUnavailable
    return UnknownProviderError


def _terminal_error(error_cls: Type[GenerationError], raw: str) -> GenerationError:
    if error_cls is UnknownProviderError:
        return UnknownProviderError(raw)
    return error_cls()


# -----------------------------
# Generator
# -----------------------------
class ResponseGenerator:
    """Produce the next assistant message for a chat history.

    The provider is constructed by the caller (once per process) and shared.
    ``sleep`` is the coroutine used for backoff waits.
    """

    def __init__(
        self,
        provider: ChatProvider,
        *,
        models: Optional[Sequence[str]] = None,
        history_window: int = MAX_HISTORY_MESSAGES,
        max_retries: int = MAX_RETRIES,
        base_delay: float = BASE_DELAY,
        deadline: Optional[float] = DEFAULT_DEADLINE,
        generation: Optional[GenerationConfig] = None,
        system_prompt: str = SYSTEM_PROMPT,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.provider = provider
        self.models = list(DEFAULT_MODELS if models is None else models)
        if not self.models:
            raise ValueError("models must not be empty")
        self.history_window = int(history_window)
        self.max_retries = int(max_retries)
        self.base_delay = float(base_delay)
        self.deadline = deadline
        self.generation = generation or GenerationConfig()
        self.system_prompt = system_prompt
        self._sleep = sleep

    async def generate(self, history: Sequence[Mapping[str, Any]], profile: Optional[Profile] = None) -> str:
        if not history:
            raise InvalidHistory("No messages to process")
        window = trim_history(history, self.history_window)
        last = window[-1]
        if last.get("role") != "user":
            raise InvalidHistory("Last message must be from user")

        request_base = dict(
            message=str(last.get("content", "")),
            system_instruction=build_system_instruction(profile, self.system_prompt),
            history=to_provider_history(window[:-1]),
        )

        try:
            async with asyncio.timeout(self.deadline):
                return await self._generate_with_retries(request_base)
        except TimeoutError as e:
            logger.error("Generation exceeded deadline of %.1fs", self.deadline)
            raise ProviderTimeout() from e

    async def _generate_with_retries(self, request_base: Dict[str, Any]) -> str:
        attempt = 0
        while True:
            model = select_model(attempt, self.models)
            logger.info(
                "Sending message to Gemini (%s) with %d messages in history",
                model,
                len(request_base["history"]),
            )
            request = ProviderRequest(model=model, generation=self.generation, **request_base)
            try:
                return await self.provider.send(request)
            except GenerationError:
                raise
            except Exception as e:
                error_cls = classify_error(e)
                raw = _error_text(e)
                if error_cls is ProviderBusy and attempt < self.max_retries:
                    delay = backoff_delay(attempt, self.base_delay)
                    logger.warning(
                        "Model overloaded, retrying in %.1fs... (attempt %d/%d): %s",
                        delay,
                        attempt + 1,
                        self.max_retries,
                        raw,
                    )
                    await self._sleep(delay)
                    attempt += 1
                    continue
                if error_cls is ProviderBusy and "quota" in raw.lower():
                    error_cls = QuotaExceeded
                logger.error("Gemini API Error (%s, attempt %d): %s", model, attempt, raw)
                raise _terminal_error(error_cls, raw) from e


def create_generator(cfg: Dict[str, Any], provider: ChatProvider) -> ResponseGenerator:
    """Build a generator from the ``provider`` and ``generator`` config sections."""
    prov_cfg = cfg.get("provider", {}) or {}
    gen_cfg = cfg.get("generator", {}) or {}
    deadline = gen_cfg.get("deadline_seconds", DEFAULT_DEADLINE)
    return ResponseGenerator(
        provider,
        models=prov_cfg.get("models") or DEFAULT_MODELS,
        history_window=int(gen_cfg.get("history_window", MAX_HISTORY_MESSAGES)),
        max_retries=int(gen_cfg.get("max_retries", MAX_RETRIES)),
        base_delay=float(gen_cfg.get("base_delay", BASE_DELAY)),
        deadline=None if deadline is None else float(deadline),
        generation=GenerationConfig(
            max_output_tokens=int(prov_cfg.get("max_output_tokens", 8192)),
            temperature=float(prov_cfg.get("temperature", 0.8)),
        ),
    )
