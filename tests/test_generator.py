from __future__ import annotations

import asyncio
import copy
from typing import List

import pytest

from tutor_server.errors import (
    InvalidHistory,
    ModelUnavailable,
    ProviderBusy,
    ProviderTimeout,
    QuotaExceeded,
    UnknownProviderError,
)
from tutor_server.generator import (
    ResponseGenerator,
    backoff_delay,
    select_model,
    to_provider_history,
    trim_history,
)
from tutor_server.prompts import SYSTEM_PROMPT
from tutor_server.provider import ProviderError, ProviderRequest
from tutor_server.typing import Profile


class ScriptedProvider:
    """Replays a list of outcomes: strings are returned, exceptions raised."""

    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.requests: List[ProviderRequest] = []

    async def send(self, request: ProviderRequest) -> str:
        self.requests.append(request)
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


class SleepRecorder:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def _gen(provider, sleep=None, **kwargs) -> ResponseGenerator:
    return ResponseGenerator(provider, models=["A", "B"], sleep=sleep or SleepRecorder(), **kwargs)


def _busy() -> ProviderError:
    return ProviderError("The model is overloaded.", code=503, status="UNAVAILABLE")


def _alternating(n: int):
    # even index -> user, so an odd length ends with a user turn
    return [{"role": "user" if i % 2 == 0 else "assistant", "content": f"m{i}"} for i in range(n)]


# -----------------------------
# Pure helpers
# -----------------------------
def test_select_model_two_attempts_per_model():
    assert [select_model(a, ["A", "B"]) for a in range(4)] == ["A", "A", "B", "B"]
    # exhausted list clamps to the last entry
    assert select_model(7, ["A", "B"]) == "B"
    assert [select_model(a, ["A", "B", "C"]) for a in range(6)] == ["A", "A", "B", "B", "C", "C"]
    assert select_model(5, ["only"]) == "only"


def test_backoff_delays_double():
    assert [backoff_delay(a) for a in range(3)] == [1.0, 2.0, 4.0]
    assert backoff_delay(2, base_delay=0.5) == 2.0


def test_trim_history_keeps_most_recent():
    msgs = _alternating(45)
    trimmed = trim_history(msgs)
    assert len(trimmed) == 30
    assert trimmed[0]["content"] == "m15"
    assert trimmed[-1]["content"] == "m44"
    assert trim_history(msgs[:3]) == msgs[:3]


def test_to_provider_history_maps_assistant_to_model():
    turns = to_provider_history([
        {"role": "user", "content": "hi"},
        {"role": "assistant", "content": "hello"},
    ])
    assert turns == [
        {"role": "user", "content": "hi"},
        {"role": "model", "content": "hello"},
    ]


# -----------------------------
# Preconditions
# -----------------------------
def test_empty_history_is_rejected_before_network():
    provider = ScriptedProvider(["never"])
    with pytest.raises(InvalidHistory):
        asyncio.run(_gen(provider).generate([]))
    assert provider.requests == []


def test_history_ending_with_assistant_is_rejected_before_network():
    provider = ScriptedProvider(["never"])
    history = [{"role": "user", "content": "q"}, {"role": "assistant", "content": "a"}]
    with pytest.raises(InvalidHistory):
        asyncio.run(_gen(provider).generate(history))
    assert provider.requests == []


# -----------------------------
# Windowing & request shape
# -----------------------------
def test_provider_sees_exactly_last_30_messages():
    provider = ScriptedProvider(["ok"])
    history = _alternating(45)
    asyncio.run(_gen(provider).generate(history))

    req = provider.requests[0]
    # 29 prior turns + the new message = 30
    assert len(req.history) == 29
    assert req.history[0] == {"role": "model", "content": "m15"}
    assert req.history[-1] == {"role": "model", "content": "m43"}
    assert req.message == "m44"


def test_history_is_not_mutated():
    provider = ScriptedProvider(["ok"])
    history = _alternating(35)
    before = copy.deepcopy(history)
    asyncio.run(_gen(provider).generate(history, Profile(interests=["graphs"])))
    assert history == before


def test_generation_parameters_are_forwarded():
    provider = ScriptedProvider(["ok"])
    asyncio.run(_gen(provider).generate([{"role": "user", "content": "hi"}]))
    req = provider.requests[0]
    assert req.generation.max_output_tokens == 8192
    assert req.generation.temperature == 0.8
    assert req.system_instruction == SYSTEM_PROMPT


def test_profile_shapes_system_instruction():
    provider = ScriptedProvider(["ok"])
    profile = Profile(interests=["graphs", "OS"], persona="Be terse.")
    asyncio.run(_gen(provider).generate([{"role": "user", "content": "hi"}], profile))
    instruction = provider.requests[0].system_instruction
    assert instruction.startswith(SYSTEM_PROMPT)
    assert "graphs, OS" in instruction
    assert instruction.endswith("Be terse.")


# -----------------------------
# End-to-end scenario
# -----------------------------
def test_single_question_success_returns_text_verbatim():
    reply = "  **A stack** is LIFO 📚\n"
    provider = ScriptedProvider([reply])
    sleep = SleepRecorder()
    out = asyncio.run(_gen(provider, sleep).generate([{"role": "user", "content": "What is a stack?"}]))

    assert out == reply
    assert len(provider.requests) == 1
    req = provider.requests[0]
    assert req.model == "A"
    assert req.history == []
    assert req.message == "What is a stack?"
    assert sleep.delays == []


def test_overloaded_provider_retries_three_times_then_busy():
    provider = ScriptedProvider([Exception("503 overloaded")] * 4)
    sleep = SleepRecorder()
    with pytest.raises(ProviderBusy) as excinfo:
        asyncio.run(_gen(provider, sleep).generate([{"role": "user", "content": "What is a stack?"}]))

    assert not isinstance(excinfo.value, ProviderTimeout)
    assert len(provider.requests) == 4
    assert sleep.delays == [1.0, 2.0, 4.0]


# -----------------------------
# Retry / fallback composition
# -----------------------------
def test_retries_fall_back_across_models():
    provider = ScriptedProvider([_busy(), _busy(), _busy(), "finally"])
    sleep = SleepRecorder()
    out = asyncio.run(_gen(provider, sleep).generate([{"role": "user", "content": "q"}]))

    assert out == "finally"
    assert [r.model for r in provider.requests] == ["A", "A", "B", "B"]
    assert sleep.delays == [1.0, 2.0, 4.0]


def test_recovers_after_single_rate_limit():
    provider = ScriptedProvider([ProviderError("rate limited", code=429), "ok"])
    sleep = SleepRecorder()
    assert asyncio.run(_gen(provider, sleep).generate([{"role": "user", "content": "q"}])) == "ok"
    assert sleep.delays == [1.0]


def _quota_rate_limit() -> ProviderError:
    # Gemini's per-minute limit is worded as a quota message
    return ProviderError(
        "You exceeded your current quota, please check your plan and billing details.",
        code=429,
        status="RESOURCE_EXHAUSTED",
    )


@pytest.mark.parametrize("error", [_quota_rate_limit(), Exception("429 Too Many Requests: quota exceeded")])
def test_quota_worded_rate_limit_is_retried(error):
    provider = ScriptedProvider([error, "ok"])
    sleep = SleepRecorder()
    assert asyncio.run(_gen(provider, sleep).generate([{"role": "user", "content": "q"}])) == "ok"
    assert len(provider.requests) == 2
    assert sleep.delays == [1.0]


def test_quota_rate_limit_exhausted_becomes_quota_exceeded():
    provider = ScriptedProvider([_quota_rate_limit()] * 4)
    sleep = SleepRecorder()
    with pytest.raises(QuotaExceeded):
        asyncio.run(_gen(provider, sleep).generate([{"role": "user", "content": "q"}]))
    assert len(provider.requests) == 4
    assert sleep.delays == [1.0, 2.0, 4.0]


def test_each_call_gets_a_fresh_retry_budget():
    provider = ScriptedProvider([_busy(), _busy(), "one", _busy(), "two"])
    gen = _gen(provider)
    history = [{"role": "user", "content": "q"}]
    assert asyncio.run(gen.generate(history)) == "one"
    assert asyncio.run(gen.generate(history)) == "two"
    assert [r.model for r in provider.requests] == ["A", "A", "B", "A", "A"]


def test_terminal_error_is_not_retried():
    provider = ScriptedProvider([ProviderError("models/x is not found", code=404, status="NOT_FOUND")])
    sleep = SleepRecorder()
    with pytest.raises(ModelUnavailable):
        asyncio.run(_gen(provider, sleep).generate([{"role": "user", "content": "q"}]))
    assert len(provider.requests) == 1
    assert sleep.delays == []


def test_unmatched_error_wraps_raw_message_without_retry():
    provider = ScriptedProvider([RuntimeError("socket hang up")])
    sleep = SleepRecorder()
    with pytest.raises(UnknownProviderError) as excinfo:
        asyncio.run(_gen(provider, sleep).generate([{"role": "user", "content": "q"}]))
    assert excinfo.value.raw_message == "socket hang up"
    assert "socket hang up" in str(excinfo.value)
    assert isinstance(excinfo.value.__cause__, RuntimeError)
    assert sleep.delays == []


def test_custom_retry_budget():
    provider = ScriptedProvider([_busy()] * 2)
    sleep = SleepRecorder()
    with pytest.raises(ProviderBusy):
        asyncio.run(_gen(provider, sleep, max_retries=1, base_delay=0.5).generate([{"role": "user", "content": "q"}]))
    assert len(provider.requests) == 2
    assert sleep.delays == [0.5]


# -----------------------------
# Deadline
# -----------------------------
class HangingProvider:
    async def send(self, request: ProviderRequest) -> str:
        await asyncio.sleep(10)
        return "late"


def test_deadline_aborts_in_flight_call():
    gen = ResponseGenerator(HangingProvider(), deadline=0.05)
    with pytest.raises(ProviderTimeout) as excinfo:
        asyncio.run(gen.generate([{"role": "user", "content": "q"}]))
    assert isinstance(excinfo.value, ProviderBusy)


def test_deadline_covers_backoff_sleep():
    provider = ScriptedProvider([_busy()] * 4)
    # real sleeps: 1s backoff cannot fit in the deadline
    gen = ResponseGenerator(provider, deadline=0.1)
    with pytest.raises(ProviderTimeout):
        asyncio.run(gen.generate([{"role": "user", "content": "q"}]))
    assert len(provider.requests) == 1


def test_empty_model_list_is_rejected():
    with pytest.raises(ValueError):
        ResponseGenerator(ScriptedProvider([]), models=[])
