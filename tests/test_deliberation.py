"""Tests for hivemind/deliberation.py."""

import logging
import threading
from unittest.mock import AsyncMock

import pytest

from hivemind.deliberation import ask, select_judge
from hivemind.errors import AllProvidersFailedError, DeliberationError
from hivemind.models import ModelResponse, PriorResponse
from hivemind.providers.base import ProviderError
from hivemind.usage import UsageTracker
from tests.conftest import (
    ANALYSIS_MARKER,
    DIVERGENT_JSON,
    REFINEMENT_MARKER,
    SYNTHESIS_MARKER,
    MockProvider,
)


def _failing(provider: MockProvider, message: str) -> MockProvider:
    provider.chat = AsyncMock(side_effect=ProviderError(provider.name(), message))
    return provider


# --- Scenarios ---

async def test_agreeing_providers_finish_in_one_round(two_mock_providers, no_delay_retry):
    openai, google = two_mock_providers
    openai.synthesis_reply = "The answer is 4."

    result = await ask("What is 2+2?", two_mock_providers, retry=no_delay_retry)

    assert result.rounds == 1
    assert "4" in result.consensus
    assert result.analysis.has_consensus is True
    assert result.judge == "openai"
    assert {r.provider for r in result.final_responses} == {"openai", "google"}
    analysis_prompt = openai.prompts_starting_with(ANALYSIS_MARKER)[0]
    assert "[openai]: 4" in analysis_prompt
    assert "[google]: The answer is 4" in analysis_prompt
    assert not openai.prompts_starting_with(REFINEMENT_MARKER)
    assert not google.prompts_starting_with(REFINEMENT_MARKER)


async def test_divergent_providers_refine_once_with_two_rounds(no_delay_retry):
    redis = MockProvider("openai", "Use Redis", analysis_reply=DIVERGENT_JSON)
    memory = MockProvider("google", "Use in-memory cache")

    result = await ask(
        "Which cache should we use?", [redis, memory], max_rounds=2, retry=no_delay_retry,
    )

    assert result.rounds == 2
    assert len(result.round_history) == 2
    assert [r.provider for r in result.round_history[1].responses] == ["openai", "google"]

    redis_refinement = redis.prompts_starting_with(REFINEMENT_MARKER)
    memory_refinement = memory.prompts_starting_with(REFINEMENT_MARKER)
    assert len(redis_refinement) == 1
    assert len(memory_refinement) == 1
    assert "[google]: Use in-memory cache" in redis_refinement[0]
    assert "[openai]: Use Redis" in memory_refinement[0]
    assert "caching backend choice" in redis_refinement[0]
    assert "caching backend choice" in memory_refinement[0]

    assert len(redis.prompts_starting_with(ANALYSIS_MARKER)) == 2
    assert len(redis.prompts_starting_with(SYNTHESIS_MARKER)) == 1
    assert result.analysis.divergences == ["caching backend choice"]


async def test_refinement_prompt_never_cites_own_answer(no_delay_retry):
    providers = [
        MockProvider("openai", "A", analysis_reply=DIVERGENT_JSON),
        MockProvider("anthropic", "B", analysis_reply=DIVERGENT_JSON),
        MockProvider("google", "C"),
    ]

    await ask("Q?", providers, max_rounds=3, retry=no_delay_retry)

    for provider in providers:
        refinements = provider.prompts_starting_with(REFINEMENT_MARKER)
        assert refinements
        for prompt in refinements:
            others = prompt.split("Other models' perspectives:")[1].split("Key divergences identified:")[0]
            assert f"[{provider.name()}]:" not in others
            assert all(f"[{p.name()}]:" in others for p in providers if p is not provider)


# --- Termination ---

@pytest.mark.parametrize("max_rounds", [1, 2, 3, 4])
async def test_rounds_never_exceed_max_rounds(max_rounds, no_delay_retry):
    judge = MockProvider("openai", "yes", analysis_reply=DIVERGENT_JSON)
    other = MockProvider("google", "no")

    result = await ask("Q?", [judge, other], max_rounds=max_rounds, retry=no_delay_retry)

    assert result.rounds == max_rounds
    assert len(result.round_history) == max_rounds
    assert len(judge.prompts_starting_with(ANALYSIS_MARKER)) == max_rounds
    assert len(judge.prompts_starting_with(REFINEMENT_MARKER)) == max_rounds - 1


async def test_confidence_above_threshold_stops(no_delay_retry):
    judge = MockProvider(
        "openai", "yes",
        analysis_reply='{"hasConsensus": false, "divergences": ["minor wording"], "confidence": 0.85}',
    )
    other = MockProvider("google", "yes, mostly")

    result = await ask("Q?", [judge, other], retry=no_delay_retry)

    assert result.rounds == 1
    assert not judge.prompts_starting_with(REFINEMENT_MARKER)


async def test_confidence_at_threshold_keeps_deliberating(no_delay_retry):
    judge = MockProvider(
        "openai", "yes",
        analysis_reply='{"hasConsensus": false, "divergences": ["scope"], "confidence": 0.8}',
    )
    other = MockProvider("google", "no")

    result = await ask("Q?", [judge, other], max_rounds=2, retry=no_delay_retry)

    assert result.rounds == 2


async def test_empty_divergences_stop(no_delay_retry):
    judge = MockProvider(
        "openai", "yes",
        analysis_reply='{"hasConsensus": false, "agreements": ["x"], "divergences": [], "confidence": 0.4}',
    )
    other = MockProvider("google", "yes")

    result = await ask("Q?", [judge, other], retry=no_delay_retry)

    assert result.rounds == 1


async def test_unparseable_verdict_keeps_deliberating_then_synthesizes(no_delay_retry):
    judge = MockProvider("openai", "yes", analysis_reply="I think they mostly agree.")
    other = MockProvider("google", "no")

    result = await ask("Q?", [judge, other], max_rounds=3, retry=no_delay_retry)

    assert result.rounds == 3
    assert result.analysis.parse_failed is True
    assert result.analysis.has_consensus is False
    assert result.consensus == "Synthesized answer"
    synthesis_prompt = judge.prompts_starting_with(SYNTHESIS_MARKER)[0]
    assert "Unable to parse analysis" in synthesis_prompt


# --- Single-provider shortcut ---

async def test_single_provider_skips_deliberation(no_delay_retry):
    only = MockProvider("openai", "Just one answer")

    result = await ask("Q?", [only], retry=no_delay_retry)

    assert result.rounds == 1
    assert result.consensus == "Just one answer"
    assert result.judge is None
    assert only.chat.await_count == 1
    assert not only.prompts_starting_with(ANALYSIS_MARKER)
    assert not only.prompts_starting_with(SYNTHESIS_MARKER)


async def test_single_survivor_skips_deliberation_but_reports_failures(no_delay_retry):
    survivor = MockProvider("google", "Only I answered")
    a = _failing(MockProvider("openai"), "401 Unauthorized")
    b = _failing(MockProvider("anthropic"), "400 Bad request")

    result = await ask("Q?", [a, survivor, b], retry=no_delay_retry)

    assert result.rounds == 1
    assert result.consensus == "Only I answered"
    assert survivor.chat.await_count == 1
    assert {e.provider for e in result.errors} == {"openai", "anthropic"}
    assert result.providers == ["openai", "google", "anthropic"]


# --- Partial and total failure ---

async def test_partial_failure_is_visible(no_delay_retry):
    a = MockProvider("openai", "A says")
    b = _failing(MockProvider("anthropic"), "401 Unauthorized")
    c = MockProvider("google", "C says")

    result = await ask("Q?", [a, b, c], retry=no_delay_retry)

    assert [r.provider for r in result.round_history[0].responses] == ["openai", "google"]
    assert {r.content for r in result.final_responses} == {"A says", "C says"}
    assert len(result.errors) == 1
    assert result.errors[0].provider == "anthropic"
    assert result.errors[0].category == "auth"
    assert result.errors[0].retryable is False
    assert result.providers == ["openai", "anthropic", "google"]


async def test_all_providers_fail_raises_with_details(no_delay_retry):
    a = _failing(MockProvider("openai"), "401 Unauthorized")
    b = _failing(MockProvider("google"), "403 Forbidden")

    with pytest.raises(AllProvidersFailedError) as excinfo:
        await ask("Q?", [a, b], retry=no_delay_retry)

    message = str(excinfo.value)
    assert "All providers failed" in message
    assert "openai" in message and "google" in message
    assert "Auth error" in message
    assert "Verify API key" in message
    assert len(excinfo.value.errors) == 2
    assert a.chat.await_count == 1


@pytest.mark.parametrize(
    "first, second, expected",
    [
        ("429 Rate limit", "429 Too many requests", "Rate limit"),
        ("500 Internal server error", "503 Service unavailable", "Server error"),
        ("Network ECONNREFUSED", "Network timeout", "Network error"),
        ("400 Bad request", "404 Not found", "Client error"),
        ("Unknown error type", "Some other error", "Check API keys"),
    ],
)
async def test_total_failure_message_per_category(first, second, expected, no_delay_retry):
    a = _failing(MockProvider("openai"), first)
    b = _failing(MockProvider("google"), second)

    with pytest.raises(AllProvidersFailedError, match=expected):
        await ask("Q?", [a, b], retry=no_delay_retry)


async def test_rate_limited_provider_is_retried_then_recorded(no_delay_retry):
    good = MockProvider("openai", "fine")
    limited = _failing(MockProvider("google"), "429 rate limit")

    result = await ask("Q?", [good, limited], retry=no_delay_retry)

    assert limited.chat.await_count == 3
    assert result.errors[0].category == "rate_limit"
    assert result.rounds == 1


async def test_transient_failure_recovers_on_retry(no_delay_retry):
    good = MockProvider("openai", "fine")
    flaky = MockProvider("google", "recovered")
    flaky.chat = AsyncMock(side_effect=[
        ProviderError("google", "503 Service unavailable"),
        "recovered",
    ])

    result = await ask("Q?", [good, flaky], max_rounds=1, retry=no_delay_retry)

    assert flaky.chat.await_count == 2
    assert not result.errors
    assert {r.provider for r in result.round_history[0].responses} == {"openai", "google"}


async def test_failed_refinement_carries_previous_answer(no_delay_retry):
    judge = MockProvider("openai", "Use Redis", analysis_reply=DIVERGENT_JSON)
    flaky = MockProvider("google", "Use in-memory cache")
    original = flaky._respond

    async def fail_on_refinement(messages, model=None, callbacks=None):
        if messages[-1]["content"].startswith(REFINEMENT_MARKER):
            raise ProviderError("google", "400 Bad request")
        return await original(messages, model, callbacks)

    flaky.chat = AsyncMock(side_effect=fail_on_refinement)

    result = await ask("Q?", [judge, flaky], max_rounds=2, retry=no_delay_retry)

    assert result.rounds == 2
    assert [r.provider for r in result.round_history[1].responses] == ["openai"]
    carried = next(r for r in result.final_responses if r.provider == "google")
    assert carried.content == "Use in-memory cache"
    assert carried.round_number == 1
    assert result.errors[0].stage == "refinement"
    assert result.errors[0].round_number == 2


async def test_all_refinements_failing_raises(no_delay_retry):
    a = MockProvider("openai", "A", analysis_reply=DIVERGENT_JSON)
    b = MockProvider("google", "B")
    c = _failing(MockProvider("anthropic"), "401 Unauthorized")
    for provider in (a, b):
        original = provider._respond

        async def fail_on_refinement(messages, model=None, callbacks=None, _orig=original, _name=provider.name()):
            if messages[-1]["content"].startswith(REFINEMENT_MARKER):
                raise ProviderError(_name, "400 Bad request")
            return await _orig(messages, model, callbacks)

        provider.chat = AsyncMock(side_effect=fail_on_refinement)

    with pytest.raises(AllProvidersFailedError) as excinfo:
        await ask("Q?", [a, b, c], max_rounds=3, retry=no_delay_retry)

    assert excinfo.value.round_number == 2
    assert [(e.provider, e.stage) for e in excinfo.value.errors] == [
        ("anthropic", "initial"),
        ("openai", "refinement"),
        ("google", "refinement"),
    ]
    assert "anthropic (Auth error)" in str(excinfo.value)


async def test_judge_failure_during_analysis_degrades(no_delay_retry):
    judge = MockProvider("openai", "yes")
    original = judge._respond

    async def fail_on_analysis(messages, model=None, callbacks=None):
        if messages[-1]["content"].startswith(ANALYSIS_MARKER):
            raise ProviderError("openai", "401 Unauthorized")
        return await original(messages, model, callbacks)

    judge.chat = AsyncMock(side_effect=fail_on_analysis)
    other = MockProvider("google", "no")

    result = await ask("Q?", [judge, other], max_rounds=2, retry=no_delay_retry)

    assert result.rounds == 2
    assert result.analysis.parse_failed is True
    assert [e.stage for e in result.errors] == ["analysis", "analysis"]
    assert result.consensus == "Synthesized answer"


async def test_synthesis_failure_raises(no_delay_retry):
    judge = MockProvider("openai", "yes", synthesis_reply="   ")
    other = MockProvider("google", "yes")

    with pytest.raises(DeliberationError, match="empty content"):
        await ask("Q?", [judge, other], retry=no_delay_retry)


# --- Judge selection ---

async def test_judge_follows_preference_and_stays_fixed(no_delay_retry):
    openai = MockProvider("openai", "A")
    anthropic = MockProvider("anthropic", "B", analysis_reply=DIVERGENT_JSON)
    google = MockProvider("google", "C")

    result = await ask("Q?", [openai, anthropic, google], max_rounds=3, retry=no_delay_retry)

    assert result.judge == "anthropic"
    assert len(anthropic.prompts_starting_with(ANALYSIS_MARKER)) == 3
    assert len(anthropic.prompts_starting_with(SYNTHESIS_MARKER)) == 1
    for provider in (openai, google):
        assert not provider.prompts_starting_with(ANALYSIS_MARKER)
        assert not provider.prompts_starting_with(SYNTHESIS_MARKER)


async def test_custom_judge_preference(no_delay_retry):
    providers = [MockProvider("openai", "A"), MockProvider("google", "B")]

    result = await ask("Q?", providers, judge_preference=["google"], retry=no_delay_retry)

    assert result.judge == "google"


async def test_judge_falls_back_when_preferred_failed(no_delay_retry):
    anthropic = _failing(MockProvider("anthropic"), "401 Unauthorized")
    google = MockProvider("google", "B")
    openai = MockProvider("openai", "A")

    result = await ask("Q?", [google, anthropic, openai], retry=no_delay_retry)

    assert result.judge == "openai"


def test_select_judge_defaults_to_first_answering_provider():
    providers = [MockProvider("zeta"), MockProvider("alpha")]
    responses = [
        ModelResponse("alpha", "m", 1, "x", 0.0),
        ModelResponse("zeta", "m", 1, "y", 0.0),
    ]
    assert select_judge(providers, responses, preference=["openai"]).name() == "zeta"


# --- Inputs, usage, status ---

async def test_context_and_prior_responses_reach_every_provider(two_mock_providers, no_delay_retry):
    await ask(
        "Reconsider your answer",
        two_mock_providers,
        context="def add(a, b): return a - b",
        prior_responses=[
            PriorResponse("openai", "Initial OpenAI response"),
            PriorResponse("", "orphan"),
        ],
        retry=no_delay_retry,
    )

    for provider in two_mock_providers:
        initial = provider.prompts[0]
        assert initial.startswith("Context:\ndef add(a, b): return a - b")
        assert "Question: Reconsider your answer" in initial
        assert "Previous responses from models" in initial
        assert "[openai]: Initial OpenAI response" in initial
        assert "orphan" not in initial


async def test_usage_recorded_for_every_successful_call(two_mock_providers, no_delay_retry):
    tracker = UsageTracker(pricing={}, usage_file=None)

    await ask("What is 2+2?", two_mock_providers, usage=tracker, retry=no_delay_retry)

    session = tracker.snapshot()["session"]
    assert session["providers"]["openai"]["requests"] == 3  # answer, analysis, synthesis
    assert session["providers"]["google"]["requests"] == 1
    assert session["providers"]["openai"]["input_tokens"] > 0


async def test_usage_file_written_off_the_event_loop(two_mock_providers, no_delay_retry, tmp_path):
    loop_thread = threading.get_ident()
    writer_threads: list[int] = []

    class RecordingTracker(UsageTracker):
        def record(self, provider, input_tokens, output_tokens):
            writer_threads.append(threading.get_ident())
            super().record(provider, input_tokens, output_tokens)

    tracker = RecordingTracker(pricing={}, usage_file=tmp_path / "usage.json")

    await ask("What is 2+2?", two_mock_providers, usage=tracker, retry=no_delay_retry)

    assert len(writer_threads) == 4
    assert loop_thread not in writer_threads
    assert tracker.snapshot()["monthly"]["providers"]["openai"]["requests"] == 3


async def test_failed_calls_are_not_billed(no_delay_retry):
    tracker = UsageTracker(pricing={}, usage_file=None)
    good = MockProvider("openai", "fine")
    bad = _failing(MockProvider("google"), "401 Unauthorized")

    await ask("Q?", [good, bad], usage=tracker, retry=no_delay_retry)

    assert "google" not in tracker.snapshot()["session"]["providers"]


async def test_status_phases_in_order(no_delay_retry):
    judge = MockProvider("openai", "A", analysis_reply=DIVERGENT_JSON)
    other = MockProvider("google", "B")
    phases: list[str] = []

    await ask("Q?", [judge, other], max_rounds=2, retry=no_delay_retry,
              on_status=lambda s: phases.append(s.phase))

    assert phases == ["initial", "analysis", "deliberation", "analysis", "synthesis", "complete"]


async def test_status_reports_error_on_total_failure(no_delay_retry):
    phases: list[str] = []
    providers = [_failing(MockProvider("openai"), "401"), _failing(MockProvider("google"), "401")]

    with pytest.raises(AllProvidersFailedError):
        await ask("Q?", providers, retry=no_delay_retry, on_status=lambda s: phases.append(s.phase))

    assert phases == ["initial", "error"]


async def test_rejects_no_providers():
    with pytest.raises(DeliberationError, match="No providers"):
        await ask("Q?", [])


async def test_rejects_bad_max_rounds(two_mock_providers):
    with pytest.raises(ValueError, match="max_rounds"):
        await ask("Q?", two_mock_providers, max_rounds=0)


async def test_rejects_duplicate_provider_names():
    with pytest.raises(ValueError, match="Duplicate"):
        await ask("Q?", [MockProvider("openai"), MockProvider("openai")])


async def test_rejects_empty_question(two_mock_providers):
    with pytest.raises(ValueError, match="question"):
        await ask("   ", two_mock_providers)


# --- Quality gate ---

async def test_quality_gate_warns_when_too_few_respond(no_delay_retry, caplog):
    providers = [
        MockProvider("p1", "Response 1"),
        MockProvider("p2", "Response 2"),
        _failing(MockProvider("p3"), "401"),
        _failing(MockProvider("p4"), "401"),
    ]

    with caplog.at_level(logging.WARNING):
        await ask("Q?", providers, retry=no_delay_retry)

    assert any("Only 2/4" in msg for msg in caplog.messages)


async def test_quality_gate_silent_for_small_panels(two_mock_providers, no_delay_retry, caplog):
    with caplog.at_level(logging.WARNING):
        await ask("Q?", two_mock_providers, retry=no_delay_retry)

    assert not any("quality is degraded" in msg for msg in caplog.messages)
