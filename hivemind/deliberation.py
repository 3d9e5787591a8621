"""Deliberation orchestration: parallel fan-out, consensus analysis, refinement rounds."""

import asyncio
import logging
import time
from collections.abc import Callable

from config.config_loader import DEFAULT_JUDGE_PREFERENCE, RetryConfig
from hivemind.errors import AllProvidersFailedError, DeliberationError, error_record
from hivemind.models import (
    ConsensusAnalysis,
    DeliberationResult,
    DeliberationState,
    DeliberationStatus,
    ErrorRecord,
    ModelResponse,
    PriorResponse,
    Round,
)
from hivemind.prompts import (
    build_analysis_prompt,
    build_initial_message,
    build_refinement_prompt,
    parse_analysis,
)
from hivemind.providers.base import AIProvider
from hivemind.retry import retry_with_backoff
from hivemind.synthesis import synthesize
from hivemind.usage import UsageTracker

logger = logging.getLogger(__name__)

DEFAULT_MAX_ROUNDS = 3
CONSENSUS_THRESHOLD = 0.8

# Quality gate: warn when fewer than this many models respond in Round 1
_MIN_QUALITY_RESPONSES = 3

StatusCallback = Callable[[DeliberationStatus], None]


def _emit(on_status: StatusCallback | None, status: DeliberationStatus) -> None:
    if on_status:
        on_status(status)


async def _call_provider(
    provider: AIProvider,
    prompt: str,
    round_number: int,
    stage: str,
    retry: RetryConfig | None,
    usage: UsageTracker | None,
) -> ModelResponse | ErrorRecord:
    """Call a single provider through the retry driver.

    Never raises; returns ErrorRecord on permanent failure.
    """
    start = time.monotonic()
    try:
        content = await retry_with_backoff(
            lambda: provider.chat([{"role": "user", "content": prompt}]),
            f"{provider.name()} round {round_number}",
            retry,
        )
    except Exception as exc:
        record = error_record(provider.name(), exc, round_number, stage)
        logger.warning(
            "Provider %s failed in round %d (%s): %s",
            provider.name(), round_number, record.category, exc,
        )
        return record

    if usage is not None:
        await usage.record_text_async(provider.name(), prompt, content)

    return ModelResponse(
        provider=provider.name(),
        model=provider.model_string(),
        round_number=round_number,
        content=content,
        timestamp=time.time(),
        latency_sec=time.monotonic() - start,
    )


def select_judge(
    providers: list[AIProvider],
    responses: list[ModelResponse],
    preference: list[str],
) -> AIProvider:
    """Pick the judge among providers that answered round 1.

    The first answering provider named in preference wins; otherwise the
    first answering provider in configuration order.
    """
    answered = {r.provider for r in responses}
    by_name = {p.name(): p for p in providers}
    for name in preference:
        if name in answered and name in by_name:
            return by_name[name]
    return next(p for p in providers if p.name() in answered)


def _stop_reason(
    analysis: ConsensusAnalysis,
    round_number: int,
    max_rounds: int,
    consensus_threshold: float,
) -> str | None:
    if analysis.has_consensus:
        return "consensus reached"
    if analysis.confidence > consensus_threshold:
        return f"confidence {analysis.confidence:.2f} above threshold"
    if not analysis.parse_failed and not analysis.divergences:
        return "no divergences left"
    if round_number >= max_rounds:
        return f"max rounds ({max_rounds}) reached"
    return None


async def _analyze(
    question: str,
    state: DeliberationState,
    judge: AIProvider,
    retry: RetryConfig | None,
    usage: UsageTracker | None,
) -> tuple[ConsensusAnalysis, ErrorRecord | None]:
    prompt = build_analysis_prompt(question, state.responses)
    try:
        raw = await retry_with_backoff(
            lambda: judge.chat([{"role": "user", "content": prompt}]),
            f"{judge.name()} analysis",
            retry,
        )
    except Exception as exc:
        record = error_record(judge.name(), exc, state.round, "analysis")
        logger.warning("Analysis by %s failed in round %d: %s", judge.name(), state.round, exc)
        return ConsensusAnalysis.parse_failure(), record

    if usage is not None:
        await usage.record_text_async(judge.name(), prompt, raw)

    analysis = parse_analysis(raw)
    logger.info(
        "Round %d analysis: consensus=%s confidence=%.2f divergences=%d",
        state.round, analysis.has_consensus, analysis.confidence, len(analysis.divergences),
    )
    return analysis, None


async def _refine(
    question: str,
    state: DeliberationState,
    providers_by_name: dict[str, AIProvider],
    retry: RetryConfig | None,
    usage: UsageTracker | None,
) -> tuple[list[ModelResponse], list[ModelResponse], list[ErrorRecord]]:
    """Ask every provider in the current set to reconsider.

    Returns (current set for the next round, new responses, errors). A provider
    whose refinement fails keeps its previous answer in the current set.
    """
    next_round = state.round + 1
    divergences = state.analysis.divergences if state.analysis else []
    current = state.responses

    tasks = [
        _call_provider(
            providers_by_name[previous.provider],
            build_refinement_prompt(
                question,
                previous.content,
                current,
                divergences,
                exclude_provider=previous.provider,
            ),
            next_round,
            "refinement",
            retry,
            usage,
        )
        for previous in current
    ]
    results = await asyncio.gather(*tasks)

    carried: list[ModelResponse] = []
    fresh: list[ModelResponse] = []
    errors: list[ErrorRecord] = []
    for previous, result in zip(current, results):
        if isinstance(result, ModelResponse):
            carried.append(result)
            fresh.append(result)
        else:
            carried.append(previous)
            errors.append(result)
    return carried, fresh, errors


async def ask(
    question: str,
    providers: list[AIProvider],
    *,
    context: str | None = None,
    prior_responses: list[PriorResponse] | None = None,
    max_rounds: int = DEFAULT_MAX_ROUNDS,
    judge_preference: list[str] | None = None,
    consensus_threshold: float = CONSENSUS_THRESHOLD,
    retry: RetryConfig | None = None,
    usage: UsageTracker | None = None,
    on_status: StatusCallback | None = None,
) -> DeliberationResult:
    """Query every provider, deliberate until they agree or rounds run out, synthesize.

    Args:
        question: The question to answer.
        providers: Configured providers, in configuration order. Names must be unique.
        context: Optional shared context (code, files) sent with the question.
        prior_responses: Optional answers from a previous turn, for follow-ups.
        max_rounds: Upper bound on analysis rounds (>= 1).
        judge_preference: Provider names in order of preference for the judge role.
        consensus_threshold: Confidence above which deliberation stops.
        retry: Retry policy for every provider call.
        usage: Optional usage tracker fed after every successful call.
        on_status: Optional callback invoked on every phase change.

    Returns:
        DeliberationResult; failed providers are listed in its errors.

    Raises:
        AllProvidersFailedError: If every provider fails in a round.
        DeliberationError: If no provider is configured or synthesis fails.
        ValueError: On an empty question, max_rounds < 1, or duplicate provider names.
    """
    if not providers:
        raise DeliberationError("No providers configured. Set at least one API key.")
    if not question or not question.strip():
        raise ValueError("question is required")
    if max_rounds < 1:
        raise ValueError(f"max_rounds must be >= 1, got {max_rounds}")
    names = [p.name() for p in providers]
    if len(set(names)) != len(names):
        raise ValueError(f"Duplicate provider names: {names}")

    start = time.monotonic()
    errors: list[ErrorRecord] = []

    _emit(on_status, DeliberationStatus(
        phase="initial",
        message="Querying models...",
        round=1,
        max_rounds=max_rounds,
        provider_statuses={n: "loading" for n in names},
    ))

    logger.info("Starting round 1 with %d providers", len(providers))
    initial_prompt = build_initial_message(question, context, prior_responses)
    results = await asyncio.gather(*(
        _call_provider(p, initial_prompt, 1, "initial", retry, usage) for p in providers
    ))

    responses = [r for r in results if isinstance(r, ModelResponse)]
    errors.extend(r for r in results if isinstance(r, ErrorRecord))
    statuses = {n: "error" for n in names} | {r.provider: "done" for r in responses}

    if not responses:
        _emit(on_status, DeliberationStatus(
            phase="error",
            message="All providers failed",
            round=1,
            max_rounds=max_rounds,
            provider_statuses=statuses,
        ))
        raise AllProvidersFailedError(errors, round_number=1)

    # Quality gate: warn when Round 1 has low participation on a large panel
    if len(providers) >= _MIN_QUALITY_RESPONSES and len(responses) < _MIN_QUALITY_RESPONSES:
        logger.warning(
            "Only %d/%d providers responded in round 1. Deliberation quality is degraded.",
            len(responses),
            len(providers),
        )
    logger.info("Round 1 complete: %d/%d providers succeeded", len(responses), len(providers))

    history = [Round(number=1, responses=list(responses))]

    if len(responses) == 1:
        logger.info("Only %s answered, skipping deliberation", responses[0].provider)
        _emit(on_status, DeliberationStatus(
            phase="complete",
            message="Single response",
            round=1,
            max_rounds=max_rounds,
            provider_statuses=statuses,
        ))
        return DeliberationResult(
            question=question,
            consensus=responses[0].content,
            analysis=ConsensusAnalysis.single_response(),
            rounds=1,
            round_history=history,
            final_responses=responses,
            errors=errors,
            providers=names,
            judge=None,
            total_duration_sec=time.monotonic() - start,
        )

    judge = select_judge(providers, responses, judge_preference or DEFAULT_JUDGE_PREFERENCE)
    logger.info("Judge for this deliberation: %s", judge.name())
    providers_by_name = {p.name(): p for p in providers}

    state = DeliberationState(round=1, max_rounds=max_rounds, responses=responses)

    while True:
        _emit(on_status, DeliberationStatus(
            phase="analysis",
            message="Analyzing responses...",
            round=state.round,
            max_rounds=max_rounds,
        ))
        state.analysis, judge_error = await _analyze(question, state, judge, retry, usage)
        if judge_error is not None:
            errors.append(judge_error)

        reason = _stop_reason(state.analysis, state.round, max_rounds, consensus_threshold)
        if reason:
            logger.info("Stopping deliberation after round %d: %s", state.round, reason)
            break

        _emit(on_status, DeliberationStatus(
            phase="deliberation",
            message=f"Round {state.round}/{max_rounds} - Resolving divergences...",
            round=state.round,
            max_rounds=max_rounds,
            provider_statuses={r.provider: "loading" for r in state.responses},
        ))
        carried, fresh, round_errors = await _refine(question, state, providers_by_name, retry, usage)
        errors.extend(round_errors)
        state.round += 1

        if not fresh:
            _emit(on_status, DeliberationStatus(
                phase="error",
                message="All providers failed",
                round=state.round,
                max_rounds=max_rounds,
            ))
            raise AllProvidersFailedError(errors, round_number=state.round)

        logger.info(
            "Round %d complete: %d/%d providers refined",
            state.round, len(fresh), len(state.responses),
        )
        history.append(Round(number=state.round, responses=fresh))
        state.responses = carried

    _emit(on_status, DeliberationStatus(
        phase="synthesis",
        message="Synthesizing consensus...",
        round=state.round,
        max_rounds=max_rounds,
    ))
    try:
        consensus = await synthesize(
            question, state.responses, state.analysis, state.round, judge, retry, usage,
        )
    except DeliberationError:
        _emit(on_status, DeliberationStatus(
            phase="error",
            message="Synthesis failed",
            round=state.round,
            max_rounds=max_rounds,
        ))
        raise

    _emit(on_status, DeliberationStatus(
        phase="complete",
        message="Consensus reached" if state.analysis.has_consensus else "Synthesis complete",
        round=state.round,
        max_rounds=max_rounds,
    ))

    return DeliberationResult(
        question=question,
        consensus=consensus,
        analysis=state.analysis,
        rounds=state.round,
        round_history=history,
        final_responses=list(state.responses),
        errors=errors,
        providers=names,
        judge=judge.name(),
        total_duration_sec=time.monotonic() - start,
    )
