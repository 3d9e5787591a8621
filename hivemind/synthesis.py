"""Final synthesis: build the synthesis prompt and ask the judge for one answer."""

import logging

from config.config_loader import RetryConfig
from hivemind.errors import DeliberationError
from hivemind.models import ConsensusAnalysis, ModelResponse
from hivemind.prompts import build_synthesis_prompt
from hivemind.providers.base import AIProvider
from hivemind.retry import retry_with_backoff
from hivemind.usage import UsageTracker

logger = logging.getLogger(__name__)


async def synthesize(
    question: str,
    responses: list[ModelResponse],
    analysis: ConsensusAnalysis,
    rounds: int,
    judge: AIProvider,
    retry: RetryConfig | None = None,
    usage: UsageTracker | None = None,
) -> str:
    """Run synthesis and return the consensus text.

    Args:
        question: The original question.
        responses: The final response set, one per provider.
        analysis: The last consensus analysis; its divergences are passed on
            so the synthesis addresses them.
        rounds: Number of rounds the deliberation ran.
        judge: The provider that analyzed the rounds.
        retry: Retry policy for the synthesis call.
        usage: Optional usage tracker.

    Raises:
        DeliberationError: If the judge fails or returns empty content.
    """
    prompt = build_synthesis_prompt(question, responses, analysis, rounds)

    logger.info("Running synthesis via %s", judge.name())

    try:
        content = await retry_with_backoff(
            lambda: judge.chat([{"role": "user", "content": prompt}]),
            f"{judge.name()} synthesis",
            retry,
        )
    except Exception as exc:
        raise DeliberationError(f"Synthesis by {judge.name()} failed: {exc}") from exc

    if not content or not content.strip():
        raise DeliberationError(f"Synthesizer {judge.name()} returned empty content")

    if usage is not None:
        await usage.record_text_async(judge.name(), prompt, content)

    return content
