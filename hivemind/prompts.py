"""Prompt templates for analysis, refinement and synthesis, plus the verdict parser."""

import json
import logging
import math
import re
from typing import Any

from hivemind.models import ConsensusAnalysis, ModelResponse, PriorResponse

logger = logging.getLogger(__name__)

ANALYSIS_PROMPT = """You are an impartial analyst. Analyze the following responses from different AI models to the same question.

Question: {question}

Responses:
{responses}

Analyze these responses and output ONLY valid JSON (no markdown, no explanation):
{{
  "hasConsensus": boolean,
  "agreements": ["point1", "point2"],
  "divergences": ["divergence1", "divergence2"],
  "confidence": number between 0 and 1
}}

hasConsensus is true if all models substantially agree on the core answer."""

REFINEMENT_PROMPT = """You previously answered a question, but there are divergences with other AI models.

Original question: {question}

Your previous answer: {previous_answer}

Other models' perspectives:
{other_answers}

Key divergences identified:
{divergences}

Please reconsider your answer taking into account the other perspectives. If you believe your original answer was correct, explain why. If you see merit in the other perspectives, incorporate them. Provide your refined answer."""

SYNTHESIS_PROMPT = """You are synthesizing a consensus from multiple AI model responses.

Original question: {question}

Final responses from models:
{responses}

Agreements:
{agreements}

Divergences:
{divergences}

Rounds of deliberation: {rounds}

Create a final, comprehensive answer that:
1. Synthesizes the agreed-upon points
2. Explicitly addresses any remaining divergences rather than hiding them
3. Presents the most accurate and helpful response

Provide the synthesized consensus answer directly, without preamble."""

_OBJECT_START = re.compile(r"\{")


def _bullets(items: list[str], empty: str = "(none)") -> str:
    if not items:
        return f"- {empty}"
    return "\n".join(f"- {item}" for item in items)


def build_initial_message(
    question: str,
    context: str | None = None,
    prior_responses: list[PriorResponse] | None = None,
) -> str:
    """Render the user message sent to every provider in round 1."""
    message = f"Context:\n{context}\n\nQuestion: {question}" if context else question

    valid = [
        r for r in prior_responses or []
        if r is not None and (r.provider or "").strip() and (r.content or "").strip()
    ]
    if not valid:
        return message

    previous = "\n\n".join(f"[{r.provider.strip()}]: {r.content.strip()}" for r in valid)
    return (
        f"{message}\n\n"
        f"Previous responses from models:\n{previous}\n\n"
        "Take these previous responses into account in your answer."
    )


def format_responses_for_prompt(
    responses: list[ModelResponse],
    exclude_provider: str | None = None,
) -> str:
    return "\n\n".join(
        f"[{r.provider}]: {r.content}"
        for r in responses
        if r.provider != exclude_provider
    )


def build_analysis_prompt(question: str, responses: list[ModelResponse]) -> str:
    return ANALYSIS_PROMPT.format(
        question=question,
        responses=format_responses_for_prompt(responses),
    )


def build_refinement_prompt(
    question: str,
    previous_answer: str,
    responses: list[ModelResponse],
    divergences: list[str],
    exclude_provider: str,
) -> str:
    """Ask one provider to reconsider; its own answer never appears among the others."""
    return REFINEMENT_PROMPT.format(
        question=question,
        previous_answer=previous_answer,
        other_answers=format_responses_for_prompt(responses, exclude_provider=exclude_provider),
        divergences=_bullets(divergences, empty="(none identified)"),
    )


def build_synthesis_prompt(
    question: str,
    responses: list[ModelResponse],
    analysis: ConsensusAnalysis,
    rounds: int,
) -> str:
    return SYNTHESIS_PROMPT.format(
        question=question,
        responses=format_responses_for_prompt(responses),
        agreements=_bullets(analysis.agreements),
        divergences=_bullets(analysis.divergences),
        rounds=rounds,
    )


def _extract_json_object(raw: str) -> dict[str, Any] | None:
    """Return the first decodable JSON object embedded in raw, if any."""
    decoder = json.JSONDecoder()
    for match in _OBJECT_START.finditer(raw):
        try:
            obj, _ = decoder.raw_decode(raw, match.start())
        except json.JSONDecodeError:
            continue
        if isinstance(obj, dict):
            return obj
    return None


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() == "true"
    if isinstance(value, (int, float)):
        return value != 0
    return False


def _as_str_list(value: Any) -> list[str]:
    if not isinstance(value, list):
        return []
    return [item if isinstance(item, str) else json.dumps(item) for item in value if item is not None]


def _as_confidence(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        return 0.5
    try:
        number = float(value)
    except ValueError:
        return 0.5
    if not math.isfinite(number):
        return 0.5
    return min(max(number, 0.0), 1.0)


def parse_analysis(raw: str) -> ConsensusAnalysis:
    """Parse the judge's verdict, tolerating prose and markdown fences around the JSON.

    Returns ConsensusAnalysis.parse_failure() when no JSON object can be found.
    """
    parsed = _extract_json_object(raw or "")
    if parsed is None:
        logger.warning("Could not parse consensus analysis: %.200s", raw)
        return ConsensusAnalysis.parse_failure()

    return ConsensusAnalysis(
        has_consensus=_as_bool(parsed.get("hasConsensus")),
        agreements=_as_str_list(parsed.get("agreements")),
        divergences=_as_str_list(parsed.get("divergences")),
        confidence=_as_confidence(parsed.get("confidence")),
    )
