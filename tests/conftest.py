"""Shared pytest fixtures."""

import time
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from config.config_loader import AppConfig, DefaultsConfig, ModelConfig, PriceConfig, RetryConfig
from hivemind.models import ConsensusAnalysis, ModelResponse, Round, StreamCallbacks
from hivemind.providers.base import AIProvider

ANALYSIS_MARKER = "You are an impartial analyst"
REFINEMENT_MARKER = "You previously answered a question"
SYNTHESIS_MARKER = "You are synthesizing a consensus"

CONSENSUS_JSON = '{"hasConsensus": true, "agreements": ["same answer"], "divergences": [], "confidence": 0.95}'
DIVERGENT_JSON = (
    '{"hasConsensus": false, "agreements": [], '
    '"divergences": ["caching backend choice"], "confidence": 0.3}'
)


@pytest.fixture
def no_delay_retry() -> RetryConfig:
    return RetryConfig(max_attempts=3, base_delay_sec=0.0, multiplier=2.0)


@pytest.fixture
def sample_defaults_config(tmp_path: Path) -> DefaultsConfig:
    return DefaultsConfig(
        max_rounds=3,
        output_dir=tmp_path / "output",
        panel=["openai", "anthropic", "google"],
    )


@pytest.fixture
def sample_app_config(sample_defaults_config: DefaultsConfig) -> AppConfig:
    models = {
        "openai": ModelConfig(
            name="openai", sdk="openai", model="gpt-4.1",
            api_key_env="OPENAI_API_KEY", timeout_sec=60, max_tokens=4096,
        ),
        "anthropic": ModelConfig(
            name="anthropic", sdk="anthropic", model="claude-opus-4-5-20251101",
            api_key_env="ANTHROPIC_API_KEY", timeout_sec=60, max_tokens=4096,
        ),
        "google": ModelConfig(
            name="google", sdk="google-genai", model="gemini-2.5-pro",
            api_key_env="GOOGLE_API_KEY", timeout_sec=60, max_tokens=4096,
        ),
    }
    return AppConfig(
        defaults=sample_defaults_config,
        models=models,
        pricing={"openai": PriceConfig(2.5, 10.0)},
        api_keys={"openai": "sk-test", "google": "AIza-test"},
        available_providers={"openai", "google"},
    )


@pytest.fixture
def sample_response() -> ModelResponse:
    return ModelResponse(
        provider="openai",
        model="gpt-4.1",
        round_number=1,
        content="Use YAML for human-editable config, JSON for machine interchange.",
        timestamp=time.time(),
        latency_sec=1.5,
    )


@pytest.fixture
def sample_round(sample_response: ModelResponse) -> Round:
    return Round(number=1, responses=[sample_response])


@pytest.fixture
def consensus_analysis() -> ConsensusAnalysis:
    return ConsensusAnalysis(
        has_consensus=True,
        agreements=["same answer"],
        divergences=[],
        confidence=0.95,
    )


class MockProvider(AIProvider):
    """Test double AIProvider.

    Answers the analysis and synthesis prompts with analysis_reply and
    synthesis_reply, refinement prompts with refined_content, and anything
    else with response_content. Every prompt is kept in self.prompts.
    """

    def __init__(
        self,
        provider_name: str = "mock",
        response_content: str = "Mock response",
        *,
        analysis_reply: str = CONSENSUS_JSON,
        synthesis_reply: str = "Synthesized answer",
        refined_content: str | None = None,
    ) -> None:
        self._name = provider_name
        self.response_content = response_content
        self.analysis_reply = analysis_reply
        self.synthesis_reply = synthesis_reply
        self.refined_content = refined_content or f"Refined: {response_content}"
        self.prompts: list[str] = []
        # Shadow the class method with an AsyncMock at the instance level.
        # ABC check passes because chat is defined in the class body below.
        self.chat = AsyncMock(side_effect=self._respond)  # type: ignore[assignment]
        self.validate_key = AsyncMock(return_value=True)  # type: ignore[assignment]

    async def _respond(self, messages, model=None, callbacks=None) -> str:
        prompt = messages[-1]["content"]
        self.prompts.append(prompt)
        if prompt.startswith(ANALYSIS_MARKER):
            return self.analysis_reply
        if prompt.startswith(SYNTHESIS_MARKER):
            return self.synthesis_reply
        if prompt.startswith(REFINEMENT_MARKER):
            return self.refined_content
        return self.response_content

    def prompts_starting_with(self, marker: str) -> list[str]:
        return [p for p in self.prompts if p.startswith(marker)]

    def name(self) -> str:
        return self._name

    def model_string(self) -> str:
        return f"{self._name}-model"

    async def chat(self, messages, model=None, callbacks: StreamCallbacks | None = None) -> str:  # type: ignore[override]
        """Default implementation; replaced by AsyncMock in __init__."""
        return self.response_content

    async def validate_key(self) -> bool:  # type: ignore[override]
        """Default implementation; replaced by AsyncMock in __init__."""
        return True


@pytest.fixture
def two_mock_providers() -> list[MockProvider]:
    return [MockProvider("openai", "4"), MockProvider("google", "The answer is 4")]
