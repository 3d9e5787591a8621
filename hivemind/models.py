"""Pure dataclasses for the Hivemind deliberation pipeline. No logic, no deps."""

from collections.abc import Callable
from dataclasses import dataclass, field

PARSE_FAILURE_DIVERGENCE = "Unable to parse analysis"


@dataclass(frozen=True)
class ModelResponse:
    provider: str          # "openai", "anthropic", "google"
    model: str             # actual model string used
    round_number: int
    content: str
    timestamp: float
    latency_sec: float = 0.0


@dataclass
class ConsensusAnalysis:
    has_consensus: bool
    agreements: list[str] = field(default_factory=list)
    divergences: list[str] = field(default_factory=list)
    confidence: float = 0.0
    parse_failed: bool = False  # True only for the judge-output parse failure default

    @classmethod
    def parse_failure(cls) -> "ConsensusAnalysis":
        return cls(
            has_consensus=False,
            agreements=[],
            divergences=[PARSE_FAILURE_DIVERGENCE],
            confidence=0.0,
            parse_failed=True,
        )

    @classmethod
    def single_response(cls) -> "ConsensusAnalysis":
        return cls(has_consensus=True, agreements=[], divergences=[], confidence=1.0)


@dataclass(frozen=True)
class ErrorRecord:
    provider: str
    message: str
    category: str          # "auth", "rate_limit", "server", "network", "client", "unknown"
    retryable: bool
    round_number: int = 1
    stage: str = "initial"  # "initial", "refinement", "analysis"


@dataclass(frozen=True)
class PriorResponse:
    provider: str
    content: str


@dataclass
class Round:
    number: int
    responses: list[ModelResponse] = field(default_factory=list)


@dataclass
class DeliberationState:
    round: int
    max_rounds: int
    responses: list[ModelResponse] = field(default_factory=list)
    analysis: ConsensusAnalysis | None = None


@dataclass
class DeliberationStatus:
    phase: str             # "initial", "analysis", "deliberation", "synthesis", "complete", "error"
    message: str
    round: int | None = None
    max_rounds: int | None = None
    provider_statuses: dict[str, str] = field(default_factory=dict)


@dataclass
class StreamCallbacks:
    on_token: Callable[[str], None] | None = None
    on_complete: Callable[[str], None] | None = None
    on_error: Callable[[Exception], None] | None = None


@dataclass
class DeliberationResult:
    question: str
    consensus: str
    analysis: ConsensusAnalysis
    rounds: int
    round_history: list[Round]
    final_responses: list[ModelResponse]
    errors: list[ErrorRecord] = field(default_factory=list)
    providers: list[str] = field(default_factory=list)  # every provider configured for the call
    judge: str | None = None
    total_duration_sec: float = 0.0
