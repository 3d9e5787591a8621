"""Error classification and user-facing failure reporting.

Vendor SDKs do not surface errors uniformly, so classification prefers the
numeric status a ProviderError carries and falls back to matching the
rendered message text.
"""

import re
from dataclasses import dataclass

from hivemind.models import ErrorRecord
from hivemind.providers.base import ProviderError

AUTH = "auth"
RATE_LIMIT = "rate_limit"
SERVER = "server"
NETWORK = "network"
CLIENT = "client"
UNKNOWN = "unknown"

CATEGORY_LABELS: dict[str, str] = {
    AUTH: "Auth error",
    RATE_LIMIT: "Rate limit",
    SERVER: "Server error",
    NETWORK: "Network error",
    CLIENT: "Client error",
    UNKNOWN: "Unknown error",
}

SUGGESTIONS: dict[str, str] = {
    AUTH: "Verify API key is valid and has access to the configured model",
    RATE_LIMIT: "Wait a moment and retry; the provider is throttling requests",
    SERVER: "Provider-side issue, retry later",
    NETWORK: "Check network connectivity",
    CLIENT: "Check the model name and request parameters",
    UNKNOWN: "Check API keys and network connectivity",
}

_RETRYABLE = {RATE_LIMIT, SERVER, NETWORK}

# Checked in order; first match wins.
_MESSAGE_PATTERNS: list[tuple[str, re.Pattern[str]]] = [
    (AUTH, re.compile(r"\b40[13]\b|unauthorized|forbidden")),
    (RATE_LIMIT, re.compile(r"\b429\b|rate limit|too many requests")),
    (SERVER, re.compile(r"\b50[0234]\b|internal server|unavailable")),
    (CLIENT, re.compile(r"\b40[04]\b|bad request|not found")),
    (
        NETWORK,
        re.compile(
            r"econnrefused|connection refused|econnreset|connection reset|etimedout"
            r"|timed out|timeout|unreachable|enotfound|name or service not known"
            r"|getaddrinfo|fetch failed|network|connection error"
        ),
    ),
]


class DeliberationError(RuntimeError):
    """Raised when a deliberation cannot produce a result."""


class AllProvidersFailedError(DeliberationError):
    """Raised when no provider produced a response in a round."""

    def __init__(self, errors: list[ErrorRecord], round_number: int = 1) -> None:
        self.errors = errors
        self.round_number = round_number
        super().__init__(format_failure_message(errors))


@dataclass(frozen=True)
class ErrorClassification:
    category: str
    retryable: bool


def _category_for_status(status_code: int) -> str | None:
    if status_code in (401, 403):
        return AUTH
    if status_code == 429:
        return RATE_LIMIT
    if 500 <= status_code < 600:
        return SERVER
    if 400 <= status_code < 500:
        return CLIENT
    return None


def categorize_error(error: BaseException | str) -> ErrorClassification:
    """Map an error to a category and whether retrying it makes sense."""
    category = None
    if isinstance(error, ProviderError) and error.status_code is not None:
        category = _category_for_status(error.status_code)

    if category is None:
        message = str(error).lower()
        category = next(
            (name for name, pattern in _MESSAGE_PATTERNS if pattern.search(message)),
            UNKNOWN,
        )

    return ErrorClassification(category=category, retryable=category in _RETRYABLE)


def error_record(
    provider: str,
    error: BaseException,
    round_number: int = 1,
    stage: str = "initial",
) -> ErrorRecord:
    classification = categorize_error(error)
    return ErrorRecord(
        provider=provider,
        message=str(error) or type(error).__name__,
        category=classification.category,
        retryable=classification.retryable,
        round_number=round_number,
        stage=stage,
    )


def suggestions_for(errors: list[ErrorRecord]) -> list[str]:
    """One suggestion per distinct category, in first-seen order."""
    seen: list[str] = []
    for record in errors:
        if record.category not in seen:
            seen.append(record.category)
    return [SUGGESTIONS.get(category, SUGGESTIONS[UNKNOWN]) for category in seen]


def format_failure_message(errors: list[ErrorRecord]) -> str:
    lines = ["All providers failed:"]
    for record in errors:
        label = CATEGORY_LABELS.get(record.category, CATEGORY_LABELS[UNKNOWN])
        lines.append(f"  - {record.provider} ({label}): {record.message}")
    suggestions = suggestions_for(errors) or [SUGGESTIONS[UNKNOWN]]
    lines.append("")
    lines.append("Suggestions:")
    lines.extend(f"  - {s}" for s in suggestions)
    return "\n".join(lines)
