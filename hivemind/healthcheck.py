"""Provider health checks: validate each API key before starting a deliberation."""

import asyncio
import logging

from hivemind.providers.base import AIProvider

logger = logging.getLogger(__name__)

_TIMEOUT_SEC = 15.0


async def _check_one(name: str, provider: AIProvider) -> tuple[str, bool, str]:
    """Validate a single provider's key. Returns (name, ok, error_message)."""
    try:
        ok = await asyncio.wait_for(provider.validate_key(), timeout=_TIMEOUT_SEC)
    except TimeoutError:
        return name, False, f"Key check timed out after {_TIMEOUT_SEC:.0f}s"
    except Exception as exc:
        return name, False, str(exc)
    if not ok:
        return name, False, "API key rejected"
    return name, True, ""


async def run_health_checks(
    providers: dict[str, AIProvider],
) -> dict[str, tuple[bool, str]]:
    """Validate all providers in parallel.

    Returns:
        Dict mapping provider name -> (ok, error_message).
        error_message is "" when ok is True.
    """
    results = await asyncio.gather(*(_check_one(n, p) for n, p in providers.items()))
    for name, ok, err in results:
        if not ok:
            logger.debug("Health check failed for %s: %s", name, err)
    return {name: (ok, err) for name, ok, err in results}
