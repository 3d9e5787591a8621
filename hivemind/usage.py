"""Token and cost accounting for provider calls.

Session counters live in memory; monthly counters are persisted to a JSON
file and reset when the calendar month changes. All updates go through a
single lock so concurrent deliberations can share one tracker.
"""

import asyncio
import json
import logging
import math
import time
from dataclasses import asdict, dataclass
from datetime import datetime
from pathlib import Path
from threading import Lock
from typing import Any

from config.config_loader import PriceConfig

logger = logging.getLogger(__name__)


@dataclass
class ProviderUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    requests: int = 0


def estimate_tokens(text: str) -> int:
    """Rough token estimate: one token per four characters."""
    return math.ceil(len(text or "") / 4)


def _current_month() -> str:
    return datetime.now().strftime("%Y-%m")


class UsageTracker:
    """Tracks per-provider token usage for the session and the current month."""

    def __init__(self, pricing: dict[str, PriceConfig], usage_file: Path | None = None) -> None:
        self.pricing = pricing
        self.usage_file = usage_file
        self._lock = Lock()
        self.session_start = time.time()
        self._session: dict[str, ProviderUsage] = {}

    def _load_monthly(self) -> tuple[str, dict[str, ProviderUsage]]:
        month = _current_month()
        if self.usage_file is None or not self.usage_file.exists():
            return month, {}
        try:
            data = json.loads(self.usage_file.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable usage file %s: %s", self.usage_file, exc)
            return month, {}
        if data.get("month") != month:
            return month, {}
        providers = {
            name: ProviderUsage(
                input_tokens=int(raw.get("input_tokens", 0)),
                output_tokens=int(raw.get("output_tokens", 0)),
                requests=int(raw.get("requests", 0)),
            )
            for name, raw in data.get("providers", {}).items()
        }
        return month, providers

    def _save_monthly(self, month: str, providers: dict[str, ProviderUsage]) -> None:
        if self.usage_file is None:
            return
        self.usage_file.parent.mkdir(parents=True, exist_ok=True)
        payload = {"month": month, "providers": {n: asdict(u) for n, u in providers.items()}}
        self.usage_file.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    def record(self, provider: str, input_tokens: int, output_tokens: int) -> None:
        """Record one successful call."""
        with self._lock:
            usage = self._session.setdefault(provider, ProviderUsage())
            usage.input_tokens += input_tokens
            usage.output_tokens += output_tokens
            usage.requests += 1

            if self.usage_file is None:
                return
            month, monthly = self._load_monthly()
            entry = monthly.setdefault(provider, ProviderUsage())
            entry.input_tokens += input_tokens
            entry.output_tokens += output_tokens
            entry.requests += 1
            try:
                self._save_monthly(month, monthly)
            except OSError as exc:
                logger.warning("Could not persist usage to %s: %s", self.usage_file, exc)

    def record_text(self, provider: str, prompt: str, output: str) -> None:
        """Record a call using estimated token counts for its prompt and output."""
        self.record(provider, estimate_tokens(prompt), estimate_tokens(output))

    async def record_text_async(self, provider: str, prompt: str, output: str) -> None:
        """record_text on a worker thread, keeping the monthly file write off the event loop."""
        await asyncio.to_thread(self.record_text, provider, prompt, output)

    def cost(self, provider: str, usage: ProviderUsage) -> float:
        price = self.pricing.get(provider)
        if price is None:
            return 0.0
        in_cost = (usage.input_tokens / 1_000_000) * price.input_per_million
        out_cost = (usage.output_tokens / 1_000_000) * price.output_per_million
        return in_cost + out_cost

    def _summarize(self, providers: dict[str, ProviderUsage]) -> dict[str, Any]:
        summary: dict[str, Any] = {
            "providers": {},
            "total_cost": 0.0,
            "total_tokens": 0,
            "total_requests": 0,
        }
        for name in sorted(providers):
            usage = providers[name]
            cost = self.cost(name, usage)
            summary["providers"][name] = {**asdict(usage), "cost": cost}
            summary["total_cost"] += cost
            summary["total_tokens"] += usage.input_tokens + usage.output_tokens
            summary["total_requests"] += usage.requests
        return summary

    def snapshot(self) -> dict[str, Any]:
        """Return session and monthly usage with costs and totals."""
        with self._lock:
            session = self._summarize(self._session)
            session["start_time"] = self.session_start
            session["duration_sec"] = time.time() - self.session_start
            month, monthly_providers = self._load_monthly()
            monthly = self._summarize(monthly_providers)
            monthly["month"] = month
        return {"session": session, "monthly": monthly}

    def reset_session(self) -> None:
        with self._lock:
            self._session = {}
            self.session_start = time.time()

    def reset_monthly(self) -> None:
        with self._lock:
            if self.usage_file is not None and self.usage_file.exists():
                self.usage_file.unlink()


def format_cost(cost: float) -> str:
    return f"${cost:.4f}"


def format_tokens(tokens: int) -> str:
    if tokens >= 1_000_000:
        return f"{tokens / 1_000_000:.2f}M"
    if tokens >= 1_000:
        return f"{tokens / 1_000:.1f}K"
    return str(tokens)


def format_duration(seconds: float) -> str:
    total = int(seconds)
    minutes, secs = divmod(total, 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours}h {minutes}m"
    if minutes:
        return f"{minutes}m {secs}s"
    return f"{secs}s"
