"""Load settings.yaml into typed dataclasses. Resolves API keys at startup."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"

DEFAULT_JUDGE_PREFERENCE = ["anthropic", "openai", "google"]


@dataclass
class ModelConfig:
    name: str
    sdk: str
    model: str
    api_key_env: str
    timeout_sec: int
    max_tokens: int
    base_url: str | None = None
    use_grounding: bool = False


@dataclass
class RetryConfig:
    max_attempts: int = 3
    base_delay_sec: float = 1.0
    multiplier: float = 2.0


@dataclass
class PriceConfig:
    """USD per 1M tokens."""

    input_per_million: float
    output_per_million: float


@dataclass
class DefaultsConfig:
    max_rounds: int
    output_dir: Path
    consensus_threshold: float = 0.8
    judge_preference: list[str] = field(default_factory=lambda: list(DEFAULT_JUDGE_PREFERENCE))
    panel: list[str] = field(default_factory=list)
    usage_file: Path | None = None


@dataclass
class AppConfig:
    defaults: DefaultsConfig
    models: dict[str, ModelConfig]
    retry: RetryConfig = field(default_factory=RetryConfig)
    pricing: dict[str, PriceConfig] = field(default_factory=dict)
    api_keys: dict[str, str] = field(default_factory=dict)
    available_providers: set[str] = field(default_factory=set)


def load_config(settings_path: Path = _SETTINGS_PATH) -> AppConfig:
    """Load and validate configuration from settings.yaml.

    Raises FileNotFoundError if settings file missing.
    Logs missing API keys but does not raise; callers check
    available_providers count.
    """
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")

    with settings_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    defaults_raw = raw["defaults"]
    usage_file = defaults_raw.get("usage_file")
    defaults = DefaultsConfig(
        max_rounds=int(defaults_raw["max_rounds"]),
        output_dir=Path(defaults_raw["output_dir"]),
        consensus_threshold=float(defaults_raw.get("consensus_threshold", 0.8)),
        judge_preference=list(defaults_raw.get("judge_preference", DEFAULT_JUDGE_PREFERENCE)),
        panel=list(defaults_raw.get("panel", [])),
        usage_file=Path(usage_file).expanduser() if usage_file else None,
    )
    if defaults.max_rounds < 1:
        raise ValueError(f"defaults.max_rounds must be >= 1, got {defaults.max_rounds}")

    retry_raw = raw.get("retry", {})
    retry = RetryConfig(
        max_attempts=int(retry_raw.get("max_attempts", 3)),
        base_delay_sec=float(retry_raw.get("base_delay_sec", 1.0)),
        multiplier=float(retry_raw.get("multiplier", 2.0)),
    )

    pricing = {
        name: PriceConfig(
            input_per_million=float(price["input"]),
            output_per_million=float(price["output"]),
        )
        for name, price in raw.get("pricing", {}).items()
    }

    models: dict[str, ModelConfig] = {}
    api_keys: dict[str, str] = {}
    available_providers: set[str] = set()

    for provider_name, model_raw in raw["models"].items():
        model_cfg = ModelConfig(
            name=provider_name,
            sdk=model_raw["sdk"],
            model=model_raw["model"],
            api_key_env=model_raw["api_key_env"],
            timeout_sec=int(model_raw["timeout_sec"]),
            max_tokens=int(model_raw["max_tokens"]),
            base_url=model_raw.get("base_url"),
            use_grounding=bool(model_raw.get("use_grounding", False)),
        )
        models[provider_name] = model_cfg

        api_key = os.environ.get(model_raw["api_key_env"], "").strip()
        if api_key:
            api_keys[provider_name] = api_key
            available_providers.add(provider_name)
            logger.info("Provider available: %s", provider_name)
        else:
            logger.info(
                "Provider skipped (no API key): %s, set %s in .env",
                provider_name,
                model_raw["api_key_env"],
            )

    return AppConfig(
        defaults=defaults,
        models=models,
        retry=retry,
        pricing=pricing,
        api_keys=api_keys,
        available_providers=available_providers,
    )
