"""Load settings.yaml into typed dataclasses. Checks API keys at startup."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"

# Environment variables that override values from settings.yaml
_ENV_CACHE_TTL = "CACHE_TTL"
_ENV_MAX_HISTORY = "MAX_HISTORY_PER_USER"


@dataclass
class ModelConfig:
    name: str
    sdk: str
    model: str
    api_key_env: str
    timeout_sec: int
    max_tokens: int
    temperature: float = 0.2
    base_url: str | None = None


@dataclass
class PromptsConfig:
    initial: str
    peer_review: str
    rating: str


@dataclass
class DefaultsConfig:
    roster: list[str]
    history_file: Path
    output_dir: Path
    cache_ttl_sec: int = 86400
    max_history_per_user: int = 100
    max_followups: int = 5
    retry_attempts: int = 3
    retry_base_delay_sec: float = 1.0
    pipeline_timeout_sec: float | None = None
    full_run_cost: float = 3.0
    followup_cost_multiplier: float = 0.17
    redis_url_env: str = "REDIS_URL"
    cache_file: Path = Path("./data/cache.json")


@dataclass
class AppConfig:
    defaults: DefaultsConfig
    models: dict[str, ModelConfig]
    prompts: PromptsConfig
    available_providers: set[str] = field(default_factory=set)

    @property
    def redis_url(self) -> str | None:
        return os.environ.get(self.defaults.redis_url_env, "").strip() or None


def _env_int(name: str, fallback: int) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return fallback
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring non-integer %s=%r, using %d", name, raw, fallback)
        return fallback


def load_config(settings_path: Path = _SETTINGS_PATH) -> AppConfig:
    """Load and validate configuration from settings.yaml.

    Raises FileNotFoundError if settings file missing.
    Logs missing API keys but does not raise; callers check that every
    roster member is in available_providers.
    """
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")

    with settings_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    defaults_raw = raw["defaults"]
    timeout_raw = defaults_raw.get("pipeline_timeout_sec")
    defaults = DefaultsConfig(
        roster=[str(n) for n in defaults_raw["roster"]],
        history_file=Path(defaults_raw["history_file"]),
        output_dir=Path(defaults_raw["output_dir"]),
        cache_ttl_sec=_env_int(_ENV_CACHE_TTL, int(defaults_raw.get("cache_ttl_sec", 86400))),
        max_history_per_user=_env_int(_ENV_MAX_HISTORY, int(defaults_raw.get("max_history_per_user", 100))),
        max_followups=int(defaults_raw.get("max_followups", 5)),
        retry_attempts=int(defaults_raw.get("retry_attempts", 3)),
        retry_base_delay_sec=float(defaults_raw.get("retry_base_delay_sec", 1.0)),
        pipeline_timeout_sec=float(timeout_raw) if timeout_raw is not None else None,
        full_run_cost=float(defaults_raw.get("full_run_cost", 3.0)),
        followup_cost_multiplier=float(defaults_raw.get("followup_cost_multiplier", 0.17)),
        redis_url_env=str(defaults_raw.get("redis_url_env", "REDIS_URL")),
        cache_file=Path(defaults_raw.get("cache_file", "./data/cache.json")),
    )

    prompts_raw = raw["prompts"]
    prompts = PromptsConfig(
        initial=prompts_raw["initial"],
        peer_review=prompts_raw["peer_review"],
        rating=prompts_raw["rating"],
    )

    models: dict[str, ModelConfig] = {}
    available_providers: set[str] = set()

    for provider_name, model_raw in raw["models"].items():
        model_cfg = ModelConfig(
            name=provider_name,
            sdk=model_raw["sdk"],
            model=model_raw["model"],
            api_key_env=model_raw["api_key_env"],
            timeout_sec=int(model_raw["timeout_sec"]),
            max_tokens=int(model_raw["max_tokens"]),
            temperature=float(model_raw.get("temperature", 0.2)),
            base_url=model_raw.get("base_url"),
        )
        models[provider_name] = model_cfg

        api_key = os.environ.get(model_raw["api_key_env"], "").strip()
        if api_key:
            available_providers.add(provider_name)
            logger.info("Provider available: %s", provider_name)
        else:
            logger.info(
                "Provider skipped (no API key): %s — set %s in .env",
                provider_name,
                model_raw["api_key_env"],
            )

    unknown = [n for n in defaults.roster if n not in models]
    if unknown:
        raise ValueError(f"Roster references unconfigured models: {', '.join(unknown)}")

    return AppConfig(
        defaults=defaults,
        models=models,
        prompts=prompts,
        available_providers=available_providers,
    )
