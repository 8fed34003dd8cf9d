"""Load settings.yaml into typed dataclasses. Validates API keys at startup."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from advisor_council.models import Advisor, slugify

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"

_VALID_MODES = {"parallel", "single"}


@dataclass
class ModelConfig:
    name: str
    sdk: str
    model: str
    api_key_env: str
    timeout_sec: int
    max_tokens: int
    base_url: str | None = None


@dataclass
class PromptsConfig:
    advisor: str
    combined: str
    reference_header: str = "=== WHAT THE OTHER ADVISORS SAID LAST TURN ==="


@dataclass
class DefaultsConfig:
    mode: str
    context_limit: int
    max_tokens: int
    output_dir: Path
    provider: str
    reasoning_mode: bool = False
    reference_block: bool = True
    reference_chars: int = 800
    timestamp_history: bool = True
    session_timeout_sec: int = 180
    connect_retries: int = 1


@dataclass
class AppConfig:
    defaults: DefaultsConfig
    models: dict[str, ModelConfig]
    advisors: list[Advisor]
    prompts: PromptsConfig
    available_providers: set[str] = field(default_factory=set)

    def active_advisors(self) -> list[Advisor]:
        return [a for a in self.advisors if a.active]


def load_config(settings_path: Path = _SETTINGS_PATH) -> AppConfig:
    """Load and validate configuration from settings.yaml.

    Raises FileNotFoundError if settings file missing, ValueError on an
    unknown mode, an advisor pointing at an undeclared model, or two
    advisors sharing an id.
    Logs warnings for missing API keys but does not raise; callers check
    available_providers count.
    """
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")

    with settings_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    defaults_raw = raw["defaults"]
    mode = str(defaults_raw.get("mode", "parallel"))
    if mode not in _VALID_MODES:
        raise ValueError(f"Unknown mode '{mode}', expected one of {sorted(_VALID_MODES)}")

    defaults = DefaultsConfig(
        mode=mode,
        context_limit=int(defaults_raw["context_limit"]),
        max_tokens=int(defaults_raw["max_tokens"]),
        output_dir=Path(defaults_raw["output_dir"]),
        provider=str(defaults_raw["provider"]),
        reasoning_mode=bool(defaults_raw.get("reasoning_mode", False)),
        reference_block=bool(defaults_raw.get("reference_block", True)),
        reference_chars=int(defaults_raw.get("reference_chars", 800)),
        timestamp_history=bool(defaults_raw.get("timestamp_history", True)),
        session_timeout_sec=int(defaults_raw.get("session_timeout_sec", 180)),
        connect_retries=int(defaults_raw.get("connect_retries", 1)),
    )

    prompts_raw = raw["prompts"]
    prompts = PromptsConfig(
        advisor=prompts_raw["advisor"],
        combined=prompts_raw["combined"],
        reference_header=prompts_raw.get(
            "reference_header", PromptsConfig.reference_header
        ),
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
            base_url=model_raw.get("base_url"),
        )
        models[provider_name] = model_cfg

        api_key = os.environ.get(model_raw["api_key_env"], "").strip()
        if api_key:
            available_providers.add(provider_name)
            logger.info("Provider available: %s", provider_name)
        else:
            logger.info(
                "Provider skipped (no API key): %s; set %s in .env",
                provider_name,
                model_raw["api_key_env"],
            )

    advisors: list[Advisor] = []
    for advisor_raw in raw.get("advisors", []):
        name = str(advisor_raw["name"])
        provider = str(advisor_raw.get("provider", defaults.provider))
        if provider not in models:
            raise ValueError(f"Advisor '{name}' uses undeclared model '{provider}'")
        advisor_id = str(advisor_raw.get("id") or slugify(name))
        if any(a.id == advisor_id for a in advisors):
            raise ValueError(f"Duplicate advisor id '{advisor_id}' (advisor '{name}')")
        advisors.append(
            Advisor(
                id=advisor_id,
                name=name,
                instructions=str(advisor_raw.get("instructions", "")).strip(),
                provider=provider,
                active=bool(advisor_raw.get("active", True)),
            )
        )

    return AppConfig(
        defaults=defaults,
        models=models,
        advisors=advisors,
        prompts=prompts,
        available_providers=available_providers,
    )
