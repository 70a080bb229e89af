"""Load settings.yaml into typed dataclasses. API keys are checked lazily by providers."""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

import yaml

from notemind.errors import ConfigurationError

logger = logging.getLogger(__name__)

_SETTINGS_PATH = Path(__file__).parent / "settings.yaml"

SCHEME_ENV_VAR = "NOTEMIND_AI_SCHEME"


@dataclass
class ProviderConfig:
    name: str
    sdk: str
    api_key_env: str
    models: dict[str, str]
    timeout_sec: int
    max_tokens: int
    base_url: str | None = None
    json_mode: bool = False


@dataclass
class SchemeConfig:
    name: str
    provider: str
    all_lite: bool = False


@dataclass
class PersonaConfig:
    name: str
    definition: str


@dataclass
class ParliamentConfig:
    max_debate_turns: int
    debate_personas: list[PersonaConfig] = field(default_factory=list)
    podcast_personas: list[PersonaConfig] = field(default_factory=list)


@dataclass
class AgentConfig:
    id: str
    name: str
    description: str
    system_instruction: str
    icon: str = "SparklesIcon"
    color: str = "indigo"


@dataclass
class CommandConfig:
    name: str
    definition: str
    params: str = ""
    description: str = ""


@dataclass
class PromptsConfig:
    templates: dict[str, str] = field(default_factory=dict)

    def render(self, name: str, **values: object) -> str:
        """Fill the named template. Missing templates are configuration bugs."""
        if name not in self.templates:
            raise ConfigurationError(f"Prompt template '{name}' is not defined in settings")
        return self.templates[name].format(**values)


@dataclass
class DefaultsConfig:
    scheme: str
    notes_dir: Path
    agents_file: Path
    output_dir: Path
    max_moderator_decisions: int = 8
    max_tool_rounds: int = 5
    title_min_length: int = 70


@dataclass
class AppConfig:
    defaults: DefaultsConfig
    providers: dict[str, ProviderConfig]
    schemes: dict[str, SchemeConfig]
    capabilities: dict[str, str]
    prompts: PromptsConfig
    parliament: ParliamentConfig
    agents: list[AgentConfig] = field(default_factory=list)
    commands: list[CommandConfig] = field(default_factory=list)
    available_providers: set[str] = field(default_factory=set)


def _load_personas(raw: list[dict] | None) -> list[PersonaConfig]:
    return [PersonaConfig(name=str(p["name"]), definition=str(p["definition"])) for p in raw or []]


def load_config(settings_path: Path = _SETTINGS_PATH) -> AppConfig:
    """Load and validate configuration from settings.yaml.

    Raises FileNotFoundError if settings file missing.
    Logs which providers have API keys but does not raise; a provider
    without a key fails on its first call instead.
    """
    if not settings_path.exists():
        raise FileNotFoundError(f"Settings file not found: {settings_path}")

    with settings_path.open("r", encoding="utf-8") as f:
        raw = yaml.safe_load(f)

    defaults_raw = raw["defaults"]
    defaults = DefaultsConfig(
        scheme=str(defaults_raw["scheme"]),
        notes_dir=Path(defaults_raw["notes_dir"]),
        agents_file=Path(defaults_raw["agents_file"]),
        output_dir=Path(defaults_raw["output_dir"]),
        max_moderator_decisions=int(defaults_raw.get("max_moderator_decisions", 8)),
        max_tool_rounds=int(defaults_raw.get("max_tool_rounds", 5)),
        title_min_length=int(defaults_raw.get("title_min_length", 70)),
    )

    providers: dict[str, ProviderConfig] = {}
    available_providers: set[str] = set()

    for provider_name, provider_raw in raw["providers"].items():
        providers[provider_name] = ProviderConfig(
            name=provider_name,
            sdk=provider_raw["sdk"],
            api_key_env=provider_raw["api_key_env"],
            models={str(k): str(v) for k, v in provider_raw["models"].items()},
            timeout_sec=int(provider_raw["timeout_sec"]),
            max_tokens=int(provider_raw["max_tokens"]),
            base_url=provider_raw.get("base_url"),
            json_mode=bool(provider_raw.get("json_mode", False)),
        )

        if os.environ.get(provider_raw["api_key_env"], "").strip():
            available_providers.add(provider_name)
            logger.info("Provider available: %s", provider_name)
        else:
            logger.info(
                "Provider has no API key: %s (set %s in .env)",
                provider_name,
                provider_raw["api_key_env"],
            )

    schemes = {
        name: SchemeConfig(
            name=name,
            provider=str(scheme_raw["provider"]),
            all_lite=bool(scheme_raw.get("all_lite", False)),
        )
        for name, scheme_raw in raw.get("schemes", {}).items()
    }

    parliament_raw = raw.get("parliament", {})
    parliament = ParliamentConfig(
        max_debate_turns=int(parliament_raw.get("max_debate_turns", 6)),
        debate_personas=_load_personas(parliament_raw.get("debate_personas")),
        podcast_personas=_load_personas(parliament_raw.get("podcast_personas")),
    )

    agents = [
        AgentConfig(
            id=str(a["id"]),
            name=str(a["name"]),
            description=str(a.get("description", "")),
            system_instruction=str(a["system_instruction"]),
            icon=str(a.get("icon", "SparklesIcon")),
            color=str(a.get("color", "indigo")),
        )
        for a in raw.get("agents", [])
    ]

    commands = [
        CommandConfig(
            name=str(c["name"]),
            definition=str(c["definition"]),
            params=str(c.get("params", "")),
            description=str(c.get("description", "")),
        )
        for c in raw.get("commands", [])
    ]

    return AppConfig(
        defaults=defaults,
        providers=providers,
        schemes=schemes,
        capabilities={str(k): str(v) for k, v in raw.get("capabilities", {}).items()},
        prompts=PromptsConfig(templates={str(k): str(v) for k, v in raw.get("prompts", {}).items()}),
        parliament=parliament,
        agents=agents,
        commands=commands,
        available_providers=available_providers,
    )


def active_scheme_name(config: AppConfig, override: str | None = None) -> str:
    """CLI override > NOTEMIND_AI_SCHEME > defaults.scheme."""
    if override:
        return override
    from_env = os.environ.get(SCHEME_ENV_VAR, "").strip()
    return from_env or config.defaults.scheme
