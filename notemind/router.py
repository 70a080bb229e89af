"""Capability routing: capability name -> (provider, model tier).

A scheme applies the per-capability tier table to one provider, so switching
schemes swaps the vendor for every capability while keeping the relative tiers.
"""

import logging
from dataclasses import dataclass, field

from config.config_loader import AppConfig, active_scheme_name
from notemind.errors import ConfigurationError
from notemind.models import MODEL_TIERS, ModelTier
from notemind.providers.anthropic import AnthropicProvider
from notemind.providers.base import AIProvider
from notemind.providers.gemini import GeminiProvider
from notemind.providers.openai_compat import OpenAICompatibleProvider

logger = logging.getLogger(__name__)

# Keyed by the `sdk` field of a provider entry in settings.yaml.
PROVIDER_CLASSES: dict[str, type[AIProvider]] = {
    "gemini": GeminiProvider,
    "openai": OpenAICompatibleProvider,
    "anthropic": AnthropicProvider,
}


@dataclass(frozen=True)
class Route:
    provider: str
    tier: ModelTier


@dataclass(frozen=True)
class Scheme:
    name: str
    routes: dict[str, Route] = field(default_factory=dict, hash=False)


@dataclass(frozen=True)
class Resolved:
    provider: AIProvider
    tier: ModelTier


def build_scheme(
    name: str,
    provider: str,
    base_tiers: dict[str, str],
    all_lite: bool = False,
) -> Scheme:
    """Apply the base tier table to a single provider."""
    routes: dict[str, Route] = {}
    for capability, tier in base_tiers.items():
        if tier not in MODEL_TIERS:
            raise ConfigurationError(f"Capability '{capability}' has unknown model tier '{tier}'")
        routes[capability] = Route(provider=provider, tier="lite" if all_lite else tier)  # type: ignore[arg-type]
    return Scheme(name=name, routes=routes)


def scheme_from_config(config: AppConfig, name: str) -> Scheme:
    if name not in config.schemes:
        available = ", ".join(sorted(config.schemes))
        raise ConfigurationError(f"Unknown AI scheme '{name}'. Available: {available}")
    scheme_cfg = config.schemes[name]
    return build_scheme(name, scheme_cfg.provider, config.capabilities, all_lite=scheme_cfg.all_lite)


def build_providers(config: AppConfig) -> dict[str, AIProvider]:
    """Instantiate every configured provider. Clients are created on first use."""
    providers: dict[str, AIProvider] = {}
    for name, provider_cfg in config.providers.items():
        provider_class = PROVIDER_CLASSES.get(provider_cfg.sdk)
        if provider_class is None:
            raise ConfigurationError(f"Provider '{name}' uses unknown sdk '{provider_cfg.sdk}'")
        providers[name] = provider_class(provider_cfg)
    return providers


class CapabilityRouter:
    """Resolves capabilities against one scheme. Read-only after construction."""

    def __init__(self, scheme: Scheme, providers: dict[str, AIProvider]) -> None:
        self._scheme = scheme
        self._providers = dict(providers)

    @property
    def scheme(self) -> Scheme:
        return self._scheme

    @property
    def providers(self) -> dict[str, AIProvider]:
        return dict(self._providers)

    def resolve(self, capability: str) -> Resolved:
        """Return the provider and tier serving `capability`.

        Raises:
            ConfigurationError: Unknown capability, or the route names a provider
                that is not registered. Both are configuration bugs.
        """
        route = self._scheme.routes.get(capability)
        if route is None:
            raise ConfigurationError(
                f"Capability '{capability}' is not defined in AI scheme '{self._scheme.name}'"
            )
        provider = self._providers.get(route.provider)
        if provider is None:
            raise ConfigurationError(
                f"Capability '{capability}' routes to provider '{route.provider}', which is not registered"
            )
        return Resolved(provider=provider, tier=route.tier)


def build_router(config: AppConfig, scheme_name: str | None = None) -> CapabilityRouter:
    name = active_scheme_name(config, scheme_name)
    logger.debug("Using AI scheme: %s", name)
    return CapabilityRouter(scheme_from_config(config, name), build_providers(config))
