"""Abstract base for all AI model providers."""

import asyncio
import json
import logging
import os
import re
import uuid
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, TypeVar

from config.config_loader import ProviderConfig
from notemind.cancellation import CancelToken, check_cancel
from notemind.errors import ConfigurationError, GenerationCancelled, GenerationError
from notemind.models import ChatMessage, GenerationResult, ModelTier, Role, StreamChunk
from notemind.tools import ToolDeclaration

logger = logging.getLogger(__name__)

T = TypeVar("T")

JSON_ONLY_INSTRUCTION = (
    "IMPORTANT: Respond ONLY with valid JSON that conforms to the requested schema. "
    "Do not include any other text or markdown formatting."
)

_CODE_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)

# Timed-out requests are retried once with this multiple of the configured timeout.
_TIMEOUT_RETRY_FACTOR = 1.5


class ProviderError(Exception):
    """Raised when a provider call fails."""

    def __init__(self, provider_name: str, message: str, status_code: int | None = None) -> None:
        self.provider_name = provider_name
        self.status_code = status_code
        super().__init__(f"[{provider_name}] {message}")


class ProviderTimeoutError(ProviderError):
    """Transient: the request did not finish within the provider timeout."""


def strip_code_fences(text: str) -> str:
    return _CODE_FENCE_RE.sub("", text).strip()


def parse_json_text(text: str | None) -> Any:
    """Parse model output as JSON. Raises ValueError on empty or invalid text."""
    if not text or not text.strip():
        raise ValueError("empty response")
    return json.loads(strip_code_fences(text))


def synthetic_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


def provider_history(history: list[ChatMessage]) -> list[ChatMessage]:
    """Drop UI-only system notes; providers only see user, model and tool turns."""
    return [m for m in history if m.role is not Role.SYSTEM]


def persona_prefixed(message: ChatMessage, agent_count: int | None) -> str:
    """Prefix a model turn with its persona when several agents share the history."""
    if agent_count and agent_count > 1 and message.persona and message.content:
        return f"[{message.persona}]: {message.content}"
    return message.content


class AIProvider(ABC):
    """Abstract base for all AI model providers.

    Subclasses create their SDK client lazily, so a provider without an API key
    only fails when a capability actually routes a call to it.
    """

    def __init__(self, config: ProviderConfig) -> None:
        self._config = config
        self._client: Any = None

    def name(self) -> str:
        """Return the short provider name (e.g. 'gemini', 'openai')."""
        return self._config.name

    def model_string(self, tier: ModelTier) -> str:
        """Return the vendor model identifier for an abstract tier."""
        try:
            return self._config.models[tier]
        except KeyError:
            raise ConfigurationError(
                f"Provider '{self.name()}' has no model configured for tier '{tier}'"
            ) from None

    def _get_client(self) -> Any:
        if self._client is None:
            api_key = os.environ.get(self._config.api_key_env, "").strip()
            if not api_key:
                raise ConfigurationError(
                    f"[{self.name()}] Missing API key: set {self._config.api_key_env}"
                )
            self._client = self._create_client(api_key)
        return self._client

    @abstractmethod
    def _create_client(self, api_key: str) -> Any:
        ...

    @abstractmethod
    def _translate_error(self, exc: Exception) -> ProviderError:
        """Map an SDK exception onto ProviderError / ProviderTimeoutError."""
        ...

    async def _call(
        self,
        make_request: Callable[[], Awaitable[T]],
        cancel: CancelToken | None = None,
    ) -> T:
        """Run one vendor request under the provider timeout.

        A timeout is retried once with 1.5x the timeout; a second timeout raises
        ProviderTimeoutError. Every other failure is translated and raised at once.
        """
        timeout = float(self._config.timeout_sec)
        for attempt in (1, 2):
            check_cancel(cancel)
            try:
                return await asyncio.wait_for(make_request(), timeout=timeout)
            except (ProviderError, ConfigurationError, GenerationCancelled):
                raise
            except TimeoutError as exc:
                error: ProviderError = ProviderTimeoutError(
                    self.name(), f"Request timed out after {timeout:g}s"
                )
                cause: Exception = exc
            except Exception as exc:
                error = self._translate_error(exc)
                cause = exc

            if not isinstance(error, ProviderTimeoutError) or attempt == 2:
                raise error from cause
            timeout *= _TIMEOUT_RETRY_FACTOR
            logger.warning("Provider %s timed out, retrying with %gs", self.name(), timeout)
        raise AssertionError("unreachable")

    @abstractmethod
    async def generate_text(
        self,
        tier: ModelTier,
        prompt: str,
        system_instruction: str | None = None,
        *,
        cancel: CancelToken | None = None,
    ) -> str:
        """Single-turn completion.

        Raises:
            ProviderError: On API failure, timeout, or empty response.
        """
        ...

    @abstractmethod
    async def _generate_json_primary(
        self,
        tier: ModelTier,
        prompt: str,
        schema: dict[str, Any],
        system_instruction: str | None,
        cancel: CancelToken | None,
    ) -> str:
        """Vendor-native structured-output request. Returns the raw response text."""
        ...

    async def generate_json(
        self,
        tier: ModelTier,
        prompt: str,
        schema: dict[str, Any],
        system_instruction: str | None = None,
        *,
        cancel: CancelToken | None = None,
    ) -> Any:
        """Completion constrained to a JSON schema.

        The vendor-native path is tried first. On any provider or parse failure
        one fallback request is made with a strict JSON-only instruction and code
        fences stripped before parsing.

        Raises:
            GenerationError: If the fallback also fails.
            ConfigurationError: If the provider is not usable at all.
        """
        try:
            raw = await self._generate_json_primary(tier, prompt, schema, system_instruction, cancel)
            return parse_json_text(raw)
        except (ProviderError, ValueError) as exc:
            logger.warning(
                "Provider %s JSON generation failed (%s), retrying with JSON-only prompt",
                self.name(),
                exc,
            )

        fallback_prompt = f"{prompt}\n\n{JSON_ONLY_INSTRUCTION}"
        try:
            raw = await self.generate_text(tier, fallback_prompt, system_instruction, cancel=cancel)
            return parse_json_text(raw)
        except (ProviderError, ValueError) as exc:
            logger.error("Provider %s JSON fallback also failed: %s", self.name(), exc)
            raise GenerationError(
                f"[{self.name()}] Failed to get a valid JSON response, even with fallback"
            ) from exc

    @abstractmethod
    async def generate_content_with_tools(
        self,
        tier: ModelTier,
        history: list[ChatMessage],
        tools: list[ToolDeclaration],
        system_instruction: str | None = None,
        use_web_search: bool = False,
        agent_count: int | None = None,
        *,
        cancel: CancelToken | None = None,
    ) -> GenerationResult:
        """Multi-turn call with tool declarations, normalized to text + ToolCalls.

        Calls missing a vendor id get a synthetic one; calls whose arguments do
        not parse are dropped.
        """
        ...

    @abstractmethod
    def generate_text_stream(
        self,
        tier: ModelTier,
        history: list[ChatMessage],
        system_instruction: str | None = None,
        *,
        cancel: CancelToken | None = None,
    ) -> AsyncIterator[StreamChunk]:
        """Yield text chunks as the vendor produces them."""
        ...
