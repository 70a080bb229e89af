"""Shared pytest fixtures."""

import json
from pathlib import Path
from typing import Any

import pytest

from config.config_loader import AppConfig, PromptsConfig, ProviderConfig, load_config
from notemind.agent_registry import AgentRegistry
from notemind.models import AIAgent, ChatMessage, GenerationResult, Role, StreamChunk
from notemind.notes import NoteStore
from notemind.orchestrator import ChatContext
from notemind.providers.base import AIProvider, ProviderError
from notemind.router import CapabilityRouter, build_scheme


def make_provider_config(name: str = "mock", timeout_sec: float = 5) -> ProviderConfig:
    return ProviderConfig(
        name=name,
        sdk="mock",
        api_key_env="MOCK_API_KEY",
        models={"lite": "mock-lite", "fast": "mock-fast", "pro": "mock-pro"},
        timeout_sec=timeout_sec,  # type: ignore[arg-type]
        max_tokens=256,
    )


class MockProvider(AIProvider):
    """Scripted AIProvider: each call pops the next queued reply and is recorded.

    Queued exceptions are raised instead of returned. Empty queues fall back to
    a harmless default so tests only script what they assert on.
    """

    def __init__(self, provider_name: str = "mock", timeout_sec: float = 5) -> None:
        super().__init__(make_provider_config(provider_name, timeout_sec))
        self.texts: list[str | Exception] = []
        self.json_texts: list[str | Exception] = []
        self.tool_results: list[GenerationResult | Exception] = []
        self.calls: list[dict[str, Any]] = []

    def queue_json(self, value: Any) -> None:
        self.json_texts.append(json.dumps(value))

    def calls_of(self, kind: str) -> list[dict[str, Any]]:
        return [c for c in self.calls if c["kind"] == kind]

    @staticmethod
    def _pop(queue: list, default: Any) -> Any:
        reply = queue.pop(0) if queue else default
        if isinstance(reply, Exception):
            raise reply
        return reply

    def _create_client(self, api_key: str) -> Any:
        return object()

    def _translate_error(self, exc: Exception) -> ProviderError:
        return ProviderError(self.name(), f"API call failed: {exc}")

    async def generate_text(self, tier, prompt, system_instruction=None, *, cancel=None) -> str:
        self.calls.append({"kind": "text", "tier": tier, "prompt": prompt, "system": system_instruction})
        return self._pop(self.texts, "Mock response")

    async def _generate_json_primary(self, tier, prompt, schema, system_instruction, cancel) -> str:
        self.calls.append({"kind": "json", "tier": tier, "prompt": prompt, "schema": schema})
        return self._pop(self.json_texts, "[]")

    async def generate_content_with_tools(
        self,
        tier,
        history,
        tools,
        system_instruction=None,
        use_web_search=False,
        agent_count=None,
        *,
        cancel=None,
    ) -> GenerationResult:
        self.calls.append({
            "kind": "tools",
            "tier": tier,
            "history": list(history),
            "tools": [t.name for t in tools],
            "system": system_instruction,
            "web_search": use_web_search,
            "agent_count": agent_count,
        })
        return self._pop(self.tool_results, GenerationResult(text="Mock response"))

    async def generate_text_stream(self, tier, history, system_instruction=None, *, cancel=None):
        self.calls.append({"kind": "stream", "tier": tier, "history": list(history)})
        for word in self._pop(self.texts, "Mock response").split():
            yield StreamChunk(text=word)


@pytest.fixture
def app_config() -> AppConfig:
    return load_config()


@pytest.fixture
def prompts(app_config: AppConfig) -> PromptsConfig:
    return app_config.prompts


@pytest.fixture
def mock_provider() -> MockProvider:
    return MockProvider()


@pytest.fixture
def router(app_config: AppConfig, mock_provider: MockProvider) -> CapabilityRouter:
    scheme = build_scheme("test", mock_provider.name(), app_config.capabilities)
    return CapabilityRouter(scheme, {mock_provider.name(): mock_provider})


@pytest.fixture
def store(tmp_path: Path) -> NoteStore:
    note_store = NoteStore(tmp_path / "notes")
    note_store.load()
    return note_store


@pytest.fixture
def alpha() -> AIAgent:
    return AIAgent(id="alpha", name="Alpha", description="First agent", system_instruction="You are Alpha.")


@pytest.fixture
def beta() -> AIAgent:
    return AIAgent(id="beta", name="Beta", description="Second agent", system_instruction="You are Beta.")


@pytest.fixture
def registry(tmp_path: Path, alpha: AIAgent, beta: AIAgent) -> AgentRegistry:
    return AgentRegistry([alpha, beta], tmp_path / "agents.yaml")


@pytest.fixture
def chat_ctx(
    app_config: AppConfig,
    router: CapabilityRouter,
    store: NoteStore,
    registry: AgentRegistry,
) -> ChatContext:
    return ChatContext.from_config(app_config, router, store, registry)


def user(text: str) -> ChatMessage:
    return ChatMessage(role=Role.USER, content=text, persona="User")
