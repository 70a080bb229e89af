"""Agent personas: built-ins from settings.yaml plus custom agents persisted to YAML."""

import logging
from pathlib import Path

import yaml

from config.config_loader import AppConfig
from notemind.errors import GenerationError
from notemind.models import AIAgent, ToolCall, now_ms

logger = logging.getLogger(__name__)

DEFAULT_ICON = "SparklesIcon"
DEFAULT_COLOR = "indigo"


class AgentRegistry:
    """Lookup by id or name. Only custom agents are written back to disk."""

    def __init__(self, builtins: list[AIAgent], custom_path: Path | None = None) -> None:
        self._agents: dict[str, AIAgent] = {agent.id: agent for agent in builtins}
        self._custom_path = custom_path

    @classmethod
    def from_config(cls, config: AppConfig) -> "AgentRegistry":
        builtins = [
            AIAgent(
                id=a.id,
                name=a.name,
                description=a.description,
                system_instruction=a.system_instruction,
                icon=a.icon,
                color=a.color,
                created_at=0,
            )
            for a in config.agents
        ]
        registry = cls(builtins, config.defaults.agents_file)
        registry.load()
        return registry

    def load(self) -> None:
        if self._custom_path is None or not self._custom_path.exists():
            return
        with self._custom_path.open("r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or []
        for entry in raw:
            agent = AIAgent(
                id=str(entry["id"]),
                name=str(entry["name"]),
                description=str(entry.get("description", "")),
                system_instruction=str(entry["system_instruction"]),
                icon=str(entry.get("icon", DEFAULT_ICON)),
                color=str(entry.get("color", DEFAULT_COLOR)),
                is_custom=True,
                created_at=int(entry.get("created_at", 0)),
            )
            self._agents[agent.id] = agent
        logger.debug("Loaded %d custom agents from %s", len(raw), self._custom_path)

    def save(self) -> None:
        if self._custom_path is None:
            return
        custom = [
            {
                "id": a.id,
                "name": a.name,
                "description": a.description,
                "system_instruction": a.system_instruction,
                "icon": a.icon,
                "color": a.color,
                "created_at": a.created_at,
            }
            for a in self._agents.values()
            if a.is_custom
        ]
        self._custom_path.parent.mkdir(parents=True, exist_ok=True)
        with self._custom_path.open("w", encoding="utf-8") as f:
            yaml.safe_dump(custom, f, sort_keys=False, allow_unicode=True)

    def all(self) -> list[AIAgent]:
        return list(self._agents.values())

    def get(self, agent_id: str) -> AIAgent | None:
        return self._agents.get(agent_id)

    def find_by_name(self, name: str) -> AIAgent | None:
        """Exact match first, then case-insensitive."""
        wanted = name.strip()
        for agent in self._agents.values():
            if agent.name == wanted:
                return agent
        for agent in self._agents.values():
            if agent.name.casefold() == wanted.casefold():
                return agent
        return None

    def resolve(self, ids_or_names: list[str]) -> list[AIAgent]:
        """Map ids (or names) to agents. Dangling references are skipped with a warning."""
        agents: list[AIAgent] = []
        for ref in ids_or_names:
            agent = self.get(ref) or self.find_by_name(ref)
            if agent is None:
                logger.warning("Unknown agent '%s', skipping", ref)
                continue
            if agent not in agents:
                agents.append(agent)
        return agents

    def add(self, agent: AIAgent) -> AIAgent:
        agent.is_custom = True
        self._agents[agent.id] = agent
        self.save()
        logger.info("Created agent %s (%s)", agent.name, agent.id)
        return agent


def create_agent_from_tool_call(registry: AgentRegistry, call: ToolCall) -> AIAgent:
    """Execute a `create_new_agent` call.

    Raises:
        GenerationError: If the call lacks a name or system instructions.
    """
    name = str(call.args.get("name") or "").strip()
    instruction = str(call.args.get("systemInstruction") or call.args.get("system_instruction") or "").strip()
    if not name or not instruction:
        raise GenerationError("create_new_agent needs a name and system instructions")

    agent = AIAgent(
        name=name,
        description=str(call.args.get("description") or "").strip(),
        system_instruction=instruction,
        icon=str(call.args.get("icon") or DEFAULT_ICON),
        color=str(call.args.get("color") or DEFAULT_COLOR),
        is_custom=True,
        created_at=now_ms(),
    )
    return registry.add(agent)
