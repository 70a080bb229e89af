"""Pure dataclasses for the NoteMind pipeline. No logic, no deps."""

import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Literal

ModelTier = Literal["lite", "fast", "pro"]
MODEL_TIERS: tuple[str, ...] = ("lite", "fast", "pro")


def new_id() -> str:
    return str(uuid.uuid4())


def now_ms() -> int:
    return int(time.time() * 1000)


class Role(str, Enum):
    USER = "user"
    MODEL = "model"
    TOOL = "tool"
    SYSTEM = "system"  # moderator notes; never sent to a provider


class DiscussionMode(str, Enum):
    CONCURRENT = "concurrent"
    TURN_BASED = "turn_based"
    MODERATED = "moderated"


class ParliamentMode(str, Enum):
    DEBATE = "debate"
    PODCAST = "podcast"


@dataclass
class ToolCall:
    id: str
    name: str
    args: dict[str, Any] = field(default_factory=dict)


@dataclass
class SearchResultContent:
    note_ids: list[str]
    type: str = "search_result"


@dataclass
class CreateNoteResultContent:
    message: str
    note_id: str
    title: str
    type: str = "create_note_result"


@dataclass
class DebateSynthesis:
    core_tension: str
    key_points_pragmatist: list[str] = field(default_factory=list)
    key_points_visionary: list[str] = field(default_factory=list)
    next_steps: list[str] = field(default_factory=list)


@dataclass
class SynthesisContent:
    synthesis: DebateSynthesis
    type: str = "synthesis"


StructuredContent = SearchResultContent | CreateNoteResultContent | SynthesisContent


@dataclass
class ChatMessage:
    role: Role
    content: str
    persona: str | None = None
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None
    structured_content: StructuredContent | None = None
    source_notes: list[tuple[str, str]] | None = None  # (note id, title)
    id: str = field(default_factory=new_id)


@dataclass
class GenerationResult:
    text: str | None = None
    tool_calls: list[ToolCall] | None = None


@dataclass
class StreamChunk:
    text: str | None


@dataclass
class AIAgent:
    name: str
    description: str
    system_instruction: str
    icon: str = "SparklesIcon"
    color: str = "indigo"
    is_custom: bool = False
    id: str = field(default_factory=new_id)
    created_at: int = field(default_factory=now_ms)


@dataclass
class Note:
    title: str
    content: str
    id: str = field(default_factory=new_id)
    created_at: int = field(default_factory=now_ms)
    path: Path | None = None


@dataclass
class Command:
    name: str
    definition: str
    params: str = ""
    description: str = ""
    is_custom: bool = False


@dataclass
class GroupChatSession:
    name: str
    participant_ids: list[str]
    discussion_mode: DiscussionMode = DiscussionMode.MODERATED
    history: list[ChatMessage] = field(default_factory=list)
    is_generating: bool = False
    id: str = field(default_factory=new_id)
    created_at: int = field(default_factory=now_ms)

    def append(self, message: ChatMessage) -> None:
        self.history.append(message)


@dataclass
class ParliamentSession:
    mode: ParliamentMode
    topic: str
    note_id: str | None = None
    history: list[ChatMessage] = field(default_factory=list)
    is_generating: bool = False
    id: str = field(default_factory=new_id)
    created_at: int = field(default_factory=now_ms)

    def append(self, message: ChatMessage) -> None:
        self.history.append(message)


@dataclass
class KnowledgeCard:
    type: str  # encyclopedia, creative_story, note_synthesis, new_theory, idea
    title: str
    content: str
    sources: list[str] = field(default_factory=list)


@dataclass
class StudioSummary:
    todos: list[str] = field(default_factory=list)
    knowledge_cards: list[KnowledgeCard] = field(default_factory=list)


@dataclass
class PulseReport:
    title: str
    content: str
    created_at: int = field(default_factory=now_ms)


@dataclass
class MindMapNode:
    label: str
    children: list["MindMapNode"] = field(default_factory=list)


@dataclass
class ProactiveSuggestion:
    prompt: str
    description: str


@dataclass
class Insight:
    type: str  # related_note, action_item, wiki_concept
    title: str
    content: str
    source_note_id: str | None = None
    id: str = field(default_factory=new_id)
