"""Single-call note capabilities: summaries, titles, chat, pulse report, mind map, insights."""

import logging
import re
from collections.abc import Iterable
from datetime import datetime, timezone
from typing import Any

from config.config_loader import PromptsConfig
from notemind.cancellation import CancelToken
from notemind.errors import GenerationError
from notemind.models import (
    ChatMessage,
    GenerationResult,
    Insight,
    KnowledgeCard,
    MindMapNode,
    Note,
    ProactiveSuggestion,
    PulseReport,
    Role,
    StudioSummary,
)
from notemind.retrieval import search_notes_in_corpus
from notemind.router import CapabilityRouter
from notemind.tools import INSIGHT_TOOLS

logger = logging.getLogger(__name__)

# Chat prompts only carry the most recent turns.
_HISTORY_WINDOW = 10

_SUGGESTION_NOTE_LIMIT = 15
_SUGGESTION_PREVIEW_CHARS = 500

_INSIGHT_SNIPPET_CHARS = 500
_INSIGHT_MIN_SNIPPET_CHARS = 40

MIND_MAP_DEPTH = 3

KNOWLEDGE_CARD_TYPES = ["encyclopedia", "creative_story", "note_synthesis", "new_theory", "idea"]

SUMMARY_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "todos": {
            "type": "array",
            "description": "A list of actionable to-do items extracted from the notes.",
            "items": {"type": "string"},
        },
        "knowledgeCards": {
            "type": "array",
            "description": "A diverse list of knowledge cards based on the notes.",
            "items": {
                "type": "object",
                "properties": {
                    "type": {
                        "type": "string",
                        "description": "The type of knowledge card.",
                        "enum": KNOWLEDGE_CARD_TYPES,
                    },
                    "title": {"type": "string", "description": "The title of the knowledge card."},
                    "content": {"type": "string", "description": "The main content of the knowledge card."},
                    "sources": {
                        "type": "array",
                        "description": "An array of source URLs, required for 'encyclopedia' type cards.",
                        "items": {"type": "string"},
                    },
                },
                "required": ["type", "title", "content"],
            },
        },
    },
    "required": ["todos", "knowledgeCards"],
}

PULSE_REPORT_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "title": {"type": "string", "description": "The main title for the Pulse Report."},
        "content": {"type": "string", "description": "The full content of the Pulse Report, formatted in Markdown."},
    },
    "required": ["title", "content"],
}

PROACTIVE_SUGGESTIONS_SCHEMA: dict[str, Any] = {
    "type": "array",
    "description": "An array of 3-4 proactive suggestions for the user.",
    "items": {
        "type": "object",
        "properties": {
            "prompt": {
                "type": "string",
                "description": "The text of the suggestion, ready to be sent as a user message.",
            },
            "description": {
                "type": "string",
                "description": "A brief, user-facing explanation of why this suggestion is being made.",
            },
        },
        "required": ["prompt", "description"],
    },
}


def notes_as_context(notes: Iterable[Note], preview_chars: int | None = None) -> str:
    """Render notes as 'Title/Content' blocks separated by rules."""
    blocks = []
    for note in notes:
        content = note.content if preview_chars is None else f"{note.content[:preview_chars]}..."
        blocks.append(f"Title: {note.title or 'Untitled'}\nContent: {content}")
    return "\n\n---\n\n".join(blocks)


def as_string_list(data: Any) -> list[str]:
    """Validate a JSON array of strings. Non-string items are skipped."""
    if not isinstance(data, list):
        raise GenerationError(f"Expected a JSON array of strings, got {type(data).__name__}")
    return [item.strip() for item in data if isinstance(item, str) and item.strip()]


def _require_object(data: Any, what: str) -> dict[str, Any]:
    if not isinstance(data, dict):
        raise GenerationError(f"Expected a JSON object for {what}, got {type(data).__name__}")
    return data


def _history_text(history: list[ChatMessage]) -> str:
    recent = [m for m in history if m.role is not Role.SYSTEM][-_HISTORY_WINDOW:]
    return "\n".join(f"{m.role.value}: {m.content}" for m in recent)


async def generate_summary(
    router: CapabilityRouter,
    prompts: PromptsConfig,
    notes: list[Note],
    *,
    cancel: CancelToken | None = None,
) -> StudioSummary:
    """Extract to-dos and knowledge cards from the whole collection."""
    if not notes:
        return StudioSummary()

    prompt = prompts.render("summary", notes=notes_as_context(notes))
    resolved = router.resolve("summary")
    data = _require_object(
        await resolved.provider.generate_json(resolved.tier, prompt, SUMMARY_SCHEMA, cancel=cancel),
        "summary",
    )

    cards: list[KnowledgeCard] = []
    for raw in data.get("knowledgeCards") or []:
        if not isinstance(raw, dict) or not raw.get("title") or not raw.get("content"):
            continue
        card_type = str(raw.get("type", "idea"))
        cards.append(KnowledgeCard(
            type=card_type if card_type in KNOWLEDGE_CARD_TYPES else "idea",
            title=str(raw["title"]),
            content=str(raw["content"]),
            sources=[str(s) for s in raw.get("sources") or [] if isinstance(s, str)],
        ))
    todos = [str(t) for t in data.get("todos") or [] if isinstance(t, str) and t.strip()]
    return StudioSummary(todos=todos, knowledge_cards=cards)


async def generate_title_for_note(
    router: CapabilityRouter,
    prompts: PromptsConfig,
    content: str,
    *,
    cancel: CancelToken | None = None,
) -> str:
    if not content:
        return ""
    resolved = router.resolve("title")
    title = await resolved.provider.generate_text(
        resolved.tier, prompts.render("title", content=content), cancel=cancel
    )
    return re.sub(r"[\"']", "", title).strip()


async def generate_chat_response(
    router: CapabilityRouter,
    prompts: PromptsConfig,
    notes: list[Note],
    history: list[ChatMessage],
    question: str,
    *,
    cancel: CancelToken | None = None,
) -> str:
    """Answer a question over the whole collection, without tools."""
    prompt = prompts.render(
        "chat",
        history=_history_text(history),
        notes=notes_as_context(notes),
        question=question,
    )
    resolved = router.resolve("chat")
    return await resolved.provider.generate_text(resolved.tier, prompt, cancel=cancel)


async def generate_thread_chat_response(
    router: CapabilityRouter,
    prompts: PromptsConfig,
    note: Note,
    history: list[ChatMessage],
    question: str,
    *,
    cancel: CancelToken | None = None,
) -> str:
    """Answer a question about a single note."""
    prompt = prompts.render(
        "thread_chat",
        history=_history_text(history),
        note=notes_as_context([note]),
        question=question,
    )
    resolved = router.resolve("threadChat")
    return await resolved.provider.generate_text(resolved.tier, prompt, cancel=cancel)


async def generate_pulse_report(
    router: CapabilityRouter,
    prompts: PromptsConfig,
    notes: list[Note],
    *,
    cancel: CancelToken | None = None,
) -> PulseReport:
    if not notes:
        return PulseReport(
            title="Not Enough Data",
            content="Write at least one note to generate your first Pulse report.",
        )

    blocks = []
    for note in notes:
        day = datetime.fromtimestamp(note.created_at / 1000, tz=timezone.utc).date().isoformat()
        blocks.append(f"Date: {day}\nTitle: {note.title or 'Untitled'}\nContent: {note.content}")

    prompt = prompts.render("pulse_report", notes="\n\n---\n\n".join(blocks))
    resolved = router.resolve("pulseReport")
    data = _require_object(
        await resolved.provider.generate_json(resolved.tier, prompt, PULSE_REPORT_SCHEMA, cancel=cancel),
        "pulse report",
    )
    if not data.get("content"):
        raise GenerationError("Pulse report is missing its content")
    return PulseReport(title=str(data.get("title") or "Pulse Report"), content=str(data["content"]))


def mind_map_node_schema(depth: int) -> dict[str, Any]:
    """Schema for a mind map node with at most `depth` levels including itself."""
    node: dict[str, Any] = {
        "type": "object",
        "properties": {"label": {"type": "string", "description": "The concise label for this node."}},
        "required": ["label"],
    }
    if depth > 1:
        node["properties"]["children"] = {
            "type": "array",
            "description": "An array of child nodes.",
            "items": mind_map_node_schema(depth - 1),
        }
    return node


def build_mind_map_schema(depth: int = MIND_MAP_DEPTH) -> dict[str, Any]:
    return {
        "type": "object",
        "properties": {"root": mind_map_node_schema(depth)},
        "required": ["root"],
    }


def parse_mind_map_node(raw: Any, depth: int = MIND_MAP_DEPTH) -> MindMapNode:
    """Build a node tree, cutting anything deeper than `depth`."""
    if not isinstance(raw, dict) or not raw.get("label"):
        raise GenerationError("Mind map node is missing its label")
    children: list[MindMapNode] = []
    if depth > 1:
        for child in raw.get("children") or []:
            if isinstance(child, dict) and child.get("label"):
                children.append(parse_mind_map_node(child, depth - 1))
    return MindMapNode(label=str(raw["label"]), children=children)


async def generate_mind_map(
    router: CapabilityRouter,
    prompts: PromptsConfig,
    notes: list[Note],
    depth: int = MIND_MAP_DEPTH,
    *,
    cancel: CancelToken | None = None,
) -> MindMapNode:
    prompt = prompts.render("mind_map", notes=notes_as_context(notes))
    resolved = router.resolve("mindMap")
    data = _require_object(
        await resolved.provider.generate_json(resolved.tier, prompt, build_mind_map_schema(depth), cancel=cancel),
        "mind map",
    )
    return parse_mind_map_node(data.get("root"), depth)


async def generate_proactive_suggestions(
    router: CapabilityRouter,
    prompts: PromptsConfig,
    notes: list[Note],
    *,
    cancel: CancelToken | None = None,
) -> list[ProactiveSuggestion]:
    if not notes:
        return []

    prompt = prompts.render(
        "proactive_suggestions",
        notes=notes_as_context(notes[:_SUGGESTION_NOTE_LIMIT], preview_chars=_SUGGESTION_PREVIEW_CHARS),
    )
    resolved = router.resolve("proactiveSuggestions")
    data = await resolved.provider.generate_json(
        resolved.tier, prompt, PROACTIVE_SUGGESTIONS_SCHEMA, cancel=cancel
    )
    if not isinstance(data, list):
        raise GenerationError("Proactive suggestions must be a JSON array")
    return [
        ProactiveSuggestion(prompt=str(item["prompt"]), description=str(item.get("description", "")))
        for item in data
        if isinstance(item, dict) and item.get("prompt")
    ]


async def get_live_insights(
    router: CapabilityRouter,
    prompts: PromptsConfig,
    snippet: str,
    notes: list[Note],
    *,
    cancel: CancelToken | None = None,
) -> GenerationResult:
    """Offer the insight tools on the snippet the user is writing."""
    titles = [n.title for n in notes if n.title]
    system_instruction = prompts.render("live_insights", note_titles="\n- ".join(titles))
    history = [ChatMessage(role=Role.USER, content=prompts.render("live_insights_snippet", snippet=snippet))]
    resolved = router.resolve("agent_proactive")
    return await resolved.provider.generate_content_with_tools(
        resolved.tier, history, INSIGHT_TOOLS, system_instruction, cancel=cancel
    )


async def collect_insights(
    router: CapabilityRouter,
    prompts: PromptsConfig,
    note_content: str,
    current_note_id: str | None,
    notes: list[Note],
    existing_todos: Iterable[str] = (),
    *,
    cancel: CancelToken | None = None,
) -> list[Insight]:
    """Turn the insight tool calls for the tail of a note into Insight cards."""
    snippet = note_content[-_INSIGHT_SNIPPET_CHARS:]
    if len(snippet) < _INSIGHT_MIN_SNIPPET_CHARS:
        return []
    other_notes = [n for n in notes if n.id != current_note_id]
    if not other_notes:
        return []

    response = await get_live_insights(router, prompts, snippet, other_notes, cancel=cancel)
    todos = list(existing_todos)
    insights: list[Insight] = []

    for call in response.tool_calls or []:
        if call.name == "find_related_notes" and call.args.get("topic"):
            related = await search_notes_in_corpus(
                router, prompts, str(call.args["topic"]), other_notes, cancel=cancel
            )
            if related:
                note = related[0]
                insights.append(Insight(
                    type="related_note",
                    title="Related Note",
                    content=note.title,
                    source_note_id=note.id,
                    id=f"insight-note-{note.id}",
                ))
        elif call.name == "identify_action_item" and call.args.get("task"):
            task = str(call.args["task"])
            if not any(task in todo for todo in todos):
                insights.append(Insight(type="action_item", title="Suggested To-Do", content=task))
        elif call.name == "identify_wiki_concept" and call.args.get("term"):
            insights.append(Insight(type="wiki_concept", title="New Wiki Concept", content=str(call.args["term"])))
        else:
            logger.debug("Ignoring insight tool call %s with args %s", call.name, call.args)

    return insights
