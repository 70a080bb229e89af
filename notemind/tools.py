"""Tool declarations offered to models.

Each tool is declared exactly once and the tool sets below hold references to
the same objects, so a dispatcher never disagrees with what a model was shown.
"""

from dataclasses import dataclass, field
from typing import Any

from notemind.errors import ConfigurationError


@dataclass(frozen=True)
class ToolDeclaration:
    """A callable tool: name, description and a JSON-schema object for its arguments."""

    name: str
    description: str
    parameters: dict[str, Any] = field(default_factory=dict, hash=False)


TOOL_REGISTRY: dict[str, ToolDeclaration] = {}


def register_tool(declaration: ToolDeclaration) -> ToolDeclaration:
    """Register a declaration. Re-registering an identical one is a no-op."""
    existing = TOOL_REGISTRY.get(declaration.name)
    if existing is not None:
        if existing != declaration:
            raise ConfigurationError(
                f"Tool '{declaration.name}' is already declared with a different schema"
            )
        return existing
    TOOL_REGISTRY[declaration.name] = declaration
    return declaration


def get_tool(name: str) -> ToolDeclaration | None:
    return TOOL_REGISTRY.get(name)


def _string(description: str) -> dict[str, str]:
    return {"type": "string", "description": description}


def _object(properties: dict[str, Any], required: list[str]) -> dict[str, Any]:
    return {"type": "object", "properties": properties, "required": required}


SEARCH_NOTES = register_tool(ToolDeclaration(
    name="search_notes",
    description=(
        "Searches the user's notes to find information relevant to their query. "
        "Use this to answer questions about past notes."
    ),
    parameters=_object(
        {"query": _string("The specific topic or question to search for in the notes.")},
        ["query"],
    ),
))

CREATE_NOTE = register_tool(ToolDeclaration(
    name="create_note",
    description=(
        "Creates a new note with a given title and content. Use this when the user explicitly "
        "asks to create a note, or to save the result of a complex task."
    ),
    parameters=_object(
        {
            "title": _string("The title of the new note."),
            "content": _string("The main content of the new note, formatted in Markdown."),
        },
        ["title", "content"],
    ),
))

SELECT_NEXT_SPEAKER = register_tool(ToolDeclaration(
    name="select_next_speaker",
    description="Selects the next AI agent to speak in the discussion.",
    parameters=_object(
        {
            "agent_name": _string("The exact name of the agent who should speak next."),
            "reason": _string("A brief reason why this agent was chosen to speak next."),
        },
        ["agent_name", "reason"],
    ),
))

PASS_CONTROL_TO_USER = register_tool(ToolDeclaration(
    name="pass_control_to_user",
    description=(
        "Passes control back to the user when the AI's turn is complete because the user's "
        "request has been fulfilled or the conversation has reached a natural stopping point."
    ),
    parameters=_object(
        {"reason": _string("A brief, user-facing summary of what was accomplished before passing control back.")},
        ["reason"],
    ),
))

FIND_RELATED_NOTES = register_tool(ToolDeclaration(
    name="find_related_notes",
    description="Based on the user's current text, finds a single highly relevant note from their existing notes.",
    parameters=_object(
        {"topic": _string("The core topic or concept from the user's text to search for in other notes.")},
        ["topic"],
    ),
))

IDENTIFY_ACTION_ITEM = register_tool(ToolDeclaration(
    name="identify_action_item",
    description="Identifies a single, clear, and actionable to-do item from the user's text.",
    parameters=_object(
        {"task": _string("The full text of the identified to-do item.")},
        ["task"],
    ),
))

IDENTIFY_WIKI_CONCEPT = register_tool(ToolDeclaration(
    name="identify_wiki_concept",
    description=(
        "Identifies a new, significant concept or term from the user's text that would be "
        "suitable for a new wiki entry."
    ),
    parameters=_object(
        {"term": _string("The specific term or concept identified.")},
        ["term"],
    ),
))

CREATE_NEW_AGENT = register_tool(ToolDeclaration(
    name="create_new_agent",
    description=(
        "Creates a new AI agent based on the user's specifications. Use this tool ONLY when you "
        "have collected the name, description, and system instructions from the user."
    ),
    parameters=_object(
        {
            "name": _string("The name for the new AI agent."),
            "description": _string("A short, one-sentence description of the agent's purpose."),
            "systemInstruction": _string(
                "The detailed system instructions defining the agent's personality, capabilities, and constraints."
            ),
            "icon": _string(
                "Optional: Suggest an icon name from this list: SparklesIcon, BookOpenIcon, CpuChipIcon, "
                "LightbulbIcon, BeakerIcon, UsersIcon. Default is SparklesIcon."
            ),
            "color": _string(
                "Optional: Suggest a color from this list: slate, indigo, sky, purple, amber, rose, green. "
                "Default is indigo."
            ),
        },
        ["name", "description", "systemInstruction"],
    ),
))

AGENT_TOOLS: list[ToolDeclaration] = [SEARCH_NOTES, CREATE_NOTE]
MODERATOR_TOOLS: list[ToolDeclaration] = [SELECT_NEXT_SPEAKER, PASS_CONTROL_TO_USER]
INSIGHT_TOOLS: list[ToolDeclaration] = [FIND_RELATED_NOTES, IDENTIFY_ACTION_ITEM, IDENTIFY_WIKI_CONCEPT]
CREATOR_TOOLS: list[ToolDeclaration] = [CREATE_NEW_AGENT]
