"""Scripted two-persona sessions (debate, podcast) with a closing synthesis."""

import logging
from collections.abc import Awaitable, Callable
from typing import Any

from config.config_loader import ParliamentConfig, PersonaConfig, PromptsConfig
from notemind.cancellation import CancelToken, check_cancel
from notemind.errors import ConfigurationError, GenerationCancelled, GenerationError
from notemind.models import (
    ChatMessage,
    DebateSynthesis,
    Note,
    ParliamentMode,
    ParliamentSession,
    Role,
    SynthesisContent,
)
from notemind.providers.base import ProviderError
from notemind.router import CapabilityRouter
from notemind.studio import as_string_list, notes_as_context

logger = logging.getLogger(__name__)

MAX_DEBATE_TURNS = 6
SYNTHESIS_PERSONA = "Moderator"
SESSION_ERROR_MESSAGE = "An error occurred during the debate. Please try again."

_DEBATE_TOPIC_NOTE_LIMIT = 15

TOPICS_SCHEMA = {"type": "array", "items": {"type": "string"}}

SYNTHESIS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "properties": {
        "coreTension": {
            "type": "string",
            "description": "The central disagreement or tension of the discussion.",
        },
        "keyPointsPragmatist": {
            "type": "array",
            "description": "The strongest points made by the first persona.",
            "items": {"type": "string"},
        },
        "keyPointsVisionary": {
            "type": "array",
            "description": "The strongest points made by the second persona.",
            "items": {"type": "string"},
        },
        "nextSteps": {
            "type": "array",
            "description": "Concrete next steps for the user.",
            "items": {"type": "string"},
        },
    },
    "required": ["coreTension", "keyPointsPragmatist", "keyPointsVisionary", "nextSteps"],
}

TurnFunction = Callable[..., Awaitable[str]]


def _transcript(history: list[ChatMessage]) -> str:
    return "\n".join(f"{m.persona or 'System'}: {m.content}" for m in history if m.role is not Role.SYSTEM)


def _note_context(prompts: PromptsConfig, note_context: str | None) -> str:
    if not note_context:
        return ""
    return prompts.render("note_context", note_content=note_context)


async def generate_debate_topics(
    router: CapabilityRouter,
    prompts: PromptsConfig,
    notes: list[Note],
    *,
    cancel: CancelToken | None = None,
) -> list[str]:
    if not notes:
        return []
    prompt = prompts.render("debate_topics", notes=notes_as_context(notes[:_DEBATE_TOPIC_NOTE_LIMIT]))
    resolved = router.resolve("debateTopics")
    return as_string_list(await resolved.provider.generate_json(resolved.tier, prompt, TOPICS_SCHEMA, cancel=cancel))


async def _generate_turn(
    capability: str,
    template: str,
    router: CapabilityRouter,
    prompts: PromptsConfig,
    topic: str,
    history: list[ChatMessage],
    persona_definition: str,
    note_context: str | None,
    cancel: CancelToken | None,
) -> str:
    prompt = prompts.render(
        template,
        topic=topic,
        note_context=_note_context(prompts, note_context),
        persona=persona_definition,
        history=_transcript(history),
    )
    resolved = router.resolve(capability)
    return await resolved.provider.generate_text(resolved.tier, prompt, cancel=cancel)


async def generate_debate_turn(
    router: CapabilityRouter,
    prompts: PromptsConfig,
    topic: str,
    history: list[ChatMessage],
    persona_definition: str,
    note_context: str | None = None,
    *,
    cancel: CancelToken | None = None,
) -> str:
    """Next single-paragraph statement for the given persona."""
    return await _generate_turn(
        "debateTurn", "debate_turn", router, prompts, topic, history, persona_definition, note_context, cancel
    )


async def generate_podcast_turn(
    router: CapabilityRouter,
    prompts: PromptsConfig,
    topic: str,
    history: list[ChatMessage],
    persona_definition: str,
    note_context: str | None = None,
    *,
    cancel: CancelToken | None = None,
) -> str:
    """Next spoken line for the given podcast persona."""
    return await _generate_turn(
        "podcastTurn", "podcast_turn", router, prompts, topic, history, persona_definition, note_context, cancel
    )


def parse_synthesis(data: Any) -> DebateSynthesis:
    """Read the camelCase synthesis object returned by the model."""
    if not isinstance(data, dict) or not data.get("coreTension"):
        raise GenerationError("Synthesis is missing its coreTension")

    def points(key: str) -> list[str]:
        value = data.get(key) or []
        return as_string_list(value) if isinstance(value, list) else []

    return DebateSynthesis(
        core_tension=str(data["coreTension"]),
        key_points_pragmatist=points("keyPointsPragmatist"),
        key_points_visionary=points("keyPointsVisionary"),
        next_steps=points("nextSteps"),
    )


async def generate_debate_synthesis(
    router: CapabilityRouter,
    prompts: PromptsConfig,
    topic: str,
    history: list[ChatMessage],
    persona_names: tuple[str, str],
    *,
    cancel: CancelToken | None = None,
) -> DebateSynthesis:
    """Structured synthesis from the full transcript.

    keyPointsPragmatist holds the first persona's points and keyPointsVisionary
    the second's, whatever the personas are called.
    """
    prompt = prompts.render(
        "debate_synthesis",
        first_persona=persona_names[0],
        second_persona=persona_names[1],
        topic=topic,
        transcript=_transcript(history),
    )
    resolved = router.resolve("debateSynthesis")
    data = await resolved.provider.generate_json(resolved.tier, prompt, SYNTHESIS_SCHEMA, cancel=cancel)
    return parse_synthesis(data)


_TURN_FUNCTIONS: dict[ParliamentMode, TurnFunction] = {
    ParliamentMode.DEBATE: generate_debate_turn,
    ParliamentMode.PODCAST: generate_podcast_turn,
}


def personas_for(config: ParliamentConfig, mode: ParliamentMode) -> list[PersonaConfig]:
    personas = config.debate_personas if mode is ParliamentMode.DEBATE else config.podcast_personas
    if len(personas) != 2:
        raise ConfigurationError(f"Parliament mode '{mode.value}' needs exactly 2 personas, got {len(personas)}")
    return personas


async def run_parliament_session(
    router: CapabilityRouter,
    prompts: PromptsConfig,
    session: ParliamentSession,
    personas: list[PersonaConfig],
    max_turns: int = MAX_DEBATE_TURNS,
    note_context: str | None = None,
    on_message: Callable[[ChatMessage], None] | None = None,
    cancel: CancelToken | None = None,
) -> DebateSynthesis | None:
    """Alternate the two personas for `max_turns` turns, then append one synthesis.

    Args:
        session: Session whose history receives every message, in order.
        personas: Exactly two personas; the first one opens.
        note_context: Optional note body, given to the opening turn only.
        on_message: Optional callback invoked after each message is appended.

    Returns:
        The synthesis that was appended as the final message, or None when a
        turn failed and a single Moderator error message was appended instead.
        Cancellation is raised, not converted.
    """
    if len(personas) != 2:
        raise ConfigurationError(f"A parliament session needs exactly 2 personas, got {len(personas)}")
    turn_function = _TURN_FUNCTIONS[session.mode]

    def append(message: ChatMessage) -> None:
        session.append(message)
        if on_message:
            on_message(message)

    session.is_generating = True
    try:
        for turn in range(max_turns):
            check_cancel(cancel)
            persona = personas[turn % 2]
            logger.info("%s turn %d/%d: %s", session.mode.value, turn + 1, max_turns, persona.name)
            text = await turn_function(
                router,
                prompts,
                session.topic,
                session.history,
                persona.definition,
                note_context if turn == 0 else None,
                cancel=cancel,
            )
            append(ChatMessage(role=Role.MODEL, content=text, persona=persona.name))

        check_cancel(cancel)
        synthesis = await generate_debate_synthesis(
            router,
            prompts,
            session.topic,
            session.history,
            (personas[0].name, personas[1].name),
            cancel=cancel,
        )
        append(ChatMessage(
            role=Role.MODEL,
            content=synthesis.core_tension,
            persona=SYNTHESIS_PERSONA,
            structured_content=SynthesisContent(synthesis=synthesis),
        ))
        return synthesis
    except GenerationCancelled:
        raise
    except (ProviderError, GenerationError, ConfigurationError) as exc:
        logger.error("%s session failed: %s", session.mode.value, exc)
    except Exception:
        logger.exception("%s session failed unexpectedly", session.mode.value)
    finally:
        session.is_generating = False

    append(ChatMessage(role=Role.MODEL, content=SESSION_ERROR_MESSAGE, persona=SYNTHESIS_PERSONA))
    return None


def synthesis_to_markdown(
    topic: str,
    synthesis: DebateSynthesis,
    persona_names: tuple[str, str] = ("The Pragmatist", "The Visionary"),
) -> str:
    """Render a synthesis as a note body."""
    lines = [
        f"# Synthesis: {topic}",
        "",
        "## Core Tension",
        "",
        synthesis.core_tension,
        "",
        f"## Key Points: {persona_names[0]}",
        "",
        *[f"- {point}" for point in synthesis.key_points_pragmatist],
        "",
        f"## Key Points: {persona_names[1]}",
        "",
        *[f"- {point}" for point in synthesis.key_points_visionary],
        "",
        "## Next Steps",
        "",
        *[f"- [ ] {step}" for step in synthesis.next_steps],
    ]
    return "\n".join(lines).strip() + "\n"
