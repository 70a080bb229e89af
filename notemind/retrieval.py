"""Two-stage retrieval answering: cheap note selection, then a grounded answer."""

import json
import logging

from config.config_loader import PromptsConfig
from notemind.cancellation import CancelToken
from notemind.errors import GenerationError
from notemind.models import Note
from notemind.providers.base import ProviderError
from notemind.router import CapabilityRouter

logger = logging.getLogger(__name__)

NOTHING_FOUND_MESSAGE = "I couldn't find any relevant information in your notes to answer that question."

_PREVIEW_CHARS = 150

RETRIEVAL_SCHEMA = {
    "type": "array",
    "description": "An array of note IDs that are most relevant to the user's query.",
    "items": {"type": "string"},
}


async def select_relevant_notes(
    router: CapabilityRouter,
    prompts: PromptsConfig,
    query: str,
    notes: list[Note],
    *,
    cancel: CancelToken | None = None,
) -> list[str]:
    """Return ids of the notes most relevant to `query`.

    Degrades to [] on an empty corpus, a failed call or a non-array answer.
    Ids the model invented are discarded.
    """
    if not notes:
        return []

    previews = [
        {"id": note.id, "title": note.title, "preview": note.content[:_PREVIEW_CHARS]}
        for note in notes
    ]
    prompt = prompts.render(
        "retrieval_select",
        query=query,
        note_list=json.dumps(previews, ensure_ascii=False),
    )
    resolved = router.resolve("agent_retrieval")
    try:
        relevant_ids = await resolved.provider.generate_json(
            resolved.tier, prompt, RETRIEVAL_SCHEMA, cancel=cancel
        )
    except (GenerationError, ProviderError) as exc:
        logger.error("Failed to retrieve relevant notes: %s", exc)
        return []

    if not isinstance(relevant_ids, list):
        logger.warning("Retrieved relevant ids is not an array: %r", relevant_ids)
        return []

    known = {note.id for note in notes}
    selected: list[str] = []
    for note_id in relevant_ids:
        if isinstance(note_id, str) and note_id in known and note_id not in selected:
            selected.append(note_id)
    return selected


async def search_notes_in_corpus(
    router: CapabilityRouter,
    prompts: PromptsConfig,
    query: str,
    notes: list[Note],
    *,
    cancel: CancelToken | None = None,
) -> list[Note]:
    """Same as select_relevant_notes but returns the notes, in corpus order."""
    selected = set(await select_relevant_notes(router, prompts, query, notes, cancel=cancel))
    return [note for note in notes if note.id in selected]


async def answer_from_notes(
    router: CapabilityRouter,
    prompts: PromptsConfig,
    query: str,
    notes: list[Note],
    *,
    cancel: CancelToken | None = None,
) -> str:
    """Answer strictly from the given notes. No notes means no model call."""
    if not notes:
        return NOTHING_FOUND_MESSAGE

    context = "\n\n---\n\n".join(
        f"Title: {note.title or 'Untitled'}\nContent:\n{note.content}" for note in notes
    )
    prompt = prompts.render("retrieval_answer", query=query, context=context)
    resolved = router.resolve("agent_final_answer")
    return await resolved.provider.generate_text(resolved.tier, prompt, cancel=cancel)


generate_final_answer_from_context = answer_from_notes
