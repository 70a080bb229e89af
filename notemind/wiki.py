"""Wiki generations: entries for a term and topic suggestions."""

from config.config_loader import PromptsConfig
from notemind.cancellation import CancelToken
from notemind.models import Note
from notemind.router import CapabilityRouter
from notemind.studio import as_string_list, notes_as_context

_CONTEXT_CHARS = 2000
_ARTICLE_CHARS = 4000
_WIKI_TOPIC_NOTE_LIMIT = 10

TOPICS_SCHEMA = {"type": "array", "items": {"type": "string"}}


async def generate_wiki_entry(
    router: CapabilityRouter,
    prompts: PromptsConfig,
    term: str,
    context: str,
    *,
    cancel: CancelToken | None = None,
) -> str:
    """Encyclopedia-style markdown for `term`; the context only sets the language."""
    prompt = prompts.render("wiki_entry", term=term, context=context[:_CONTEXT_CHARS])
    resolved = router.resolve("wikiEntry")
    return await resolved.provider.generate_text(resolved.tier, prompt, cancel=cancel)


async def generate_related_topics(
    router: CapabilityRouter,
    prompts: PromptsConfig,
    wiki_content: str,
    *,
    cancel: CancelToken | None = None,
) -> list[str]:
    prompt = prompts.render("related_topics", content=wiki_content[:_ARTICLE_CHARS])
    resolved = router.resolve("relatedTopics")
    return as_string_list(await resolved.provider.generate_json(resolved.tier, prompt, TOPICS_SCHEMA, cancel=cancel))


async def generate_sub_topics(
    router: CapabilityRouter,
    prompts: PromptsConfig,
    selection: str,
    context: str,
    *,
    cancel: CancelToken | None = None,
) -> list[str]:
    prompt = prompts.render("sub_topics", selection=selection, context=context[:_CONTEXT_CHARS])
    resolved = router.resolve("subTopics")
    return as_string_list(await resolved.provider.generate_json(resolved.tier, prompt, TOPICS_SCHEMA, cancel=cancel))


async def generate_wiki_topics(
    router: CapabilityRouter,
    prompts: PromptsConfig,
    notes: list[Note],
    *,
    cancel: CancelToken | None = None,
) -> list[str]:
    if not notes:
        return []
    prompt = prompts.render("wiki_topics", notes=notes_as_context(notes[:_WIKI_TOPIC_NOTE_LIMIT]))
    resolved = router.resolve("wikiTopics")
    return as_string_list(await resolved.provider.generate_json(resolved.tier, prompt, TOPICS_SCHEMA, cancel=cancel))
