"""Tests for notemind/retrieval.py."""

import json

import pytest

from notemind.models import Note
from notemind.providers.base import ProviderError
from notemind.retrieval import (
    NOTHING_FOUND_MESSAGE,
    answer_from_notes,
    search_notes_in_corpus,
    select_relevant_notes,
)


def _notes() -> list[Note]:
    return [
        Note(id="n1", title="Garden", content="Tomatoes need six hours of sun. " * 20),
        Note(id="n2", title="Recipes", content="Tomato soup with basil."),
        Note(id="n3", title="Work", content="Quarterly planning."),
    ]


async def test_select_filters_unknown_and_duplicate_ids(router, prompts, mock_provider):
    mock_provider.queue_json(["n2", "ghost", "n1", "n2", 7])
    assert await select_relevant_notes(router, prompts, "tomatoes", _notes()) == ["n2", "n1"]


async def test_select_sends_short_previews_on_lite_tier(router, prompts, mock_provider):
    mock_provider.queue_json([])
    await select_relevant_notes(router, prompts, "tomatoes", _notes())

    call = mock_provider.calls_of("json")[0]
    assert call["tier"] == "lite"
    listed = call["prompt"].split("Note List:\n", 1)[1].split("\n\nReturn only", 1)[0]
    previews = json.loads(listed)
    assert previews[0]["id"] == "n1"
    assert len(previews[0]["preview"]) == 150


async def test_select_empty_corpus_makes_no_call(router, prompts, mock_provider):
    assert await select_relevant_notes(router, prompts, "anything", []) == []
    assert mock_provider.calls == []


async def test_select_degrades_to_empty_on_failure(router, prompts, mock_provider):
    mock_provider.json_texts = [ProviderError("mock", "down")]
    mock_provider.texts = [ProviderError("mock", "still down")]
    assert await select_relevant_notes(router, prompts, "q", _notes()) == []


async def test_select_degrades_to_empty_on_non_array(router, prompts, mock_provider):
    mock_provider.queue_json({"ids": ["n1"]})
    assert await select_relevant_notes(router, prompts, "q", _notes()) == []


async def test_search_returns_notes_in_corpus_order(router, prompts, mock_provider):
    mock_provider.queue_json(["n3", "n1"])
    found = await search_notes_in_corpus(router, prompts, "q", _notes())
    assert [n.id for n in found] == ["n1", "n3"]


async def test_answer_without_notes_makes_no_call(router, prompts, mock_provider):
    assert await answer_from_notes(router, prompts, "q", []) == NOTHING_FOUND_MESSAGE
    assert mock_provider.calls == []


async def test_answer_uses_note_context(router, prompts, mock_provider):
    mock_provider.texts = ["Basil."]
    answer = await answer_from_notes(router, prompts, "What goes in the soup?", _notes()[1:2])

    assert answer == "Basil."
    call = mock_provider.calls_of("text")[0]
    assert "Title: Recipes" in call["prompt"]
    assert 'User Query: "What goes in the soup?"' in call["prompt"]
    assert call["tier"] == "fast"


async def test_answer_propagates_provider_failure(router, prompts, mock_provider):
    mock_provider.texts = [ProviderError("mock", "down")]
    with pytest.raises(ProviderError, match="down"):
        await answer_from_notes(router, prompts, "q", _notes())


async def test_select_degrades_to_empty_on_invalid_json(router, prompts, mock_provider):
    mock_provider.json_texts = ["not json"]
    mock_provider.texts = ["still not json"]
    assert await select_relevant_notes(router, prompts, "q", _notes()) == []
