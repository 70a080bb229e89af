"""Tests for notemind/studio.py and notemind/wiki.py."""

import pytest

from notemind.errors import GenerationError
from notemind.models import ChatMessage, GenerationResult, Note, Role, ToolCall
from notemind.studio import (
    build_mind_map_schema,
    collect_insights,
    generate_chat_response,
    generate_mind_map,
    generate_proactive_suggestions,
    generate_pulse_report,
    generate_summary,
    generate_thread_chat_response,
    generate_title_for_note,
    parse_mind_map_node,
)
from notemind.wiki import generate_related_topics, generate_sub_topics, generate_wiki_entry, generate_wiki_topics


@pytest.fixture
def notes() -> list[Note]:
    return [
        Note(id="n1", title="Garden", content="Plant tomatoes in May.", created_at=1_700_000_000_000),
        Note(id="n2", title="Stoicism", content="Marcus Aurelius on control.", created_at=1_600_000_000_000),
    ]


async def test_summary_parses_cards_and_todos(router, prompts, mock_provider, notes):
    mock_provider.queue_json({
        "todos": ["Buy seeds", ""],
        "knowledgeCards": [
            {"type": "encyclopedia", "title": "Tomato", "content": "A fruit.", "sources": ["https://x"]},
            {"type": "mystery", "title": "Spark", "content": "Grow herbs too."},
            {"type": "idea", "title": ""},
        ],
    })

    summary = await generate_summary(router, prompts, notes)

    assert summary.todos == ["Buy seeds"]
    assert [(c.type, c.title) for c in summary.knowledge_cards] == [("encyclopedia", "Tomato"), ("idea", "Spark")]
    assert summary.knowledge_cards[0].sources == ["https://x"]
    assert mock_provider.calls_of("json")[0]["schema"]["required"] == ["todos", "knowledgeCards"]


async def test_summary_of_nothing_makes_no_call(router, prompts, mock_provider):
    summary = await generate_summary(router, prompts, [])
    assert summary.todos == [] and summary.knowledge_cards == []
    assert mock_provider.calls == []


async def test_title_strips_quotes(router, prompts, mock_provider):
    mock_provider.texts = ['"Garden Plans"']
    assert await generate_title_for_note(router, prompts, "Plant tomatoes in May. " * 5) == "Garden Plans"
    assert await generate_title_for_note(router, prompts, "") == ""
    assert len(mock_provider.calls) == 1


async def test_chat_response_uses_recent_history(router, prompts, mock_provider, notes):
    history = [ChatMessage(role=Role.USER, content=f"message {i}") for i in range(12)]
    mock_provider.texts = ["In May."]

    answer = await generate_chat_response(router, prompts, notes, history, "When do I plant?")

    assert answer == "In May."
    prompt = mock_provider.calls_of("text")[0]["prompt"]
    assert "message 1\n" not in prompt
    assert "user: message 11" in prompt
    assert "Title: Garden" in prompt


async def test_thread_chat_stays_on_one_note(router, prompts, mock_provider, notes):
    mock_provider.texts = ["It says May."]

    answer = await generate_thread_chat_response(router, prompts, notes[0], [], "What month?")

    assert answer == "It says May."
    prompt = mock_provider.calls_of("text")[0]["prompt"]
    assert "Plant tomatoes in May." in prompt
    assert "Marcus Aurelius" not in prompt
    assert "user: What month?" in prompt


async def test_pulse_report_placeholder_without_notes(router, prompts, mock_provider):
    report = await generate_pulse_report(router, prompts, [])
    assert report.title == "Not Enough Data"
    assert mock_provider.calls == []


async def test_pulse_report_includes_dates(router, prompts, mock_provider, notes):
    mock_provider.queue_json({"title": "Your Pulse", "content": "# Growth"})

    report = await generate_pulse_report(router, prompts, notes)

    assert report.title == "Your Pulse"
    assert "Date: 2023-11-14" in mock_provider.calls_of("json")[0]["prompt"]
    assert mock_provider.calls_of("json")[0]["tier"] == "pro"


async def test_pulse_report_without_content_fails(router, prompts, mock_provider, notes):
    mock_provider.queue_json({"title": "Empty"})
    with pytest.raises(GenerationError):
        await generate_pulse_report(router, prompts, notes)


def test_mind_map_schema_depth():
    schema = build_mind_map_schema(3)
    root = schema["properties"]["root"]
    level2 = root["properties"]["children"]["items"]
    level3 = level2["properties"]["children"]["items"]
    assert "children" not in level3["properties"]


def test_parse_mind_map_cuts_deeper_levels():
    raw = {"label": "Life", "children": [{"label": "Garden", "children": [
        {"label": "Tomatoes", "children": [{"label": "Too deep"}]},
        {"children": []},
    ]}]}
    root = parse_mind_map_node(raw, depth=3)
    tomatoes = root.children[0].children[0]
    assert tomatoes.label == "Tomatoes"
    assert tomatoes.children == []
    assert len(root.children[0].children) == 1


async def test_mind_map(router, prompts, mock_provider, notes):
    mock_provider.queue_json({"root": {"label": "Life", "children": [{"label": "Garden"}]}})
    root = await generate_mind_map(router, prompts, notes)
    assert root.label == "Life"
    assert [c.label for c in root.children] == ["Garden"]


async def test_proactive_suggestions(router, prompts, mock_provider, notes):
    mock_provider.queue_json([{"prompt": "Summarize my garden notes", "description": "New notes"}, {"x": 1}])
    suggestions = await generate_proactive_suggestions(router, prompts, notes)
    assert [s.prompt for s in suggestions] == ["Summarize my garden notes"]


async def test_collect_insights_dispatches_tool_calls(router, prompts, mock_provider, notes):
    mock_provider.tool_results = [GenerationResult(tool_calls=[
        ToolCall(id="t1", name="find_related_notes", args={"topic": "stoicism"}),
        ToolCall(id="t2", name="identify_action_item", args={"task": "Buy seeds"}),
        ToolCall(id="t3", name="identify_action_item", args={"task": "Water plants"}),
        ToolCall(id="t4", name="identify_wiki_concept", args={"term": "Dichotomy of control"}),
    ])]
    mock_provider.queue_json(["n2"])
    text = "Today I read about what is in my control and what is not. I should buy seeds."

    insights = await collect_insights(
        router, prompts, text, "n1", notes, existing_todos=["Water plants daily"]
    )

    assert [(i.type, i.content) for i in insights] == [
        ("related_note", "Stoicism"),
        ("action_item", "Buy seeds"),
        ("wiki_concept", "Dichotomy of control"),
    ]
    assert insights[0].source_note_id == "n2"
    tools_call = mock_provider.calls_of("tools")[0]
    assert tools_call["tools"] == ["find_related_notes", "identify_action_item", "identify_wiki_concept"]
    assert "Garden" not in tools_call["system"]


async def test_collect_insights_needs_enough_text(router, prompts, mock_provider, notes):
    assert await collect_insights(router, prompts, "too short", "n1", notes) == []
    assert mock_provider.calls == []


async def test_wiki_entry_truncates_context(router, prompts, mock_provider):
    mock_provider.texts = ["**Stoicism** is a school of philosophy."]
    entry = await generate_wiki_entry(router, prompts, "Stoicism", "x" * 5000)

    assert entry.startswith("**Stoicism**")
    prompt = mock_provider.calls_of("text")[0]["prompt"]
    assert "x" * 2000 in prompt and "x" * 2001 not in prompt
    assert mock_provider.calls_of("text")[0]["tier"] == "lite"


async def test_wiki_topic_lists(router, prompts, mock_provider, notes):
    mock_provider.queue_json(["Epictetus", "Virtue"])
    mock_provider.queue_json(["Seneca"])
    mock_provider.queue_json(["Memento mori"])

    assert await generate_related_topics(router, prompts, "Stoicism article") == ["Epictetus", "Virtue"]
    assert await generate_sub_topics(router, prompts, "control", "Stoicism article") == ["Seneca"]
    assert await generate_wiki_topics(router, prompts, notes) == ["Memento mori"]
    assert await generate_wiki_topics(router, prompts, []) == []


async def test_topic_list_must_be_array(router, prompts, mock_provider):
    mock_provider.queue_json({"topics": ["a"]})
    with pytest.raises(GenerationError):
        await generate_related_topics(router, prompts, "article")
