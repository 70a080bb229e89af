"""Tests for notemind/orchestrator.py -- scripted providers, no real API calls."""

import pytest

from notemind.cancellation import CancelToken
from notemind.models import (
    CreateNoteResultContent,
    DiscussionMode,
    GenerationResult,
    GroupChatSession,
    Role,
    SearchResultContent,
    ToolCall,
)
from notemind.orchestrator import (
    ERROR_MESSAGE,
    MODERATOR_ERROR_MESSAGE,
    ModeratorState,
    execute_tool_call,
    parse_command,
    parse_mentions,
    send_message,
)
from notemind.providers.base import ProviderError
from notemind.retrieval import NOTHING_FOUND_MESSAGE


def select(agent_name: str, reason: str = "Best fit", call_id: str = "m1") -> GenerationResult:
    return GenerationResult(tool_calls=[
        ToolCall(id=call_id, name="select_next_speaker", args={"agent_name": agent_name, "reason": reason})
    ])


def pass_control(reason: str = "All done") -> GenerationResult:
    return GenerationResult(tool_calls=[ToolCall(id="p1", name="pass_control_to_user", args={"reason": reason})])


def group(mode: DiscussionMode = DiscussionMode.MODERATED) -> GroupChatSession:
    return GroupChatSession(name="Team", participant_ids=["alpha", "beta"], discussion_mode=mode)


def solo() -> GroupChatSession:
    return GroupChatSession(name="Alpha", participant_ids=["alpha"])


# --- Moderated mode ---

async def test_moderator_selects_then_passes_control(chat_ctx, mock_provider):
    mock_provider.tool_results = [select("Alpha"), GenerationResult(text="Hello from Alpha"), pass_control("All set")]
    session = group()

    outcome = await send_message(chat_ctx, session, "Hi everyone")

    assert outcome.state is ModeratorState.AWAITING_USER
    assert outcome.decisions == 2
    assert outcome.agent_turns == 1
    assert outcome.error is None
    assert outcome.pass_reason == "All set"
    assert [(m.role, m.persona) for m in session.history] == [
        (Role.USER, "User"),
        (Role.SYSTEM, "Moderator"),
        (Role.MODEL, "Alpha"),
        (Role.SYSTEM, "Moderator"),
    ]
    assert session.history[3].content == "[Moderator]: All set"
    assert outcome.transitions == [
        ModeratorState.AWAITING_MODERATOR_DECISION,
        ModeratorState.AGENT_SPEAKING,
        ModeratorState.AWAITING_MODERATOR_DECISION,
        ModeratorState.AWAITING_USER,
    ]
    assert session.is_generating is False


async def test_moderator_and_participant_get_their_own_tools(chat_ctx, mock_provider):
    mock_provider.tool_results = [select("Alpha"), GenerationResult(text="Hi"), pass_control()]

    await send_message(chat_ctx, group(), "Hi")

    moderator_call, agent_call, _ = mock_provider.calls_of("tools")
    assert moderator_call["tools"] == ["select_next_speaker", "pass_control_to_user"]
    assert moderator_call["web_search"] is False
    assert agent_call["tools"] == ["search_notes", "create_note"]
    assert agent_call["web_search"] is True
    assert agent_call["agent_count"] == 2
    assert "You are Alpha." in agent_call["system"]
    assert "Alpha, Beta" in agent_call["system"]


async def test_moderator_sees_mentions(chat_ctx, mock_provider):
    mock_provider.tool_results = [pass_control("Nothing to add")]

    await send_message(chat_ctx, group(), "@Beta what do you think?")

    moderator_call = mock_provider.calls_of("tools")[0]
    assert "The user specifically mentioned: [Beta]" in moderator_call["system"]
    assert 'Last User Message:** "@Beta what do you think?"' in moderator_call["system"]


async def test_unknown_agent_yields_one_error_message(chat_ctx, mock_provider):
    mock_provider.tool_results = [select("Gamma")]
    session = group()

    outcome = await send_message(chat_ctx, session, "Hi")

    errors = [m for m in session.history if m.content == MODERATOR_ERROR_MESSAGE]
    assert len(errors) == 1
    assert errors[0].persona == "Moderator"
    assert errors[0].role is Role.MODEL
    assert ModeratorState.ERROR in outcome.transitions
    assert outcome.state is ModeratorState.AWAITING_USER
    assert outcome.agent_turns == 0
    assert "Gamma" in outcome.error


@pytest.mark.parametrize(
    "decision",
    [
        GenerationResult(text="I think Alpha should answer."),
        GenerationResult(tool_calls=[
            ToolCall(id="m1", name="select_next_speaker", args={"agent_name": "Alpha", "reason": "r"}),
            ToolCall(id="m2", name="select_next_speaker", args={"agent_name": "Beta", "reason": "r"}),
        ]),
        GenerationResult(tool_calls=[ToolCall(id="m1", name="search_notes", args={"query": "q"})]),
    ],
    ids=["text-only", "two-calls", "wrong-tool"],
)
async def test_moderator_must_answer_with_one_control_call(chat_ctx, mock_provider, decision):
    mock_provider.tool_results = [decision]
    session = group()

    outcome = await send_message(chat_ctx, session, "Hi")

    assert ModeratorState.ERROR in outcome.transitions
    assert outcome.agent_turns == 0
    assert session.history[-1].content == MODERATOR_ERROR_MESSAGE


async def test_moderator_matches_agent_name_case_insensitively(chat_ctx, mock_provider):
    mock_provider.tool_results = [select("[alpha]"), GenerationResult(text="Hi"), pass_control()]
    session = group()

    outcome = await send_message(chat_ctx, session, "Hi")

    assert outcome.error is None
    assert session.history[2].persona == "Alpha"


@pytest.mark.parametrize("budget", [1, 3])
async def test_decision_budget_bounds_agent_turns(chat_ctx, mock_provider, budget):
    chat_ctx.max_moderator_decisions = budget
    for _ in range(budget + 2):
        mock_provider.tool_results += [select("Alpha"), GenerationResult(text="More thoughts")]
    session = group()

    outcome = await send_message(chat_ctx, session, "Keep talking")

    assert outcome.decisions == budget
    assert outcome.agent_turns == budget
    assert outcome.truncated is True
    assert outcome.state is ModeratorState.AWAITING_USER
    assert session.history[-1].role is Role.SYSTEM
    assert f"paused after {budget}" in session.history[-1].content
    assert len(mock_provider.calls_of("tools")) == 2 * budget


async def test_agent_tool_calls_are_answered_before_next_speaker(chat_ctx, mock_provider, store):
    note = store.create("Garden", "Tomatoes need at least six hours of sun.")
    mock_provider.tool_results = [
        select("Alpha"),
        GenerationResult(text="Let me check.", tool_calls=[
            ToolCall(id="c1", name="search_notes", args={"query": "tomatoes"}),
            ToolCall(id="c2", name="create_note", args={"title": "Plan", "content": "Plant in May."}),
        ]),
        select("Beta"),
        GenerationResult(text="Agreed."),
        pass_control(""),
    ]
    mock_provider.queue_json([note.id])
    mock_provider.texts = ["Six hours of sun."]
    session = group()

    outcome = await send_message(chat_ctx, session, "What do tomatoes need?")

    index = next(i for i, m in enumerate(session.history) if m.tool_calls)
    search_result, create_result = session.history[index + 1], session.history[index + 2]
    assert (search_result.role, search_result.tool_call_id) == (Role.TOOL, "c1")
    assert (create_result.role, create_result.tool_call_id) == (Role.TOOL, "c2")
    assert search_result.content == "Six hours of sun."
    assert search_result.source_notes == [(note.id, "Garden")]
    assert search_result.structured_content == SearchResultContent(note_ids=[note.id])
    assert isinstance(create_result.structured_content, CreateNoteResultContent)
    assert create_result.content == 'Successfully created a new note titled "Plan".'
    assert any(n.title == "Plan" for n in store.all())
    assert session.history[index + 3].persona == "Moderator"
    assert session.history[-1].persona == "Beta"
    assert outcome.agent_turns == 2
    assert outcome.pass_reason is None


# --- Single agent ---

async def test_single_agent_runs_tool_loop_and_cites_sources(chat_ctx, mock_provider, store):
    note = store.create("Garden", "Tomatoes need at least six hours of sun.")
    mock_provider.tool_results = [
        GenerationResult(tool_calls=[ToolCall(id="c1", name="search_notes", args={"query": "tomatoes"})]),
        GenerationResult(text="Tomatoes need full sun."),
    ]
    mock_provider.queue_json([note.id])
    mock_provider.texts = ["Six hours of sun."]

    outcome = await send_message(chat_ctx, solo(), "What do tomatoes need?")

    assert [m.role for m in outcome.messages] == [Role.USER, Role.MODEL, Role.TOOL, Role.MODEL]
    assert outcome.messages[-1].content == "Tomatoes need full sun."
    assert outcome.messages[-1].source_notes == [(note.id, "Garden")]
    assert outcome.agent_turns == 2
    second_call = mock_provider.calls_of("tools")[1]
    assert second_call["history"][-1].role is Role.TOOL
    assert second_call["system"] == "You are Alpha."
    assert second_call["agent_count"] is None


async def test_single_agent_command_applies_to_first_call_only(chat_ctx, mock_provider):
    mock_provider.tool_results = [
        GenerationResult(tool_calls=[ToolCall(id="c1", name="create_note", args={"title": "T", "content": ""})]),
        GenerationResult(text="Created it."),
    ]

    await send_message(chat_ctx, solo(), "/create Shopping list")

    first, second = mock_provider.calls_of("tools")
    assert "/create" in first["system"]
    assert "COMMAND DEFINITION" in first["system"]
    assert "You are Alpha." in first["system"]
    assert second["system"] == "You are Alpha."


async def test_single_agent_tool_round_limit(chat_ctx, mock_provider):
    chat_ctx.max_tool_rounds = 2
    call = GenerationResult(tool_calls=[ToolCall(id="c1", name="create_note", args={"title": "Loop", "content": ""})])
    mock_provider.tool_results = [call, call, call]

    outcome = await send_message(chat_ctx, solo(), "Make notes forever")

    assert outcome.agent_turns == 2
    assert [m.role for m in outcome.messages] == [Role.USER, Role.MODEL, Role.TOOL, Role.MODEL, Role.TOOL]
    assert outcome.error is None


async def test_single_agent_provider_error_becomes_message(chat_ctx, mock_provider):
    mock_provider.tool_results = [ProviderError("mock", "boom")]
    session = solo()

    outcome = await send_message(chat_ctx, session, "Hello")

    assert session.history[-1].content == ERROR_MESSAGE
    assert session.history[-1].persona == "System"
    assert ModeratorState.ERROR in outcome.transitions
    assert "boom" in outcome.error
    assert session.is_generating is False


async def test_failed_tool_still_answers_its_call(chat_ctx, mock_provider, store):
    note = store.create("Garden", "Tomatoes need sun.")
    mock_provider.tool_results = [
        GenerationResult(tool_calls=[ToolCall(id="c1", name="search_notes", args={"query": "q"})]),
        GenerationResult(text="Sorry, the search failed."),
    ]
    mock_provider.queue_json([note.id])
    mock_provider.texts = [ProviderError("mock", "answer failed")]

    outcome = await send_message(chat_ctx, solo(), "Search")

    tool_message = outcome.messages[2]
    assert tool_message.tool_call_id == "c1"
    assert "failed" in tool_message.content
    assert outcome.messages[-1].content == "Sorry, the search failed."
    assert outcome.error is None


async def test_create_note_os_error_still_answers_its_call(chat_ctx, mock_provider, store, monkeypatch):
    def disk_full(title, content):
        raise OSError("disk full")

    monkeypatch.setattr(store, "create", disk_full)
    mock_provider.tool_results = [
        GenerationResult(tool_calls=[ToolCall(id="c1", name="create_note", args={"title": "T", "content": "C"})]),
        GenerationResult(text="I could not save that note."),
    ]
    session = solo()

    outcome = await send_message(chat_ctx, session, "make a note")

    assert [m.role for m in session.history] == [Role.USER, Role.MODEL, Role.TOOL, Role.MODEL]
    assert session.history[2].tool_call_id == "c1"
    assert "disk full" in session.history[2].content
    assert session.history[-1].content == "I could not save that note."
    assert outcome.state is ModeratorState.AWAITING_USER


async def test_unexpected_error_becomes_one_visible_message(chat_ctx, mock_provider):
    mock_provider.tool_results = [RuntimeError("socket closed")]
    session = solo()

    outcome = await send_message(chat_ctx, session, "Hi")

    assert [(m.role, m.content, m.persona) for m in session.history[1:]] == [
        (Role.MODEL, ERROR_MESSAGE, "System"),
    ]
    assert outcome.error == "socket closed"
    assert outcome.state is ModeratorState.AWAITING_USER
    assert session.is_generating is False


# --- Turn-based and concurrent ---

async def test_turn_based_speakers_see_previous_answers(chat_ctx, mock_provider):
    mock_provider.tool_results = [GenerationResult(text="Alpha's view"), GenerationResult(text="Beta's view")]
    session = group(DiscussionMode.TURN_BASED)

    outcome = await send_message(chat_ctx, session, "Thoughts?")

    assert [m.persona for m in session.history] == ["User", "Alpha", "Beta"]
    beta_call = mock_provider.calls_of("tools")[1]
    assert beta_call["history"][-1].content == "Alpha's view"
    assert outcome.decisions == 0


async def test_turn_based_mentions_limit_speakers(chat_ctx, mock_provider):
    mock_provider.tool_results = [GenerationResult(text="Just me")]
    session = group(DiscussionMode.TURN_BASED)

    await send_message(chat_ctx, session, "@beta, your take?")

    calls = mock_provider.calls_of("tools")
    assert len(calls) == 1
    assert "You are Beta." in calls[0]["system"]
    assert session.history[-1].persona == "Beta"


async def test_concurrent_agents_answer_same_snapshot(chat_ctx, mock_provider):
    mock_provider.tool_results = [GenerationResult(text="one"), GenerationResult(text="two")]
    session = group(DiscussionMode.CONCURRENT)

    await send_message(chat_ctx, session, "Go")

    assert [m.persona for m in session.history] == ["User", "Alpha", "Beta"]
    assert {m.content for m in session.history[1:]} == {"one", "two"}
    for call in mock_provider.calls_of("tools"):
        assert len(call["history"]) == 1


async def test_concurrent_failure_keeps_other_answers(chat_ctx, mock_provider):
    mock_provider.tool_results = [ProviderError("mock", "boom"), GenerationResult(text="two")]
    session = group(DiscussionMode.CONCURRENT)

    outcome = await send_message(chat_ctx, session, "Go")

    contents = [m.content for m in session.history]
    assert "two" in contents
    assert contents.count(ERROR_MESSAGE) == 1
    assert ModeratorState.ERROR in outcome.transitions


# --- Entry point ---

async def test_cancelled_turn_adds_no_agent_messages(chat_ctx, mock_provider):
    cancel = CancelToken()
    cancel.cancel("user stopped")
    session = group()

    outcome = await send_message(chat_ctx, session, "Hi", cancel=cancel)

    assert outcome.cancelled is True
    assert [m.role for m in session.history] == [Role.USER]
    assert mock_provider.calls == []
    assert session.is_generating is False


async def test_blank_or_busy_messages_are_ignored(chat_ctx, mock_provider):
    session = group()
    assert (await send_message(chat_ctx, session, "   ")).messages == []

    session.is_generating = True
    assert (await send_message(chat_ctx, session, "Hi")).messages == []
    assert session.history == []
    assert mock_provider.calls == []


async def test_history_is_append_only(chat_ctx, mock_provider):
    mock_provider.tool_results = [
        select("Alpha"), GenerationResult(text="First"), pass_control(),
        select("Beta"), GenerationResult(text="Second"), pass_control(),
    ]
    session = group()

    await send_message(chat_ctx, session, "One")
    before = [m.id for m in session.history]
    await send_message(chat_ctx, session, "Two")

    assert [m.id for m in session.history][: len(before)] == before
    assert len(session.history) > len(before)


async def test_session_without_participants(chat_ctx):
    session = GroupChatSession(name="Empty", participant_ids=["ghost"])

    outcome = await send_message(chat_ctx, session, "Anyone?")

    assert outcome.messages[-1].content == ERROR_MESSAGE
    assert outcome.state is ModeratorState.AWAITING_USER


async def test_unknown_tool_gets_explanatory_result(chat_ctx):
    message = await execute_tool_call(chat_ctx, ToolCall(id="x1", name="launch_rocket", args={}))
    assert message.tool_call_id == "x1"
    assert "Unknown tool" in message.content


async def test_search_with_empty_corpus_makes_no_answer_call(chat_ctx, mock_provider):
    message = await execute_tool_call(chat_ctx, ToolCall(id="s1", name="search_notes", args={"query": "q"}))
    assert message.content == NOTHING_FOUND_MESSAGE
    assert message.source_notes is None
    assert mock_provider.calls == []


def test_parse_mentions_in_text_order(alpha, beta):
    assert parse_mentions("@Beta and @alpha please", [alpha, beta]) == [beta, alpha]
    assert parse_mentions("no mentions", [alpha, beta]) == []


def test_parse_command(chat_ctx):
    assert parse_command("/search tomatoes", chat_ctx.commands).name == "search"
    assert parse_command("/unknown x", chat_ctx.commands) is None
    assert parse_command("search tomatoes", chat_ctx.commands) is None
