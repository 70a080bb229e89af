"""Group chat orchestration: moderator loop, turn-based and concurrent modes, tool execution.

History is append-only. Every message goes through the session's append(),
and every model message that carries tool calls is followed by exactly one
tool message per call id before anything else is appended.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum

from config.config_loader import AppConfig, PromptsConfig
from notemind.agent_registry import AgentRegistry
from notemind.agents import get_agent_response, get_agent_tool_response, get_moderator_response
from notemind.cancellation import CancelToken, check_cancel
from notemind.errors import ConfigurationError, GenerationCancelled, GenerationError, ModeratorProtocolError
from notemind.models import (
    AIAgent,
    ChatMessage,
    Command,
    CreateNoteResultContent,
    DiscussionMode,
    GenerationResult,
    GroupChatSession,
    Role,
    SearchResultContent,
    ToolCall,
)
from notemind.notes import NoteStore
from notemind.providers.base import ProviderError
from notemind.retrieval import answer_from_notes, search_notes_in_corpus
from notemind.router import CapabilityRouter
from notemind.tools import CREATE_NOTE, PASS_CONTROL_TO_USER, SEARCH_NOTES, SELECT_NEXT_SPEAKER

logger = logging.getLogger(__name__)

MODERATOR_PERSONA = "Moderator"
SYSTEM_PERSONA = "System"
USER_PERSONA = "User"

ERROR_MESSAGE = "Sorry, I encountered an error. Please try again."
MODERATOR_ERROR_MESSAGE = "Sorry, I encountered an error while choosing who should speak next. Please try again."
FALLBACK_RESPONSE = "I'm not sure how to respond to that."

DEFAULT_MAX_MODERATOR_DECISIONS = 8
DEFAULT_MAX_TOOL_ROUNDS = 5


class ModeratorState(str, Enum):
    AWAITING_MODERATOR_DECISION = "awaiting_moderator_decision"
    AGENT_SPEAKING = "agent_speaking"
    EXECUTING_TOOL_CALLS = "executing_tool_calls"
    AWAITING_USER = "awaiting_user"
    ERROR = "error"


@dataclass
class TurnOutcome:
    """What one user turn produced.

    `agent_turns` counts agent model calls; `transitions` lists every state
    entered, in order.
    """

    state: ModeratorState = ModeratorState.AWAITING_USER
    decisions: int = 0
    agent_turns: int = 0
    messages: list[ChatMessage] = field(default_factory=list)
    transitions: list[ModeratorState] = field(default_factory=list)
    cancelled: bool = False
    truncated: bool = False
    error: str | None = None
    pass_reason: str | None = None


@dataclass
class ChatContext:
    """Everything a turn needs besides the session itself."""

    router: CapabilityRouter
    prompts: PromptsConfig
    notes: NoteStore
    agents: AgentRegistry
    commands: list[Command] = field(default_factory=list)
    max_moderator_decisions: int = DEFAULT_MAX_MODERATOR_DECISIONS
    max_tool_rounds: int = DEFAULT_MAX_TOOL_ROUNDS
    on_message: Callable[[ChatMessage], None] | None = None

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        router: CapabilityRouter,
        notes: NoteStore,
        agents: AgentRegistry,
        on_message: Callable[[ChatMessage], None] | None = None,
    ) -> "ChatContext":
        return cls(
            router=router,
            prompts=config.prompts,
            notes=notes,
            agents=agents,
            commands=[
                Command(name=c.name, definition=c.definition, params=c.params, description=c.description)
                for c in config.commands
            ],
            max_moderator_decisions=config.defaults.max_moderator_decisions,
            max_tool_rounds=config.defaults.max_tool_rounds,
            on_message=on_message,
        )


class _Turn:
    def __init__(self, ctx: ChatContext, session: GroupChatSession) -> None:
        self.ctx = ctx
        self.session = session
        self.outcome = TurnOutcome()

    def append(self, message: ChatMessage) -> None:
        self.session.append(message)
        self.outcome.messages.append(message)
        if self.ctx.on_message:
            self.ctx.on_message(message)

    def enter(self, state: ModeratorState) -> None:
        self.outcome.state = state
        self.outcome.transitions.append(state)

    def fail(self, detail: str, visible: str, persona: str) -> None:
        self.enter(ModeratorState.ERROR)
        self.outcome.error = detail
        self.append(ChatMessage(role=Role.MODEL, content=visible, persona=persona))


async def _guarded(turn: _Turn, body: Awaitable[None], error_persona: str) -> TurnOutcome:
    """Run a turn body, converting failures into one visible message."""
    try:
        await body
    except GenerationCancelled as exc:
        logger.info("Turn cancelled: %s", exc)
        turn.outcome.cancelled = True
    except ModeratorProtocolError as exc:
        logger.warning("Moderator protocol violation: %s", exc)
        turn.fail(str(exc), MODERATOR_ERROR_MESSAGE, error_persona)
    except ConfigurationError as exc:
        logger.error("Configuration error during chat: %s", exc)
        turn.fail(str(exc), f"Sorry, I encountered a configuration error: {exc}", error_persona)
    except (ProviderError, GenerationError) as exc:
        logger.error("Agent chat failed: %s", exc)
        turn.fail(str(exc), ERROR_MESSAGE, error_persona)
    except Exception as exc:
        logger.exception("Unexpected error during chat")
        turn.fail(str(exc), ERROR_MESSAGE, error_persona)
    turn.enter(ModeratorState.AWAITING_USER)
    return turn.outcome


# --- Tool execution ---

async def execute_tool_call(ctx: ChatContext, call: ToolCall, *, cancel: CancelToken | None = None) -> ChatMessage:
    """Run one agent tool call and return its tool-role result message."""
    if call.name == SEARCH_NOTES.name:
        query = str(call.args.get("query") or "")
        selected = await search_notes_in_corpus(ctx.router, ctx.prompts, query, ctx.notes.all(), cancel=cancel)
        answer = await answer_from_notes(ctx.router, ctx.prompts, query, selected, cancel=cancel)
        return ChatMessage(
            role=Role.TOOL,
            content=answer,
            tool_call_id=call.id,
            structured_content=SearchResultContent(note_ids=[n.id for n in selected]) if selected else None,
            source_notes=[(n.id, n.title or "Untitled") for n in selected] or None,
        )

    if call.name == CREATE_NOTE.name:
        title = str(call.args.get("title") or "").strip() or "Untitled"
        note = ctx.notes.create(title, str(call.args.get("content") or ""))
        message = f'Successfully created a new note titled "{title}".'
        return ChatMessage(
            role=Role.TOOL,
            content=message,
            tool_call_id=call.id,
            structured_content=CreateNoteResultContent(message=message, note_id=note.id, title=title),
        )

    logger.warning("Agent called unknown tool '%s'", call.name)
    return ChatMessage(
        role=Role.TOOL,
        content=f"Unknown tool '{call.name}'. No action was taken.",
        tool_call_id=call.id,
    )


async def _execute_safely(ctx: ChatContext, call: ToolCall, cancel: CancelToken | None) -> ChatMessage:
    # A failed call still gets its result message so every call id is answered.
    try:
        return await execute_tool_call(ctx, call, cancel=cancel)
    except GenerationCancelled:
        return ChatMessage(role=Role.TOOL, content="Tool call cancelled.", tool_call_id=call.id)
    except (ProviderError, GenerationError, ConfigurationError) as exc:
        logger.error("Tool %s failed: %s", call.name, exc)
        return ChatMessage(role=Role.TOOL, content=f"Tool '{call.name}' failed: {exc}", tool_call_id=call.id)
    except Exception as exc:
        logger.exception("Tool %s raised an unexpected error", call.name)
        return ChatMessage(role=Role.TOOL, content=f"Tool '{call.name}' failed: {exc}", tool_call_id=call.id)


async def execute_tool_calls(
    ctx: ChatContext,
    calls: list[ToolCall],
    *,
    cancel: CancelToken | None = None,
) -> list[ChatMessage]:
    """Run calls concurrently; results come back in call order."""
    return list(await asyncio.gather(*(_execute_safely(ctx, call, cancel) for call in calls)))


# --- Agent turns ---

Responder = Callable[[list[ChatMessage], int], Awaitable[GenerationResult]]


async def _agent_loop(
    turn: _Turn,
    history: list[ChatMessage],
    emit: Callable[[ChatMessage], None],
    persona: str,
    respond: Responder,
    max_rounds: int,
    cancel: CancelToken | None,
) -> None:
    """Call an agent, run its tools, and call it again until it answers in text.

    With max_rounds=1 the agent speaks once and any tool results are left for
    whoever speaks next.
    """
    source_notes: list[tuple[str, str]] = []
    for round_index in range(max_rounds):
        check_cancel(cancel)
        turn.enter(ModeratorState.AGENT_SPEAKING)
        result = await respond(history, round_index)
        turn.outcome.agent_turns += 1

        if not result.tool_calls:
            emit(ChatMessage(
                role=Role.MODEL,
                content=result.text or FALLBACK_RESPONSE,
                persona=persona,
                source_notes=source_notes or None,
            ))
            return

        emit(ChatMessage(role=Role.MODEL, content=result.text or "", persona=persona, tool_calls=result.tool_calls))
        turn.enter(ModeratorState.EXECUTING_TOOL_CALLS)
        for message in await execute_tool_calls(turn.ctx, result.tool_calls, cancel=cancel):
            emit(message)
            source_notes.extend(message.source_notes or [])
        check_cancel(cancel)

    if max_rounds > 1:
        logger.warning("%s reached the tool round limit (%d)", persona, max_rounds)


def _participant_responder(ctx: ChatContext, agent: AIAgent, names: list[str], cancel: CancelToken | None) -> Responder:
    async def respond(history: list[ChatMessage], round_index: int) -> GenerationResult:
        return await get_agent_tool_response(ctx.router, ctx.prompts, history, agent, names, cancel=cancel)
    return respond


async def run_agent_turn(
    ctx: ChatContext,
    session: GroupChatSession,
    agent: AIAgent,
    command: Command | None = None,
    *,
    cancel: CancelToken | None = None,
) -> TurnOutcome:
    """Single-agent chat: tool loop bounded by max_tool_rounds. A command applies to the first call only."""
    turn = _Turn(ctx, session)

    async def respond(history: list[ChatMessage], round_index: int) -> GenerationResult:
        return await get_agent_response(
            ctx.router,
            ctx.prompts,
            history,
            command if round_index == 0 else None,
            agent.system_instruction,
            cancel=cancel,
        )

    body = _agent_loop(turn, session.history, turn.append, agent.name, respond, ctx.max_tool_rounds, cancel)
    return await _guarded(turn, body, SYSTEM_PERSONA)


# --- Moderated mode ---

def _moderator_call(decision: GenerationResult) -> ToolCall:
    calls = decision.tool_calls or []
    if len(calls) != 1:
        raise ModeratorProtocolError(f"Moderator must answer with exactly one tool call, got {len(calls)}")
    call = calls[0]
    if call.name not in (SELECT_NEXT_SPEAKER.name, PASS_CONTROL_TO_USER.name):
        raise ModeratorProtocolError(f"Moderator called unexpected tool '{call.name}'")
    return call


def _find_participant(participants: list[AIAgent], name: str) -> AIAgent:
    wanted = name.strip().strip("[]").strip()
    for agent in participants:
        if agent.name == wanted:
            return agent
    for agent in participants:
        if agent.name.casefold() == wanted.casefold():
            return agent
    raise ModeratorProtocolError(f"Moderator selected unknown agent '{name}'")


async def _moderated_body(
    turn: _Turn,
    participants: list[AIAgent],
    mentioned_names: list[str],
    cancel: CancelToken | None,
) -> None:
    ctx = turn.ctx
    names = [a.name for a in participants]
    spoken: list[str] = []

    while True:
        turn.enter(ModeratorState.AWAITING_MODERATOR_DECISION)
        if turn.outcome.decisions >= ctx.max_moderator_decisions:
            logger.warning("Moderator decision budget (%d) exhausted", ctx.max_moderator_decisions)
            turn.outcome.truncated = True
            turn.append(ChatMessage(
                role=Role.SYSTEM,
                content=(
                    f"[Moderator]: The discussion was paused after {ctx.max_moderator_decisions} "
                    "moderator decisions. Send a message to continue."
                ),
                persona=MODERATOR_PERSONA,
            ))
            return

        check_cancel(cancel)
        decision = await get_moderator_response(
            ctx.router, ctx.prompts, turn.session.history, names, spoken, mentioned_names, cancel=cancel
        )
        turn.outcome.decisions += 1
        call = _moderator_call(decision)

        if call.name == PASS_CONTROL_TO_USER.name:
            reason = str(call.args.get("reason") or "").strip()
            turn.outcome.pass_reason = reason or None
            if reason:
                turn.append(ChatMessage(role=Role.SYSTEM, content=f"[Moderator]: {reason}", persona=MODERATOR_PERSONA))
            return

        agent = _find_participant(participants, str(call.args.get("agent_name") or ""))
        reason = str(call.args.get("reason") or "").strip()
        logger.info("Moderator chose %s: %s", agent.name, reason)
        turn.append(ChatMessage(
            role=Role.SYSTEM,
            content=f"[Moderator chose {agent.name}]: {reason}",
            persona=MODERATOR_PERSONA,
        ))

        respond = _participant_responder(ctx, agent, names, cancel)
        await _agent_loop(turn, turn.session.history, turn.append, agent.name, respond, 1, cancel)
        if agent.name not in spoken:
            spoken.append(agent.name)


async def run_moderated_turn(
    ctx: ChatContext,
    session: GroupChatSession,
    participants: list[AIAgent],
    mentioned_names: list[str] | None = None,
    *,
    cancel: CancelToken | None = None,
) -> TurnOutcome:
    """Let the moderator pick speakers until it passes control back or the budget runs out.

    Each moderator decision yields at most one agent response, so the number
    of agent turns never exceeds ctx.max_moderator_decisions.
    """
    turn = _Turn(ctx, session)
    body = _moderated_body(turn, participants, mentioned_names or [], cancel)
    return await _guarded(turn, body, MODERATOR_PERSONA)


# --- Turn-based and concurrent modes ---

async def run_turn_based(
    ctx: ChatContext,
    session: GroupChatSession,
    speakers: list[AIAgent],
    all_participants: list[AIAgent],
    *,
    cancel: CancelToken | None = None,
) -> TurnOutcome:
    """Each speaker answers in order, seeing everything said before it."""
    turn = _Turn(ctx, session)
    names = [a.name for a in all_participants]

    async def body() -> None:
        for agent in speakers:
            respond = _participant_responder(ctx, agent, names, cancel)
            await _agent_loop(turn, session.history, turn.append, agent.name, respond, ctx.max_tool_rounds, cancel)

    return await _guarded(turn, body(), MODERATOR_PERSONA)


async def run_concurrent(
    ctx: ChatContext,
    session: GroupChatSession,
    speakers: list[AIAgent],
    all_participants: list[AIAgent],
    *,
    cancel: CancelToken | None = None,
) -> TurnOutcome:
    """All speakers answer the same snapshot at once.

    Each agent works on a private copy of the history; its messages are
    appended afterwards, grouped per agent in participant order.
    """
    turn = _Turn(ctx, session)
    names = [a.name for a in all_participants]
    snapshot = list(session.history)

    async def one(agent: AIAgent) -> list[ChatMessage]:
        working = list(snapshot)
        produced: list[ChatMessage] = []

        def emit(message: ChatMessage) -> None:
            working.append(message)
            produced.append(message)

        respond = _participant_responder(ctx, agent, names, cancel)
        await _agent_loop(turn, working, emit, agent.name, respond, ctx.max_tool_rounds, cancel)
        return produced

    async def body() -> None:
        results = await asyncio.gather(*(one(agent) for agent in speakers), return_exceptions=True)
        failure: BaseException | None = None
        for agent, result in zip(speakers, results):
            if isinstance(result, BaseException):
                logger.error("Agent %s failed: %s", agent.name, result)
                failure = failure or result
                continue
            for message in result:
                turn.append(message)
        if failure is not None:
            raise failure

    return await _guarded(turn, body(), MODERATOR_PERSONA)


# --- Entry point ---

def parse_mentions(text: str, participants: list[AIAgent]) -> list[AIAgent]:
    """Agents mentioned as @Name, in the order they appear in the text."""
    lowered = text.casefold()
    found: list[tuple[int, AIAgent]] = []
    for agent in participants:
        index = lowered.find(f"@{agent.name.casefold()}")
        if index >= 0:
            found.append((index, agent))
    return [agent for _, agent in sorted(found, key=lambda pair: pair[0])]


def parse_command(text: str, commands: list[Command]) -> Command | None:
    if not text.startswith("/"):
        return None
    name = text.strip().split()[0][1:]
    return next((c for c in commands if c.name == name), None)


async def send_message(
    ctx: ChatContext,
    session: GroupChatSession,
    text: str,
    *,
    cancel: CancelToken | None = None,
) -> TurnOutcome:
    """Append a user message and let the session's agents respond."""
    if not text.strip():
        return TurnOutcome()
    if session.is_generating:
        logger.warning("Session %s is already generating, ignoring message", session.id)
        return TurnOutcome()

    user_message = ChatMessage(role=Role.USER, content=text, persona=USER_PERSONA)
    session.append(user_message)
    if ctx.on_message:
        ctx.on_message(user_message)

    participants = ctx.agents.resolve(session.participant_ids)
    session.is_generating = True
    try:
        if not participants:
            turn = _Turn(ctx, session)
            turn.fail("Session has no participants", ERROR_MESSAGE, SYSTEM_PERSONA)
            turn.enter(ModeratorState.AWAITING_USER)
            outcome = turn.outcome
        elif len(participants) == 1:
            command = parse_command(text, ctx.commands)
            outcome = await run_agent_turn(ctx, session, participants[0], command, cancel=cancel)
        else:
            mentioned = parse_mentions(text, participants)
            if session.discussion_mode is DiscussionMode.MODERATED:
                outcome = await run_moderated_turn(
                    ctx, session, participants, [a.name for a in mentioned], cancel=cancel
                )
            elif session.discussion_mode is DiscussionMode.TURN_BASED:
                outcome = await run_turn_based(ctx, session, mentioned or participants, participants, cancel=cancel)
            else:
                outcome = await run_concurrent(ctx, session, mentioned or participants, participants, cancel=cancel)
    finally:
        session.is_generating = False

    outcome.messages.insert(0, user_message)
    return outcome
