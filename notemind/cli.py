"""Click CLI: loads config, builds the router, and drives chats, sessions and studio tools."""

import asyncio
import logging
import signal
import sys
from collections.abc import Coroutine
from dataclasses import dataclass
from pathlib import Path
from typing import Any, TypeVar

import click
from dotenv import load_dotenv
from rich.logging import RichHandler
from rich.markdown import Markdown
from rich.markup import escape
from rich.progress import Progress, SpinnerColumn, TextColumn, TimeElapsedColumn

from config.config_loader import AppConfig, active_scheme_name, load_config
from notemind.agent_registry import AgentRegistry, create_agent_from_tool_call
from notemind.agents import get_creator_agent_response
from notemind.cancellation import CancelToken
from notemind.errors import ConfigurationError, GenerationError
from notemind.healthcheck import run_health_checks
from notemind.models import (
    ChatMessage,
    DiscussionMode,
    GroupChatSession,
    Note,
    ParliamentMode,
    ParliamentSession,
    Role,
)
from notemind.notes import NoteStore, TitleGenerationQueue
from notemind.orchestrator import ChatContext, TurnOutcome, send_message
from notemind.output import (
    console,
    print_message,
    print_mind_map,
    print_pulse_report,
    print_suggestions,
    print_summary,
    print_topics,
    save_transcript,
)
from notemind.parliament import (
    generate_debate_topics,
    personas_for,
    run_parliament_session,
    synthesis_to_markdown,
)
from notemind.providers.base import ProviderError
from notemind.retrieval import answer_from_notes, search_notes_in_corpus
from notemind.router import CapabilityRouter, build_router
from notemind.studio import (
    generate_mind_map,
    generate_proactive_suggestions,
    generate_pulse_report,
    generate_summary,
    generate_title_for_note,
)
from notemind.tools import CREATE_NEW_AGENT
from notemind.wiki import generate_related_topics, generate_wiki_entry, generate_wiki_topics

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_AGENT_ID = "default-companion"
_EXIT_WORDS = {"/exit", "/quit", "exit", "quit"}


def _setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.WARNING
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )


@dataclass
class AppState:
    config: AppConfig
    scheme: str | None
    notes_dir: Path | None

    def router(self) -> CapabilityRouter:
        return build_router(self.config, self.scheme)

    def store(self) -> NoteStore:
        store = NoteStore(self.notes_dir or self.config.defaults.notes_dir)
        store.load()
        return store

    def agents(self) -> AgentRegistry:
        return AgentRegistry.from_config(self.config)


def _run(coro: Coroutine[Any, Any, T]) -> T:
    """Run a coroutine, turning library errors into a message and exit code 1."""
    try:
        return asyncio.run(coro)
    except ConfigurationError as exc:
        console.print(f"[bold red]Config error:[/bold red] {escape(str(exc))}")
        sys.exit(1)
    except (ProviderError, GenerationError) as exc:
        console.print(f"[bold red]Error:[/bold red] {escape(str(exc))}")
        sys.exit(1)


async def _send_interruptible(
    ctx: ChatContext, session: GroupChatSession, text: str, cancel: CancelToken
) -> TurnOutcome:
    """Send one message; Ctrl+C cancels the token so the turn stops at its next check."""
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel.cancel, "interrupted")
    except NotImplementedError:
        # Windows event loops have no signal handlers; Ctrl+C raises KeyboardInterrupt instead.
        return await send_message(ctx, session, text, cancel=cancel)
    try:
        return await send_message(ctx, session, text, cancel=cancel)
    finally:
        loop.remove_signal_handler(signal.SIGINT)


def _spinner() -> Progress:
    return Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        TimeElapsedColumn(),
        console=console,
        transient=True,
    )


@click.group()
@click.option("--verbose", is_flag=True, help="Enable DEBUG-level logging")
@click.option("--scheme", default=None, help="AI scheme to use (default: NOTEMIND_AI_SCHEME or config)")
@click.option("--notes-dir", default=None, type=click.Path(file_okay=False, path_type=Path),
              help="Notes folder (default: from config)")
@click.pass_context
def main(ctx: click.Context, verbose: bool, scheme: str | None, notes_dir: Path | None) -> None:
    """NoteMind -- AI companion for a folder of markdown notes.

    \b
    Examples:
      notemind chat
      notemind chat --agent "The Pragmatist" --agent "The Visionary" --mode moderated
      notemind ask "What did I decide about the garden?"
      notemind debate "Remote work beats the office"
      notemind studio summary
      notemind --scheme claude wiki "Stoicism"
    """
    # Reconfigure stdout/stderr to UTF-8 on Windows so model responses containing
    # Unicode chars don't crash the ANSI render path.
    if sys.platform == "win32":
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
        if hasattr(sys.stderr, "reconfigure"):
            sys.stderr.reconfigure(encoding="utf-8", errors="replace")

    load_dotenv()
    _setup_logging(verbose)

    try:
        config = load_config()
    except FileNotFoundError as exc:
        console.print(f"[bold red]Config error:[/bold red] {escape(str(exc))}")
        sys.exit(1)

    ctx.obj = AppState(config=config, scheme=scheme, notes_dir=notes_dir)


# --- Chat ---

@main.command()
@click.option("--agent", "agent_refs", multiple=True, help="Agent id or name; repeat for a group chat")
@click.option("--mode", type=click.Choice([m.value for m in DiscussionMode]), default=DiscussionMode.MODERATED.value,
              show_default=True, help="Discussion mode for group chats")
@click.option("--save/--no-save", default=True, help="Save the transcript on exit")
@click.pass_obj
def chat(state: AppState, agent_refs: tuple[str, ...], mode: str, save: bool) -> None:
    """Interactive chat with one agent or a group of agents."""
    registry = state.agents()
    participants = registry.resolve(list(agent_refs) or [DEFAULT_AGENT_ID])
    if not participants:
        console.print("[bold red]Error:[/bold red] None of the requested agents exist.")
        sys.exit(1)

    colors = {agent.name: agent.color for agent in participants}

    def on_message(message: ChatMessage) -> None:
        if message.role is not Role.USER:
            print_message(message, colors.get(message.persona or ""))

    try:
        ctx = ChatContext.from_config(state.config, state.router(), state.store(), registry, on_message)
    except ConfigurationError as exc:
        console.print(f"[bold red]Config error:[/bold red] {escape(str(exc))}")
        sys.exit(1)

    session = GroupChatSession(
        name=", ".join(a.name for a in participants),
        participant_ids=[a.id for a in participants],
        discussion_mode=DiscussionMode(mode),
    )
    label = session.name if len(participants) == 1 else f"{session.name} ({mode})"
    console.print(f"\n[bold cyan]NoteMind chat[/bold cyan] with {label} "
                  f"(scheme: {active_scheme_name(state.config, state.scheme)})")
    console.print("[dim]Type /exit to leave. Ctrl+C stops the current answer.[/dim]\n")

    while True:
        try:
            text = console.input("[bold]> [/bold]")
        except (EOFError, KeyboardInterrupt):
            break
        if text.strip().lower() in _EXIT_WORDS:
            break

        cancel = CancelToken()
        try:
            outcome = asyncio.run(_send_interruptible(ctx, session, text, cancel))
        except KeyboardInterrupt:
            session.is_generating = False
            console.print("[yellow]Stopped.[/yellow]")
            continue
        if outcome.cancelled:
            console.print("[yellow]Stopped.[/yellow]")
        if outcome.truncated:
            console.print("[dim]Moderator budget reached; reply to continue.[/dim]")

    if save and session.history:
        path = save_transcript(f"Chat with {session.name}", session.history, state.config.defaults.output_dir)
        console.print(f"\n[dim]Saved to: {path}[/dim]")


@main.command()
@click.argument("question")
@click.pass_obj
def ask(state: AppState, question: str) -> None:
    """Answer QUESTION strictly from your notes."""

    async def _ask() -> None:
        router = state.router()
        prompts = state.config.prompts
        store = state.store()
        with _spinner() as progress:
            progress.add_task("Searching notes...", total=None)
            notes = await search_notes_in_corpus(router, prompts, question, store.all())
            answer = await answer_from_notes(router, prompts, question, notes)
        console.print(Markdown(answer))
        if notes:
            console.print(f"\n[dim]Sources: {', '.join(n.title or 'Untitled' for n in notes)}[/dim]")

    _run(_ask())


# --- Parliament ---

def _run_parliament(
    state: AppState,
    mode: ParliamentMode,
    topic: str | None,
    note_id: str | None,
    turns: int | None,
    save_note: bool,
) -> None:
    async def _session() -> None:
        router = state.router()
        prompts = state.config.prompts
        store = state.store()

        note: Note | None = None
        if note_id:
            note = store.get(note_id)
            if note is None:
                console.print(f"[bold red]Error:[/bold red] Unknown note '{note_id}'.")
                sys.exit(1)

        if not topic:
            with _spinner() as progress:
                progress.add_task("Finding debate topics...", total=None)
                topics = await generate_debate_topics(router, prompts, [note] if note else store.all())
            print_topics("Suggested topics", topics)
            return

        personas = personas_for(state.config.parliament, mode)
        names = (personas[0].name, personas[1].name)
        session = ParliamentSession(mode=mode, topic=topic, note_id=note.id if note else None)
        console.print(f"\n[bold cyan]{mode.value.title()}[/bold cyan]: {names[0]} vs {names[1]}")
        console.print(f"Topic: [italic]{topic}[/italic]\n")

        synthesis = await run_parliament_session(
            router,
            prompts,
            session,
            personas,
            max_turns=turns or state.config.parliament.max_debate_turns,
            note_context=note.content if note else None,
            on_message=print_message,
        )

        path = save_transcript(f"{mode.value.title()}: {topic}", session.history, state.config.defaults.output_dir)
        console.print(f"\n[dim]Saved to: {path}[/dim]")
        if synthesis is None:
            sys.exit(1)
        if save_note:
            created = store.create(f"Synthesis: {topic}", synthesis_to_markdown(topic, synthesis, names))
            console.print(f"[dim]Synthesis note: {created.path}[/dim]")

    _run(_session())


def _parliament_command(mode: ParliamentMode, help_text: str) -> click.Command:
    @click.argument("topic", required=False)
    @click.option("--note", "note_id", default=None, help="Ground the session on this note id")
    @click.option("--turns", default=None, type=int, help="Number of turns (default: from config)")
    @click.option("--save-note", is_flag=True, help="Save the synthesis as a new note")
    @click.pass_obj
    def command(state: AppState, topic: str | None, note_id: str | None, turns: int | None, save_note: bool) -> None:
        _run_parliament(state, mode, topic, note_id, turns, save_note)

    return click.command(mode.value, help=help_text)(command)


main.add_command(_parliament_command(
    ParliamentMode.DEBATE,
    "Debate TOPIC between two personas, then synthesize. Without TOPIC, suggest topics.",
))
main.add_command(_parliament_command(
    ParliamentMode.PODCAST,
    "Record a podcast conversation on TOPIC, then synthesize. Without TOPIC, suggest topics.",
))


# --- Studio ---

@main.group()
def studio() -> None:
    """Whole-collection views: summary, pulse report, mind map, suggestions."""


def _studio(state: AppState, label: str, work: Any) -> Any:
    async def _go() -> Any:
        router = state.router()
        notes = state.store().all()
        with _spinner() as progress:
            progress.add_task(label, total=None)
            result = await work(router, state.config.prompts, notes)
        return result

    return _run(_go())


@studio.command()
@click.pass_obj
def summary(state: AppState) -> None:
    """To-dos and knowledge cards."""
    print_summary(_studio(state, "Summarizing notes...", generate_summary))


@studio.command()
@click.pass_obj
def pulse(state: AppState) -> None:
    """Narrative report on how your thinking evolves."""
    print_pulse_report(_studio(state, "Writing pulse report...", generate_pulse_report))


@studio.command()
@click.pass_obj
def mindmap(state: AppState) -> None:
    """Hierarchical mind map of your notes."""
    if not state.store().all():
        console.print("No notes yet.")
        return
    print_mind_map(_studio(state, "Building mind map...", generate_mind_map))


@studio.command()
@click.pass_obj
def suggestions(state: AppState) -> None:
    """Conversation starters based on your notes."""
    print_suggestions(_studio(state, "Thinking...", generate_proactive_suggestions))


# --- Wiki ---

@main.command()
@click.argument("term", required=False)
@click.option("--context", "context_text", default="", help="Text whose language the entry should use")
@click.pass_obj
def wiki(state: AppState, term: str | None, context_text: str) -> None:
    """Encyclopedia entry for TERM. Without TERM, suggest topics from your notes."""

    async def _wiki() -> None:
        router = state.router()
        prompts = state.config.prompts
        if not term:
            print_topics("Wiki topics", await generate_wiki_topics(router, prompts, state.store().all()))
            return
        with _spinner() as progress:
            progress.add_task(f"Writing about {term}...", total=None)
            entry = await generate_wiki_entry(router, prompts, term, context_text or term)
            related = await generate_related_topics(router, prompts, entry)
        console.print(Markdown(f"# {term}\n\n{entry}"))
        print_topics("Related topics", related)

    _run(_wiki())


# --- Notes housekeeping ---

@main.command()
@click.pass_obj
def titles(state: AppState) -> None:
    """Generate titles for untitled notes."""

    async def _titles() -> int:
        router = state.router()
        store = state.store()

        async def generate(note: Note) -> str:
            return await generate_title_for_note(router, state.config.prompts, note.content)

        queue = TitleGenerationQueue(store, generate, state.config.defaults.title_min_length)
        scheduled = sum(queue.schedule(note) for note in store.all())
        await queue.join()
        return scheduled

    count = _run(_titles())
    console.print(f"Titled {count} note(s)." if count else "No untitled notes need a title.")


@main.command("agents")
@click.pass_obj
def list_agents(state: AppState) -> None:
    """List built-in and custom agents."""
    for agent in state.agents().all():
        tag = " [dim](custom)[/dim]" if agent.is_custom else ""
        console.print(f"[bold]{agent.name}[/bold]{tag} [dim]{agent.id}[/dim]")
        if agent.description:
            console.print(f"  {agent.description}")


@main.command("create-agent")
@click.pass_obj
def create_agent(state: AppState) -> None:
    """Design a new agent in conversation with the Agent Architect."""
    registry = state.agents()
    try:
        router = state.router()
    except ConfigurationError as exc:
        console.print(f"[bold red]Config error:[/bold red] {escape(str(exc))}")
        sys.exit(1)
    history: list[ChatMessage] = []
    console.print("[bold cyan]Agent Architect[/bold cyan] [dim](type /exit to leave)[/dim]\n")

    while True:
        try:
            text = console.input("[bold]> [/bold]")
        except (EOFError, KeyboardInterrupt):
            return
        if text.strip().lower() in _EXIT_WORDS:
            return
        history.append(ChatMessage(role=Role.USER, content=text))

        result = _run(get_creator_agent_response(router, state.config.prompts, history))

        for call in result.tool_calls or []:
            if call.name == CREATE_NEW_AGENT.name:
                try:
                    agent = create_agent_from_tool_call(registry, call)
                except GenerationError as exc:
                    console.print(f"[yellow]Could not create agent:[/yellow] {escape(str(exc))}")
                    continue
                console.print(f"[green]Created agent[/green] [bold]{agent.name}[/bold] ({agent.id})")
                return

        reply = result.text or "Tell me more about the agent you want."
        history.append(ChatMessage(role=Role.MODEL, content=reply, persona="Agent Architect"))
        print_message(history[-1])


@main.command()
@click.pass_obj
def health(state: AppState) -> None:
    """Ping every provider that has an API key."""
    config = state.config
    if not config.available_providers:
        console.print("[bold red]Error:[/bold red] No providers available. Check API keys in .env.")
        sys.exit(1)

    try:
        providers = {
            name: provider
            for name, provider in state.router().providers.items()
            if name in config.available_providers
        }
    except ConfigurationError as exc:
        console.print(f"[bold red]Config error:[/bold red] {escape(str(exc))}")
        sys.exit(1)

    console.print("\n[bold]Checking providers...[/bold]")
    results = asyncio.run(run_health_checks(providers))

    failed = 0
    for name in sorted(results):
        ok, err = results[name]
        if ok:
            console.print(f"  [green]OK  [/green] {name}")
        else:
            short_err = err.splitlines()[0][:120] if err else "unknown error"
            console.print(f"  [red]FAIL[/red] {name}: {escape(short_err)}")
            failed += 1
    if failed:
        sys.exit(1)


if __name__ == "__main__":
    main()
