"""Rich console output and markdown file save for chats, sessions and studio results."""

import logging
from datetime import datetime
from pathlib import Path

from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.rule import Rule
from rich.text import Text
from rich.tree import Tree

from notemind.models import (
    ChatMessage,
    DebateSynthesis,
    Insight,
    MindMapNode,
    ProactiveSuggestion,
    PulseReport,
    Role,
    StudioSummary,
    SynthesisContent,
)
from notemind.notes import slugify

logger = logging.getLogger(__name__)

console = Console(legacy_windows=False)

# Agent colors are the app's palette names; map them onto rich styles.
AGENT_STYLES: dict[str, str] = {
    "slate": "white",
    "indigo": "blue",
    "sky": "cyan",
    "purple": "magenta",
    "amber": "yellow",
    "rose": "red",
    "green": "green",
}


def _tool_call_line(message: ChatMessage) -> str:
    calls = ", ".join(
        f"{call.name}({', '.join(f'{k}={v!r}' for k, v in call.args.items())})"
        for call in message.tool_calls or []
    )
    return f"-> {calls}"


def print_message(message: ChatMessage, color: str | None = None) -> None:
    """Print one chat message the way the chat view shows it."""
    if message.role is Role.USER:
        console.print(Text(f"You: {message.content}", style="bold"))
        return

    if message.role is Role.SYSTEM:
        console.print(Text(message.content, style="dim italic"))
        return

    if message.role is Role.TOOL:
        console.print(Panel(Markdown(message.content), title="[dim]tool result[/dim]", border_style="dim"))
        return

    if isinstance(message.structured_content, SynthesisContent):
        print_synthesis(message.structured_content.synthesis)
        return

    style = AGENT_STYLES.get(color or "", "cyan")
    if message.tool_calls:
        if message.content:
            console.print(Panel(Markdown(message.content), title=f"[bold]{message.persona}[/bold]", border_style=style))
        console.print(Text(_tool_call_line(message), style="dim"))
        return

    subtitle = None
    if message.source_notes:
        subtitle = "Sources: " + ", ".join(title for _, title in message.source_notes)
    console.print(
        Panel(
            Markdown(message.content),
            title=f"[bold]{message.persona or 'AI'}[/bold]",
            subtitle=subtitle,
            border_style=style,
        )
    )


def print_synthesis(
    synthesis: DebateSynthesis,
    persona_names: tuple[str, str] = ("The Pragmatist", "The Visionary"),
) -> None:
    console.print(Rule("[bold green]Synthesis[/bold green]"))
    console.print(Text(synthesis.core_tension, style="bold"))
    for name, points in (
        (persona_names[0], synthesis.key_points_pragmatist),
        (persona_names[1], synthesis.key_points_visionary),
    ):
        console.print(f"\n[bold]{name}[/bold]")
        for point in points:
            console.print(f"  - {point}")
    if synthesis.next_steps:
        console.print("\n[bold]Next steps[/bold]")
        for step in synthesis.next_steps:
            console.print(f"  [ ] {step}")


def _add_branch(tree: Tree, node: MindMapNode) -> None:
    for child in node.children:
        _add_branch(tree.add(child.label), child)


def build_mind_map_tree(root: MindMapNode) -> Tree:
    tree = Tree(f"[bold]{root.label}[/bold]")
    _add_branch(tree, root)
    return tree


def print_mind_map(root: MindMapNode) -> None:
    console.print(Rule("[bold cyan]Mind Map[/bold cyan]"))
    console.print(build_mind_map_tree(root))


def print_summary(summary: StudioSummary) -> None:
    console.print(Rule("[bold cyan]To-dos[/bold cyan]"))
    if not summary.todos:
        console.print(Text("No to-dos found.", style="dim"))
    for todo in summary.todos:
        console.print(f"  [ ] {todo}")

    console.print(Rule("[bold cyan]Knowledge Cards[/bold cyan]"))
    for card in summary.knowledge_cards:
        body = card.content
        if card.sources:
            body += "\n\n" + "\n".join(f"- {source}" for source in card.sources)
        console.print(Panel(Markdown(body), title=f"[bold]{card.title}[/bold]", subtitle=card.type, border_style="dim"))


def print_pulse_report(report: PulseReport) -> None:
    console.print(Rule(f"[bold green]{report.title}[/bold green]"))
    console.print(Markdown(report.content))


def print_topics(title: str, topics: list[str]) -> None:
    console.print(Rule(f"[bold cyan]{title}[/bold cyan]"))
    for index, topic in enumerate(topics, 1):
        console.print(f"  {index}. {topic}")


def print_suggestions(suggestions: list[ProactiveSuggestion]) -> None:
    for suggestion in suggestions:
        console.print(f"[bold]{suggestion.prompt}[/bold]")
        console.print(Text(f"  {suggestion.description}", style="dim"))


def print_insights(insights: list[Insight]) -> None:
    for insight in insights:
        console.print(f"[bold]{insight.title}:[/bold] {insight.content}")


def format_transcript(title: str, history: list[ChatMessage]) -> str:
    """Render a chat or parliament history as markdown. Moderator notes are kept."""
    lines: list[str] = [
        f"# {title}",
        "",
        f"**Date:** {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
        "",
        "---",
        "",
    ]
    for message in history:
        if message.role is Role.USER:
            lines += ["### You", "", message.content, ""]
        elif message.role is Role.SYSTEM:
            lines += [f"*{message.content}*", ""]
        elif message.role is Role.TOOL:
            lines += ["> **Tool result:** " + message.content.replace("\n", "\n> "), ""]
        elif isinstance(message.structured_content, SynthesisContent):
            synthesis = message.structured_content.synthesis
            lines += [
                "## Synthesis",
                "",
                f"**Core tension:** {synthesis.core_tension}",
                "",
                *[f"- {point}" for point in synthesis.key_points_pragmatist + synthesis.key_points_visionary],
                "",
                "**Next steps:**",
                "",
                *[f"- [ ] {step}" for step in synthesis.next_steps],
                "",
            ]
        else:
            lines += [f"### {message.persona or 'AI'}", ""]
            if message.content:
                lines += [message.content, ""]
            if message.tool_calls:
                lines += [f"*{_tool_call_line(message)}*", ""]
            if message.source_notes:
                lines += ["*Sources: " + ", ".join(title for _, title in message.source_notes) + "*", ""]
    return "\n".join(lines)


def save_transcript(title: str, history: list[ChatMessage], output_dir: Path) -> Path:
    """Save a transcript as `<timestamp>_<slug>.md` and return its path."""
    output_dir.mkdir(parents=True, exist_ok=True)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    filepath = output_dir / f"{timestamp}_{slugify(title) or 'chat'}.md"
    filepath.write_text(format_transcript(title, history), encoding="utf-8")
    logger.info("Transcript saved to: %s", filepath)
    return filepath
