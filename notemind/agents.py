"""Agent response functions.

Each function builds a system instruction, picks a tool set and delegates to
whichever provider the router assigns to its capability. Callers only ever
see GenerationResult or StreamChunk, never a vendor response.
"""

import logging
from collections.abc import AsyncIterator

from config.config_loader import PromptsConfig
from notemind.cancellation import CancelToken
from notemind.models import AIAgent, ChatMessage, Command, GenerationResult, Role, StreamChunk
from notemind.router import CapabilityRouter
from notemind.tools import AGENT_TOOLS, CREATOR_TOOLS, MODERATOR_TOOLS

logger = logging.getLogger(__name__)


def _last_user_message(history: list[ChatMessage]) -> str:
    for message in reversed(history):
        if message.role is Role.USER:
            return message.content
    return ""


async def get_agent_response(
    router: CapabilityRouter,
    prompts: PromptsConfig,
    history: list[ChatMessage],
    command: Command | None = None,
    system_instruction_override: str | None = None,
    agent_count: int | None = None,
    *,
    cancel: CancelToken | None = None,
) -> GenerationResult:
    """Single-agent response with note tools. A command wraps the base instruction."""
    system_instruction = system_instruction_override or prompts.render("agent_default_system")
    if command is not None:
        system_instruction = prompts.render(
            "agent_command",
            command_name=command.name,
            command_definition=command.definition,
            base_instruction=system_instruction,
        )

    resolved = router.resolve("agent_reasoning")
    return await resolved.provider.generate_content_with_tools(
        resolved.tier,
        history,
        AGENT_TOOLS,
        system_instruction,
        use_web_search=True,
        agent_count=agent_count,
        cancel=cancel,
    )


async def get_agent_tool_response(
    router: CapabilityRouter,
    prompts: PromptsConfig,
    history: list[ChatMessage],
    agent: AIAgent,
    all_agent_names: list[str],
    *,
    cancel: CancelToken | None = None,
) -> GenerationResult:
    """Response of one participant in a multi-agent chat, with persona-prefixed history."""
    system_instruction = prompts.render(
        "agent_participant",
        agent_name=agent.name,
        participant_names=", ".join(all_agent_names),
        agent_instruction=agent.system_instruction,
    )
    resolved = router.resolve("agent_reasoning")
    return await resolved.provider.generate_content_with_tools(
        resolved.tier,
        history,
        AGENT_TOOLS,
        system_instruction,
        use_web_search=True,
        agent_count=len(all_agent_names),
        cancel=cancel,
    )


async def get_moderator_response(
    router: CapabilityRouter,
    prompts: PromptsConfig,
    history: list[ChatMessage],
    available_agent_names: list[str],
    spoken_agent_names: list[str],
    mentioned_agent_names: list[str],
    *,
    cancel: CancelToken | None = None,
) -> GenerationResult:
    """Ask the moderator for its next control decision.

    Spoken and mentioned agents are context for the moderator's judgement,
    they do not restrict which agent it may pick.
    """
    mention_instruction = ""
    if mentioned_agent_names:
        mention_instruction = prompts.render(
            "moderator_mentions", mentioned_agents=", ".join(mentioned_agent_names)
        )

    system_instruction = prompts.render(
        "moderator",
        last_user_message=_last_user_message(history),
        available_agents=", ".join(available_agent_names),
        spoken_agents=", ".join(spoken_agent_names),
        mention_instruction=mention_instruction,
    )
    resolved = router.resolve("agent_moderator")
    return await resolved.provider.generate_content_with_tools(
        resolved.tier,
        history,
        MODERATOR_TOOLS,
        system_instruction,
        agent_count=len(available_agent_names),
        cancel=cancel,
    )


async def get_creator_agent_response(
    router: CapabilityRouter,
    prompts: PromptsConfig,
    history: list[ChatMessage],
    *,
    cancel: CancelToken | None = None,
) -> GenerationResult:
    resolved = router.resolve("agent_creator")
    return await resolved.provider.generate_content_with_tools(
        resolved.tier,
        history,
        CREATOR_TOOLS,
        prompts.render("creator"),
        cancel=cancel,
    )


def get_agent_text_stream(
    router: CapabilityRouter,
    history: list[ChatMessage],
    system_instruction: str,
    *,
    cancel: CancelToken | None = None,
) -> AsyncIterator[StreamChunk]:
    resolved = router.resolve("agent_reasoning")
    return resolved.provider.generate_text_stream(resolved.tier, history, system_instruction, cancel=cancel)
