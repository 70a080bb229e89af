"""OpenAI-compatible provider using openai SDK (OpenAI, xAI Grok, DeepSeek)."""

import json
import logging
import time
from collections.abc import AsyncIterator
from typing import Any

import openai
from openai import AsyncOpenAI

from notemind.cancellation import CancelToken, check_cancel
from notemind.models import ChatMessage, GenerationResult, ModelTier, Role, StreamChunk, ToolCall
from notemind.providers.base import (
    AIProvider,
    ProviderError,
    ProviderTimeoutError,
    persona_prefixed,
    provider_history,
    synthetic_call_id,
)
from notemind.tools import ToolDeclaration

logger = logging.getLogger(__name__)


def to_openai_messages(
    history: list[ChatMessage],
    system_instruction: str | None = None,
    agent_count: int | None = None,
) -> list[dict[str, Any]]:
    """Translate NoteMind history into chat-completions messages.

    A tool result is sent with the `tool` role only when it answers a call of
    the immediately preceding assistant message; any other result is folded
    into a user turn so the request stays valid.
    """
    messages: list[dict[str, Any]] = []
    if system_instruction:
        messages.append({"role": "system", "content": system_instruction})

    open_call_ids: set[str] = set()
    for message in provider_history(history):
        if message.role is Role.USER:
            open_call_ids = set()
            messages.append({"role": "user", "content": message.content})

        elif message.role is Role.MODEL:
            entry: dict[str, Any] = {"role": "assistant", "content": persona_prefixed(message, agent_count) or None}
            if message.tool_calls:
                entry["tool_calls"] = [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {"name": call.name, "arguments": json.dumps(call.args)},
                    }
                    for call in message.tool_calls
                ]
                open_call_ids = {call.id for call in message.tool_calls}
            else:
                open_call_ids = set()
                if entry["content"] is None:
                    entry["content"] = ""
            messages.append(entry)

        elif message.role is Role.TOOL:
            if message.tool_call_id in open_call_ids:
                messages.append({"role": "tool", "tool_call_id": message.tool_call_id, "content": message.content})
            else:
                messages.append({"role": "user", "content": f"[Tool result]: {message.content}"})

    return messages


def to_openai_tools(tools: list[ToolDeclaration]) -> list[dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {"name": tool.name, "description": tool.description, "parameters": tool.parameters},
        }
        for tool in tools
    ]


def normalize_message(provider_name: str, message: Any) -> GenerationResult:
    """Collapse an assistant message into text plus ToolCalls.

    Arguments arrive as JSON strings; a call whose arguments do not parse into
    an object is dropped on its own.
    """
    calls: list[ToolCall] = []
    for raw_call in message.tool_calls or []:
        function = getattr(raw_call, "function", None)
        if function is None or not function.name:
            continue
        try:
            args = json.loads(function.arguments) if function.arguments else {}
        except json.JSONDecodeError:
            logger.warning("%s returned malformed arguments for tool %s, dropping call", provider_name, function.name)
            continue
        if not isinstance(args, dict):
            logger.warning("%s returned non-object arguments for tool %s, dropping call", provider_name, function.name)
            continue
        calls.append(ToolCall(id=raw_call.id or synthetic_call_id(), name=function.name, args=args))

    text = (message.content or "").strip()
    return GenerationResult(text=text or None, tool_calls=calls or None)


class OpenAICompatibleProvider(AIProvider):
    """Provider for any chat-completions API; vendors differ only by base_url and models."""

    def _create_client(self, api_key: str) -> AsyncOpenAI:
        if self._config.base_url:
            return AsyncOpenAI(api_key=api_key, base_url=self._config.base_url)
        return AsyncOpenAI(api_key=api_key)

    def _translate_error(self, exc: Exception) -> ProviderError:
        if isinstance(exc, openai.APITimeoutError):
            return ProviderTimeoutError(self.name(), f"API timeout: {exc}")
        if isinstance(exc, openai.APIStatusError):
            return ProviderError(
                self.name(),
                f"API request failed with status {exc.status_code}: {exc.message}",
                status_code=exc.status_code,
            )
        if isinstance(exc, openai.APIConnectionError):
            return ProviderError(self.name(), f"Connection failed: {exc}")
        return ProviderError(self.name(), f"API call failed: {exc}")

    def _log_usage(self, operation: str, tier: ModelTier, start: float, response: Any) -> None:
        token_count: int | None = None
        if response.usage:
            token_count = response.usage.total_tokens
        logger.info(
            "%s %s (%s): %.2fs, %s tokens",
            self.name(),
            operation,
            self.model_string(tier),
            time.monotonic() - start,
            token_count,
        )

    async def _complete(
        self,
        operation: str,
        tier: ModelTier,
        messages: list[dict[str, Any]],
        cancel: CancelToken | None,
        **extra: Any,
    ) -> Any:
        client = self._get_client()
        start = time.monotonic()
        response = await self._call(
            lambda: client.chat.completions.create(
                model=self.model_string(tier),
                messages=messages,
                max_tokens=self._config.max_tokens,
                **extra,
            ),
            cancel,
        )
        self._log_usage(operation, tier, start, response)

        if not response.choices:
            raise ProviderError(self.name(), "Response contained no choices")
        return response.choices[0].message

    async def generate_text(
        self,
        tier: ModelTier,
        prompt: str,
        system_instruction: str | None = None,
        *,
        cancel: CancelToken | None = None,
    ) -> str:
        messages = to_openai_messages([ChatMessage(role=Role.USER, content=prompt)], system_instruction)
        message = await self._complete("text", tier, messages, cancel)
        if not message.content:
            raise ProviderError(self.name(), "Empty response content")
        return message.content.strip()

    async def _generate_json_primary(
        self,
        tier: ModelTier,
        prompt: str,
        schema: dict[str, Any],
        system_instruction: str | None,
        cancel: CancelToken | None,
    ) -> str:
        system = f"{system_instruction}\n\n" if system_instruction else ""
        system += "You must respond with valid JSON only."
        user = f"{prompt}\n\nRespond with JSON that matches this JSON Schema:\n{json.dumps(schema)}"
        messages = to_openai_messages([ChatMessage(role=Role.USER, content=user)], system)

        extra: dict[str, Any] = {}
        # json_object mode only accepts objects at the top level.
        if self._config.json_mode and schema.get("type") == "object":
            extra["response_format"] = {"type": "json_object"}

        message = await self._complete("json", tier, messages, cancel, **extra)
        if not message.content:
            raise ProviderError(self.name(), "Empty response content")
        return message.content

    async def generate_content_with_tools(
        self,
        tier: ModelTier,
        history: list[ChatMessage],
        tools: list[ToolDeclaration],
        system_instruction: str | None = None,
        use_web_search: bool = False,
        agent_count: int | None = None,
        *,
        cancel: CancelToken | None = None,
    ) -> GenerationResult:
        if use_web_search:
            logger.debug("%s has no built-in web search, ignoring use_web_search", self.name())

        messages = to_openai_messages(history, system_instruction, agent_count)
        extra: dict[str, Any] = {}
        if tools:
            extra["tools"] = to_openai_tools(tools)
            extra["tool_choice"] = "auto"

        message = await self._complete("tools", tier, messages, cancel, **extra)
        return normalize_message(self.name(), message)

    async def generate_text_stream(
        self,
        tier: ModelTier,
        history: list[ChatMessage],
        system_instruction: str | None = None,
        *,
        cancel: CancelToken | None = None,
    ) -> AsyncIterator[StreamChunk]:
        client = self._get_client()
        messages = to_openai_messages(history, system_instruction)
        stream = await self._call(
            lambda: client.chat.completions.create(
                model=self.model_string(tier),
                messages=messages,
                max_tokens=self._config.max_tokens,
                stream=True,
            ),
            cancel,
        )
        try:
            async for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta
                yield StreamChunk(text=delta.content if delta else None)
                check_cancel(cancel)
        except openai.OpenAIError as exc:
            raise self._translate_error(exc) from exc
