"""Anthropic Claude provider using anthropic SDK with native async."""

import json
import logging
import time
from collections.abc import AsyncIterator
from typing import Any

import anthropic as anthropic_sdk

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


def to_anthropic_messages(history: list[ChatMessage], agent_count: int | None = None) -> list[dict[str, Any]]:
    """Translate NoteMind history into Messages API turns.

    Roles must alternate, so consecutive blocks of the same role are merged.
    Tool results become tool_result blocks inside a user turn.
    """
    messages: list[dict[str, Any]] = []

    def push(role: str, blocks: list[dict[str, Any]]) -> None:
        if not blocks:
            return
        if messages and messages[-1]["role"] == role:
            messages[-1]["content"].extend(blocks)
        else:
            messages.append({"role": role, "content": list(blocks)})

    open_call_ids: set[str] = set()
    for message in provider_history(history):
        if message.role is Role.USER:
            open_call_ids = set()
            if message.content:
                push("user", [{"type": "text", "text": message.content}])

        elif message.role is Role.MODEL:
            blocks: list[dict[str, Any]] = []
            text = persona_prefixed(message, agent_count)
            if text:
                blocks.append({"type": "text", "text": text})
            for call in message.tool_calls or []:
                blocks.append({"type": "tool_use", "id": call.id, "name": call.name, "input": call.args})
            open_call_ids = {call.id for call in message.tool_calls or []}
            push("assistant", blocks)

        elif message.role is Role.TOOL:
            if message.tool_call_id in open_call_ids:
                push("user", [{"type": "tool_result", "tool_use_id": message.tool_call_id, "content": message.content}])
            else:
                push("user", [{"type": "text", "text": f"[Tool result]: {message.content}"}])

    return messages


def normalize_response(response: Any) -> GenerationResult:
    texts: list[str] = []
    calls: list[ToolCall] = []
    for block in response.content or []:
        if block.type == "text":
            texts.append(block.text)
        elif block.type == "tool_use":
            args = block.input
            if isinstance(args, str):
                try:
                    args = json.loads(args)
                except json.JSONDecodeError:
                    logger.warning("Anthropic returned malformed input for tool %s, dropping call", block.name)
                    continue
            if not isinstance(args, dict):
                continue
            calls.append(ToolCall(id=block.id or synthetic_call_id(), name=block.name, args=args))

    text = "\n".join(texts).strip()
    return GenerationResult(text=text or None, tool_calls=calls or None)


class AnthropicProvider(AIProvider):
    """Anthropic Claude provider via anthropic SDK."""

    def _create_client(self, api_key: str) -> anthropic_sdk.AsyncAnthropic:
        return anthropic_sdk.AsyncAnthropic(api_key=api_key)

    def _translate_error(self, exc: Exception) -> ProviderError:
        if isinstance(exc, anthropic_sdk.APITimeoutError):
            return ProviderTimeoutError(self.name(), f"API timeout: {exc}")
        if isinstance(exc, anthropic_sdk.APIStatusError):
            return ProviderError(
                self.name(),
                f"API request failed with status {exc.status_code}: {exc.message}",
                status_code=exc.status_code,
            )
        return ProviderError(self.name(), f"API call failed: {exc}")

    async def _create(
        self,
        operation: str,
        tier: ModelTier,
        messages: list[dict[str, Any]],
        system_instruction: str | None,
        cancel: CancelToken | None,
        **extra: Any,
    ) -> Any:
        client = self._get_client()
        if system_instruction:
            extra["system"] = system_instruction
        start = time.monotonic()
        response = await self._call(
            lambda: client.messages.create(
                model=self.model_string(tier),
                max_tokens=self._config.max_tokens,
                messages=messages,
                **extra,
            ),
            cancel,
        )

        token_count: int | None = None
        if response.usage:
            token_count = response.usage.input_tokens + response.usage.output_tokens
        logger.info(
            "Anthropic %s (%s): %.2fs, %s tokens",
            operation,
            self.model_string(tier),
            time.monotonic() - start,
            token_count,
        )
        return response

    async def generate_text(
        self,
        tier: ModelTier,
        prompt: str,
        system_instruction: str | None = None,
        *,
        cancel: CancelToken | None = None,
    ) -> str:
        messages = [{"role": "user", "content": prompt}]
        response = await self._create("text", tier, messages, system_instruction, cancel)
        result = normalize_response(response)
        if not result.text:
            raise ProviderError(self.name(), "No text blocks in response")
        return result.text

    async def _generate_json_primary(
        self,
        tier: ModelTier,
        prompt: str,
        schema: dict[str, Any],
        system_instruction: str | None,
        cancel: CancelToken | None,
    ) -> str:
        system = f"{system_instruction}\n\n" if system_instruction else ""
        system += "Respond with valid JSON only, with no prose before or after it."
        user = f"{prompt}\n\nRespond with JSON that matches this JSON Schema:\n{json.dumps(schema)}"
        response = await self._create("json", tier, [{"role": "user", "content": user}], system, cancel)
        result = normalize_response(response)
        if not result.text:
            raise ProviderError(self.name(), "No text blocks in response")
        return result.text

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
            logger.debug("Anthropic web search is not enabled, ignoring use_web_search")

        extra: dict[str, Any] = {}
        if tools:
            extra["tools"] = [
                {"name": tool.name, "description": tool.description, "input_schema": tool.parameters}
                for tool in tools
            ]
        messages = to_anthropic_messages(history, agent_count)
        response = await self._create("tools", tier, messages, system_instruction, cancel, **extra)
        return normalize_response(response)

    async def generate_text_stream(
        self,
        tier: ModelTier,
        history: list[ChatMessage],
        system_instruction: str | None = None,
        *,
        cancel: CancelToken | None = None,
    ) -> AsyncIterator[StreamChunk]:
        client = self._get_client()
        check_cancel(cancel)
        extra: dict[str, Any] = {}
        if system_instruction:
            extra["system"] = system_instruction
        try:
            async with client.messages.stream(
                model=self.model_string(tier),
                max_tokens=self._config.max_tokens,
                messages=to_anthropic_messages(history),
                **extra,
            ) as stream:
                async for text in stream.text_stream:
                    yield StreamChunk(text=text)
                    check_cancel(cancel)
        except anthropic_sdk.AnthropicError as exc:
            raise self._translate_error(exc) from exc
