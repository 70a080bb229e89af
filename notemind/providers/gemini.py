"""Gemini provider using google-genai SDK with native async."""

import logging
import time
from collections.abc import AsyncIterator
from typing import Any

from google import genai
from google.genai import errors as genai_errors
from google.genai import types as genai_types

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

_GEMINI_TYPES = {
    "object": "OBJECT",
    "array": "ARRAY",
    "string": "STRING",
    "number": "NUMBER",
    "integer": "INTEGER",
    "boolean": "BOOLEAN",
}


def to_gemini_schema(schema: dict[str, Any]) -> dict[str, Any]:
    """Convert the JSON-schema subset used by NoteMind into Gemini's schema dialect."""
    converted: dict[str, Any] = {"type": _GEMINI_TYPES.get(str(schema.get("type", "string")).lower(), "STRING")}
    for key in ("description", "enum", "required"):
        if key in schema:
            converted[key] = schema[key]
    if "properties" in schema:
        converted["properties"] = {
            name: to_gemini_schema(prop) for name, prop in schema["properties"].items()
        }
    if "items" in schema:
        converted["items"] = to_gemini_schema(schema["items"])
    return converted


def to_gemini_contents(history: list[ChatMessage], agent_count: int | None = None) -> list[genai_types.Content]:
    """Translate NoteMind history into Gemini contents.

    Tool results become function_response parts in a user turn; consecutive
    results are merged so they answer the preceding model turn together.
    """
    contents: list[genai_types.Content] = []
    call_names: dict[str, str] = {}

    for message in provider_history(history):
        if message.role is Role.USER:
            contents.append(genai_types.Content(role="user", parts=[genai_types.Part(text=message.content)]))

        elif message.role is Role.MODEL:
            parts: list[genai_types.Part] = []
            text = persona_prefixed(message, agent_count)
            if text:
                parts.append(genai_types.Part(text=text))
            for call in message.tool_calls or []:
                call_names[call.id] = call.name
                parts.append(genai_types.Part(
                    function_call=genai_types.FunctionCall(id=call.id, name=call.name, args=call.args)
                ))
            if parts:
                contents.append(genai_types.Content(role="model", parts=parts))

        elif message.role is Role.TOOL:
            name = call_names.get(message.tool_call_id or "", "unknown_tool")
            part = genai_types.Part(function_response=genai_types.FunctionResponse(
                id=message.tool_call_id,
                name=name,
                response={"result": message.content},
            ))
            previous = contents[-1] if contents else None
            if previous is not None and previous.role == "user" and previous.parts and previous.parts[-1].function_response:
                previous.parts.append(part)
            else:
                contents.append(genai_types.Content(role="user", parts=[part]))

    return contents


def normalize_response(response: Any) -> GenerationResult:
    """Collapse a Gemini response into text plus ToolCalls."""
    candidates = response.candidates or []
    content = candidates[0].content if candidates else None
    parts = content.parts if content and content.parts else []

    texts: list[str] = []
    calls: list[ToolCall] = []
    for part in parts:
        if part.text and not part.thought:
            texts.append(part.text)
        function_call = part.function_call
        if function_call is None or not function_call.name:
            continue
        args = function_call.args if isinstance(function_call.args, dict) else {}
        calls.append(ToolCall(id=function_call.id or synthetic_call_id(), name=function_call.name, args=dict(args)))

    text = "".join(texts).strip()
    return GenerationResult(text=text or None, tool_calls=calls or None)


class GeminiProvider(AIProvider):
    """Google Gemini provider via google-genai SDK."""

    def _create_client(self, api_key: str) -> genai.Client:
        return genai.Client(api_key=api_key)

    def _translate_error(self, exc: Exception) -> ProviderError:
        if isinstance(exc, genai_errors.APIError):
            if exc.code in (408, 504):
                return ProviderTimeoutError(self.name(), f"API timeout: {exc.message}", status_code=exc.code)
            return ProviderError(self.name(), f"API call failed: {exc.message}", status_code=exc.code)
        return ProviderError(self.name(), f"API call failed: {exc}")

    def _log_usage(self, operation: str, tier: ModelTier, start: float, response: Any) -> None:
        token_count: int | None = None
        if response.usage_metadata:
            token_count = response.usage_metadata.total_token_count
        logger.info(
            "Gemini %s (%s): %.2fs, %s tokens",
            operation,
            self.model_string(tier),
            time.monotonic() - start,
            token_count,
        )

    async def generate_text(
        self,
        tier: ModelTier,
        prompt: str,
        system_instruction: str | None = None,
        *,
        cancel: CancelToken | None = None,
    ) -> str:
        client = self._get_client()
        start = time.monotonic()
        response = await self._call(
            lambda: client.aio.models.generate_content(
                model=self.model_string(tier),
                contents=prompt,
                config=genai_types.GenerateContentConfig(
                    system_instruction=system_instruction,
                    max_output_tokens=self._config.max_tokens,
                ),
            ),
            cancel,
        )
        self._log_usage("text", tier, start, response)

        if not response.text:
            raise ProviderError(self.name(), "Empty response text")
        return response.text.strip()

    async def _generate_json_primary(
        self,
        tier: ModelTier,
        prompt: str,
        schema: dict[str, Any],
        system_instruction: str | None,
        cancel: CancelToken | None,
    ) -> str:
        client = self._get_client()
        start = time.monotonic()
        response = await self._call(
            lambda: client.aio.models.generate_content(
                model=self.model_string(tier),
                contents=prompt,
                config=genai_types.GenerateContentConfig(
                    system_instruction=system_instruction,
                    max_output_tokens=self._config.max_tokens,
                    response_mime_type="application/json",
                    response_schema=to_gemini_schema(schema),
                ),
            ),
            cancel,
        )
        self._log_usage("json", tier, start, response)

        if not response.text:
            raise ProviderError(self.name(), "Empty response text")
        return response.text

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
        client = self._get_client()

        gemini_tools: list[genai_types.Tool] = []
        if tools:
            gemini_tools.append(genai_types.Tool(function_declarations=[
                genai_types.FunctionDeclaration(
                    name=tool.name,
                    description=tool.description,
                    parameters=to_gemini_schema(tool.parameters),
                )
                for tool in tools
            ]))
        if use_web_search:
            gemini_tools.append(genai_types.Tool(google_search=genai_types.GoogleSearch()))

        contents = to_gemini_contents(history, agent_count)
        start = time.monotonic()
        response = await self._call(
            lambda: client.aio.models.generate_content(
                model=self.model_string(tier),
                contents=contents,
                config=genai_types.GenerateContentConfig(
                    system_instruction=system_instruction,
                    max_output_tokens=self._config.max_tokens,
                    tools=gemini_tools or None,
                ),
            ),
            cancel,
        )
        self._log_usage("tools", tier, start, response)
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
        contents = to_gemini_contents(history)
        stream = await self._call(
            lambda: client.aio.models.generate_content_stream(
                model=self.model_string(tier),
                contents=contents,
                config=genai_types.GenerateContentConfig(
                    system_instruction=system_instruction,
                    max_output_tokens=self._config.max_tokens,
                ),
            ),
            cancel,
        )
        try:
            async for chunk in stream:
                yield StreamChunk(text=chunk.text)
                check_cancel(cancel)
        except genai_errors.APIError as exc:
            raise self._translate_error(exc) from exc
