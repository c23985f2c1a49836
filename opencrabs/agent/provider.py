"""LLM provider capability and the Anthropic Messages API implementation.

The core only depends on the Provider protocol.  AnthropicProvider talks
to the Messages API with direct httpx calls (no SDK): single-shot via
complete(), incremental via stream() which yields typed stream events
parsed from the SSE body.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import Any, Protocol

import httpx

from opencrabs.agent.errors import ProviderError
from opencrabs.agent.models import (
    LLMRequest,
    LLMResponse,
    Message,
    Role,
    StopReason,
    TextBlock,
    TokenUsage,
    ToolUseBlock,
    block_from_dict,
)
from opencrabs.agent.stream import (
    ContentBlockDelta,
    ContentBlockStart,
    ContentBlockStop,
    InputJsonDelta,
    MessageDelta,
    MessageStart,
    MessageStop,
    StreamEvent,
    TextDelta,
    ThinkingDelta,
    ThinkingShell,
)
from opencrabs.config import Settings

logger = logging.getLogger(__name__)

# Anthropic API version header
_API_VERSION = "2023-06-01"

_CLAUDE_CONTEXT_WINDOW = 200_000

# USD per million tokens (input, output), matched by model family substring
_PRICING: list[tuple[str, float, float]] = [
    ("opus-4-5", 5.0, 25.0),
    ("opus", 15.0, 75.0),
    ("sonnet", 3.0, 15.0),
    ("haiku-4-5", 1.0, 5.0),
    ("haiku", 0.8, 4.0),
]

_SUPPORTED_MODELS = [
    "claude-opus-4-5-20251101",
    "claude-sonnet-4-5-20250514",
    "claude-haiku-4-5-20251001",
]


class Provider(Protocol):
    """Capability the tool loop requires from an LLM backend."""

    name: str

    async def complete(self, request: LLMRequest) -> LLMResponse: ...

    def stream(self, request: LLMRequest) -> AsyncIterator[StreamEvent]: ...

    def default_model(self) -> str: ...

    def supported_models(self) -> list[str]: ...

    def context_window(self, model: str) -> int | None: ...

    def calculate_cost(self, model: str, input_tokens: int, output_tokens: int) -> float: ...


# ---------------------------------------------------------------------------
# Wire format helpers
# ---------------------------------------------------------------------------


def to_wire_messages(messages: list[Message]) -> list[dict[str, Any]]:
    """Convert context messages to the Messages API array.

    Tool-result messages travel as user messages.  Consecutive messages
    with the same wire role are merged so tool results and an injected
    user message share one user turn (tool_result blocks first).
    """
    wire: list[dict[str, Any]] = []
    for message in messages:
        role = "assistant" if message.role == Role.ASSISTANT else "user"
        blocks = [block.to_dict() for block in message.content]
        if not blocks:
            continue
        if wire and wire[-1]["role"] == role:
            wire[-1]["content"].extend(blocks)
        else:
            wire.append({"role": role, "content": blocks})
    return wire


def parse_sse_event(data: dict[str, Any]) -> StreamEvent | None:
    """Parse one Anthropic SSE data payload into a typed stream event.

    Skips ping keepalives and unknown event/delta types (returns None).
    In-stream error events (HTTP 200 but error in body) raise ProviderError.
    stop_reason arrives in message_delta.delta, NOT message_start.
    """
    event_type = data.get("type")

    if event_type == "ping":
        return None

    if event_type == "error":
        error = data.get("error", {})
        raise ProviderError(
            f"Stream error: {error.get('type', 'unknown')}: {error.get('message', '')}"
        )

    if event_type == "message_start":
        message = data.get("message", {})
        return MessageStart(
            id=message.get("id", ""),
            model=message.get("model", ""),
            role=message.get("role", "assistant"),
            usage=TokenUsage.from_dict(message.get("usage")),
        )

    if event_type == "content_block_start":
        block = data.get("content_block", {})
        index = data.get("index", 0)
        block_type = block.get("type")
        if block_type == "tool_use":
            return ContentBlockStart(
                index=index,
                block=ToolUseBlock(id=block.get("id", ""), name=block.get("name", "")),
            )
        if block_type in ("thinking", "redacted_thinking"):
            return ContentBlockStart(index=index, block=ThinkingShell())
        return ContentBlockStart(index=index, block=TextBlock(text=block.get("text", "")))

    if event_type == "content_block_delta":
        delta = data.get("delta", {})
        index = data.get("index", 0)
        delta_type = delta.get("type")
        if delta_type == "text_delta":
            return ContentBlockDelta(index=index, delta=TextDelta(text=delta.get("text", "")))
        if delta_type == "input_json_delta":
            return ContentBlockDelta(
                index=index, delta=InputJsonDelta(partial_json=delta.get("partial_json", ""))
            )
        if delta_type == "thinking_delta":
            return ContentBlockDelta(index=index, delta=ThinkingDelta(thinking=delta.get("thinking", "")))
        return None  # signature_delta etc.

    if event_type == "content_block_stop":
        return ContentBlockStop(index=data.get("index", 0))

    if event_type == "message_delta":
        delta = data.get("delta", {})
        usage = data.get("usage")
        return MessageDelta(
            stop_reason=StopReason.parse(delta.get("stop_reason")),
            stop_sequence=delta.get("stop_sequence"),
            usage=TokenUsage.from_dict(usage) if usage else None,
        )

    if event_type == "message_stop":
        return MessageStop()

    return None


def _parse_response(data: dict[str, Any]) -> LLMResponse:
    try:
        content = [
            block_from_dict(b)
            for b in data["content"]
            if b.get("type") in ("text", "tool_use")
        ]
        return LLMResponse(
            id=data.get("id", ""),
            model=data.get("model", ""),
            content=content,
            stop_reason=StopReason.parse(data.get("stop_reason")),
            usage=TokenUsage.from_dict(data.get("usage")),
        )
    except (KeyError, TypeError, ValueError) as e:
        raise ProviderError(f"Malformed API response: {e}") from e


# ---------------------------------------------------------------------------
# Anthropic provider
# ---------------------------------------------------------------------------


class AnthropicProvider:
    """Anthropic Messages API over httpx."""

    name = "anthropic"

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self._settings = settings
        self._transport = transport
        self._http: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Initialize the httpx client with auth and timeout settings."""
        settings = self._settings

        headers: dict[str, str] = {
            "anthropic-version": _API_VERSION,
            "content-type": "application/json",
        }

        # OAT tokens (sk-ant-oat*) require Bearer auth plus OAuth beta headers.
        # Regular API keys use x-api-key.
        api_key = settings.anthropic_api_key or ""
        auth_token = settings.anthropic_auth_token or ""

        if auth_token:
            headers["authorization"] = f"Bearer {auth_token}"
            if "sk-ant-oat" in auth_token:
                headers["anthropic-beta"] = "oauth-2025-04-20"
                headers["anthropic-dangerous-direct-browser-access"] = "true"
        elif api_key:
            if "sk-ant-oat" in api_key:
                headers["authorization"] = f"Bearer {api_key}"
                headers["anthropic-beta"] = "oauth-2025-04-20"
                headers["anthropic-dangerous-direct-browser-access"] = "true"
            else:
                headers["x-api-key"] = api_key
        else:
            logger.warning(
                "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set -- "
                "API calls will fail"
            )

        timeout = httpx.Timeout(
            connect=settings.api_timeout_connect,
            read=settings.api_timeout_read,
            write=10.0,
            pool=10.0,
        )
        limits = httpx.Limits(max_connections=10, max_keepalive_connections=5)

        self._http = httpx.AsyncClient(
            base_url=settings.api_base_url,
            headers=headers,
            timeout=timeout,
            limits=limits,
            transport=self._transport,
        )

        is_oat = "sk-ant-oat" in (auth_token or api_key)
        auth_type = "OAT/subscription" if is_oat else ("Bearer token" if auth_token else "API key")
        logger.info("Anthropic provider initialized (auth: %s)", auth_type)

    async def close(self) -> None:
        if self._http:
            await self._http.aclose()
            self._http = None

    # ------------------------------------------------------------------
    # Provider capability
    # ------------------------------------------------------------------

    def default_model(self) -> str:
        return self._settings.model

    def supported_models(self) -> list[str]:
        models = list(_SUPPORTED_MODELS)
        if self._settings.model not in models:
            models.insert(0, self._settings.model)
        return models

    def context_window(self, model: str) -> int | None:
        if model.startswith("claude"):
            return _CLAUDE_CONTEXT_WINDOW
        return None

    def calculate_cost(self, model: str, input_tokens: int, output_tokens: int) -> float:
        for family, input_price, output_price in _PRICING:
            if family in model:
                return (input_tokens * input_price + output_tokens * output_price) / 1_000_000
        logger.debug("No pricing for model %s; cost reported as 0", model)
        return 0.0

    def build_payload(self, request: LLMRequest, stream: bool = False) -> dict[str, Any]:
        """Build the Messages API payload (shared by complete and stream)."""
        payload: dict[str, Any] = {
            "model": request.model,
            "max_tokens": request.max_tokens,
            "messages": to_wire_messages(request.messages),
        }
        if request.system:
            payload["system"] = [
                {
                    "type": "text",
                    "text": request.system,
                    "cache_control": {"type": "ephemeral"},
                }
            ]
        if request.tools:
            payload["tools"] = request.tools
        if stream:
            payload["stream"] = True
        return payload

    async def complete(self, request: LLMRequest) -> LLMResponse:
        """Call the Messages API with one retry for 429/500/529 and timeouts."""
        http = self._client()
        payload = self.build_payload(request)

        last_error: ProviderError | None = None
        for attempt in range(2):  # initial + 1 retry
            try:
                response = await http.post("/v1/messages", json=payload)

                if response.status_code == 200:
                    try:
                        data = response.json()
                    except ValueError as e:
                        raise ProviderError(f"Malformed API response body: {e}") from e
                    return _parse_response(data)

                error_type, error_msg = _error_details(response.status_code, response.text, response)

                if response.status_code in (429, 500, 529) and attempt == 0:
                    retry_after = _retry_after(response.headers.get("retry-after"))
                    logger.warning(
                        "API error %d (%s), retrying in %.1fs: %s",
                        response.status_code,
                        error_type,
                        retry_after,
                        error_msg,
                    )
                    await asyncio.sleep(retry_after)
                    continue

                last_error = ProviderError(
                    f"Anthropic API error ({response.status_code}): {error_type} - {error_msg}",
                    status_code=response.status_code,
                )
                break

            except httpx.TimeoutException as e:
                last_error = ProviderError(f"API request timed out: {e}")
                if attempt == 0:
                    logger.warning("API timeout, retrying: %s", e)
                    await asyncio.sleep(1)
                    continue
            except httpx.HTTPError as e:
                last_error = ProviderError(f"HTTP error: {e}")
                break  # Don't retry connection errors

        raise last_error or ProviderError("API call failed with unknown error")

    async def stream(self, request: LLMRequest) -> AsyncIterator[StreamEvent]:
        """Call the Messages API with streaming; yield typed stream events.

        Errors surface as ProviderError, either before the first event
        (HTTP status) or mid-stream (error event, transport failure).
        Only data: lines are processed (event: lines are redundant).
        """
        http = self._client()
        payload = self.build_payload(request, stream=True)

        try:
            async with http.stream("POST", "/v1/messages", json=payload) as response:
                if response.status_code != 200:
                    body = (await response.aread()).decode(errors="replace")
                    error_type, error_msg = _error_details(response.status_code, body)
                    raise ProviderError(
                        f"Anthropic API error ({response.status_code}): {error_type} - {error_msg}",
                        status_code=response.status_code,
                    )

                async for line in response.aiter_lines():
                    if not line.startswith("data: "):
                        continue
                    try:
                        data = json.loads(line[6:])
                    except json.JSONDecodeError as e:
                        raise ProviderError(f"Malformed stream data: {line[:200]}") from e
                    event = parse_sse_event(data)
                    if event is not None:
                        yield event
        except httpx.TimeoutException as e:
            raise ProviderError(f"Stream timed out: {e}") from e
        except httpx.HTTPError as e:
            raise ProviderError(f"HTTP error during stream: {e}") from e

    def _client(self) -> httpx.AsyncClient:
        if not self._http:
            raise ProviderError("httpx client not initialized -- call start() first")
        return self._http


def _error_details(
    status_code: int, body: str, response: httpx.Response | None = None
) -> tuple[str, str]:
    try:
        error_data = response.json() if response is not None else json.loads(body)
        error = error_data.get("error", {})
        return error.get("type", "unknown"), error.get("message", "unknown error")
    except (ValueError, AttributeError):
        return "http_error", f"HTTP {status_code}: {body[:500]}"


def _retry_after(header: str | None) -> float:
    try:
        value = float(header) if header else 1.0
    except ValueError:
        value = 1.0
    return min(max(value, 0.0), 30.0)
