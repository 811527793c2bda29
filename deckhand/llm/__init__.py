"""OpenAI-compatible chat completion provider - streamed HTTP calls via httpx."""

import asyncio
import json
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Literal, Union

import httpx

from deckhand.exceptions import LLMAPIError, LLMError
from deckhand.logging import get_logger
from deckhand.session import (
    AssistantMessage,
    SystemNotice,
    ToolCall,
    ToolResultMessage,
    Turn,
    UserMessage,
)

log = get_logger(__name__)


OPENAI_BASE_URL = "https://api.openai.com/v1"
OLLAMA_OPENAI_BASE_URL = "http://127.0.0.1:11434/v1"


@dataclass
class ToolDefinition:
    """Definition of a tool for the LLM."""

    name: str
    description: str
    parameters: dict[str, Any]  # JSON Schema


@dataclass
class TextDelta:
    """A fragment of assistant text."""

    text: str


@dataclass
class ToolCallDelta:
    """A fragment of one tool call, keyed by call id."""

    call_id: str
    name_fragment: str = ""
    arguments_fragment: str = ""


@dataclass
class StreamEnd:
    """Terminal marker of a stream."""

    reason: Literal["stop", "tool_calls", "length", "error"] = "stop"
    usage: dict[str, int] = field(default_factory=dict)
    error: str | None = None


Delta = Union[TextDelta, ToolCallDelta, StreamEnd]


@dataclass
class LLMResponse:
    """Response from the LLM."""

    content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    model: str = ""
    usage: dict[str, int] = field(default_factory=dict)
    finish_reason: str = "stop"


class ToolCallAssembler:
    """Reassembles streamed tool-call fragments in first-seen order."""

    def __init__(self):
        self._order: list[str] = []
        self._names: dict[str, str] = {}
        self._arguments: dict[str, str] = {}
        self.errors: dict[str, str] = {}

    def feed(self, delta: ToolCallDelta) -> None:
        if delta.call_id not in self._names:
            self._order.append(delta.call_id)
            self._names[delta.call_id] = ""
            self._arguments[delta.call_id] = ""
        self._names[delta.call_id] += delta.name_fragment
        self._arguments[delta.call_id] += delta.arguments_fragment

    def __len__(self) -> int:
        return len(self._order)

    def calls(self) -> list[ToolCall]:
        """Return finished calls. Unparseable arguments are recorded in ``errors``."""
        result: list[ToolCall] = []
        for call_id in self._order:
            raw = self._arguments[call_id].strip()
            arguments: dict[str, Any] = {}
            if raw:
                try:
                    parsed = json.loads(raw)
                except json.JSONDecodeError as e:
                    self.errors[call_id] = f"Invalid JSON arguments: {e}"
                    parsed = {}
                if isinstance(parsed, dict):
                    arguments = parsed
                elif call_id not in self.errors:
                    self.errors[call_id] = "Tool arguments must be a JSON object"
            result.append(ToolCall(id=call_id, name=self._names[call_id].strip(), arguments=arguments))
        return result


def turns_to_wire(turns: list[Turn]) -> list[dict[str, Any]]:
    """Convert turns to chat-completions messages.

    Tool calls without a result in *turns* are dropped from their assistant
    message, and results whose call is no longer present become user text.
    """
    answered = {turn.call_id for turn in turns if isinstance(turn, ToolResultMessage)}
    offered: set[str] = set()
    result: list[dict[str, Any]] = []

    for turn in turns:
        if isinstance(turn, SystemNotice):
            result.append({"role": "system", "content": turn.content})
        elif isinstance(turn, UserMessage):
            result.append({"role": "user", "content": turn.content})
        elif isinstance(turn, AssistantMessage):
            calls = [call for call in turn.tool_calls if call.id in answered]
            if not calls and not turn.content:
                continue
            msg: dict[str, Any] = {"role": "assistant", "content": turn.content or None}
            if calls:
                msg["tool_calls"] = [
                    {
                        "id": call.id,
                        "type": "function",
                        "function": {
                            "name": call.name,
                            "arguments": json.dumps(call.arguments, ensure_ascii=False),
                        },
                    }
                    for call in calls
                ]
                offered.update(call.id for call in calls)
            result.append(msg)
        elif isinstance(turn, ToolResultMessage):
            if turn.call_id in offered:
                result.append({
                    "role": "tool",
                    "tool_call_id": turn.call_id,
                    "content": turn.content,
                })
            else:
                result.append({
                    "role": "user",
                    "content": f"[Result of earlier {turn.tool_name} call]\n{turn.content}",
                })
    return result


class LLMProvider(ABC):
    """Abstract base class for LLM providers."""

    model: str = ""

    @abstractmethod
    def stream(
        self,
        messages: list[Turn],
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[Delta]:
        pass

    async def complete(
        self,
        messages: list[Turn],
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """Collect a full stream into one response."""
        text: list[str] = []
        assembler = ToolCallAssembler()
        end = StreamEnd()
        async for delta in self.stream(messages, tools, temperature, max_tokens):
            if isinstance(delta, TextDelta):
                text.append(delta.text)
            elif isinstance(delta, ToolCallDelta):
                assembler.feed(delta)
            elif isinstance(delta, StreamEnd):
                end = delta
        if end.reason == "error":
            raise LLMError(end.error or "Model stream ended with an error")
        return LLMResponse(
            content="".join(text),
            tool_calls=assembler.calls(),
            model=self.model,
            usage=end.usage,
            finish_reason=end.reason,
        )

    def count_tokens(self, text: str) -> int:
        """Count tokens (rough estimate)."""
        # Rough estimate: ~1 token per 4 characters for English
        return len(text) // 4

    async def close(self) -> None:
        pass


def _is_retryable_status(status_code: int) -> bool:
    return status_code == 429 or status_code >= 500


class OpenAICompatibleProvider(LLMProvider):
    """Streams ``/chat/completions`` from any OpenAI-compatible endpoint."""

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        base_url: str = OPENAI_BASE_URL,
        api_key: str | None = None,
        temperature: float = 0.2,
        max_tokens: int = 8192,
        max_retries: int = 5,
        retry_base_delay: float = 0.5,
        retry_max_delay: float = 30.0,
        timeout: float = 120.0,
        client: httpx.AsyncClient | None = None,
    ):
        """Initialize the provider.

        Args:
            model: Model name sent with every request
            base_url: API base URL, without the ``/chat/completions`` suffix
            api_key: Optional bearer token
            temperature: Sampling temperature
            max_tokens: Max tokens to generate
            max_retries: Retries for transient failures before the first delta
            retry_base_delay: First backoff delay in seconds, doubled per attempt
            retry_max_delay: Upper bound for one backoff delay
            timeout: HTTP timeout in seconds
            client: Optional pre-built HTTP client
        """
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.max_retries = max(0, int(max_retries))
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay

        self.client = client or httpx.AsyncClient(
            timeout=timeout,
            follow_redirects=True,
        )

    def _convert_tools(self, tools: list[ToolDefinition]) -> list[dict[str, Any]]:
        """Convert tools to OpenAI function format."""
        return [
            {
                "type": "function",
                "function": {
                    "name": tool.name,
                    "description": tool.description,
                    "parameters": tool.parameters,
                },
            }
            for tool in tools
        ]

    def _build_body(
        self,
        messages: list[Turn],
        tools: list[ToolDefinition] | None,
        temperature: float | None,
        max_tokens: int | None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {
            "model": self.model,
            "messages": turns_to_wire(messages),
            "stream": True,
            "stream_options": {"include_usage": True},
            "temperature": self.temperature if temperature is None else temperature,
            "max_tokens": max_tokens or self.max_tokens,
        }
        if tools:
            body["tools"] = self._convert_tools(tools)
        return body

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json", "Accept": "text/event-stream"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number *attempt* (0-based)."""
        return min(self.retry_base_delay * (2 ** attempt), self.retry_max_delay)

    async def stream(
        self,
        messages: list[Turn],
        tools: list[ToolDefinition] | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> AsyncIterator[Delta]:
        """Stream deltas, retrying transient failures until the first delta arrives."""
        body = self._build_body(messages, tools, temperature, max_tokens)
        attempt = 0
        while True:
            produced = False
            try:
                async for delta in self._stream_once(body):
                    produced = True
                    yield delta
                return
            except LLMAPIError as e:
                if produced or not e.retryable or attempt >= self.max_retries:
                    raise
                delay = self.backoff_delay(attempt)
                log.warning(
                    "Retrying model request",
                    attempt=attempt + 1,
                    max_retries=self.max_retries,
                    delay=delay,
                    status_code=e.status_code,
                    error=str(e),
                )
                await asyncio.sleep(delay)
                attempt += 1

    async def _stream_once(self, body: dict[str, Any]) -> AsyncIterator[Delta]:
        url = f"{self.base_url}/chat/completions"
        call_ids: dict[int, str] = {}
        usage: dict[str, int] = {}
        finish_reason = "stop"
        emitted = False

        try:
            async with self.client.stream("POST", url, json=body, headers=self._headers()) as response:
                if not response.is_success:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    raise LLMAPIError(
                        f"Model API error {response.status_code}: {error_text[:500]}",
                        status_code=response.status_code,
                        retryable=_is_retryable_status(response.status_code),
                    )

                async for line in response.aiter_lines():
                    line = line.strip()
                    if not line or not line.startswith("data:"):
                        continue
                    data = line[len("data:"):].strip()
                    if data == "[DONE]":
                        break
                    try:
                        chunk = json.loads(data)
                    except json.JSONDecodeError as e:
                        raise LLMAPIError(f"Malformed stream chunk: {e}", retryable=True) from e
                    if not isinstance(chunk, dict):
                        raise LLMAPIError(f"Malformed stream chunk: {data[:200]}", retryable=True)

                    if chunk.get("error"):
                        error = chunk["error"]
                        message = error.get("message") if isinstance(error, dict) else str(error)
                        if not emitted:
                            raise LLMAPIError(f"Model stream error: {message}", retryable=True)
                        yield StreamEnd(reason="error", usage=usage, error=str(message))
                        return

                    if isinstance(chunk.get("usage"), dict):
                        usage = chunk["usage"]

                    for choice in chunk.get("choices") or []:
                        delta = choice.get("delta") or {}
                        content = delta.get("content")
                        if content:
                            emitted = True
                            yield TextDelta(text=content)
                        for fragment in delta.get("tool_calls") or []:
                            index = int(fragment.get("index", 0) or 0)
                            call_id = fragment.get("id") or call_ids.get(index) or f"call_{index}"
                            call_ids[index] = call_id
                            emitted = True
                            function = fragment.get("function") or {}
                            yield ToolCallDelta(
                                call_id=call_id,
                                name_fragment=function.get("name") or "",
                                arguments_fragment=function.get("arguments") or "",
                            )
                        if choice.get("finish_reason"):
                            finish_reason = choice["finish_reason"]

        except httpx.TransportError as e:
            raise LLMAPIError(f"Model transport error: {e}", retryable=True) from e
        except httpx.HTTPError as e:
            raise LLMAPIError(f"Model HTTP error: {e}") from e

        if call_ids and finish_reason == "stop":
            finish_reason = "tool_calls"
        if finish_reason not in ("stop", "tool_calls", "length"):
            finish_reason = "stop"
        yield StreamEnd(reason=finish_reason, usage=usage)

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()


def create_provider(
    provider: str = "openai",
    model: str = "gpt-4o-mini",
    api_key: str | None = None,
    base_url: str | None = None,
    temperature: float = 0.2,
    max_tokens: int = 8192,
    max_retries: int = 5,
    retry_base_delay: float = 0.5,
    retry_max_delay: float = 30.0,
    timeout: float = 120.0,
) -> LLMProvider:
    """Create an LLM provider.

    Args:
        provider: Provider name (openai, openai-compatible, ollama)
        model: Model name
        api_key: Optional API key
        base_url: Optional base URL
        temperature: Default temperature
        max_tokens: Default max tokens

    Returns:
        Configured LLMProvider instance
    """
    name = str(provider or "").strip().lower()
    if name in ("openai", "openai-compatible", "openai_compatible"):
        default_base = base_url or OPENAI_BASE_URL
    elif name == "ollama":
        default_base = base_url or OLLAMA_OPENAI_BASE_URL
    else:
        raise ValueError(f"Provider '{provider}' not supported. Use 'openai', 'openai-compatible' or 'ollama'.")

    return OpenAICompatibleProvider(
        model=model,
        base_url=default_base,
        api_key=api_key,
        temperature=temperature,
        max_tokens=max_tokens,
        max_retries=max_retries,
        retry_base_delay=retry_base_delay,
        retry_max_delay=retry_max_delay,
        timeout=timeout,
    )


# Global provider instance
_provider: LLMProvider | None = None


def get_provider() -> LLMProvider:
    """Get the global LLM provider instance."""
    global _provider
    if _provider is None:
        from deckhand.config import get_config
        cfg = get_config()
        _provider = create_provider(
            provider=cfg.model.provider,
            model=cfg.model.model,
            api_key=cfg.model.resolved_api_key() or None,
            base_url=cfg.model.base_url or None,
            temperature=cfg.model.temperature,
            max_tokens=cfg.model.max_tokens,
            max_retries=cfg.model.max_retries,
            retry_base_delay=cfg.model.retry_base_delay,
            retry_max_delay=cfg.model.retry_max_delay,
            timeout=cfg.model.request_timeout,
        )
    return _provider


def set_provider(provider: LLMProvider | None) -> None:
    """Set the global LLM provider instance."""
    global _provider
    _provider = provider
