import json

import httpx
import pytest

from deckhand.exceptions import LLMAPIError, LLMError
from deckhand.llm import (
    OLLAMA_OPENAI_BASE_URL,
    OpenAICompatibleProvider,
    StreamEnd,
    TextDelta,
    ToolCallAssembler,
    ToolCallDelta,
    ToolDefinition,
    create_provider,
)
from deckhand.session import UserMessage


def _sse(*chunks) -> bytes:
    lines = []
    for chunk in chunks:
        payload = chunk if isinstance(chunk, str) else json.dumps(chunk)
        lines.append(f"data: {payload}\n\n")
    return "".join(lines).encode()


def _provider(handler, **kwargs) -> OpenAICompatibleProvider:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    kwargs.setdefault("retry_base_delay", 0.0)
    return OpenAICompatibleProvider(
        model="test-model",
        base_url="http://llm.test/v1",
        api_key="secret",
        client=client,
        **kwargs,
    )


async def _collect(provider, **kwargs):
    return [delta async for delta in provider.stream([UserMessage(content="hi")], **kwargs)]


@pytest.mark.asyncio
async def test_streams_text_and_usage():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            content=_sse(
                {"choices": [{"delta": {"content": "Hel"}}]},
                {"choices": [{"delta": {"content": "lo"}, "finish_reason": "stop"}]},
                {"choices": [], "usage": {"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5}},
                "[DONE]",
            ),
        )

    provider = _provider(handler)
    deltas = await _collect(provider, tools=[ToolDefinition("read_file", "Read", {"type": "object"})])

    assert deltas[:2] == [TextDelta("Hel"), TextDelta("lo")]
    assert deltas[-1] == StreamEnd(reason="stop", usage={"prompt_tokens": 3, "completion_tokens": 2, "total_tokens": 5})
    assert seen["url"] == "http://llm.test/v1/chat/completions"
    assert seen["auth"] == "Bearer secret"
    assert seen["body"]["stream"] is True
    assert seen["body"]["model"] == "test-model"
    assert seen["body"]["messages"] == [{"role": "user", "content": "hi"}]
    assert seen["body"]["tools"][0]["function"]["name"] == "read_file"
    await provider.close()


@pytest.mark.asyncio
async def test_tool_call_fragments_reassemble():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(
            200,
            content=_sse(
                {"choices": [{"delta": {"tool_calls": [
                    {"index": 0, "id": "call_a", "function": {"name": "ba", "arguments": "{\"comm"}},
                ]}}]},
                {"choices": [{"delta": {"tool_calls": [
                    {"index": 1, "id": "call_b", "function": {"name": "read_file", "arguments": "{\"path\": \"x\"}"}},
                ]}}]},
                {"choices": [{"delta": {"tool_calls": [
                    {"index": 0, "function": {"name": "sh", "arguments": "and\": \"ls\"}"}},
                ]}}]},
                {"choices": [{"delta": {}, "finish_reason": "tool_calls"}]},
                "[DONE]",
            ),
        )

    deltas = await _collect(_provider(handler))
    assembler = ToolCallAssembler()
    for delta in deltas:
        if isinstance(delta, ToolCallDelta):
            assembler.feed(delta)

    calls = assembler.calls()
    assert [(call.id, call.name, call.arguments) for call in calls] == [
        ("call_a", "bash", {"command": "ls"}),
        ("call_b", "read_file", {"path": "x"}),
    ]
    assert deltas[-1].reason == "tool_calls"


def test_assembler_records_invalid_arguments():
    assembler = ToolCallAssembler()
    assembler.feed(ToolCallDelta("c1", "bash", "{\"command\": "))
    assembler.feed(ToolCallDelta("c2", "grep", "[1, 2]"))
    assembler.feed(ToolCallDelta("c3", "glob", ""))
    calls = assembler.calls()
    assert len(assembler) == 3
    assert [call.arguments for call in calls] == [{}, {}, {}]
    assert set(assembler.errors) == {"c1", "c2"}


@pytest.mark.asyncio
async def test_retries_transient_status_until_success():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        if len(attempts) < 3:
            return httpx.Response(503, text="overloaded")
        return httpx.Response(200, content=_sse({"choices": [{"delta": {"content": "ok"}}]}, "[DONE]"))

    deltas = await _collect(_provider(handler, max_retries=5))
    assert len(attempts) == 3
    assert deltas[0] == TextDelta("ok")


@pytest.mark.asyncio
async def test_gives_up_after_max_retries():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        return httpx.Response(429, text="slow down")

    with pytest.raises(LLMAPIError) as exc_info:
        await _collect(_provider(handler, max_retries=2))
    assert len(attempts) == 3
    assert exc_info.value.status_code == 429


@pytest.mark.asyncio
async def test_transport_errors_are_retried():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        if len(attempts) == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200, content=_sse({"choices": [{"delta": {"content": "ok"}}]}, "[DONE]"))

    deltas = await _collect(_provider(handler))
    assert len(attempts) == 2
    assert deltas[0] == TextDelta("ok")


@pytest.mark.asyncio
async def test_auth_failure_is_fatal_and_not_retried():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        return httpx.Response(401, text="bad key")

    with pytest.raises(LLMAPIError) as exc_info:
        await _collect(_provider(handler))
    assert len(attempts) == 1
    assert exc_info.value.fatal
    assert not exc_info.value.retryable


@pytest.mark.asyncio
async def test_no_retry_after_first_delta():
    attempts = []

    class BrokenStream(httpx.AsyncByteStream):
        async def __aiter__(self):
            yield _sse({"choices": [{"delta": {"content": "partial"}}]})
            raise httpx.ReadError("connection reset")

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        return httpx.Response(200, stream=BrokenStream())

    received = []
    with pytest.raises(LLMAPIError):
        async for delta in _provider(handler).stream([UserMessage(content="hi")]):
            received.append(delta)
    assert received == [TextDelta("partial")]
    assert len(attempts) == 1


@pytest.mark.asyncio
async def test_in_stream_error_after_output_ends_stream():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        return httpx.Response(
            200,
            content=_sse(
                {"choices": [{"delta": {"content": "a"}}]},
                {"error": {"message": "context length exceeded"}},
            ),
        )

    deltas = await _collect(_provider(handler))
    assert deltas[-1].reason == "error"
    assert deltas[-1].error == "context length exceeded"
    assert len(attempts) == 1


@pytest.mark.asyncio
async def test_in_stream_error_before_output_is_retried():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        if len(attempts) == 1:
            return httpx.Response(200, content=_sse({"error": {"message": "overloaded"}}))
        return httpx.Response(200, content=_sse({"choices": [{"delta": {"content": "ok"}}]}, "[DONE]"))

    deltas = await _collect(_provider(handler))
    assert len(attempts) == 2
    assert deltas[0] == TextDelta("ok")


@pytest.mark.asyncio
async def test_malformed_chunk_is_retried():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        if len(attempts) == 1:
            return httpx.Response(200, content=b"data: {not json\n\n")
        return httpx.Response(200, content=_sse({"choices": [{"delta": {"content": "ok"}}]}, "[DONE]"))

    deltas = await _collect(_provider(handler))
    assert len(attempts) == 2
    assert deltas[0] == TextDelta("ok")


@pytest.mark.asyncio
async def test_malformed_chunk_raises_once_retries_run_out():
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request)
        return httpx.Response(200, content=b"data: {oops\n\n")

    with pytest.raises(LLMAPIError) as exc_info:
        await _collect(_provider(handler, max_retries=2))
    assert len(attempts) == 3
    assert exc_info.value.retryable


@pytest.mark.asyncio
async def test_complete_collects_stream_and_raises_on_error():
    def ok(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=_sse({"choices": [{"delta": {"content": "sum"}}]}, "[DONE]"))

    response = await _provider(ok).complete([UserMessage(content="hi")])
    assert response.content == "sum"
    assert response.model == "test-model"

    def broken(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=_sse({"error": "nope"}))

    with pytest.raises(LLMError):
        await _provider(broken).complete([UserMessage(content="hi")])


def test_backoff_is_exponential_and_capped():
    provider = OpenAICompatibleProvider(retry_base_delay=0.5, retry_max_delay=3.0, client=httpx.AsyncClient())
    assert [provider.backoff_delay(n) for n in range(5)] == [0.5, 1.0, 2.0, 3.0, 3.0]


def test_create_provider_defaults():
    ollama = create_provider("ollama", model="llama3")
    assert isinstance(ollama, OpenAICompatibleProvider)
    assert ollama.base_url == OLLAMA_OPENAI_BASE_URL
    with pytest.raises(ValueError):
        create_provider("unknown")
