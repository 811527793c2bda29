import asyncio

import pytest

from deckhand.config import ContextConfig
from deckhand.conversation import Conversation, find_compaction_cut
from deckhand.exceptions import LLMError, TurnCancelled
from deckhand.llm import LLMProvider, StreamEnd, TextDelta, turns_to_wire
from deckhand.session import (
    SUMMARY_PREFIX,
    AssistantMessage,
    Session,
    SystemNotice,
    ToolCall,
    ToolResultMessage,
    UserMessage,
)


class SummaryProvider(LLMProvider):
    model = "summary-model"

    def __init__(self, summary: str = "the user asked about files", fail: bool = False):
        self.summary = summary
        self.fail = fail
        self.requests = []

    async def stream(self, messages, tools=None, temperature=None, max_tokens=None):
        self.requests.append(list(messages))
        if self.fail:
            raise LLMError("summariser unavailable")
        if self.summary:
            yield TextDelta(text=self.summary)
        yield StreamEnd(reason="stop")


def _exchange(index: int, size: int = 400) -> list:
    return [
        UserMessage(content=f"question {index} " + "q" * size),
        AssistantMessage(content=f"answer {index} " + "a" * size),
    ]


def _conversation(turns, provider=None, max_tokens=1000, threshold=0.5) -> Conversation:
    session = Session()
    session.turns.extend(turns)
    return Conversation(
        session,
        provider or SummaryProvider(),
        context_config=ContextConfig(max_tokens=max_tokens, compaction_threshold=threshold),
    )


def test_size_estimate_is_chars_over_four():
    conversation = _conversation([UserMessage(content="x" * 400), AssistantMessage(content="y" * 400)])
    assert conversation.size_estimate() == 200
    assert conversation.threshold_tokens() == 500
    assert not conversation.needs_compaction()


def test_find_cut_uses_latest_completed_exchange():
    turns = [
        *_exchange(1),
        UserMessage(content="run it"),
        AssistantMessage(content="", tool_calls=[ToolCall(id="c1", name="bash", arguments={"command": "ls"})]),
        ToolResultMessage(call_id="c1", tool_name="bash", content="a.txt"),
        AssistantMessage(content="done"),
        UserMessage(content="still typing"),
    ]
    assert find_compaction_cut(turns) == 2
    assert find_compaction_cut([UserMessage(content="hi")]) is None
    assert find_compaction_cut([]) is None


@pytest.mark.asyncio
async def test_compaction_replaces_prefix_with_summary():
    turns = [*_exchange(1), *_exchange(2), *_exchange(3), *_exchange(4)]
    provider = SummaryProvider()
    conversation = _conversation(turns, provider)
    assert conversation.needs_compaction()

    result = await conversation.maybe_compact()

    assert result.compacted
    assert result.compacted_turns == 6
    assert result.after_tokens < result.before_tokens
    assert len(conversation.turns) == 3
    summary = conversation.turns[0]
    assert isinstance(summary, AssistantMessage)
    assert summary.content == f"{SUMMARY_PREFIX}\n\nthe user asked about files"
    assert summary.is_summary
    assert conversation.turns[1:] == turns[6:]

    request = provider.requests[0]
    assert isinstance(request[0], SystemNotice)
    assert "question 1" in request[1].content
    assert "question 4" not in request[1].content


@pytest.mark.asyncio
async def test_compaction_is_idempotent():
    conversation = _conversation([*_exchange(1), *_exchange(2), *_exchange(3)])
    first = await conversation.maybe_compact(force=True)
    assert first.compacted
    after_first = list(conversation.turns)

    second = await conversation.maybe_compact(force=True)
    assert not second.compacted
    assert conversation.turns == after_first


@pytest.mark.asyncio
async def test_below_threshold_is_a_no_op():
    turns = _exchange(1, size=10)
    conversation = _conversation(turns)
    result = await conversation.maybe_compact()
    assert not result.compacted
    assert result.reason == "below_threshold"
    assert conversation.turns == turns


@pytest.mark.asyncio
async def test_no_completed_exchange_is_a_no_op():
    turns = [UserMessage(content="x" * 5000)]
    conversation = _conversation(turns)
    result = await conversation.maybe_compact()
    assert not result.compacted
    assert conversation.turns == turns


@pytest.mark.asyncio
async def test_failed_summary_leaves_turns_untouched():
    turns = [*_exchange(1), *_exchange(2), *_exchange(3)]
    conversation = _conversation(turns, SummaryProvider(fail=True))
    result = await conversation.maybe_compact(force=True)
    assert not result.compacted
    assert result.reason.startswith("summary_failed")
    assert conversation.turns == turns


@pytest.mark.asyncio
async def test_empty_summary_leaves_turns_untouched():
    turns = [*_exchange(1), *_exchange(2), *_exchange(3)]
    conversation = _conversation(turns, SummaryProvider(summary=""))
    result = await conversation.maybe_compact(force=True)
    assert not result.compacted
    assert conversation.turns == turns


def test_append_sets_title_and_grants_are_deduplicated():
    conversation = _conversation([])
    conversation.append(UserMessage(content="Refactor   the parser\nplease"))
    conversation.append(UserMessage(content="second"))
    assert conversation.session.title == "Refactor the parser please"

    conversation.add_grant("https://x.io/*")
    conversation.add_grant("https://x.io/*")
    assert conversation.grants == ["https://x.io/*"]


def test_snapshot_is_independent_copy():
    conversation = _conversation(_exchange(1))
    snapshot = conversation.snapshot()
    conversation.append(UserMessage(content="later"))
    assert len(snapshot.turns) == 2
    assert len(conversation.turns) == 3


def test_context_puts_instructions_first():
    turns = _exchange(1)
    conversation = _conversation(turns)
    context = conversation.context_for_request("be helpful")
    assert isinstance(context[0], SystemNotice)
    assert context[0].content == "be helpful"
    assert context[1:] == turns


def test_wire_format_drops_dangling_tool_calls():
    turns = [
        UserMessage(content="go"),
        AssistantMessage(
            content="",
            tool_calls=[
                ToolCall(id="done", name="read_file", arguments={"path": "a"}),
                ToolCall(id="dangling", name="bash", arguments={"command": "sleep 30"}),
            ],
        ),
        ToolResultMessage(call_id="done", tool_name="read_file", content="hello"),
        AssistantMessage(content="", tool_calls=[ToolCall(id="lost", name="bash", arguments={})]),
    ]
    wire = turns_to_wire(turns)
    assert [msg["role"] for msg in wire] == ["user", "assistant", "tool"]
    assert [call["id"] for call in wire[1]["tool_calls"]] == ["done"]
    assert wire[2] == {"role": "tool", "tool_call_id": "done", "content": "hello"}


def test_wire_format_turns_orphan_results_into_user_text():
    turns = [
        AssistantMessage(content=f"{SUMMARY_PREFIX}\n\nearlier work"),
        ToolResultMessage(call_id="gone", tool_name="grep", content="match"),
    ]
    wire = turns_to_wire(turns)
    assert wire[0]["role"] == "assistant"
    assert wire[1]["role"] == "user"
    assert "match" in wire[1]["content"]


class HangingProvider(LLMProvider):
    async def stream(self, messages, tools=None, temperature=None, max_tokens=None):
        await asyncio.Event().wait()
        yield StreamEnd()


@pytest.mark.asyncio
async def test_abort_during_summary_leaves_turns_untouched():
    turns = [*_exchange(1), *_exchange(2), *_exchange(3)]
    conversation = _conversation(turns, HangingProvider())
    abort = asyncio.Event()

    async def trigger():
        await asyncio.sleep(0.05)
        abort.set()

    trigger_task = asyncio.create_task(trigger())
    with pytest.raises(TurnCancelled):
        await conversation.maybe_compact(force=True, abort_event=abort)
    await trigger_task
    assert conversation.turns == turns
