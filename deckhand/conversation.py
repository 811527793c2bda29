"""Live conversation state: appending turns, request context and compaction."""

import asyncio
import json
import re
import threading
from dataclasses import dataclass

from deckhand.config import ContextConfig, get_config
from deckhand.exceptions import LLMError, TurnCancelled
from deckhand.instructions import InstructionLoader
from deckhand.llm import LLMProvider
from deckhand.logging import get_logger
from deckhand.modes import Mode
from deckhand.session import (
    SUMMARY_PREFIX,
    AssistantMessage,
    Session,
    SystemNotice,
    ToolResultMessage,
    Turn,
    UserMessage,
    clip_title,
)

log = get_logger(__name__)


@dataclass
class CompactionResult:
    """What a compaction attempt did."""

    compacted: bool
    reason: str
    before_tokens: int = 0
    after_tokens: int = 0
    compacted_turns: int = 0


def turn_text(turn: Turn) -> str:
    """Text a turn contributes to the request, used for size estimates."""
    if isinstance(turn, AssistantMessage) and turn.tool_calls:
        calls = " ".join(
            f"{call.name} {json.dumps(call.arguments, ensure_ascii=False)}" for call in turn.tool_calls
        )
        return f"{turn.content} {calls}"
    return turn.content


def find_compaction_cut(turns: list[Turn]) -> int | None:
    """Index of the user message that opens the most recent completed exchange.

    An exchange is completed once an assistant message without tool calls
    answers it. Returns None when there is no such exchange.
    """
    for end in range(len(turns) - 1, -1, -1):
        turn = turns[end]
        if not isinstance(turn, AssistantMessage) or turn.tool_calls or turn.is_summary:
            continue
        for start in range(end - 1, -1, -1):
            if isinstance(turns[start], UserMessage):
                return start
        return None
    return None


class Conversation:
    """Owns the live Session. Only the agent loop mutates it."""

    def __init__(
        self,
        session: Session,
        provider: LLMProvider,
        instructions: InstructionLoader | None = None,
        context_config: ContextConfig | None = None,
    ):
        self.session = session
        self.provider = provider
        self.instructions = instructions or InstructionLoader()
        self.context_config = context_config or get_config().context
        self._lock = threading.Lock()

    @property
    def turns(self) -> list[Turn]:
        return self.session.turns

    @property
    def grants(self) -> list[str]:
        return self.session.ephemeral_grants

    def append(self, turn: Turn) -> None:
        """Append one turn and bump the activity timestamp."""
        with self._lock:
            self.session.turns.append(turn)
            if self.session.title is None and isinstance(turn, UserMessage):
                self.session.title = clip_title(turn.content)
            self.session.touch()

    def add_grant(self, pattern: str) -> None:
        with self._lock:
            if pattern not in self.session.ephemeral_grants:
                self.session.ephemeral_grants.append(pattern)

    def set_mode(self, mode: Mode) -> None:
        with self._lock:
            self.session.mode = mode

    def snapshot(self) -> Session:
        """Consistent copy for saving. The lock is held only while copying."""
        with self._lock:
            return self.session.model_copy(deep=True)

    def context_for_request(self, system_prompt: str) -> list[Turn]:
        """Instructions turn first, then every stored turn in order."""
        return [SystemNotice(content=system_prompt), *self.session.turns]

    def size_estimate(self, turns: list[Turn] | None = None) -> int:
        """Estimated tokens for *turns* (default: the whole conversation)."""
        source = self.session.turns if turns is None else turns
        return sum(len(turn_text(turn)) for turn in source) // 4

    def threshold_tokens(self) -> int:
        cfg = self.context_config
        return max(1, int(cfg.max_tokens * float(cfg.compaction_threshold)))

    def needs_compaction(self) -> bool:
        return self.size_estimate() > self.threshold_tokens()

    @staticmethod
    def _format_for_summary(
        turns: list[Turn],
        max_total_chars: int = 24000,
        max_item_chars: int = 600,
    ) -> str:
        """Format turns for the summarisation prompt."""
        lines: list[str] = []
        consumed = 0
        for idx, turn in enumerate(turns, start=1):
            label = f"{idx}. {turn.role}"
            if isinstance(turn, ToolResultMessage):
                label += f"({turn.tool_name}{', error' if turn.is_error else ''})"
            content = re.sub(r"\s+", " ", turn_text(turn).strip())
            if len(content) > max_item_chars:
                content = content[:max_item_chars].rstrip() + "... [truncated]"
            line = f"{label}: {content}"
            if consumed + len(line) > max_total_chars:
                lines.append("[... older conversation excerpt truncated for compaction ...]")
                break
            lines.append(line)
            consumed += len(line)
        return "\n".join(lines)

    async def _summarize(self, turns: list[Turn]) -> str:
        prompt = self.instructions.render(
            "compaction_summary_user_prompt.md",
            formatted=self._format_for_summary(turns),
        )
        request: list[Turn] = [
            SystemNotice(content=self.instructions.load("compaction_summary_system_prompt.md")),
            UserMessage(content=prompt),
        ]
        response = await self.provider.complete(request, tools=None, max_tokens=2048)
        return (response.content or "").strip()

    async def _summarize_or_abort(self, turns: list[Turn], abort_event: asyncio.Event | None) -> str:
        """Run the summary request, cancelling it if *abort_event* fires first.

        Raises:
            TurnCancelled: The abort event fired before the summary arrived
        """
        if abort_event is None:
            return await self._summarize(turns)
        if abort_event.is_set():
            raise TurnCancelled()
        summary_task = asyncio.ensure_future(self._summarize(turns))
        abort_task = asyncio.create_task(abort_event.wait())
        try:
            done, _ = await asyncio.wait({summary_task, abort_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            abort_task.cancel()
        if summary_task in done:
            return summary_task.result()
        summary_task.cancel()
        try:
            await summary_task
        except (asyncio.CancelledError, LLMError):
            pass
        raise TurnCancelled()

    async def maybe_compact(
        self,
        force: bool = False,
        abort_event: asyncio.Event | None = None,
    ) -> CompactionResult:
        """Summarise everything before the latest completed exchange.

        Runs when forced or when the estimate exceeds the threshold. A failed
        or aborted summary leaves the turns untouched.

        Raises:
            TurnCancelled: *abort_event* fired while summarising
        """
        before = self.size_estimate()
        if not force and before <= self.threshold_tokens():
            return CompactionResult(False, "below_threshold", before, before)

        turns = list(self.session.turns)
        cut = find_compaction_cut(turns)
        if cut is None:
            return CompactionResult(False, "no_completed_exchange", before, before)
        prefix = turns[:cut]
        if len(prefix) <= 1:
            return CompactionResult(False, "nothing_to_compact", before, before)

        try:
            summary = await self._summarize_or_abort(prefix, abort_event)
        except LLMError as e:
            log.warning("Compaction summary failed", session_id=self.session.id, error=str(e))
            return CompactionResult(False, f"summary_failed: {e}", before, before)
        if not summary:
            log.warning("Compaction summary was empty", session_id=self.session.id)
            return CompactionResult(False, "summary_empty", before, before)

        summary_turn = AssistantMessage(content=f"{SUMMARY_PREFIX}\n\n{summary}")
        with self._lock:
            self.session.turns[:cut] = [summary_turn]
            self.session.touch()

        after = self.size_estimate()
        log.info(
            "Conversation compacted",
            session_id=self.session.id,
            compacted_turns=len(prefix),
            before_tokens=before,
            after_tokens=after,
        )
        return CompactionResult(True, "compacted", before, after, len(prefix))
