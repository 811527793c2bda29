"""Agent loop: streams the model, gates tool calls and records every step."""

import asyncio
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Coroutine, Literal, TypeVar

from deckhand.config import Config, get_config
from deckhand.conversation import CompactionResult, Conversation
from deckhand.exceptions import (
    LLMAPIError,
    LLMError,
    PersistenceError,
    ToolError,
    TurnCancelled,
)
from deckhand.instructions import InstructionLoader
from deckhand.llm import (
    LLMProvider,
    StreamEnd,
    TextDelta,
    ToolCallAssembler,
    ToolCallDelta,
    ToolDefinition,
)
from deckhand.logging import get_logger
from deckhand.modes import PLAN_EXIT_TOOL, Mode, ModeController, ModeSnapshot
from deckhand.permissions import (
    ApprovalChoice,
    ApprovalRequest,
    Category,
    Disposition,
    PermissionDecision,
    domain_pattern,
    evaluate,
    resolve_action,
    subject_for,
)
from deckhand.session import (
    AssistantMessage,
    SystemNotice,
    ToolCall,
    ToolResultMessage,
    UserMessage,
)
from deckhand.session.store import SessionStore
from deckhand.tools.registry import QuestionCallback, ToolRegistry, UrlCheck, maybe_await

log = get_logger(__name__)

T = TypeVar("T")

ApprovalCallback = Callable[[ApprovalRequest], ApprovalChoice | Awaitable[ApprovalChoice]]


class TurnState(str, Enum):
    """Where the current turn is."""

    IDLE = "idle"
    STREAMING = "streaming"
    TOOL_CALLS_PENDING = "tool_calls_pending"
    PERMISSION_PENDING = "permission_pending"
    EXECUTING = "executing"
    CANCELLED = "cancelled"


@dataclass
class TurnResult:
    """Outcome of one user turn."""

    status: Literal["completed", "cancelled", "failed", "max_iterations"]
    content: str = ""
    error: str | None = None
    fatal: bool = False
    iterations: int = 0
    tool_calls: int = 0
    usage: dict[str, int] = field(default_factory=dict)


@dataclass
class _StreamOutcome:
    text: str
    calls: list[ToolCall]
    errors: dict[str, str]
    end: StreamEnd


async def _cancel_task(task: asyncio.Future[Any] | None) -> None:
    """Cancel task and await it to avoid pending task warnings."""
    if task is None or task.done():
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception as e:
        log.debug("Cancelled task raised", error=str(e))


class Agent:
    """Runs turns against one conversation.

    Tool calls are handled one at a time in the order the model emitted them.
    Every suspension point (model stream, human decision, tool execution,
    compaction) is raced against the turn's abort event.
    """

    def __init__(
        self,
        conversation: Conversation,
        modes: ModeController,
        tools: ToolRegistry,
        store: SessionStore | None = None,
        config: Config | None = None,
        instructions: InstructionLoader | None = None,
        approval_callback: ApprovalCallback | None = None,
        question_callback: QuestionCallback | None = None,
        text_callback: Callable[[str], None] | None = None,
        tool_output_callback: Callable[[str, dict[str, Any], str, bool], None] | None = None,
        status_callback: Callable[[str], None] | None = None,
    ):
        """Initialize the agent.

        Args:
            conversation: Live conversation the agent appends to
            modes: Mode controller consulted once per iteration
            tools: Registry of available tool backends
            store: Optional store used for checkpoints after each turn
            approval_callback: Decides Ask outcomes; without one they are denied
            question_callback: Answers ask_user_question calls
            text_callback: Receives streamed assistant text
            tool_output_callback: Receives (tool, arguments, output, is_error)
            status_callback: Receives short runtime status strings
        """
        self.conversation = conversation
        self.modes = modes
        self.tools = tools
        self.store = store
        self.config = config or get_config()
        self.instructions = instructions or conversation.instructions
        self.approval_callback = approval_callback
        self.question_callback = question_callback
        self.text_callback = text_callback
        self.tool_output_callback = tool_output_callback
        self.status_callback = status_callback
        self.max_iterations = max(1, int(self.config.agent.max_iterations))
        self.last_usage: dict[str, int] = self._empty_usage()
        self.total_usage: dict[str, int] = self._empty_usage()
        self._state = TurnState.IDLE
        self._abort_event: asyncio.Event | None = None

    @property
    def provider(self) -> LLMProvider:
        return self.conversation.provider

    @property
    def state(self) -> TurnState:
        return self._state

    @property
    def busy(self) -> bool:
        return self._abort_event is not None

    @staticmethod
    def _empty_usage() -> dict[str, int]:
        """Create an empty usage bucket."""
        return {
            "prompt_tokens": 0,
            "completion_tokens": 0,
            "total_tokens": 0,
        }

    @staticmethod
    def _accumulate_usage(target: dict[str, int], usage: dict[str, int] | None) -> None:
        """Add usage values into target totals."""
        if not usage:
            return
        prompt = int(usage.get("prompt_tokens", 0) or 0)
        completion = int(usage.get("completion_tokens", 0) or 0)
        total = int(usage.get("total_tokens", prompt + completion) or 0)
        target["prompt_tokens"] += prompt
        target["completion_tokens"] += completion
        target["total_tokens"] += total

    def _set_state(self, state: TurnState) -> None:
        if state is not self._state:
            log.debug("Turn state", previous=self._state.value, state=state.value)
        self._state = state

    def _set_runtime_status(self, status: str) -> None:
        """Forward runtime status updates when callback is configured."""
        if self.status_callback:
            self.status_callback(status)

    def _emit_text(self, text: str) -> None:
        if self.text_callback:
            self.text_callback(text)

    def _emit_tool_output(self, tool_name: str, arguments: dict[str, Any], output: str, is_error: bool) -> None:
        """Forward tool output to UI callback when configured."""
        if self.tool_output_callback:
            self.tool_output_callback(tool_name, arguments, output, is_error)

    def cancel(self) -> bool:
        """Abort the running turn. Returns False when no turn is running."""
        if self._abort_event is None:
            return False
        self._abort_event.set()
        log.info("Turn cancellation requested", state=self._state.value)
        return True

    def system_prompt(self, mode: Mode) -> str:
        session = self.conversation.session
        return self.instructions.system_prompt(
            mode=mode.value,
            cwd=session.cwd or str(self.tools.runtime_base_path),
            date=datetime.now(UTC).date().isoformat(),
        )

    def catalogue(self, snapshot: ModeSnapshot) -> list[ToolDefinition]:
        """Tool definitions offered to the model for this iteration."""
        names = [
            name
            for name in self.tools.list_tools()
            if snapshot.offers(name, self.tools.get(name).mutating)
        ]
        return self.tools.get_definitions(names)

    async def _await_or_abort(self, work: Coroutine[Any, Any, T], abort: asyncio.Event) -> T:
        """Await *work* unless *abort* fires first, in which case it is cancelled."""
        if abort.is_set():
            work.close()
            raise TurnCancelled()
        task = asyncio.ensure_future(work)
        abort_task = asyncio.create_task(abort.wait())
        try:
            done, _ = await asyncio.wait({task, abort_task}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            await _cancel_task(task)
            raise
        finally:
            await _cancel_task(abort_task)
        if task in done:
            return task.result()
        await _cancel_task(task)
        raise TurnCancelled()

    async def _consume_stream(
        self,
        context: list[Any],
        definitions: list[ToolDefinition],
    ) -> _StreamOutcome:
        text_parts: list[str] = []
        assembler = ToolCallAssembler()
        end = StreamEnd()
        stream = self.provider.stream(
            context,
            tools=definitions or None,
            temperature=self.config.model.temperature,
            max_tokens=self.config.model.max_tokens,
        )
        try:
            async for delta in stream:
                if isinstance(delta, TextDelta):
                    text_parts.append(delta.text)
                    self._emit_text(delta.text)
                elif isinstance(delta, ToolCallDelta):
                    assembler.feed(delta)
                elif isinstance(delta, StreamEnd):
                    end = delta
                    break
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
        calls = assembler.calls()
        return _StreamOutcome("".join(text_parts), calls, dict(assembler.errors), end)

    async def run_turn(self, user_input: str) -> TurnResult:
        """Run one user turn to completion, failure or cancellation."""
        if self._abort_event is not None:
            raise RuntimeError("A turn is already running")
        abort = asyncio.Event()
        self._abort_event = abort
        self.last_usage = self._empty_usage()
        self.conversation.append(UserMessage(content=user_input))

        try:
            result = await self._run_loop(abort)
        except TurnCancelled:
            self._set_state(TurnState.CANCELLED)
            log.info("Turn cancelled", session_id=self.conversation.session.id)
            result = TurnResult(status="cancelled")
        finally:
            self._abort_event = None
            self.conversation.set_mode(self.modes.persistent_mode)

        self._accumulate_usage(self.total_usage, self.last_usage)
        result.usage = dict(self.last_usage)
        self._set_state(TurnState.IDLE)
        await self.checkpoint()
        return result

    async def _run_loop(self, abort: asyncio.Event) -> TurnResult:
        tool_calls = 0
        for iteration in range(1, self.max_iterations + 1):
            snapshot = self.modes.snapshot()
            definitions = self.catalogue(snapshot)
            context = self.conversation.context_for_request(self.system_prompt(snapshot.mode))

            self._set_state(TurnState.STREAMING)
            self._set_runtime_status("thinking")
            try:
                outcome = await self._await_or_abort(self._consume_stream(context, definitions), abort)
            except LLMError as e:
                return self._fail(e, iteration, tool_calls)
            self._accumulate_usage(self.last_usage, outcome.end.usage)
            if outcome.end.reason == "error":
                return self._fail(LLMError(outcome.end.error or "Model stream failed"), iteration, tool_calls)

            if not outcome.calls:
                self.conversation.append(AssistantMessage(content=outcome.text))
                await self._auto_compact(abort)
                return TurnResult(
                    status="completed",
                    content=outcome.text,
                    iterations=iteration,
                    tool_calls=tool_calls,
                )

            self.conversation.append(AssistantMessage(content=outcome.text, tool_calls=outcome.calls))
            self._set_state(TurnState.TOOL_CALLS_PENDING)
            for call in outcome.calls:
                await self._handle_call(call, outcome.errors.get(call.id), snapshot, abort)
                tool_calls += 1
            await self._auto_compact(abort)

        notice = f"Stopped after {self.max_iterations} model requests in one turn."
        self.conversation.append(SystemNotice(content=notice))
        log.warning("Turn hit iteration limit", max_iterations=self.max_iterations)
        return TurnResult(
            status="max_iterations",
            error=notice,
            iterations=self.max_iterations,
            tool_calls=tool_calls,
        )

    def _fail(self, error: LLMError, iterations: int, tool_calls: int) -> TurnResult:
        fatal = isinstance(error, LLMAPIError) and error.fatal
        log.error("Model request failed", error=str(error), fatal=fatal)
        self.conversation.append(SystemNotice(content=f"Model request failed: {error}"))
        return TurnResult(
            status="failed",
            error=str(error),
            fatal=fatal,
            iterations=iterations,
            tool_calls=tool_calls,
        )

    def _record_result(self, call: ToolCall, content: str, is_error: bool) -> None:
        self.conversation.append(
            ToolResultMessage(
                call_id=call.id,
                tool_name=call.name,
                content=content,
                is_error=is_error,
            )
        )
        self._emit_tool_output(call.name, call.arguments, content, is_error)

    def _deny(self, call: ToolCall, reason: str) -> None:
        log.info("Tool call denied", tool=call.name, reason=reason)
        self._record_result(call, f"Permission denied: {reason}", True)

    async def _handle_call(
        self,
        call: ToolCall,
        parse_error: str | None,
        snapshot: ModeSnapshot,
        abort: asyncio.Event,
    ) -> None:
        if not self.tools.has_tool(call.name):
            self._deny(call, f"unknown tool '{call.name}'")
            return
        tool = self.tools.get(call.name)
        if not snapshot.offers(call.name, tool.mutating):
            self._deny(call, f"tool '{call.name}' is not available in {snapshot.mode.value} mode")
            return
        if parse_error:
            self._record_result(call, f"Error: {parse_error}", True)
            return

        decision = await self._decide(call, snapshot, abort)
        if not decision.allowed:
            self._deny(call, decision.reason)
            return

        self._set_state(TurnState.EXECUTING)
        self._set_runtime_status(f"running {call.name}")
        try:
            result = await self.tools.execute(
                call.name,
                call.arguments,
                abort_event=abort,
                question_callback=self.question_callback,
                url_check=self._redirect_check(snapshot) if call.name == "web_fetch" else None,
            )
            content, is_error = result.as_text(), not result.success
        except ToolError as e:
            content, is_error = f"Error: {e}", True
        if abort.is_set():
            raise TurnCancelled()

        self._record_result(call, content, is_error)
        if call.name == PLAN_EXIT_TOOL and not is_error:
            self.modes.set_mode(Mode.APPLY)
            self.conversation.set_mode(self.modes.persistent_mode)

    @staticmethod
    def _redirect_check(snapshot: ModeSnapshot) -> UrlCheck:
        """Check URLs a fetch is redirected to against the deny rules."""

        def check(url: str) -> str | None:
            decision = evaluate(snapshot.rules, Category.WEB_FETCH, url)
            return decision.reason if decision.denied else None

        return check

    async def _decide(
        self,
        call: ToolCall,
        snapshot: ModeSnapshot,
        abort: asyncio.Event,
    ) -> PermissionDecision:
        if snapshot.yolo:
            return PermissionDecision(Disposition.ALLOW, None, "yolo mode")

        decision = resolve_action(snapshot.rules, call.name, call.arguments, self.conversation.grants)
        if not decision.needs_approval:
            return decision
        if self.approval_callback is None:
            return PermissionDecision(Disposition.DENY, decision.rule, "approval required but no one can approve")

        target = subject_for(call.name, call.arguments)
        subject = target[1] if target else call.name
        grant = domain_pattern(subject) if call.name == "web_fetch" else None
        request = ApprovalRequest(
            tool_name=call.name,
            arguments=call.arguments,
            subject=subject,
            reason=decision.reason,
            grant_pattern=grant,
        )

        self._set_state(TurnState.PERMISSION_PENDING)
        self._set_runtime_status("waiting for approval")
        choice = await self._await_or_abort(self._ask_approval(request), abort)

        if choice is ApprovalChoice.APPROVE_DOMAIN and grant:
            self.conversation.add_grant(grant)
            log.info("Domain approved for session", pattern=grant)
            return PermissionDecision(Disposition.ALLOW, None, f"approved for {grant}")
        if choice is ApprovalChoice.APPROVE_ONCE:
            return PermissionDecision(Disposition.ALLOW, None, "approved by user")
        return PermissionDecision(Disposition.DENY, None, "denied by user")

    async def _ask_approval(self, request: ApprovalRequest) -> ApprovalChoice:
        answer = await maybe_await(self.approval_callback(request))
        try:
            return ApprovalChoice(answer)
        except ValueError:
            log.warning("Unrecognised approval answer", answer=str(answer))
            return ApprovalChoice.DENY_ONCE

    async def _auto_compact(self, abort: asyncio.Event) -> None:
        if not self.config.context.auto_compact or not self.conversation.needs_compaction():
            return
        self._set_runtime_status("compacting")
        result = await self.conversation.maybe_compact(abort_event=abort)
        if not result.compacted:
            log.info("Automatic compaction skipped", reason=result.reason)

    async def compact(self, force: bool = True) -> CompactionResult:
        """Compact on request (outside a turn)."""
        return await self.conversation.maybe_compact(force=force)

    async def checkpoint(self) -> bool:
        """Save a snapshot when auto-save is on. Failures are logged, not raised."""
        if self.store is None or not self.config.session.auto_save:
            return False
        try:
            await self.save()
        except PersistenceError as e:
            log.warning("Checkpoint failed; continuing in memory", error=str(e))
            return False
        return True

    async def save(self) -> None:
        """Save a snapshot now.

        Raises:
            PersistenceError: When the store cannot write it
        """
        if self.store is None:
            raise PersistenceError(self.conversation.session.id, "no session store configured")
        snapshot = self.conversation.snapshot()
        snapshot.mode = self.modes.persistent_mode
        snapshot.model = self.provider.model or snapshot.model
        await self.store.save(snapshot)
