"""Tool registry and base tool interface."""

import asyncio
import inspect
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable

from pydantic import BaseModel, model_validator

from deckhand.exceptions import ToolExecutionError, ToolNotFoundError
from deckhand.llm import ToolDefinition
from deckhand.logging import get_logger

log = get_logger(__name__)

QuestionCallback = Callable[[list[dict[str, Any]]], Any]
# Returns a reason when a URL must not be fetched
UrlCheck = Callable[[str], str | None]


class ToolResult(BaseModel):
    """Result from tool execution."""

    success: bool = True
    content: str = ""
    error: str | None = None

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolResult":
        """Ensure failed results always provide an error message."""
        if not self.success and not (self.error or "").strip():
            fallback = (self.content or "").strip()
            self.error = fallback or "Tool execution failed"
        return self

    def as_text(self) -> str:
        """Text handed back to the model."""
        if self.success:
            return self.content
        if self.content:
            return f"Error: {self.error}\n{self.content}"
        return f"Error: {self.error}"


class Tool(ABC):
    """Base class for all tools."""

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {}
    # None disables the registry-level timeout
    timeout_seconds: float | None = 30.0
    # Changes files, runs commands or reaches the network
    mutating: bool = False

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ToolResult:
        """Execute the tool.

        Args:
            **kwargs: Tool-specific arguments

        Returns:
            ToolResult with success status and content
        """
        pass

    def get_definition(self) -> ToolDefinition:
        """Get the tool definition for the LLM."""
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.parameters,
        )

    def validate_arguments(self, arguments: dict[str, Any]) -> None:
        """Validate tool arguments against schema.

        Raises:
            ToolExecutionError if a required argument is missing or unknown
        """
        required = self.parameters.get("required", [])
        for field in required:
            if field not in arguments:
                raise ToolExecutionError(
                    self.name,
                    f"Missing required argument: {field}",
                )
        known = set((self.parameters.get("properties") or {}).keys())
        unknown = sorted(key for key in arguments if key not in known)
        if known and unknown:
            raise ToolExecutionError(
                self.name,
                f"Unknown argument(s): {', '.join(unknown)}",
            )


def resolve_path(path: str, base_path: Path | str | None) -> Path:
    """Resolve a tool path argument against the runtime base directory."""
    raw = Path(str(path or "")).expanduser()
    if raw.is_absolute():
        return raw.resolve()
    anchor = Path(base_path).expanduser() if base_path is not None else Path.cwd()
    return (anchor / raw).resolve()


class ToolRegistry:
    """Registry for managing available tools."""

    def __init__(self, base_path: Path | str | None = None):
        self._tools: dict[str, Tool] = {}
        self._runtime_base_path = Path.cwd()
        self.set_runtime_base_path(base_path or Path.cwd())

    def set_runtime_base_path(self, base_path: Path | str) -> None:
        """Set the working directory tools resolve relative paths against."""
        self._runtime_base_path = Path(base_path).expanduser().resolve()

    @property
    def runtime_base_path(self) -> Path:
        """Runtime base path from which Deckhand was launched."""
        return self._runtime_base_path

    def register(self, tool: Tool) -> None:
        """Register a tool.

        Args:
            tool: Tool instance to register
        """
        if not tool.name:
            raise ValueError("Tool must have a name")

        log.debug("Registering tool", tool=tool.name)
        self._tools[tool.name] = tool

    def unregister(self, name: str) -> None:
        """Unregister a tool."""
        self._tools.pop(name, None)

    def has_tool(self, name: str) -> bool:
        """Return whether a tool name is currently registered."""
        return name in self._tools

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if not found
        """
        if name not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[name]

    def list_tools(self) -> list[str]:
        """List all registered tool names in registration order."""
        return list(self._tools.keys())

    def get_definitions(self, names: list[str] | None = None) -> list[ToolDefinition]:
        """Definitions for *names* (default: every registered tool)."""
        selected = self.list_tools() if names is None else [n for n in names if n in self._tools]
        return [self._tools[name].get_definition() for name in selected]

    async def close(self) -> None:
        """Release resources held by tools (HTTP clients)."""
        for tool in self._tools.values():
            close = getattr(tool, "close", None)
            if close is not None:
                await maybe_await(close())

    @staticmethod
    async def _cancel_task(task: asyncio.Task[Any] | None) -> None:
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

    @staticmethod
    async def _bridge_abort_event(source: asyncio.Event, target: asyncio.Event) -> None:
        """Mirror external abort event to local tool abort event."""
        await source.wait()
        target.set()

    @staticmethod
    def _timeout_for(tool: Tool, arguments: dict[str, Any]) -> float | None:
        if tool.timeout_seconds is None:
            return None
        timeout_seconds = float(tool.timeout_seconds)
        timeout_override = arguments.get("timeout")
        if timeout_override is not None:
            try:
                # Leave the tool room to report its own timeout first
                timeout_seconds = float(timeout_override) + 5.0
            except (TypeError, ValueError):
                pass
        return max(1.0, timeout_seconds)

    async def execute(
        self,
        name: str,
        arguments: dict[str, Any],
        abort_event: asyncio.Event | None = None,
        question_callback: QuestionCallback | None = None,
        url_check: UrlCheck | None = None,
    ) -> ToolResult:
        """Execute a tool by name.

        Args:
            name: Tool name
            arguments: Tool arguments from the model
            abort_event: Set by the caller to abort the running tool
            question_callback: Asks the user structured questions
            url_check: Vets redirect targets before a fetch follows them

        Returns:
            ToolResult from execution

        Raises:
            ToolNotFoundError if tool not found
            ToolExecutionError if execution fails, times out or is aborted
        """
        tool = self.get(name)
        # Underscore keys are reserved for runtime context
        arguments = {k: v for k, v in dict(arguments or {}).items() if not str(k).startswith("_")}
        tool.validate_arguments(arguments)

        execute_task: asyncio.Task[ToolResult] | None = None
        abort_wait_task: asyncio.Task[bool] | None = None
        bridge_task: asyncio.Task[None] | None = None
        tool_abort_event = asyncio.Event()
        try:
            log.info("Executing tool", tool=name, args=arguments)
            timeout_seconds = self._timeout_for(tool, arguments)
            if abort_event is not None:
                if abort_event.is_set():
                    raise ToolExecutionError(name, "Execution aborted")
                bridge_task = asyncio.create_task(
                    self._bridge_abort_event(abort_event, tool_abort_event)
                )
            execute_task = asyncio.create_task(
                tool.execute(
                    **arguments,
                    _runtime_base_path=self.runtime_base_path,
                    _abort_event=tool_abort_event,
                    _question_callback=question_callback,
                    _url_check=url_check,
                )
            )
            abort_wait_task = asyncio.create_task(tool_abort_event.wait())
            done, _ = await asyncio.wait(
                {execute_task, abort_wait_task},
                timeout=timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if execute_task in done:
                result = await execute_task
                if not isinstance(result, ToolResult):
                    raise ToolExecutionError(name, "Tool returned invalid result payload")
                log.info("Tool executed", tool=name, success=result.success)
                return result
            if abort_wait_task in done:
                await self._cancel_task(execute_task)
                raise ToolExecutionError(name, "Execution aborted")
            tool_abort_event.set()
            await self._cancel_task(execute_task)
            timeout_label = int(timeout_seconds) if float(timeout_seconds).is_integer() else timeout_seconds
            raise ToolExecutionError(name, f"Execution timed out after {timeout_label}s")
        except asyncio.CancelledError:
            tool_abort_event.set()
            await self._cancel_task(execute_task)
            raise
        except ToolExecutionError:
            raise
        except Exception as e:
            log.error("Tool execution failed", tool=name, error=str(e))
            raise ToolExecutionError(name, str(e)) from e
        finally:
            await self._cancel_task(abort_wait_task)
            await self._cancel_task(bridge_task)


async def maybe_await(value: Any) -> Any:
    """Await *value* when a callback returned an awaitable."""
    if inspect.isawaitable(value):
        return await value
    return value
