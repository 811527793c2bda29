"""Terminal UI for Deckhand."""

import asyncio
import threading
from typing import Any, Callable

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from deckhand.logging import get_logger
from deckhand.permissions import ApprovalChoice, ApprovalRequest
from deckhand.session import SessionSummary

log = get_logger(__name__)

_APPROVAL_KEYS = {
    "y": ApprovalChoice.APPROVE_ONCE,
    "yes": ApprovalChoice.APPROVE_ONCE,
    "n": ApprovalChoice.DENY_ONCE,
    "no": ApprovalChoice.DENY_ONCE,
    "d": ApprovalChoice.APPROVE_DOMAIN,
    "domain": ApprovalChoice.APPROVE_DOMAIN,
}


def _resolve(future: asyncio.Future, value: Any = None, error: BaseException | None = None) -> None:
    if future.done():
        return
    if error is not None:
        future.set_exception(error)
    else:
        future.set_result(value)


class TerminalUI:
    """Line-oriented terminal front end built on rich."""

    def __init__(
        self,
        console: Console | None = None,
        input_func: Callable[[str], str] = input,
    ):
        self.console = console or Console(highlight=False)
        self._input_func = input_func
        self._pending_read: asyncio.Future[str] | None = None
        self._streaming = False

    # Input

    def _start_reader(self) -> asyncio.Future[str]:
        """Read one line on a daemon thread so shutdown never waits on stdin."""
        loop = asyncio.get_running_loop()
        future: asyncio.Future[str] = loop.create_future()

        def worker() -> None:
            try:
                line = self._input_func("")
            except (EOFError, OSError) as e:
                loop.call_soon_threadsafe(_resolve, future, None, EOFError(str(e)))
            else:
                loop.call_soon_threadsafe(_resolve, future, line)

        threading.Thread(target=worker, name="deckhand-input", daemon=True).start()
        return future

    async def read_line(self, prompt_text: str = "> ") -> str:
        """Prompt for one line of input.

        A read abandoned by a cancelled prompt is reused by the next one.

        Raises:
            EOFError: stdin was closed
        """
        self.end_stream()
        self.console.print(prompt_text, end="", markup=False)
        if self._pending_read is None:
            self._pending_read = self._start_reader()
        line = await asyncio.shield(self._pending_read)
        self._pending_read = None
        return line

    async def approve(self, request: ApprovalRequest) -> ApprovalChoice:
        """Ask the user to approve one tool call."""
        self.end_stream()
        self.console.print(f"[bold yellow]Permission needed[/] [bold]{escape(request.tool_name)}[/]")
        if request.subject and request.subject != request.tool_name:
            self.console.print(f"  {escape(request.subject)}")
        elif request.arguments:
            for key, value in request.arguments.items():
                text = str(value)
                if len(text) > 400:
                    text = text[:400] + "..."
                self.console.print(f"  [dim]{escape(str(key))}:[/] {escape(text)}")
        if request.reason:
            self.console.print(f"  [dim]{escape(request.reason)}[/]")

        options = ["\\[y] approve once", "\\[n] deny"]
        if ApprovalChoice.APPROVE_DOMAIN in request.choices and request.grant_pattern:
            options.append(f"\\[d] allow {escape(request.grant_pattern)} for this session")
        self.console.print("  " + "   ".join(options))

        answer = (await self.read_line("? ")).strip().lower()
        choice = _APPROVAL_KEYS.get(answer, ApprovalChoice.DENY_ONCE)
        if choice not in request.choices:
            choice = ApprovalChoice.DENY_ONCE
        return choice

    async def ask_questions(self, questions: list[dict[str, Any]]) -> dict[str, str]:
        """Ask multiple-choice questions; a number picks an option, anything else is free text."""
        self.end_stream()
        answers: dict[str, str] = {}
        for item in questions:
            header = f"[bold cyan]{escape(item['header'])}[/] " if item.get("header") else ""
            self.console.print(f"{header}[bold]{escape(item['question'])}[/]")
            options = item["options"]
            for idx, option in enumerate(options, start=1):
                description = f" [dim]- {escape(option['description'])}[/]" if option.get("description") else ""
                self.console.print(f"  {idx}. {escape(option['label'])}{description}")
            hint = "numbers separated by commas" if item.get("multiSelect") else "a number"
            raw = (await self.read_line(f"({hint} or your own answer) ")).strip()

            picked: list[str] = []
            for token in raw.replace(" ", "").split(","):
                if token.isdigit() and 1 <= int(token) <= len(options):
                    picked.append(options[int(token) - 1]["label"])
            if picked and not item.get("multiSelect"):
                picked = picked[:1]
            answers[item["question"]] = ", ".join(picked) if picked else raw
        return answers

    # Output

    def print_welcome(self, session_id: str, mode: str, resumed: bool = False) -> None:
        """Print welcome message."""
        self.console.print("[bold]=== Deckhand ===[/]")
        verb = "Resumed" if resumed else "Started"
        self.console.print(f"{verb} session [cyan]{escape(session_id)}[/] in [magenta]{mode}[/] mode.")
        self.console.print("Type '/help' for commands. Ctrl+C cancels a running turn.\n")

    def print_help(self) -> None:
        """Print help message."""
        self.console.print(
            """
Commands:
  /help              - Show this help message
  /mode [name]       - Cycle normal -> plan -> apply, or switch to a named mode
  /yolo              - Toggle unrestricted mode (no permission prompts)
  /compact           - Summarise older history now
  /sessions          - List saved sessions
  /resume <id>       - Load a saved session
  /new               - Start a new session
  /save              - Save the session now
  /exit, /quit       - Exit
""",
            markup=False,
        )

    def print_streaming(self, chunk: str) -> None:
        """Print streaming response chunk."""
        self._streaming = True
        self.console.print(chunk, end="", markup=False, soft_wrap=True)

    def end_stream(self) -> None:
        """Finish the current streamed line, if any."""
        if self._streaming:
            self.console.print()
            self._streaming = False

    def print_tool_result(self, tool_name: str, arguments: dict[str, Any], output: str, is_error: bool) -> None:
        """Print a short preview of a tool result."""
        self.end_stream()
        preview = output.strip().splitlines()
        first = preview[0] if preview else ""
        if len(first) > 160:
            first = first[:160] + "..."
        more = f" [dim](+{len(preview) - 1} lines)[/]" if len(preview) > 1 else ""
        style = "red" if is_error else "green"
        self.console.print(f"[{style}]● {escape(tool_name)}[/] {escape(first)}{more}")

    def set_runtime_status(self, status: str) -> None:
        log.debug("Runtime status", status=status)

    def print_error(self, error: str) -> None:
        """Print an error message."""
        self.end_stream()
        self.console.print(f"[bold red]Error:[/] {escape(error)}")

    def print_warning(self, warning: str) -> None:
        """Print a warning message."""
        self.end_stream()
        self.console.print(f"[yellow]Warning:[/] {escape(warning)}")

    def print_info(self, message: str) -> None:
        self.end_stream()
        self.console.print(f"[dim]{escape(message)}[/]")

    def print_sessions(self, sessions: list[SessionSummary]) -> None:
        """Render a table of stored sessions."""
        if not sessions:
            self.console.print("No saved sessions.")
            return
        table = Table(show_header=True, header_style="bold")
        table.add_column("ID")
        table.add_column("Updated")
        table.add_column("Mode")
        table.add_column("Turns", justify="right")
        table.add_column("Title")
        for item in sessions:
            table.add_row(
                item.id,
                item.updated_at[:19].replace("T", " "),
                item.mode.value,
                str(item.turn_count),
                escape(item.title or ""),
            )
        self.console.print(table)

    def handle_special_command(self, cmd: str) -> tuple[str, str] | None:
        """Map a slash command to (ACTION, argument). Plain text returns ("MESSAGE", text)."""
        cmd = cmd.strip()
        if not cmd.startswith("/"):
            return ("MESSAGE", cmd)

        parts = cmd.split(None, 1)
        command = parts[0].lower()
        args = parts[1].strip() if len(parts) > 1 else ""

        if command in ("/help", "/h", "/?"):
            self.print_help()
            return None
        actions = {
            "/mode": "MODE",
            "/yolo": "YOLO",
            "/compact": "COMPACT",
            "/sessions": "SESSIONS",
            "/resume": "RESUME",
            "/new": "NEW",
            "/save": "SAVE",
            "/exit": "EXIT",
            "/quit": "EXIT",
            "/q": "EXIT",
        }
        action = actions.get(command)
        if action is None:
            self.print_error(f"Unknown command: {command}")
            return None
        if action == "RESUME" and not args:
            self.print_error("Usage: /resume <session id>")
            return None
        return (action, args)


# Global UI instance
_ui: TerminalUI | None = None


def get_ui() -> TerminalUI:
    """Get the global UI instance."""
    global _ui
    if _ui is None:
        _ui = TerminalUI()
    return _ui


def set_ui(ui: TerminalUI | None) -> None:
    """Set the global UI instance."""
    global _ui
    _ui = ui
