"""Shell tool for executing commands."""

import asyncio
import os
import signal
from typing import Any

from deckhand.config import get_config
from deckhand.logging import get_logger
from deckhand.tools.registry import Tool, ToolResult

log = get_logger(__name__)


async def kill_process_group(process: asyncio.subprocess.Process) -> None:
    """Kill *process* and everything it spawned, then reap it."""
    if process.returncode is None:
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass
        except PermissionError:
            process.kill()
    await process.wait()


class BashTool(Tool):
    """Execute shell commands."""

    name = "bash"
    description = (
        "Run a shell command in the working directory and return its combined output "
        "and exit code."
    )
    mutating = True
    parameters = {
        "type": "object",
        "properties": {
            "command": {
                "type": "string",
                "description": "The shell command to execute",
            },
            "timeout": {
                "type": "number",
                "description": "Timeout in seconds (optional, default from config)",
            },
        },
        "required": ["command"],
    }

    def __init__(self):
        self.config = get_config()
        # The registry timeout sits above the tool's own deadline
        self.timeout_seconds = float(self.config.tools.bash.timeout) + 5.0

    async def execute(self, command: str, timeout: float | None = None, **kwargs: Any) -> ToolResult:
        """Execute a shell command.

        Args:
            command: Shell command to execute
            timeout: Optional timeout override

        Returns:
            ToolResult with command output
        """
        command = str(command or "").strip()
        if not command:
            return ToolResult(success=False, error="Command is empty")

        if timeout is None:
            timeout = self.config.tools.bash.timeout
        timeout = max(1.0, float(timeout))

        abort_event = kwargs.get("_abort_event")
        if isinstance(abort_event, asyncio.Event) and abort_event.is_set():
            return ToolResult(success=False, error="Command aborted")

        cwd = kwargs.get("_runtime_base_path")

        try:
            log.info("Executing shell command", command=command, timeout=timeout)

            # Own process group so children die with the shell
            process = await asyncio.create_subprocess_shell(
                command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(cwd) if cwd else None,
                env=os.environ.copy(),
                start_new_session=True,
            )

            communicate_task = asyncio.create_task(process.communicate())
            abort_wait_task: asyncio.Task[bool] | None = None
            if isinstance(abort_event, asyncio.Event):
                abort_wait_task = asyncio.create_task(abort_event.wait())
            try:
                wait_tasks: set[asyncio.Task[Any]] = {communicate_task}
                if abort_wait_task is not None:
                    wait_tasks.add(abort_wait_task)
                done, _ = await asyncio.wait(
                    wait_tasks,
                    timeout=timeout,
                    return_when=asyncio.FIRST_COMPLETED,
                )

                if communicate_task in done:
                    stdout, stderr = await communicate_task
                else:
                    await kill_process_group(process)
                    communicate_task.cancel()
                    try:
                        await communicate_task
                    except asyncio.CancelledError:
                        pass
                    if abort_wait_task is not None and abort_wait_task in done:
                        log.info("Shell command aborted", command=command)
                        return ToolResult(success=False, error="Command aborted")
                    label = int(timeout) if timeout.is_integer() else timeout
                    return ToolResult(
                        success=False,
                        error=f"Command timed out after {label}s",
                    )
            except asyncio.CancelledError:
                await kill_process_group(process)
                communicate_task.cancel()
                raise
            finally:
                if abort_wait_task is not None and not abort_wait_task.done():
                    abort_wait_task.cancel()
                    try:
                        await abort_wait_task
                    except asyncio.CancelledError:
                        pass

            stdout_text = stdout.decode("utf-8", errors="replace").rstrip()
            stderr_text = stderr.decode("utf-8", errors="replace").rstrip()

            output = stdout_text
            if stderr_text:
                output += f"\n[stderr]\n{stderr_text}" if output else f"[stderr]\n{stderr_text}"

            max_length = self.config.tools.bash.max_output_chars
            if len(output) > max_length:
                output = output[:max_length] + f"\n... [truncated, {len(output)} total chars]"

            output = output or "[no output]"
            if process.returncode != 0:
                return ToolResult(
                    success=False,
                    content=output,
                    error=f"Command exited with status {process.returncode}",
                )
            return ToolResult(success=True, content=output)

        except OSError as e:
            log.error("Shell command failed", command=command, error=str(e))
            return ToolResult(
                success=False,
                error=str(e),
            )
