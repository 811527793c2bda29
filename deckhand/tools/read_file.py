"""Read tool for reading file contents."""

from typing import Any

from deckhand.config import get_config
from deckhand.logging import get_logger
from deckhand.tools.registry import Tool, ToolResult, resolve_path

log = get_logger(__name__)


class ReadFileTool(Tool):
    """Read file contents."""

    name = "read_file"
    description = "Read a text file. Lines are numbered; use offset and limit for large files."
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Path to the file to read",
            },
            "offset": {
                "type": "integer",
                "description": "Line number to start reading from (1-indexed)",
            },
            "limit": {
                "type": "integer",
                "description": "Maximum number of lines to read",
            },
        },
        "required": ["path"],
    }

    async def execute(
        self,
        path: str,
        offset: int | None = None,
        limit: int | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        """Read a file.

        Args:
            path: Path to file
            offset: Optional first line (1-indexed)
            limit: Optional line limit

        Returns:
            ToolResult with numbered file contents
        """
        try:
            file_path = resolve_path(path, kwargs.get("_runtime_base_path"))

            if not file_path.exists():
                return ToolResult(success=False, error=f"File not found: {path}")
            if not file_path.is_file():
                return ToolResult(success=False, error=f"Not a file: {path}")

            file_size = file_path.stat().st_size
            max_size = get_config().tools.read.max_bytes
            if file_size > max_size and not (offset or limit):
                return ToolResult(
                    success=False,
                    error=f"File too large: {file_size} bytes (max {max_size}); pass offset/limit",
                )

            lines = file_path.read_text(encoding="utf-8", errors="replace").splitlines()
            total = len(lines)
            start = max(1, int(offset or 1))
            end = total if not limit else min(total, start - 1 + max(0, int(limit)))
            selected = lines[start - 1:end]

            width = len(str(end)) if selected else 1
            body = "\n".join(
                f"{number:>{width}}\t{line}" for number, line in enumerate(selected, start=start)
            )
            info = f"[{file_path} lines {start}-{start + len(selected) - 1} of {total}]"
            if not selected:
                info = f"[{file_path} no lines in range; file has {total}]"

            return ToolResult(success=True, content=f"{info}\n{body}" if body else info)

        except (OSError, ValueError) as e:
            log.error("Read failed", path=path, error=str(e))
            return ToolResult(success=False, error=str(e))
