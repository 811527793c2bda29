"""Write tool for creating or overwriting files."""

from typing import Any

from deckhand.logging import get_logger
from deckhand.tools.registry import Tool, ToolResult, resolve_path

log = get_logger(__name__)


class WriteFileTool(Tool):
    """Write content to files."""

    name = "write_file"
    description = "Create a file or overwrite it completely with new content."
    mutating = True
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Path to the file to write",
            },
            "content": {
                "type": "string",
                "description": "Full content of the file",
            },
        },
        "required": ["path", "content"],
    }

    async def execute(self, path: str, content: str, **kwargs: Any) -> ToolResult:
        """Write content to a file.

        Args:
            path: Path to file
            content: Content to write

        Returns:
            ToolResult with status
        """
        try:
            file_path = resolve_path(path, kwargs.get("_runtime_base_path"))
            if file_path.is_dir():
                return ToolResult(success=False, error=f"Is a directory: {path}")

            existed = file_path.exists()
            file_path.parent.mkdir(parents=True, exist_ok=True)
            file_path.write_text(content, encoding="utf-8")

            verb = "Overwrote" if existed else "Created"
            return ToolResult(
                success=True,
                content=f"{verb} {file_path} ({len(content)} chars)",
            )

        except OSError as e:
            log.error("Write failed", path=path, error=str(e))
            return ToolResult(success=False, error=str(e))
