"""Edit tool for exact string replacement inside a file."""

from typing import Any

from deckhand.logging import get_logger
from deckhand.tools.registry import Tool, ToolResult, resolve_path

log = get_logger(__name__)


class EditFileTool(Tool):
    """Replace text in an existing file."""

    name = "edit_file"
    description = (
        "Replace an exact string in a file. old_string must occur exactly once "
        "unless replace_all is true."
    )
    mutating = True
    parameters = {
        "type": "object",
        "properties": {
            "path": {
                "type": "string",
                "description": "Path to the file to edit",
            },
            "old_string": {
                "type": "string",
                "description": "Exact text to replace",
            },
            "new_string": {
                "type": "string",
                "description": "Replacement text",
            },
            "replace_all": {
                "type": "boolean",
                "description": "Replace every occurrence (default false)",
            },
        },
        "required": ["path", "old_string", "new_string"],
    }

    async def execute(
        self,
        path: str,
        old_string: str,
        new_string: str,
        replace_all: bool = False,
        **kwargs: Any,
    ) -> ToolResult:
        try:
            file_path = resolve_path(path, kwargs.get("_runtime_base_path"))
            if not file_path.is_file():
                return ToolResult(success=False, error=f"File not found: {path}")
            if not old_string:
                return ToolResult(success=False, error="old_string must not be empty")
            if old_string == new_string:
                return ToolResult(success=False, error="old_string and new_string are identical")

            original = file_path.read_text(encoding="utf-8")
            count = original.count(old_string)
            if count == 0:
                return ToolResult(success=False, error=f"old_string not found in {path}")
            if count > 1 and not replace_all:
                return ToolResult(
                    success=False,
                    error=f"old_string occurs {count} times in {path}; add context or set replace_all",
                )

            updated = original.replace(old_string, new_string, -1 if replace_all else 1)
            file_path.write_text(updated, encoding="utf-8")

            replaced = count if replace_all else 1
            return ToolResult(
                success=True,
                content=f"Replaced {replaced} occurrence(s) in {file_path}",
            )

        except (OSError, UnicodeDecodeError) as e:
            log.error("Edit failed", path=path, error=str(e))
            return ToolResult(success=False, error=str(e))
