"""Glob tool for finding files by pattern."""

import asyncio
import glob
import os
from pathlib import Path
from typing import Any

from deckhand.logging import get_logger
from deckhand.tools.registry import Tool, ToolResult, resolve_path

log = get_logger(__name__)


class GlobTool(Tool):
    """Find files by pattern."""

    name = "glob"
    description = "Find files matching a glob pattern, newest first."
    parameters = {
        "type": "object",
        "properties": {
            "pattern": {
                "type": "string",
                "description": "Glob pattern (e.g., '**/*.py', 'src/**/*.ts')",
            },
            "root": {
                "type": "string",
                "description": "Root directory to search from (default: working directory)",
            },
            "limit": {
                "type": "integer",
                "description": "Maximum number of results (default: 100)",
            },
        },
        "required": ["pattern"],
    }

    @staticmethod
    def _find(pattern: str, root: Path, limit: int) -> tuple[list[str], int]:
        found = [
            path
            for path in glob.glob(pattern, root_dir=str(root), recursive=True)
            if not any(part.startswith(".") for part in Path(path).parts[:-1])
        ]

        def mtime(path: str) -> float:
            try:
                return os.path.getmtime(root / path)
            except OSError:
                return 0.0

        found.sort(key=mtime, reverse=True)
        return found[:limit], len(found)

    async def execute(
        self,
        pattern: str,
        root: str | None = None,
        limit: int = 100,
        **kwargs: Any,
    ) -> ToolResult:
        """Find files matching pattern.

        Args:
            pattern: Glob pattern
            root: Optional root directory
            limit: Max results

        Returns:
            ToolResult with matching files
        """
        try:
            base = resolve_path(root or ".", kwargs.get("_runtime_base_path"))
            if not base.is_dir():
                return ToolResult(success=False, error=f"Not a directory: {root}")

            loop = asyncio.get_running_loop()
            matches, total = await loop.run_in_executor(
                None,
                lambda: self._find(pattern, base, max(1, int(limit))),
            )

            if not matches:
                return ToolResult(
                    success=True,
                    content=f"No files found matching: {pattern}",
                )

            output = f"Found {total} file(s) under {base}"
            if total > len(matches):
                output += f", showing {len(matches)}"
            output += ":\n" + "\n".join(f"  {m}" for m in matches)

            return ToolResult(success=True, content=output)

        except (OSError, ValueError) as e:
            log.error("Glob failed", pattern=pattern, error=str(e))
            return ToolResult(success=False, error=str(e))
