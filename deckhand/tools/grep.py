"""Grep tool for searching file contents with a regular expression."""

import asyncio
import fnmatch
import os
import re
from pathlib import Path
from typing import Any

from deckhand.config import get_config
from deckhand.logging import get_logger
from deckhand.tools.registry import Tool, ToolResult, resolve_path

log = get_logger(__name__)

_SKIP_DIRS = {".git", ".hg", ".svn", "node_modules", "__pycache__", ".venv", "venv"}
_MAX_FILE_BYTES = 2_000_000


class GrepTool(Tool):
    """Search file contents."""

    name = "grep"
    description = "Search files for a regular expression and return matching lines as path:line:text."
    parameters = {
        "type": "object",
        "properties": {
            "pattern": {
                "type": "string",
                "description": "Python regular expression to search for",
            },
            "path": {
                "type": "string",
                "description": "File or directory to search (default: working directory)",
            },
            "glob": {
                "type": "string",
                "description": "Only search files whose name matches this glob (e.g. '*.py')",
            },
            "ignore_case": {
                "type": "boolean",
                "description": "Case-insensitive search",
            },
            "limit": {
                "type": "integer",
                "description": "Maximum number of matching lines",
            },
        },
        "required": ["pattern"],
    }

    @staticmethod
    def _iter_files(base: Path, name_glob: str | None):
        if base.is_file():
            yield base
            return
        for dirpath, dirnames, filenames in os.walk(base):
            dirnames[:] = sorted(d for d in dirnames if d not in _SKIP_DIRS and not d.startswith("."))
            for filename in sorted(filenames):
                if name_glob and not fnmatch.fnmatch(filename, name_glob):
                    continue
                yield Path(dirpath) / filename

    def _search(
        self,
        regex: re.Pattern[str],
        base: Path,
        name_glob: str | None,
        limit: int,
    ) -> tuple[list[str], bool]:
        hits: list[str] = []
        anchor = base if base.is_dir() else base.parent
        for file_path in self._iter_files(base, name_glob):
            try:
                if file_path.stat().st_size > _MAX_FILE_BYTES:
                    continue
                data = file_path.read_bytes()
            except OSError:
                continue
            if b"\0" in data[:8192]:
                continue
            text = data.decode("utf-8", errors="replace")
            relative = file_path.relative_to(anchor)
            for number, line in enumerate(text.splitlines(), start=1):
                if regex.search(line):
                    hits.append(f"{relative}:{number}:{line[:500]}")
                    if len(hits) >= limit:
                        return hits, True
        return hits, False

    async def execute(
        self,
        pattern: str,
        path: str | None = None,
        glob: str | None = None,
        ignore_case: bool = False,
        limit: int | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        try:
            regex = re.compile(pattern, re.IGNORECASE if ignore_case else 0)
        except re.error as e:
            return ToolResult(success=False, error=f"Invalid regular expression: {e}")

        try:
            base = resolve_path(path or ".", kwargs.get("_runtime_base_path"))
            if not base.exists():
                return ToolResult(success=False, error=f"Path not found: {path}")

            max_results = int(limit or get_config().tools.grep.max_results)
            loop = asyncio.get_running_loop()
            hits, truncated = await loop.run_in_executor(
                None,
                lambda: self._search(regex, base, glob, max(1, max_results)),
            )

            if not hits:
                return ToolResult(success=True, content=f"No matches for: {pattern}")
            output = "\n".join(hits)
            if truncated:
                output += f"\n... [stopped after {len(hits)} matches]"
            return ToolResult(success=True, content=output)

        except (OSError, ValueError) as e:
            log.error("Grep failed", pattern=pattern, error=str(e))
            return ToolResult(success=False, error=str(e))
