"""Tools package for Deckhand."""

from deckhand.config import Config, get_config
from deckhand.logging import get_logger
from deckhand.tools.registry import (
    Tool,
    ToolRegistry,
    ToolResult,
)
from deckhand.tools.ask_user_question import AskUserQuestionTool
from deckhand.tools.bash import BashTool
from deckhand.tools.edit_file import EditFileTool
from deckhand.tools.exit_plan_mode import ExitPlanModeTool
from deckhand.tools.glob import GlobTool
from deckhand.tools.grep import GrepTool
from deckhand.tools.read_file import ReadFileTool
from deckhand.tools.web_fetch import WebFetchTool
from deckhand.tools.write_file import WriteFileTool

log = get_logger(__name__)

TOOL_CLASSES: dict[str, type[Tool]] = {
    tool.name: tool
    for tool in (
        ReadFileTool,
        WriteFileTool,
        EditFileTool,
        GlobTool,
        GrepTool,
        BashTool,
        WebFetchTool,
        AskUserQuestionTool,
        ExitPlanModeTool,
    )
}


def build_registry(config: Config | None = None, base_path=None) -> ToolRegistry:
    """Register every enabled tool."""
    cfg = config or get_config()
    registry = ToolRegistry(base_path=base_path)
    for name in cfg.tools.enabled:
        tool_class = TOOL_CLASSES.get(name)
        if tool_class is None:
            log.warning("Unknown tool in config", tool=name)
            continue
        registry.register(tool_class())
    return registry


__all__ = [
    "Tool",
    "ToolRegistry",
    "ToolResult",
    "TOOL_CLASSES",
    "build_registry",
    "AskUserQuestionTool",
    "BashTool",
    "EditFileTool",
    "ExitPlanModeTool",
    "GlobTool",
    "GrepTool",
    "ReadFileTool",
    "WebFetchTool",
    "WriteFileTool",
]
