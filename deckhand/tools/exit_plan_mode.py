"""Tool the model calls to present its plan and leave plan mode."""

from typing import Any

from deckhand.tools.registry import Tool, ToolResult


class ExitPlanModeTool(Tool):
    """Submit the plan for approval; approval switches to apply mode."""

    name = "exit_plan_mode"
    description = (
        "Present the finished implementation plan to the user. If the user approves, "
        "plan mode ends and file edits become available."
    )
    parameters = {
        "type": "object",
        "properties": {
            "plan_summary": {
                "type": "string",
                "description": "A concise summary of the implementation plan for the user to approve.",
            },
        },
        "required": ["plan_summary"],
    }

    async def execute(self, plan_summary: str, **kwargs: Any) -> ToolResult:
        summary = str(plan_summary or "").strip()
        if not summary:
            return ToolResult(success=False, error="plan_summary must not be empty")
        return ToolResult(
            success=True,
            content=f"Plan approved. Switching to apply mode; carry out the plan now.\n\n{summary}",
        )
