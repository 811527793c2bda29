"""Tool that lets the model ask the user structured multiple-choice questions."""

from typing import Any

from deckhand.logging import get_logger
from deckhand.tools.registry import Tool, ToolResult, maybe_await

log = get_logger(__name__)

MAX_QUESTIONS = 4


class AskUserQuestionTool(Tool):
    """Ask the user to choose between options."""

    name = "ask_user_question"
    description = (
        "Ask the user 1-4 multiple-choice questions when requirements are ambiguous. "
        "The user may also answer in free text."
    )
    # Waits on a human
    timeout_seconds = None
    parameters = {
        "type": "object",
        "properties": {
            "questions": {
                "type": "array",
                "minItems": 1,
                "maxItems": MAX_QUESTIONS,
                "description": "Questions to ask the user (1-4 questions)",
                "items": {
                    "type": "object",
                    "properties": {
                        "question": {
                            "type": "string",
                            "description": "The complete question to ask the user.",
                        },
                        "header": {
                            "type": "string",
                            "description": "Very short label for the question (max 12 chars).",
                        },
                        "options": {
                            "type": "array",
                            "minItems": 2,
                            "maxItems": 4,
                            "items": {
                                "type": "object",
                                "properties": {
                                    "label": {"type": "string", "description": "Display text (1-5 words)."},
                                    "description": {"type": "string", "description": "Explanation of this option."},
                                },
                                "required": ["label"],
                            },
                        },
                        "multiSelect": {
                            "type": "boolean",
                            "description": "Allow multiple selections.",
                        },
                    },
                    "required": ["question", "options"],
                },
            },
        },
        "required": ["questions"],
    }

    @staticmethod
    def _normalize(questions: Any) -> list[dict[str, Any]]:
        if not isinstance(questions, list) or not questions:
            raise ValueError("questions must be a non-empty array")
        if len(questions) > MAX_QUESTIONS:
            raise ValueError(f"at most {MAX_QUESTIONS} questions can be asked at once")
        normalized: list[dict[str, Any]] = []
        for idx, item in enumerate(questions, start=1):
            if not isinstance(item, dict) or not str(item.get("question") or "").strip():
                raise ValueError(f"question {idx} is missing its text")
            options = [
                {
                    "label": str(option.get("label") or "").strip(),
                    "description": str(option.get("description") or "").strip(),
                }
                for option in item.get("options") or []
                if isinstance(option, dict) and str(option.get("label") or "").strip()
            ]
            if not options:
                raise ValueError(f"question {idx} has no options")
            normalized.append({
                "question": str(item["question"]).strip(),
                "header": str(item.get("header") or "").strip()[:12],
                "options": options,
                "multiSelect": bool(item.get("multiSelect", False)),
            })
        return normalized

    async def execute(self, questions: list[dict[str, Any]], **kwargs: Any) -> ToolResult:
        try:
            normalized = self._normalize(questions)
        except ValueError as e:
            return ToolResult(success=False, error=str(e))

        callback = kwargs.get("_question_callback")
        if callback is None:
            return ToolResult(success=False, error="No interactive user is available to answer questions")

        answers = await maybe_await(callback(normalized))
        if not isinstance(answers, dict):
            return ToolResult(success=False, error="Question prompt returned no answers")

        lines = ["User answers:"]
        for item in normalized:
            answer = str(answers.get(item["question"]) or "").strip() or "(no answer)"
            lines.append(f"- {item['question']}\n  {answer}")
        log.info("User answered questions", count=len(normalized))
        return ToolResult(success=True, content="\n".join(lines))
