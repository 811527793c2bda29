"""Conversation session model."""

import itertools
import os
import time
from datetime import UTC, datetime
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from deckhand.modes import Mode

SUMMARY_PREFIX = "Summary of prior conversation:"
TITLE_MAX_CHARS = 60

_id_counter = itertools.count()


def _utcnow_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


def new_session_id() -> str:
    """Return an id unique within this process and over time."""
    return f"{int(time.time() * 1000)}-{os.getpid()}-{next(_id_counter)}"


class ToolCall(BaseModel):
    """A tool invocation requested by the model."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class _Turn(BaseModel):
    model_config = ConfigDict(frozen=True)

    timestamp: str = Field(default_factory=_utcnow_iso)


class UserMessage(_Turn):
    """Text typed by the user."""

    role: Literal["user"] = "user"
    content: str


class AssistantMessage(_Turn):
    """Model output, optionally requesting tool calls."""

    role: Literal["assistant"] = "assistant"
    content: str = ""
    tool_calls: list[ToolCall] = Field(default_factory=list)

    @property
    def is_summary(self) -> bool:
        return not self.tool_calls and self.content.startswith(SUMMARY_PREFIX)


class ToolResultMessage(_Turn):
    """Outcome of one tool call, real or synthetic."""

    role: Literal["tool"] = "tool"
    call_id: str
    tool_name: str
    content: str
    is_error: bool = False


class SystemNotice(_Turn):
    """Out-of-band notice such as a failed model request."""

    role: Literal["system"] = "system"
    content: str


Turn = Annotated[
    Union[UserMessage, AssistantMessage, ToolResultMessage, SystemNotice],
    Field(discriminator="role"),
]


class Session(BaseModel):
    """A conversation session."""

    id: str = Field(default_factory=new_session_id)
    title: str | None = None
    turns: list[Turn] = Field(default_factory=list)
    mode: Mode = Mode.NORMAL
    ephemeral_grants: list[str] = Field(default_factory=list, exclude=True)
    created_at: str = Field(default_factory=_utcnow_iso)
    updated_at: str = Field(default_factory=_utcnow_iso)
    model: str | None = None
    cwd: str | None = None

    def touch(self) -> None:
        self.updated_at = _utcnow_iso()

    def first_user_message(self) -> str | None:
        for turn in self.turns:
            if isinstance(turn, UserMessage):
                return turn.content
        return None


class SessionSummary(BaseModel):
    """Listing entry for a stored session."""

    id: str
    title: str | None = None
    created_at: str
    updated_at: str
    mode: Mode = Mode.NORMAL
    model: str | None = None
    cwd: str | None = None
    turn_count: int = 0

    @classmethod
    def of(cls, session: Session) -> "SessionSummary":
        return cls(
            id=session.id,
            title=session.title,
            created_at=session.created_at,
            updated_at=session.updated_at,
            mode=session.mode,
            model=session.model,
            cwd=session.cwd,
            turn_count=len(session.turns),
        )


def clip_title(text: str) -> str:
    """Single-line title from the first user message."""
    line = " ".join(str(text or "").split())
    if len(line) <= TITLE_MAX_CHARS:
        return line
    return line[: TITLE_MAX_CHARS - 3].rstrip() + "..."


__all__ = [
    "AssistantMessage",
    "Session",
    "SessionSummary",
    "SystemNotice",
    "ToolCall",
    "ToolResultMessage",
    "Turn",
    "UserMessage",
    "new_session_id",
]
