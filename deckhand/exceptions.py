"""Custom exceptions for Deckhand."""


class DeckhandError(Exception):
    """Base exception for Deckhand."""

    pass


class ConfigurationError(DeckhandError):
    """Configuration-related errors."""

    pass


class LLMError(DeckhandError):
    """LLM-related errors."""

    pass


class LLMAPIError(LLMError):
    """LLM API errors (rate limit, auth, transport, etc.)."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable

    @property
    def fatal(self) -> bool:
        """Authentication failures end the session rather than the turn."""
        return self.status_code in (401, 403)


class ToolError(DeckhandError):
    """Tool execution errors."""

    pass


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name


class SessionError(DeckhandError):
    """Session-related errors."""

    pass


class SessionNotFoundError(SessionError):
    """Session not found."""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class PersistenceError(SessionError):
    """Session could not be written to or read from disk."""

    def __init__(self, session_id: str, message: str):
        super().__init__(f"Session '{session_id}' persistence failed: {message}")
        self.session_id = session_id


class TurnCancelled(DeckhandError):
    """Raised internally when the active turn's abort token fires."""

    pass
