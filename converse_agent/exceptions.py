"""Custom exceptions for converse-agent."""


class ConverseAgentError(Exception):
    """Base exception for converse-agent."""

    pass


class ConfigurationError(ConverseAgentError):
    """Configuration-related errors."""

    pass


class TransportError(ConverseAgentError):
    """Model stream transport broke (network, provider, HTTP status)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RequestAbortedError(TransportError):
    """Stream transport was aborted through its cancellation token."""

    def __init__(self, message: str = "Request was aborted"):
        super().__init__(message)


class ProtocolError(ConverseAgentError):
    """Malformed or out-of-order stream events."""

    pass


class ToolError(ConverseAgentError):
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


class GuardrailCheckError(ConverseAgentError):
    """Guardrail checker could not evaluate content."""

    def __init__(self, direction: str, message: str):
        super().__init__(f"Guardrail check ({direction}) failed: {message}")
        self.direction = direction


class RecursionLimitExceeded(ConverseAgentError):
    """Tool-use continuation exceeded the configured depth."""

    def __init__(self, limit: int):
        super().__init__(f"Tool-use recursion limit exceeded ({limit} rounds)")
        self.limit = limit


class PersistenceError(ConverseAgentError):
    """Message persistence failed."""

    pass


class SessionError(ConverseAgentError):
    """Session-related errors."""

    pass


class SessionNotFoundError(SessionError):
    """Session not found."""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class ConversationBusyError(SessionError):
    """A turn is already in flight for this conversation."""

    pass


class ContextError(ConverseAgentError):
    """Context window errors."""

    pass


class ContextOverflowError(ContextError):
    """Context window overflow."""

    def __init__(self, current_tokens: int, max_tokens: int):
        super().__init__(
            f"Context overflow: {current_tokens} > {max_tokens} tokens"
        )
        self.current_tokens = current_tokens
        self.max_tokens = max_tokens
