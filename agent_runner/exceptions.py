"""Custom exceptions for the agent runner."""


class AgentRunnerError(Exception):
    """Base exception for the agent runner."""

    pass


class ConfigurationError(AgentRunnerError):
    """Configuration-related errors."""

    pass


class SessionError(AgentRunnerError):
    """Session storage errors."""

    pass


class SessionNotFoundError(SessionError):
    """Session directory exists but its metadata cannot be read."""

    def __init__(self, session_id: str):
        super().__init__(f"Session not found: {session_id}")
        self.session_id = session_id


class McpError(AgentRunnerError):
    """MCP client errors."""

    pass


class McpNotConnectedError(McpError):
    """Request issued while no server process is attached."""

    def __init__(self, message: str = "MCP client not connected"):
        super().__init__(message)


class McpTimeoutError(McpError):
    """MCP request did not receive a reply in time."""

    def __init__(self, method: str, timeout_ms: int):
        super().__init__(f"MCP request timeout: {method}")
        self.method = method
        self.timeout_ms = timeout_ms


class McpProcessError(McpError):
    """MCP server process exited, failed, or the client was closed."""

    pass


class McpRequestError(McpError):
    """MCP server answered with a JSON-RPC error object."""

    def __init__(self, message: str, code: int | None = None, data: object = None):
        super().__init__(message)
        self.code = code
        self.data = data
