"""Custom exceptions for Switchback."""


class SwitchbackError(Exception):
    """Base exception for Switchback."""

    pass


class ConfigurationError(SwitchbackError):
    """Configuration-related errors."""

    pass


class BackendError(SwitchbackError):
    """Backend-related errors."""

    pass


class BackendNotFoundError(BackendError):
    """Backend id is not registered."""

    def __init__(self, backend_id: str):
        super().__init__(f"Backend not found: {backend_id}")
        self.backend_id = backend_id


class BackendUnavailableError(BackendError):
    """Backend probe reported it cannot be used."""

    def __init__(self, backend_id: str, reason: str | None = None):
        super().__init__(f"Backend not available: {backend_id} ({reason or 'unknown reason'})")
        self.backend_id = backend_id
        self.reason = reason


class NoBackendAvailableError(BackendError):
    """No configured backend probed available."""

    def __init__(self, message: str | None = None):
        super().__init__(
            message
            or "No LLM backend available. Configure an API key or start a local LLM server."
        )


class BackendAPIError(BackendError):
    """Backend API errors (rate limit, overload, auth, etc.)."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        retryable: bool = False,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class BackendResponseError(BackendError):
    """Backend returned output that could not be interpreted."""

    pass


class ToolError(SwitchbackError):
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


class AgentError(SwitchbackError):
    """Agent loop errors."""

    pass


class MaxIterationsError(AgentError):
    """Turn ended without a tool-free response."""

    def __init__(self, max_iterations: int):
        super().__init__(
            f"Maximum iterations reached ({max_iterations}). The agent may be stuck in a loop."
        )
        self.max_iterations = max_iterations


class ConfirmationError(AgentError):
    """Unknown or already-resolved confirmation request."""

    def __init__(self, request_id: str):
        super().__init__(f"No pending confirmation request: {request_id}")
        self.request_id = request_id
