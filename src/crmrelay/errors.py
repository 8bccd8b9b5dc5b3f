"""Error taxonomy for the relay.

Per-turn and per-tool-call errors are reported to the owning session only;
none of them is retried. ``ConfigurationError`` is the one fatal kind and is
raised during startup.
"""


class GatewayError(Exception):
    """Base class for every error raised by the relay."""


class ConfigurationError(GatewayError):
    """Malformed startup configuration (settings, credentials, tool catalog)."""


class ToolExecutionError(GatewayError):
    """A single tool call failed; reported as a tool_result with status error."""

    def __init__(self, message: str, tool_name: str | None = None) -> None:
        super().__init__(message)
        self.tool_name = tool_name


class ToolValidationError(ToolExecutionError):
    """Tool arguments are missing, malformed or not a JSON object."""


class UnknownToolError(ToolExecutionError):
    """Tool name is not in the dispatcher registry."""

    def __init__(self, tool_name: str) -> None:
        super().__init__(f"Unknown tool: {tool_name}", tool_name=tool_name)


class BackendError(ToolExecutionError):
    """The action-execution backend rejected or failed the call."""


class StreamError(GatewayError):
    """The completion provider call failed or its stream was interrupted."""


class SessionStoreError(GatewayError):
    """The session history backend could not be read or written."""


class OperationTimeoutError(GatewayError, TimeoutError):
    """An external call (provider or backend) exceeded its deadline."""

    def __init__(self, operation: str, timeout: float) -> None:
        super().__init__(f"{operation} timed out after {timeout:g}s")
        self.operation = operation
        self.timeout = timeout
