"""Error taxonomy for the tether engine.

Only ``IterationLimitExceeded``, an exhausted ``TransportError`` and
``CancellationError`` escape a run. Tool errors are turned into observations,
persistence errors are logged and the engine keeps going in memory.
"""

from __future__ import annotations


class TetherError(Exception):
    """Base class for every engine error."""


# ════════════════════════════════════════════════════════════
# TRANSPORT
# ════════════════════════════════════════════════════════════


class TransportError(TetherError):
    """Raised when the model endpoint fails (network, 4xx, 5xx)."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        body: str | None = None,
        retryable: bool = False,
    ):
        self.status_code = status_code
        self.body = body
        self.retryable = retryable
        super().__init__(message)


class RateLimitError(TransportError):
    """HTTP 429. ``retry_after`` is in seconds when the server sent one."""

    def __init__(
        self,
        message: str,
        retry_after: float | None = None,
        body: str | None = None,
    ):
        self.retry_after = retry_after
        super().__init__(message, status_code=429, body=body, retryable=True)


class CancellationError(TetherError):
    """The run was cancelled through its token. Terminal, but not a failure."""

    def __init__(self, reason: str | None = None):
        self.reason = reason
        super().__init__(f"Operation cancelled: {reason}" if reason else "Operation cancelled")


# ════════════════════════════════════════════════════════════
# TOOLS
# ════════════════════════════════════════════════════════════


class ToolError(TetherError):
    """Base for errors tied to a single tool call."""

    def __init__(self, message: str, tool_name: str | None = None):
        self.tool_name = tool_name
        super().__init__(message)


class ToolNotFoundError(ToolError):
    def __init__(self, tool_name: str):
        super().__init__(f"Error: unknown tool '{tool_name}'", tool_name=tool_name)


class MalformedToolCallError(ToolError):
    """Tool-call arguments could not be parsed or failed schema validation."""

    def __init__(self, message: str, tool_name: str | None = None, raw: str | None = None):
        self.raw = raw
        super().__init__(message, tool_name=tool_name)


class ToolExecutionError(ToolError):
    """A tool handler raised."""


class ToolTimeoutError(ToolError):
    def __init__(self, tool_name: str, timeout: float):
        self.timeout = timeout
        super().__init__(
            f"Tool '{tool_name}' timed out after {timeout:g}s", tool_name=tool_name
        )


# ════════════════════════════════════════════════════════════
# LOOP / STORAGE / USAGE
# ════════════════════════════════════════════════════════════


class IterationLimitExceeded(TetherError):
    def __init__(self, max_iterations: int):
        self.max_iterations = max_iterations
        super().__init__(f"Maximum iterations ({max_iterations}) reached")


class PersistenceError(TetherError):
    """A persistence backend failed to read or write."""


class AgentBusyError(TetherError):
    """A second run was started on an agent that already has one in flight."""


class DuplicateToolError(TetherError, ValueError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Tool '{name}' is already registered")
