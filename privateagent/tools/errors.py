"""Errors raised by system tools."""


class ToolExecutionError(Exception):
    """Raised when a tool's underlying operation fails."""

    pass


class UnknownToolError(ToolExecutionError):
    """Raised when dispatch is asked for a tool that does not exist."""

    pass
