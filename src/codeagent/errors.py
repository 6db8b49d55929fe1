"""Exception types raised across the agent."""


class CodeAgentError(Exception):
    """Base class for all agent errors."""


class ModelTransportError(CodeAgentError):
    """The model endpoint could not be reached, timed out, or returned non-2xx."""


class SessionBusyError(CodeAgentError):
    """A new message was sent while a turn is still running."""


class ToolRegistryError(CodeAgentError):
    """Handler table does not match the closed tool name set."""


class EditorUnavailableError(CodeAgentError):
    """The editor capability needed by a tool is not provided."""


class ReviewError(CodeAgentError):
    """A code review or proposed change could not be produced."""
