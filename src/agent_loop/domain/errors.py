"""Domain exception hierarchy.

All domain-level errors inherit from AgentError.
This allows clean exception handling at adapter boundaries.

Propagation policy:
    - Failures local to one tool call are folded into the conversation as a
      tool message and never leave the turn loop.
    - Failures of the model stream abort the current run and reach its caller.
    - Running out of turns is not an error.
"""


class AgentError(Exception):
    """Base exception for all agent errors."""


class AlreadyRunningError(AgentError):
    """A run was requested while another run is active (rejected, no state change)."""


class AgentCancelledError(AgentError):
    """The active run was cancelled. Messages committed before the cancel are kept."""


class ModelBackendError(AgentError):
    """Model backend failed while tokenizing, prefilling or streaming."""


class ToolTransportError(AgentError):
    """Tool catalog could not be listed (agent continues with no tools)."""


class ToolInvocationError(AgentError):
    """A single tool call failed (recorded as a tool message)."""


class ConfigurationError(AgentError):
    """Agent configuration is invalid (max_turns, temperature out of range)."""


class InvalidServerConfigError(AgentError):
    """Tool server configuration is incomplete (missing command or url)."""


class ToolServerConnectionError(AgentError):
    """Connecting to a tool server failed."""
