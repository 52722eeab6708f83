"""
Exception taxonomy for the agent.

FormatError is recoverable (the agent re-queries the model), InterruptError is
a control-flow signal for cooperative cancellation, everything else is fatal
for the current loop.
"""


class AgentError(Exception):
    """Base class for agent errors"""
    pass


class FormatError(AgentError):
    """Model output could not be parsed into a thought and actions"""
    pass


class AgentRuntimeError(AgentError, RuntimeError):
    """Agent used before its model or toolbox was initialized"""
    pass


class ModelError(AgentError):
    """Model provider failure"""
    pass


class ContextWindowExceededError(ModelError):
    """Prompt no longer fits in the model context window"""
    pass


class CostLimitExceededError(AgentError):
    """Model call budget exhausted"""
    pass


class RetryError(ModelError):
    """Provider retries exhausted"""
    pass


class InterruptError(AgentError):
    """Raised when the stop flag is observed during a model call"""
    pass
