class TaskloopError(Exception):
    """Base class for all exceptions in taskloop."""
    pass

class ConfigurationError(TaskloopError):
    """Raised when there is a configuration-related error."""
    pass

class PlanningError(TaskloopError):
    """Raised when a plan cannot be built or refined."""
    pass

class CompletionError(TaskloopError):
    """Raised when the completion service fails to answer a prompt."""
    pass

class CompletionTimeoutError(CompletionError):
    """Raised when a completion call exceeds its time budget."""
    pass

class ToolExecutionError(TaskloopError):
    """Raised when a tool call cannot be dispatched at all."""
    pass

class SecurityError(TaskloopError):
    """Raised when a security boundary is violated."""
    pass

class LoopError(TaskloopError):
    """Raised when an error occurs inside the decision loop."""
    pass
