"""Task domain specific exceptions."""


class TaskError(Exception):
    """Base class for task related domain errors."""


class TaskNotFoundError(TaskError):
    """Raised when the requested task could not be found."""


class InvalidTaskError(TaskError):
    """Raised when a task definition is inconsistent with its type or target."""


class ScriptUnavailableError(TaskError):
    """Raised when the referenced script is missing or flagged invalid."""


class TaskNotRetryableError(TaskError):
    """Raised when a manual retry is requested for a task that may not be retried."""
