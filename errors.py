class TransientError(RuntimeError):
    """Failure that is expected to go away on retry."""


class TaskTimeout(TransientError):
    pass


class NotificationError(TransientError):
    pass


class DataIntegrityError(ValueError):
    """A required field is missing or invalid; retrying cannot help."""


class StaleOccurrence(Exception):
    """The recurring transaction was advanced by another delivery."""
