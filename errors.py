"""Exceptions raised by the queue engine and its repository."""


class QueueError(Exception):
    """Base class for every error the queue reports to its callers."""

    status_code = 400

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(QueueError):
    """Input rejected before anything was written."""

    status_code = 422


class NotFoundError(QueueError):
    """The visit does not exist or is not in the state the caller expected."""

    status_code = 404


class AlreadyInProgressError(QueueError):
    """A patient is already with the doctor; complete them first."""

    status_code = 409


class PersistenceError(QueueError):
    """The store failed.  Nothing was changed unless ``retryable`` is False,
    in which case the write may or may not have been committed."""

    status_code = 503

    def __init__(self, message: str, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class RateLimitedError(QueueError):
    """Too many registrations from one contact in the configured window."""

    status_code = 429
