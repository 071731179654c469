"""
Error types raised by the email queue.

A lost claim race is not an error: conditional updates that affect no row
report ``False`` / ``0`` instead of raising.
"""

from sqlalchemy.exc import DBAPIError, InterfaceError


class EmailQueueError(Exception):
    """Base class for all email queue errors."""


class QueueConnectionError(EmailQueueError):
    """The tenant's storage could not be resolved or reached."""

    def __init__(self, message: str, workspace_id: str | None = None):
        super().__init__(message)
        self.workspace_id = workspace_id


class PayloadMarshalError(EmailQueueError):
    """An entry payload could not be serialized; nothing was persisted."""

    def __init__(self, message: str, entry_id: str | None = None):
        super().__init__(message)
        self.entry_id = entry_id


class QueueStorageError(EmailQueueError):
    """Wrapped failure from the underlying store."""


class SendError(Exception):
    """
    Raised by email senders when a delivery attempt fails.

    Attributes:
        retryable: False when retrying can never succeed (e.g. hard bounce).
        provider_error: True when the failure is attributable to the provider
            and should count towards its circuit breaker.
    """

    def __init__(
        self,
        message: str,
        retryable: bool = True,
        provider_error: bool = True,
    ):
        super().__init__(message)
        self.retryable = retryable
        self.provider_error = provider_error


def storage_error(message: str, exc: Exception) -> EmailQueueError:
    """
    Classify a SQLAlchemy failure as a connection or storage error.

    Args:
        message: What the queue was doing when it failed.
        exc: The original exception.

    Returns:
        The typed error to raise (``raise storage_error(...) from exc``).
    """
    if isinstance(exc, InterfaceError) or (
        isinstance(exc, DBAPIError) and exc.connection_invalidated
    ):
        return QueueConnectionError(f"{message}: {exc}")
    return QueueStorageError(f"{message}: {exc}")
