"""Exceptions raised by the email queue."""


class MailQueueError(Exception):
    """Base exception for the email queue."""

    pass


class StorageError(MailQueueError):
    """Raised when the job store rejects or cannot perform an operation."""

    pass


class ProviderError(MailQueueError):
    """Raised when the email provider fails to accept a message."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ProviderNotConfiguredError(ProviderError):
    """Raised when provider credentials are missing."""

    pass
