"""Status definitions and exceptions for FirstMillion.

This module provides:
    - Status: enumeration of possible application states
    - STATUS_MESSAGE: user-facing messages for each status
    - get_message: retrieve the message for a status
    - BaseStatusException: base exception carrying a Status
    - Specific exceptions (e.g., ValidationException) raised by the store, sync and auth layers
"""
import enum
import logging
from typing import Dict


class Status(enum.StrEnum):
    """Enumeration of application status codes."""
    UnknownStatus = enum.auto()
    Okay = enum.auto()

    # Config status
    SettingsNotFound = enum.auto()
    SettingsInvalid = enum.auto()

    # Authentication status
    ClientSecretNotFound = enum.auto()
    ClientSecretInvalid = enum.auto()
    CredsInvalid = enum.auto()
    NotAuthenticated = enum.auto()

    # Remote status
    RemoteNotConfigured = enum.auto()
    ServiceUnavailable = enum.auto()
    Timeout = enum.auto()

    # Local records
    RecordInvalid = enum.auto()
    RecordNotFound = enum.auto()
    StorageInvalid = enum.auto()


STATUS_MESSAGE: Dict[Status, str] = {
    Status.UnknownStatus: 'Unknown status. Please check the settings.',
    Status.Okay: 'Everything is okay.',

    Status.SettingsNotFound: 'Could not find the settings file.',
    Status.SettingsInvalid: 'The settings seem to be incomplete, or contain invalid values.',

    Status.ClientSecretNotFound: 'Could not find the google client secret. Have you set up a valid Google client secret?',
    Status.ClientSecretInvalid: 'Could not verify the client secret. Have you set up a valid Google client secret?',
    Status.CredsInvalid: 'Could not verify the credentials. Please sign in again to your Google account.',
    Status.NotAuthenticated: 'Authentication error. Working offline until you sign in again.',

    Status.RemoteNotConfigured: 'No remote spreadsheet is configured. Data is kept on this device only.',
    Status.ServiceUnavailable: 'The remote service is unavailable. Please check your connection.',
    Status.Timeout: 'The operation timed out.',

    Status.RecordInvalid: 'The record is missing required fields, or contains invalid values.',
    Status.RecordNotFound: 'The record could not be found.',
    Status.StorageInvalid: 'The local storage is invalid. Try resetting the local data.',
}


def get_message(status: Status) -> str:
    """
    Get the message for a given status.

    Args:
        status (Status): The status enum.

    Returns:
        str: The message associated with the status.
    """
    return STATUS_MESSAGE.get(status, 'Unknown status')


class BaseStatusException(Exception):
    """Base exception for status-based errors in FirstMillion.

    Attributes:
        status (Status): Status code associated with this error.
        status_message (str): User-facing message for the status.

    Args:
        message (str): Optional additional context for the error.
    """
    status = Status.UnknownStatus

    def __init__(self, message: str = None):
        self.status_message = get_message(self.status)
        self.detail = message or ''
        exception_message = f'{self.status_message} {message}' if message else self.status_message
        super().__init__(exception_message)

        logging.error(exception_message)

        from ..core.signals import signals
        signals.error.emit(message or self.status_message)


class UnknownException(BaseStatusException):
    """Exception for an unknown error during status processing."""
    pass


class SettingsNotFoundException(BaseStatusException):
    """Exception raised when the settings file cannot be found."""
    status = Status.SettingsNotFound


class SettingsInvalidException(BaseStatusException):
    """Exception raised when the settings file is invalid or malformed."""
    status = Status.SettingsInvalid


class ClientSecretNotFoundException(BaseStatusException):
    """Exception raised when the Google OAuth client secret file cannot be found."""
    status = Status.ClientSecretNotFound


class ClientSecretInvalidException(BaseStatusException):
    """Exception raised when the Google OAuth client secret is invalid or malformed."""
    status = Status.ClientSecretInvalid


class CredsInvalidException(BaseStatusException):
    """Exception raised when stored Google credentials are invalid or expired."""
    status = Status.CredsInvalid


class AuthenticationException(BaseStatusException):
    """Exception raised when the session is invalid or the user is not signed in."""
    status = Status.NotAuthenticated


class RemoteNotConfiguredException(BaseStatusException):
    """Exception raised when no remote spreadsheet id is configured."""
    status = Status.RemoteNotConfigured


class NetworkException(BaseStatusException):
    """Exception raised when the remote service cannot be reached."""
    status = Status.ServiceUnavailable


class TimeoutException(BaseStatusException):
    """Exception raised when an asynchronous operation does not finish in time."""
    status = Status.Timeout


class ValidationException(BaseStatusException):
    """Exception raised when a record is rejected before reaching the store."""
    status = Status.RecordInvalid


class RecordNotFoundException(BaseStatusException):
    """Exception raised when a caller requires a record that does not exist."""
    status = Status.RecordNotFound


class StorageInvalidException(BaseStatusException):
    """Exception raised when the local storage database is invalid or corrupted."""
    status = Status.StorageInvalid
