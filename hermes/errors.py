"""Exception types shared by the storage, auth and upload layers.

Routes translate these into HTTP responses; see ``hermes.app``.
"""

from typing import Optional


class HermesError(Exception):
    """Base class for failures raised by the Hermes core."""

    status_code = 500


class NotFound(HermesError):
    """Raised when an identifier does not resolve to an upload."""

    status_code = 404


class InvalidInput(HermesError):
    """Raised for a missing form field or a malformed identifier."""

    status_code = 400


class InvalidFilename(InvalidInput):
    """Raised when an untrusted name cannot be reduced to a safe basename."""

    def __init__(self, untrusted: str, reason: str = "invalid filename") -> None:
        super().__init__(f"{reason}: {untrusted!r}")
        self.untrusted = untrusted
        self.reason = reason


class Unauthenticated(HermesError):
    """Raised when a write is attempted without an authenticated session."""

    status_code = 401


class CredentialFailure(HermesError):
    """Bad username or password.

    The subclasses only exist for server-side logs; clients always get the
    same generic "bad login" response.
    """

    status_code = 401


class UserNotFound(CredentialFailure):
    pass


class IncorrectPassword(CredentialFailure):
    pass


class StorageError(HermesError):
    """Opaque failure of the database or the uploads directory."""

    def __init__(self, operation: str, error: Optional[BaseException] = None) -> None:
        message = operation if error is None else f"{operation}: {error}"
        super().__init__(message)
        self.operation = operation
        self.error = error


class CredentialStoreCorrupt(StorageError):
    """Raised when a stored salt or hash cannot be decoded."""
