"""Error taxonomy shared by the stores, the workflow and the API layer."""

from typing import Optional


class TraceError(Exception):
    """Base class for every error the backend raises on purpose."""

    status_code = 500

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details


class ValidationError(TraceError):
    """Bad input the caller can correct."""

    status_code = 400


class InvalidTransitionError(TraceError):
    """A custody handoff that the workflow does not allow."""

    status_code = 400


class AuthenticationError(TraceError):
    """Wrong password, failed key decryption or a bad token."""

    status_code = 401


class PermissionDeniedError(TraceError):
    status_code = 403


class NotFoundError(TraceError):
    status_code = 404


class DuplicateUserError(TraceError):
    status_code = 409


class LedgerError(TraceError):
    """The external chain is unavailable, reverted the call or timed out.

    Never fatal to the primary database record.
    """

    status_code = 502

    def __init__(self, message: str, details: Optional[str] = None, tx_hash: Optional[str] = None):
        super().__init__(message, details)
        self.tx_hash = tx_hash


class PersistenceError(TraceError):
    status_code = 503
