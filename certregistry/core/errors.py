"""
Error Taxonomy

Every failure the registry can surface derives from RegistryError.
The HTTP layer maps these onto status codes (see api/errors.py);
nothing below knows about HTTP.

    RegistryError
    ├── ValidationError            malformed input, rejected before the ledger
    │   ├── InvalidTransition      lifecycle rule violated (revoke a revoked cert)
    │   │   ├── RequestStateError  action request not in the required status
    │   │   └── DuplicateActionRequest
    │   ├── CertificateNotFound
    │   ├── AccountNotFound
    │   └── ActionRequestNotFound
    ├── AuthenticationError        no/invalid session token
    ├── AuthorizationError         not authorized / not admin
    ├── VerifierBlocked            client IP blocked from verifying
    ├── AuthError                  challenge-response failures
    │   ├── NoSuchChallenge
    │   ├── ExpiredChallenge
    │   ├── AlreadyConsumed
    │   └── SignatureMismatch
    ├── ConcurrentModificationError  ledger moved on since pre-validation
    ├── LedgerUnavailableError     timeout / stream interruption (retryable)
    ├── ConsistencyViolation       read model cannot absorb an event
    ├── IndexerBusy                indexer already running in another thread
    └── LedgerError                raised by LedgerClient implementations
        ├── SubmissionRejected
        └── LedgerTimeout
"""

from typing import Optional


class RegistryError(Exception):
    """Base exception for the certificate registry."""

    retryable: bool = False


class ValidationError(RegistryError):
    """Raised when input fails validation before any ledger interaction."""
    pass


class InvalidTransition(ValidationError):
    """Raised when a lifecycle transition is illegal from the current state."""
    pass


class CertificateNotFound(ValidationError):
    """Raised when a cert_hash or subject_id has no certificate."""
    pass


class AccountNotFound(ValidationError):
    """Raised when an address is not registered."""
    pass


class ActionRequestNotFound(ValidationError):
    pass


class RequestStateError(InvalidTransition):
    """Raised when an action request is not in the status an operation needs."""
    pass


class DuplicateActionRequest(InvalidTransition):
    """Raised when a certificate already has a pending or processing request."""
    pass


class AuthenticationError(RegistryError):
    """Raised when a session token is missing, invalid or expired."""
    pass


class AuthorizationError(RegistryError):
    """Raised when the caller is not authorized (or not admin)."""
    pass


class VerifierBlocked(RegistryError):
    """Raised when a client IP is blocked from the verification path."""

    def __init__(self, message: str, retry_after: int):
        super().__init__(message)
        self.retry_after = retry_after


class AuthError(RegistryError):
    """Base class for challenge-response login failures.

    None of these are retryable: the client must request a fresh challenge.
    """
    pass


class NoSuchChallenge(AuthError):
    pass


class ExpiredChallenge(AuthError):
    pass


class AlreadyConsumed(AuthError):
    pass


class SignatureMismatch(AuthError):
    pass


class ConcurrentModificationError(RegistryError):
    """
    Local pre-validation passed but the ledger rejected the submission
    because its own state changed in the meantime.

    Never retried automatically: retrying a stale version could double-issue.
    """

    def __init__(self, message: str, ledger_reason: Optional[str] = None):
        super().__init__(
            f"{message}. Refresh the certificate state and retry."
        )
        self.ledger_reason = ledger_reason


class LedgerUnavailableError(RegistryError):
    """Raised on submission timeout or stream interruption."""

    retryable = True


class ConsistencyViolation(RegistryError):
    """
    Raised when an event cannot be applied to the read model without
    corrupting it (conflicting duplicate, version gap, impossible state).
    """

    def __init__(self, message: str, cursor: Optional[int] = None):
        super().__init__(message)
        self.cursor = cursor


class LedgerError(RegistryError):
    """Base class for errors raised at the LedgerClient boundary."""
    pass


class SubmissionRejected(LedgerError):
    """The ledger refused the call (reverted)."""

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class LedgerTimeout(LedgerError):
    """The submission was not confirmed in time."""

    retryable = True


class IndexerBusy(RegistryError):
    """Raised when a second consumer tries to run the indexer concurrently."""

    retryable = True
