# Core registry services
from .errors import (
    RegistryError,
    ValidationError,
    InvalidTransition,
    CertificateNotFound,
    AccountNotFound,
    AuthenticationError,
    AuthorizationError,
    AuthError,
    NoSuchChallenge,
    ExpiredChallenge,
    AlreadyConsumed,
    SignatureMismatch,
    ConcurrentModificationError,
    LedgerUnavailableError,
    ConsistencyViolation,
    LedgerError,
    SubmissionRejected,
    LedgerTimeout,
    IndexerBusy,
    ActionRequestNotFound,
    RequestStateError,
    DuplicateActionRequest,
    VerifierBlocked,
)
from .hasher import Hasher, CanonicalSerializationError
from .signature import SignatureVerifier, normalize_address

__all__ = [
    "RegistryError",
    "ValidationError",
    "InvalidTransition",
    "CertificateNotFound",
    "AccountNotFound",
    "AuthenticationError",
    "AuthorizationError",
    "AuthError",
    "NoSuchChallenge",
    "ExpiredChallenge",
    "AlreadyConsumed",
    "SignatureMismatch",
    "ConcurrentModificationError",
    "LedgerUnavailableError",
    "ConsistencyViolation",
    "LedgerError",
    "SubmissionRejected",
    "LedgerTimeout",
    "IndexerBusy",
    "ActionRequestNotFound",
    "RequestStateError",
    "DuplicateActionRequest",
    "VerifierBlocked",
    "Hasher",
    "CanonicalSerializationError",
    "SignatureVerifier",
    "normalize_address",
]
