# Canonical Schemas for the Certificate Registry
# These define the contract between the ledger, the indexer and the read model.

from .account import Account
from .audit import AuditAction, AuditLogEntry, Page, PageMeta
from .certificate import (
    CREDENTIAL_SCALE,
    Certificate,
    CertificateAttributes,
    CertificateStatus,
    scale_credential_value,
    unscale_credential_value,
)
from .events import (
    ACTION_EVENTS,
    ACTION_PAYLOADS,
    CERTIFICATE_EVENTS,
    AccountPayload,
    EventType,
    IssuePayload,
    LedgerAction,
    LedgerEvent,
    ReactivatePayload,
    RegisterUserPayload,
    RevokePayload,
    TxReceipt,
)
from .requests import (
    OPEN_REQUEST_STATUSES,
    ActionRequest,
    CertificateAction,
    RequestStatus,
)
from .verifier import (
    SYSTEM_ACTOR,
    BlockedVerifier,
    VerificationLogEntry,
    VerificationOutcome,
    Verifier,
)

__all__ = [
    # Account
    "Account",
    # Audit
    "AuditAction",
    "AuditLogEntry",
    "Page",
    "PageMeta",
    # Certificate
    "CREDENTIAL_SCALE",
    "Certificate",
    "CertificateAttributes",
    "CertificateStatus",
    "scale_credential_value",
    "unscale_credential_value",
    # Events
    "ACTION_EVENTS",
    "ACTION_PAYLOADS",
    "CERTIFICATE_EVENTS",
    "AccountPayload",
    "EventType",
    "IssuePayload",
    "LedgerAction",
    "LedgerEvent",
    "ReactivatePayload",
    "RegisterUserPayload",
    "RevokePayload",
    "TxReceipt",
    # Action requests
    "OPEN_REQUEST_STATUSES",
    "ActionRequest",
    "CertificateAction",
    "RequestStatus",
    # Verifiers
    "SYSTEM_ACTOR",
    "BlockedVerifier",
    "VerificationLogEntry",
    "VerificationOutcome",
    "Verifier",
]
