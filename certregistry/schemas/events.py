"""
Canonical Ledger Event Schema

The registry is event-sourced, not CRUD.
Nothing is "edited". Things happen on the ledger, and the read model
is a pure function of the ordered event stream.

Each event:
- Is produced by exactly one confirmed ledger transaction
- Carries a monotonically increasing cursor (the ledger sequence)
- Is delivered at-least-once; (tx_id, event_type, target) identifies it
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class LedgerAction(str, Enum):
    """
    Mutations a caller may submit to the ledger.
    You can add more later, never remove.
    """
    ISSUE = "ISSUE"
    REVOKE = "REVOKE"
    REACTIVATE = "REACTIVATE"

    REGISTER_USER = "REGISTER_USER"
    REVOKE_USER = "REVOKE_USER"
    RESTORE_USER = "RESTORE_USER"
    GRANT_ADMIN = "GRANT_ADMIN"
    REVOKE_ADMIN = "REVOKE_ADMIN"


class EventType(str, Enum):
    """
    Events the ledger emits once a transaction confirms.
    You can add more later, never remove.
    """
    # Certificate lifecycle
    ISSUED = "ISSUED"
    REVOKED = "REVOKED"
    REACTIVATED = "REACTIVATED"

    # Account authorization
    USER_REGISTERED = "USER_REGISTERED"
    USER_REVOKED = "USER_REVOKED"
    USER_RESTORED = "USER_RESTORED"
    ADMIN_GRANTED = "ADMIN_GRANTED"
    ADMIN_REVOKED = "ADMIN_REVOKED"


ACTION_EVENTS: dict[LedgerAction, EventType] = {
    LedgerAction.ISSUE: EventType.ISSUED,
    LedgerAction.REVOKE: EventType.REVOKED,
    LedgerAction.REACTIVATE: EventType.REACTIVATED,
    LedgerAction.REGISTER_USER: EventType.USER_REGISTERED,
    LedgerAction.REVOKE_USER: EventType.USER_REVOKED,
    LedgerAction.RESTORE_USER: EventType.USER_RESTORED,
    LedgerAction.GRANT_ADMIN: EventType.ADMIN_GRANTED,
    LedgerAction.REVOKE_ADMIN: EventType.ADMIN_REVOKED,
}

CERTIFICATE_EVENTS = frozenset({
    EventType.ISSUED,
    EventType.REVOKED,
    EventType.REACTIVATED,
})


# ============================================================
# Submission Payloads
# What a caller hands to LedgerClient.submit for each action
# ============================================================

class IssuePayload(BaseModel):
    """
    Payload for ISSUE.

    cert_hash is computed by the caller and re-derived by the ledger;
    the two must agree.
    """
    cert_hash: str
    subject_id: str = Field(..., min_length=1, max_length=128)
    version: int = Field(..., ge=1)
    subject_name: str
    program: str
    credential_value: int = Field(..., ge=0)
    issuing_authority: str
    issuer_address: str
    issuance_time: datetime


class RevokePayload(BaseModel):
    cert_hash: str
    reason: str = Field(..., min_length=1, max_length=500)


class ReactivatePayload(BaseModel):
    cert_hash: str


class RegisterUserPayload(BaseModel):
    address: str
    display_name: str = Field(..., min_length=1, max_length=200)
    email: str = Field(..., min_length=3, max_length=320)
    is_admin: bool = False


class AccountPayload(BaseModel):
    """Payload for REVOKE_USER, RESTORE_USER, GRANT_ADMIN, REVOKE_ADMIN."""
    address: str


ACTION_PAYLOADS: dict[LedgerAction, type[BaseModel]] = {
    LedgerAction.ISSUE: IssuePayload,
    LedgerAction.REVOKE: RevokePayload,
    LedgerAction.REACTIVATE: ReactivatePayload,
    LedgerAction.REGISTER_USER: RegisterUserPayload,
    LedgerAction.REVOKE_USER: AccountPayload,
    LedgerAction.RESTORE_USER: AccountPayload,
    LedgerAction.GRANT_ADMIN: AccountPayload,
    LedgerAction.REVOKE_ADMIN: AccountPayload,
}


# ============================================================
# Ledger Event Envelope
# ============================================================

class LedgerEvent(BaseModel):
    """
    One confirmed ledger event as seen by stream consumers.

    Certificate events carry cert_hash (plus subject_id/version);
    account events carry address.
    """
    cursor: int = Field(
        ...,
        ge=1,
        description="Ledger-assigned sequence number; monotonically increasing"
    )
    tx_id: str = Field(
        ...,
        description="Transaction hash that produced this event"
    )
    event_type: EventType
    actor_address: str
    timestamp: datetime = Field(
        ...,
        description="Block timestamp (timezone-aware)"
    )

    cert_hash: Optional[str] = None
    subject_id: Optional[str] = None
    version: Optional[int] = None
    address: Optional[str] = None

    payload: dict[str, Any] = Field(default_factory=dict)

    @property
    def target(self) -> str:
        """The entity this event is about: a cert_hash or an address."""
        if self.event_type in CERTIFICATE_EVENTS:
            return (self.cert_hash or "").lower()
        return (self.address or "").lower()

    @property
    def dedup_key(self) -> tuple[str, str, str]:
        return (self.tx_id, self.event_type.value, self.target)

    def content(self) -> dict[str, Any]:
        """Everything except the cursor; used to detect conflicting duplicates."""
        return self.model_dump(mode="python", exclude={"cursor"})

    class Config:
        json_schema_extra = {
            "example": {
                "cursor": 7,
                "tx_id": "0x9f2c...",
                "event_type": "REVOKED",
                "actor_address": "0x8ba1f109551bD432803012645Ac136ddd64DBA72",
                "timestamp": "2026-01-15T10:30:00Z",
                "cert_hash": "0x3b1e...",
                "subject_id": "S1",
                "version": 1,
                "payload": {"reason": "fraud"},
            }
        }


class TxReceipt(BaseModel):
    """Returned by LedgerClient.submit once the transaction is confirmed."""
    tx_id: str
    cursor: int
    action: LedgerAction
    confirmed_at: datetime
    cert_hash: Optional[str] = None
    address: Optional[str] = None
