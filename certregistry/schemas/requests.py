"""
Certificate Action Request Schema

A request asks an admin to revoke or reactivate a certificate version.
Requests are local workflow state, not ledger events: only the action an
admin finally executes reaches the ledger.

Lifecycle:

    PENDING --take--> PROCESSING --complete--> COMPLETED
       ^                  |
       +-----release------+--reject--> REJECTED

A PENDING request can also be cancelled (deleted) by its requester.
At most one PENDING or PROCESSING request exists per certificate.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class CertificateAction(str, Enum):
    REVOKE = "revoke"
    REACTIVATE = "reactivate"


class RequestStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    REJECTED = "rejected"


OPEN_REQUEST_STATUSES = (RequestStatus.PENDING, RequestStatus.PROCESSING)


class ActionRequest(BaseModel):
    id: Optional[int] = Field(None, description="Assigned by the store on insert")
    cert_hash: str
    subject_id: str
    action: CertificateAction
    reason: str
    status: RequestStatus = RequestStatus.PENDING
    requested_by: str
    requested_by_name: str
    taken_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    completion_tx_id: Optional[str] = None
    requested_at: datetime
    updated_at: datetime

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_REQUEST_STATUSES

    def to_public_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "cert_hash": self.cert_hash,
            "subject_id": self.subject_id,
            "action": self.action.value,
            "reason": self.reason,
            "status": self.status.value,
            "requested_by": self.requested_by,
            "requested_by_name": self.requested_by_name,
            "taken_by": self.taken_by,
            "rejection_reason": self.rejection_reason,
            "completion_tx_id": self.completion_tx_id,
            "requested_at": self.requested_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
