"""
Audit Log Schema

Audit entries are immutable and append-only.
The same ledger transaction never produces two entries:
(ledger_tx_id, action, cert_hash) is the natural dedup key.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

from pydantic import BaseModel, Field


class AuditAction(str, Enum):
    ISSUED = "ISSUED"
    REVOKED = "REVOKED"
    REACTIVATED = "REACTIVATED"


class AuditLogEntry(BaseModel):
    """One certificate lifecycle transition as confirmed by the ledger."""
    cert_hash: str
    action: AuditAction
    actor_address: str
    timestamp: datetime
    ledger_tx_id: str
    sequence: int = Field(
        ...,
        ge=0,
        description="Ledger-assigned ordinal; breaks timestamp ties"
    )
    subject_id: str
    version: int
    reason: Optional[str] = None

    @property
    def dedup_key(self) -> tuple[str, str, str]:
        return (self.ledger_tx_id, self.action.value, self.cert_hash)

    @property
    def sort_key(self) -> tuple:
        return (self.timestamp, self.sequence, self.ledger_tx_id)

    def to_public_dict(self) -> dict[str, Any]:
        data = {
            "cert_hash": self.cert_hash,
            "action": self.action.value,
            "actor_address": self.actor_address,
            "timestamp": self.timestamp.isoformat(),
            "ledger_tx_id": self.ledger_tx_id,
            "sequence": self.sequence,
            "subject_id": self.subject_id,
            "version": self.version,
        }
        if self.reason is not None:
            data["reason"] = self.reason
        return data


T = TypeVar("T")


class PageMeta(BaseModel):
    current_page: int
    total_pages: int
    total_count: int
    has_more: bool


class Page(BaseModel, Generic[T]):
    """The {data, meta} envelope returned by every paginated query."""
    data: list[T]
    meta: PageMeta
