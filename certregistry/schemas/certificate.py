"""
Canonical Certificate Schema

A certificate is identified by (subject_id, version).
Its cert_hash is the external handle: a deterministic content hash,
globally unique, computed before submission and echoed by the ledger.

credential_value is fixed-point: stored as a scaled integer with an
implicit /100 (3.85 -> 385). Floats never enter the hashed payload.
"""

from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


CREDENTIAL_SCALE = 100


class CertificateStatus(str, Enum):
    """Lifecycle state of one certificate version."""
    ACTIVE = "active"
    REVOKED = "revoked"


def scale_credential_value(value: Decimal | str | int) -> int:
    """
    Convert a human credential value (e.g. "3.85") to its scaled integer.

    Raises ValueError for values with more than two decimal places,
    negative values, or anything that is not a number.
    """
    if isinstance(value, float):
        raise ValueError("credential_value must not be a float; use Decimal or str")
    try:
        dec = Decimal(str(value))
    except InvalidOperation as e:
        raise ValueError(f"credential_value is not a number: {value!r}") from e
    if not dec.is_finite():
        raise ValueError("credential_value must be finite")
    scaled = dec * CREDENTIAL_SCALE
    if scaled != scaled.to_integral_value():
        raise ValueError("credential_value supports at most two decimal places")
    if scaled < 0:
        raise ValueError("credential_value must not be negative")
    return int(scaled)


def unscale_credential_value(scaled: int) -> Decimal:
    """Scaled integer back to a Decimal with two places (385 -> 3.85)."""
    return (Decimal(scaled) / CREDENTIAL_SCALE).quantize(Decimal("0.01"))


class CertificateAttributes(BaseModel):
    """Caller-supplied content of a certificate version."""
    subject_name: str = Field(..., min_length=1, max_length=200)
    program: str = Field(..., min_length=1, max_length=200)
    credential_value: int = Field(
        ...,
        ge=0,
        description="Scaled integer (value * 100)"
    )
    issuing_authority: str = Field(..., min_length=1, max_length=200)


class Certificate(BaseModel):
    """
    Projected state of one certificate version.

    Built exclusively by the indexer from ledger events.
    """
    cert_hash: str
    subject_id: str
    version: int = Field(..., ge=1)
    subject_name: str
    program: str
    credential_value: int
    issuing_authority: str
    issuer_address: str
    issuance_time: datetime
    is_revoked: bool = False
    revocation_reason: Optional[str] = None
    issued_tx_id: Optional[str] = None
    last_cursor: int = 0

    @property
    def status(self) -> CertificateStatus:
        return CertificateStatus.REVOKED if self.is_revoked else CertificateStatus.ACTIVE

    @property
    def credential_display(self) -> Decimal:
        return unscale_credential_value(self.credential_value)

    def attributes(self) -> CertificateAttributes:
        return CertificateAttributes(
            subject_name=self.subject_name,
            program=self.program,
            credential_value=self.credential_value,
            issuing_authority=self.issuing_authority,
        )

    def to_public_dict(self) -> dict:
        """JSON-friendly view used by the HTTP layer."""
        return {
            "cert_hash": self.cert_hash,
            "subject_id": self.subject_id,
            "version": self.version,
            "subject_name": self.subject_name,
            "program": self.program,
            "credential_value": str(self.credential_display),
            "credential_value_scaled": self.credential_value,
            "issuing_authority": self.issuing_authority,
            "issuer_address": self.issuer_address,
            "issuance_time": self.issuance_time.isoformat(),
            "status": self.status.value,
            "is_revoked": self.is_revoked,
            "revocation_reason": self.revocation_reason,
        }
