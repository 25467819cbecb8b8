"""
Verifier Schemas

Third parties (employers, admissions offices) identify themselves before
verifying a certificate. Every verification is logged; client IPs that
hammer the verify path are blocked for a while.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


class Verifier(BaseModel):
    id: Optional[int] = None
    name: str
    email: str = Field(..., description="Unique, compared case-insensitively")
    institution: str
    website: str = ""
    created_at: datetime

    def to_public_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "email": self.email,
            "institution": self.institution,
            "website": self.website,
            "created_at": self.created_at.isoformat(),
        }


class VerificationOutcome(str, Enum):
    VALID = "valid"
    INVALID = "invalid"
    NOT_FOUND = "not_found"


class VerificationLogEntry(BaseModel):
    id: Optional[int] = None
    verifier_id: int
    cert_hash: str
    ip_address: str
    user_agent: Optional[str] = None
    outcome: VerificationOutcome
    verified_at: datetime

    def to_public_dict(self, verifier: Optional[Verifier] = None) -> dict[str, Any]:
        data = {
            "id": self.id,
            "verifier_id": self.verifier_id,
            "cert_hash": self.cert_hash,
            "ip_address": self.ip_address,
            "user_agent": self.user_agent,
            "outcome": self.outcome.value,
            "verified_at": self.verified_at.isoformat(),
        }
        if verifier is not None:
            data["verifier"] = verifier.to_public_dict()
        return data


# Recorded as blocked_by for automatic blocks
SYSTEM_ACTOR = "system"


class BlockedVerifier(BaseModel):
    ip_address: str
    blocked_until: datetime
    reason: str
    blocked_by: str
    created_at: datetime

    def is_active(self, now: datetime) -> bool:
        return now < self.blocked_until

    def to_public_dict(self) -> dict[str, Any]:
        return {
            "ip_address": self.ip_address,
            "blocked_until": self.blocked_until.isoformat(),
            "reason": self.reason,
            "blocked_by": self.blocked_by,
            "created_at": self.created_at.isoformat(),
        }
