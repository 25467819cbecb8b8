"""
Canonical Account Schema

An account is a ledger-native identity (an EVM address).
Accounts are registered by an admin event and never deleted:
authorization history must stay auditable.
"""

from datetime import datetime

from pydantic import BaseModel, Field


class Account(BaseModel):
    """Projected account state."""
    address: str = Field(
        ...,
        description="Checksummed EVM address (unique)"
    )
    display_name: str
    email: str
    is_admin: bool = False
    is_authorized: bool = True
    registered_at: datetime
    registered_by: str | None = None
    last_cursor: int = 0

    def to_public_dict(self) -> dict:
        return {
            "address": self.address,
            "display_name": self.display_name,
            "email": self.email,
            "is_admin": self.is_admin,
            "is_authorized": self.is_authorized,
            "registered_at": self.registered_at.isoformat(),
        }
