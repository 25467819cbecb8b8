"""
Projection Rules - Ledger Events to Read Model Rows

Projections are caches: the source of truth is always the ledger.
Every rule here is a pure function of (current rows, event); replaying the
same ordered stream always produces the same rows.

ARCHITECTURE:
- Projector receives one event plus an open ApplyContext
- Checks the event against current state
- Writes the projected rows and the audit entry into the context
- Never commits; the AuditIndexer owns the transaction

A contradiction (version gap, revoking a revoked certificate, unknown
account) raises ConsistencyViolation. Skipping would hide corruption.
"""

import logging
from typing import Callable

from ..core.errors import ConsistencyViolation
from ..core.hasher import Hasher
from ..schemas import (
    Account,
    AuditAction,
    AuditLogEntry,
    Certificate,
    CertificateAttributes,
    EventType,
    IssuePayload,
    LedgerEvent,
    RegisterUserPayload,
)
from .store import ApplyContext

logger = logging.getLogger(__name__)


class Projector:
    """
    Maps each EventType to the handler that projects it.

    Usage:
        projector = Projector()
        with store.begin_apply() as ctx:
            projector.apply(ctx, event)
            ctx.commit()
    """

    def __init__(self):
        self._handlers: dict[EventType, Callable[[ApplyContext, LedgerEvent], None]] = {
            EventType.ISSUED: self._handle_issued,
            EventType.REVOKED: self._handle_revoked,
            EventType.REACTIVATED: self._handle_reactivated,
            EventType.USER_REGISTERED: self._handle_user_registered,
            EventType.USER_REVOKED: self._handle_user_revoked,
            EventType.USER_RESTORED: self._handle_user_restored,
            EventType.ADMIN_GRANTED: self._handle_admin_granted,
            EventType.ADMIN_REVOKED: self._handle_admin_revoked,
        }

    def apply(self, ctx: ApplyContext, event: LedgerEvent) -> None:
        handler = self._handlers.get(event.event_type)
        if handler is None:
            raise ConsistencyViolation(
                f"No projection for event type {event.event_type}", cursor=event.cursor
            )
        handler(ctx, event)

    # ================================================================
    # CERTIFICATE EVENTS
    # ================================================================

    def _handle_issued(self, ctx: ApplyContext, event: LedgerEvent) -> None:
        try:
            payload = IssuePayload.model_validate(event.payload)
        except ValueError as e:
            raise ConsistencyViolation(
                f"Malformed ISSUED payload: {e}", cursor=event.cursor
            ) from e

        cert_hash = (event.cert_hash or payload.cert_hash).lower()
        if payload.cert_hash.lower() != cert_hash:
            raise ConsistencyViolation(
                f"ISSUED event hash {cert_hash} disagrees with payload hash "
                f"{payload.cert_hash}",
                cursor=event.cursor,
            )

        if ctx.get_certificate(cert_hash) is not None:
            raise ConsistencyViolation(
                f"Certificate {cert_hash} issued twice by different transactions",
                cursor=event.cursor,
            )

        expected_version = ctx.get_latest_version(payload.subject_id) + 1
        if payload.version != expected_version:
            raise ConsistencyViolation(
                f"Version gap for subject {payload.subject_id}: "
                f"expected v{expected_version}, ledger says v{payload.version}",
                cursor=event.cursor,
            )

        attributes = CertificateAttributes(
            subject_name=payload.subject_name,
            program=payload.program,
            credential_value=payload.credential_value,
            issuing_authority=payload.issuing_authority,
        )
        if not Hasher.verify_certificate_hash(
            cert_hash,
            payload.subject_id,
            payload.version,
            attributes,
            payload.issuer_address,
            payload.issuance_time,
        ):
            raise ConsistencyViolation(
                f"Content hash mismatch for certificate {cert_hash}",
                cursor=event.cursor,
            )

        ctx.put_certificate(Certificate(
            cert_hash=cert_hash,
            subject_id=payload.subject_id,
            version=payload.version,
            subject_name=payload.subject_name,
            program=payload.program,
            credential_value=payload.credential_value,
            issuing_authority=payload.issuing_authority,
            issuer_address=payload.issuer_address,
            issuance_time=payload.issuance_time,
            issued_tx_id=event.tx_id,
            last_cursor=event.cursor,
        ))
        self._append_audit(ctx, event, AuditAction.ISSUED, cert_hash,
                           payload.subject_id, payload.version)

    def _handle_revoked(self, ctx: ApplyContext, event: LedgerEvent) -> None:
        cert = self._require_certificate(ctx, event)
        if cert.is_revoked:
            raise ConsistencyViolation(
                f"REVOKED received for already revoked certificate {cert.cert_hash}",
                cursor=event.cursor,
            )
        reason = event.payload.get("reason")
        if not reason:
            raise ConsistencyViolation(
                f"REVOKED event for {cert.cert_hash} carries no reason",
                cursor=event.cursor,
            )
        ctx.put_certificate(cert.model_copy(update={
            "is_revoked": True,
            "revocation_reason": reason,
            "last_cursor": event.cursor,
        }))
        self._append_audit(ctx, event, AuditAction.REVOKED, cert.cert_hash,
                           cert.subject_id, cert.version, reason=reason)

    def _handle_reactivated(self, ctx: ApplyContext, event: LedgerEvent) -> None:
        cert = self._require_certificate(ctx, event)
        if not cert.is_revoked:
            raise ConsistencyViolation(
                f"REACTIVATED received for active certificate {cert.cert_hash}",
                cursor=event.cursor,
            )
        ctx.put_certificate(cert.model_copy(update={
            "is_revoked": False,
            "revocation_reason": None,
            "last_cursor": event.cursor,
        }))
        self._append_audit(ctx, event, AuditAction.REACTIVATED, cert.cert_hash,
                           cert.subject_id, cert.version)

    def _require_certificate(self, ctx: ApplyContext, event: LedgerEvent) -> Certificate:
        if not event.cert_hash:
            raise ConsistencyViolation(
                f"{event.event_type.value} event without cert_hash", cursor=event.cursor
            )
        cert = ctx.get_certificate(event.cert_hash)
        if cert is None:
            raise ConsistencyViolation(
                f"{event.event_type.value} references unknown certificate {event.cert_hash}",
                cursor=event.cursor,
            )
        return cert

    @staticmethod
    def _append_audit(
        ctx: ApplyContext,
        event: LedgerEvent,
        action: AuditAction,
        cert_hash: str,
        subject_id: str,
        version: int,
        reason: str | None = None,
    ) -> None:
        ctx.append_audit(AuditLogEntry(
            cert_hash=cert_hash,
            action=action,
            actor_address=event.actor_address,
            timestamp=event.timestamp,
            ledger_tx_id=event.tx_id,
            sequence=event.cursor,
            subject_id=subject_id,
            version=version,
            reason=reason,
        ))

    # ================================================================
    # ACCOUNT EVENTS
    # ================================================================

    def _handle_user_registered(self, ctx: ApplyContext, event: LedgerEvent) -> None:
        try:
            payload = RegisterUserPayload.model_validate(event.payload)
        except ValueError as e:
            raise ConsistencyViolation(
                f"Malformed USER_REGISTERED payload: {e}", cursor=event.cursor
            ) from e

        if ctx.get_account(payload.address) is not None:
            raise ConsistencyViolation(
                f"Account {payload.address} registered twice", cursor=event.cursor
            )
        ctx.put_account(Account(
            address=payload.address,
            display_name=payload.display_name,
            email=payload.email,
            is_admin=payload.is_admin,
            is_authorized=True,
            registered_at=event.timestamp,
            registered_by=event.actor_address,
            last_cursor=event.cursor,
        ))

    def _handle_user_revoked(self, ctx, event):
        self._toggle_account(ctx, event, "is_authorized", expected=True)

    def _handle_user_restored(self, ctx, event):
        self._toggle_account(ctx, event, "is_authorized", expected=False)

    def _handle_admin_granted(self, ctx, event):
        self._toggle_account(ctx, event, "is_admin", expected=False)

    def _handle_admin_revoked(self, ctx, event):
        self._toggle_account(ctx, event, "is_admin", expected=True)

    @staticmethod
    def _toggle_account(
        ctx: ApplyContext,
        event: LedgerEvent,
        flag: str,
        expected: bool,
    ) -> None:
        """Flip a boolean flag on an account that must currently hold `expected`."""
        address = event.address or event.payload.get("address")
        account = ctx.get_account(address) if address else None
        if account is None:
            raise ConsistencyViolation(
                f"{event.event_type.value} references unknown account {address}",
                cursor=event.cursor,
            )
        if getattr(account, flag) != expected:
            raise ConsistencyViolation(
                f"{event.event_type.value} contradicts {flag}={getattr(account, flag)} "
                f"for {account.address}",
                cursor=event.cursor,
            )
        ctx.put_account(account.model_copy(update={
            flag: not expected,
            "last_cursor": event.cursor,
        }))
