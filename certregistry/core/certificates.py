"""
Certificate Lifecycle

The state machine every certificate version follows:

    NONE ──issue──▶ ACTIVE ──revoke──▶ REVOKED ──reactivate──▶ ACTIVE ...

RULES:
- issue creates version latest+1 for the subject; versions never skip
- revoke is legal only from ACTIVE and needs a 1-500 character reason
- reactivate is legal only from REVOKED
- only authorized accounts may act
- nothing is ever deleted

Every rule is checked here against the read model BEFORE the ledger is
touched. The ledger then re-checks against its own state; if it disagrees
the caller gets ConcurrentModificationError and must refresh.
"""

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from ..db.store import ReadModelStore
from ..observability import get_logger
from ..schemas import (
    Certificate,
    CertificateAttributes,
    CertificateStatus,
    IssuePayload,
    LedgerAction,
    TxReceipt,
)
from .errors import (
    AuthorizationError,
    CertificateNotFound,
    InvalidTransition,
    ValidationError,
)
from .hasher import Hasher, is_cert_hash, normalize_hash
from .signature import normalize_address
from .submission import SubmissionGateway

logger = get_logger(__name__)

REASON_MIN_LENGTH = 1
REASON_MAX_LENGTH = 500
SUBJECT_ID_MAX_LENGTH = 128


@dataclass(frozen=True)
class IssueResult:
    cert_hash: str
    subject_id: str
    version: int
    tx_id: str
    issuance_time: datetime


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of checking a presented cert_hash."""
    certificate: Certificate
    hash_valid: bool
    is_current: bool

    @property
    def status(self) -> CertificateStatus:
        return self.certificate.status

    @property
    def is_valid(self) -> bool:
        return self.hash_valid and not self.certificate.is_revoked


class CertificateLedger:
    """
    Enforces certificate lifecycle rules and submits transitions.

    Usage:
        certs = CertificateLedger(store, gateway)
        result = certs.issue(actor, "S1", CertificateAttributes(...))
        certs.revoke(actor, result.cert_hash, "fraud")
    """

    def __init__(self, store: ReadModelStore, gateway: SubmissionGateway):
        self._store = store
        self._gateway = gateway

    # ================================================================
    # VALIDATION
    # ================================================================

    def _require_authorized(self, actor: str) -> str:
        try:
            actor = normalize_address(actor)
        except ValueError as e:
            raise ValidationError(str(e)) from None
        account = self._store.get_account(actor)
        if account is None or not account.is_authorized:
            raise AuthorizationError(f"{actor} is not authorized to manage certificates")
        return actor

    def _require_certificate(self, cert_hash: str) -> Certificate:
        if not isinstance(cert_hash, str) or not is_cert_hash(cert_hash):
            raise ValidationError(f"Malformed certificate hash: {cert_hash!r}")
        cert = self._store.get_certificate(normalize_hash(cert_hash))
        if cert is None:
            raise CertificateNotFound(f"Certificate {cert_hash} not found")
        return cert

    @staticmethod
    def _clean_subject_id(subject_id: str) -> str:
        if not isinstance(subject_id, str):
            raise ValidationError("subject_id must be a string")
        subject_id = subject_id.strip()
        if not subject_id:
            raise ValidationError("subject_id must not be empty")
        if len(subject_id) > SUBJECT_ID_MAX_LENGTH:
            raise ValidationError(
                f"subject_id must be at most {SUBJECT_ID_MAX_LENGTH} characters"
            )
        return subject_id

    @staticmethod
    def clean_reason(reason: Optional[str]) -> str:
        """Strip a revocation reason and enforce its length bounds."""
        reason = (reason or "").strip()
        if len(reason) < REASON_MIN_LENGTH:
            raise ValidationError("Revocation reason is required")
        if len(reason) > REASON_MAX_LENGTH:
            raise ValidationError(
                f"Revocation reason must be at most {REASON_MAX_LENGTH} characters"
            )
        return reason

    # ================================================================
    # TRANSITIONS
    # ================================================================

    def issue(
        self,
        actor: str,
        subject_id: str,
        attributes: CertificateAttributes,
        issuance_time: Optional[datetime] = None,
    ) -> IssueResult:
        """
        Issue the next version of a subject's certificate.

        Raises:
            ValidationError, AuthorizationError,
            ConcurrentModificationError, LedgerUnavailableError
        """
        actor = self._require_authorized(actor)
        subject_id = self._clean_subject_id(subject_id)
        issuance_time = issuance_time or datetime.now(timezone.utc)
        if issuance_time.tzinfo is None:
            raise ValidationError("issuance_time must be timezone-aware")

        version = self._store.get_latest_version(subject_id) + 1
        cert_hash = Hasher.certificate_hash(
            subject_id, version, attributes, actor, issuance_time
        )
        payload = IssuePayload(
            cert_hash=cert_hash,
            subject_id=subject_id,
            version=version,
            subject_name=attributes.subject_name,
            program=attributes.program,
            credential_value=attributes.credential_value,
            issuing_authority=attributes.issuing_authority,
            issuer_address=actor,
            issuance_time=issuance_time,
        )

        receipt = self._gateway.submit(
            LedgerAction.ISSUE,
            payload.model_dump(mode="json"),
            actor=actor,
            conflict_message=f"Version {version} of {subject_id} was taken by another issuer",
        )
        logger.info(
            "Certificate issued",
            cert_hash=cert_hash,
            subject_id=subject_id,
            version=version,
        )
        return IssueResult(
            cert_hash=cert_hash,
            subject_id=subject_id,
            version=version,
            tx_id=receipt.tx_id,
            issuance_time=issuance_time,
        )

    def revoke(self, actor: str, cert_hash: str, reason: str) -> TxReceipt:
        """
        Revoke an active certificate version.

        Raises:
            ValidationError, CertificateNotFound, InvalidTransition,
            AuthorizationError, ConcurrentModificationError, LedgerUnavailableError
        """
        reason = self.clean_reason(reason)
        cert = self._require_certificate(cert_hash)
        actor = self._require_authorized(actor)
        if cert.is_revoked:
            raise InvalidTransition(f"Certificate {cert.cert_hash} is already revoked")

        receipt = self._gateway.submit(
            LedgerAction.REVOKE,
            {"cert_hash": cert.cert_hash, "reason": reason},
            actor=actor,
            conflict_message=f"Certificate {cert.cert_hash} changed state before revocation",
        )
        logger.info("Certificate revoked", cert_hash=cert.cert_hash, reason=reason)
        return receipt

    def reactivate(self, actor: str, cert_hash: str) -> TxReceipt:
        """
        Reactivate a revoked certificate version.

        Raises:
            ValidationError, CertificateNotFound, InvalidTransition,
            AuthorizationError, ConcurrentModificationError, LedgerUnavailableError
        """
        cert = self._require_certificate(cert_hash)
        actor = self._require_authorized(actor)
        if not cert.is_revoked:
            raise InvalidTransition(f"Certificate {cert.cert_hash} is not revoked")

        receipt = self._gateway.submit(
            LedgerAction.REACTIVATE,
            {"cert_hash": cert.cert_hash},
            actor=actor,
            conflict_message=f"Certificate {cert.cert_hash} changed state before reactivation",
        )
        logger.info("Certificate reactivated", cert_hash=cert.cert_hash)
        return receipt

    # ================================================================
    # VERIFICATION
    # ================================================================

    def verify(self, cert_hash: str) -> VerificationResult:
        """Recompute the content hash of a stored certificate and compare."""
        cert = self._require_certificate(cert_hash)
        hash_valid = Hasher.verify_certificate_hash(
            cert.cert_hash,
            cert.subject_id,
            cert.version,
            cert.attributes(),
            cert.issuer_address,
            cert.issuance_time,
        )
        if not hash_valid:
            logger.warning("Stored certificate fails hash check", cert_hash=cert.cert_hash)
        latest = self._store.get_latest_version(cert.subject_id)
        return VerificationResult(
            certificate=cert,
            hash_valid=hash_valid,
            is_current=cert.version == latest,
        )
