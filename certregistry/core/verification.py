"""
Verifier Logging and Blocking

Third parties verify certificates through a logged path: they name
themselves, the attempt is recorded with its outcome, and a client IP that
retries one certificate too often is blocked for a while.

RULES:
- a blocked IP is refused before anything else happens
- each (ip, cert_hash) pair gets MAX_ATTEMPTS per WINDOW_SECONDS
- hitting the limit blocks the IP for AUTO_BLOCK_MINUTES, blocked_by "system"
- every verification that reaches the ledger is logged, found or not
- admins can block and unblock IPs by hand; unblocking resets the counters
"""

import math
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from ..db.store import ReadModelStore
from ..observability import get_logger
from ..schemas import (
    SYSTEM_ACTOR,
    BlockedVerifier,
    Page,
    VerificationLogEntry,
    VerificationOutcome,
    Verifier,
)
from .certificates import CertificateLedger, VerificationResult
from .errors import CertificateNotFound, ValidationError, VerifierBlocked
from .hasher import is_cert_hash, normalize_hash
from .query import DEFAULT_PAGE_SIZE, build_page, validate_paging
from .sessions import LoginRateLimiter

logger = get_logger(__name__)

MAX_ATTEMPTS = 5
WINDOW_SECONDS = 15 * 60
AUTO_BLOCK_MINUTES = 60
MAX_BLOCK_MINUTES = 60 * 24 * 365


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VerificationService:
    """
    Args:
        store: ReadModelStore holding verifiers, logs and blocks
        certificates: CertificateLedger used for the actual check
        limiter: Per (ip, cert_hash) sliding window
        clock: Wall clock for logs and block expiry
    """

    def __init__(
        self,
        store: ReadModelStore,
        certificates: CertificateLedger,
        limiter: Optional[LoginRateLimiter] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._store = store
        self._certificates = certificates
        self._limiter = limiter or LoginRateLimiter(
            max_attempts=MAX_ATTEMPTS, window_seconds=WINDOW_SECONDS
        )
        self._clock = clock

    def verify(
        self,
        cert_hash: str,
        ip_address: str,
        name: str,
        email: str,
        institution: str,
        website: str = "",
        user_agent: Optional[str] = None,
    ) -> tuple[VerificationResult, int]:
        """
        Verify a certificate on behalf of a named third party.

        Returns (result, attempts_remaining).

        Raises:
            VerifierBlocked: IP is blocked, or this attempt tripped the limit
            CertificateNotFound: Logged as not_found first
            ValidationError: Malformed hash or missing verifier details
        """
        cert_hash = self._clean_hash(cert_hash)
        self._check_block(ip_address)

        key = f"{ip_address}:{cert_hash}"
        allowed, _ = self._limiter.check(key)
        if not allowed:
            block = self._auto_block(ip_address, cert_hash)
            raise VerifierBlocked(
                f"Too many verification attempts. Blocked until {block.blocked_until.isoformat()}",
                retry_after=AUTO_BLOCK_MINUTES * 60,
            )
        self._limiter.record(key)

        verifier = self._store.upsert_verifier(
            Verifier(
                name=self._required(name, "name"),
                email=self._required(email, "email"),
                institution=self._required(institution, "institution"),
                website=(website or "").strip(),
                created_at=self._clock(),
            )
        )

        try:
            result = self._certificates.verify(cert_hash)
        except CertificateNotFound:
            self._log(verifier, cert_hash, ip_address, user_agent, VerificationOutcome.NOT_FOUND)
            raise

        outcome = VerificationOutcome.VALID if result.is_valid else VerificationOutcome.INVALID
        self._log(verifier, cert_hash, ip_address, user_agent, outcome)
        return result, self._limiter.remaining(key)

    # ================================================================
    # ADMIN
    # ================================================================

    def list_logs(
        self, page: int = 1, page_size: int = DEFAULT_PAGE_SIZE
    ) -> Page[VerificationLogEntry]:
        offset, limit = validate_paging(page, page_size)
        rows, total = self._store.list_verification_logs(offset=offset, limit=limit)
        return build_page(rows, total, page, page_size)

    def get_verifier(self, verifier_id: int) -> Optional[Verifier]:
        return self._store.get_verifier(verifier_id)

    def list_blocked(self) -> list[BlockedVerifier]:
        return self._store.list_blocked_verifiers(active_at=self._clock())

    def block(self, ip_address: str, minutes: int, reason: str, admin: str) -> BlockedVerifier:
        ip_address = self._required(ip_address, "ip_address")
        if not 1 <= minutes <= MAX_BLOCK_MINUTES:
            raise ValidationError(f"minutes must be between 1 and {MAX_BLOCK_MINUTES}")
        now = self._clock()
        block = BlockedVerifier(
            ip_address=ip_address,
            blocked_until=now + timedelta(minutes=minutes),
            reason=self._required(reason, "reason"),
            blocked_by=admin,
            created_at=now,
        )
        self._store.save_blocked_verifier(block)
        logger.warning(
            f"Verifier IP {ip_address} blocked for {minutes} minutes",
            ip_address=ip_address,
            blocked_by=admin,
        )
        return block

    def unblock(self, ip_address: str) -> bool:
        removed = self._store.delete_blocked_verifier(ip_address)
        self._limiter.clear_prefix(f"{ip_address}:")
        if removed:
            logger.info(f"Verifier IP {ip_address} unblocked", ip_address=ip_address)
        return removed

    # ================================================================
    # HELPERS
    # ================================================================

    def _check_block(self, ip_address: str) -> None:
        block = self._store.get_blocked_verifier(ip_address)
        if block is None:
            return
        now = self._clock()
        if not block.is_active(now):
            self._store.delete_blocked_verifier(ip_address)
            return
        retry_after = max(1, math.ceil((block.blocked_until - now).total_seconds()))
        raise VerifierBlocked(
            f"IP address is blocked until {block.blocked_until.isoformat()}. Reason: {block.reason}",
            retry_after=retry_after,
        )

    def _auto_block(self, ip_address: str, cert_hash: str) -> BlockedVerifier:
        now = self._clock()
        block = BlockedVerifier(
            ip_address=ip_address,
            blocked_until=now + timedelta(minutes=AUTO_BLOCK_MINUTES),
            reason=(
                f"Rate limit exceeded: {MAX_ATTEMPTS} attempts on certificate "
                f"{cert_hash} within {WINDOW_SECONDS // 60} minutes"
            ),
            blocked_by=SYSTEM_ACTOR,
            created_at=now,
        )
        self._store.save_blocked_verifier(block)
        logger.warning(
            f"Verifier IP {ip_address} auto-blocked",
            ip_address=ip_address,
            cert_hash=cert_hash,
        )
        return block

    def _log(
        self,
        verifier: Verifier,
        cert_hash: str,
        ip_address: str,
        user_agent: Optional[str],
        outcome: VerificationOutcome,
    ) -> None:
        self._store.append_verification_log(
            VerificationLogEntry(
                verifier_id=verifier.id,
                cert_hash=cert_hash,
                ip_address=ip_address,
                user_agent=user_agent,
                outcome=outcome,
                verified_at=self._clock(),
            )
        )

    @staticmethod
    def _required(value: Optional[str], field: str) -> str:
        value = (value or "").strip()
        if not value:
            raise ValidationError(f"{field} is required")
        return value

    @staticmethod
    def _clean_hash(cert_hash: str) -> str:
        if not isinstance(cert_hash, str) or not is_cert_hash(cert_hash):
            raise ValidationError(f"Malformed certificate hash: {cert_hash!r}")
        return normalize_hash(cert_hash)
