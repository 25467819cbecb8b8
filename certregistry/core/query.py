"""
Query Service

Read-only access to the read model. Every list is paginated with the same
envelope:

    {"data": [...], "meta": {"current_page", "total_pages", "total_count", "has_more"}}

Audit entries come back ordered by (timestamp, sequence). Entries for a
single certificate are ordered by sequence alone, which is ledger order
even when a block gives several transactions the same timestamp.
"""

import math
from typing import Optional

from ..db.store import ReadModelStore
from ..schemas import (
    Account,
    AuditLogEntry,
    Certificate,
    CertificateStatus,
    Page,
    PageMeta,
)
from .errors import AccountNotFound, CertificateNotFound, ValidationError
from .hasher import is_cert_hash, normalize_hash
from .signature import normalize_address

MAX_PAGE_SIZE = 100
DEFAULT_PAGE_SIZE = 20
SEARCH_LIMIT = 5


def validate_paging(page: int, page_size: int) -> tuple[int, int]:
    """Returns (offset, limit). Raises ValidationError on bad input."""
    if not isinstance(page, int) or isinstance(page, bool) or page < 1:
        raise ValidationError("page must be an integer >= 1")
    if (
        not isinstance(page_size, int)
        or isinstance(page_size, bool)
        or not 1 <= page_size <= MAX_PAGE_SIZE
    ):
        raise ValidationError(f"page_size must be between 1 and {MAX_PAGE_SIZE}")
    return (page - 1) * page_size, page_size


def build_page(rows: list, total: int, page: int, page_size: int) -> Page:
    total_pages = math.ceil(total / page_size) if total else 0
    return Page(
        data=rows,
        meta=PageMeta(
            current_page=page,
            total_pages=total_pages,
            total_count=total,
            has_more=page < total_pages,
        ),
    )


class QueryService:
    """Serves clients from the read model. Never touches the ledger."""

    def __init__(self, store: ReadModelStore):
        self._store = store

    # ================================================================
    # AUDIT
    # ================================================================

    def list_audit(
        self,
        cert_hash: Optional[str] = None,
        subject_address: Optional[str] = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> Page[AuditLogEntry]:
        """
        Paginated audit log, optionally filtered by certificate or by the
        address that performed the action.
        """
        offset, limit = validate_paging(page, page_size)
        if cert_hash is not None:
            cert_hash = self._clean_hash(cert_hash)
        if subject_address is not None:
            subject_address = self._clean_address(subject_address)
        rows, total = self._store.list_audit(
            cert_hash=cert_hash,
            actor_address=subject_address,
            offset=offset,
            limit=limit,
        )
        return build_page(rows, total, page, page_size)

    def audit_for_certificate(self, cert_hash: str) -> list[AuditLogEntry]:
        """Every audit entry for one certificate version, ledger order."""
        cert_hash = self._clean_hash(cert_hash)
        if self._store.get_certificate(cert_hash) is None:
            raise CertificateNotFound(f"Certificate {cert_hash} not found")
        rows, _ = self._store.list_audit(cert_hash=cert_hash, offset=0, limit=None)
        return rows

    # ================================================================
    # CERTIFICATES
    # ================================================================

    def get_certificate(self, cert_hash: str) -> Certificate:
        cert = self._store.get_certificate(self._clean_hash(cert_hash))
        if cert is None:
            raise CertificateNotFound(f"Certificate {cert_hash} not found")
        return cert

    def get_current_status(self, subject_id: str) -> Certificate:
        """The highest version of a subject's certificate."""
        versions = self._store.list_versions(subject_id.strip())
        if not versions:
            raise CertificateNotFound(f"No certificate for subject {subject_id}")
        return versions[-1]

    def get_history(self, subject_id: str) -> list[Certificate]:
        """All versions of a subject's certificate, oldest first."""
        versions = self._store.list_versions(subject_id.strip())
        if not versions:
            raise CertificateNotFound(f"No certificate for subject {subject_id}")
        return versions

    def list_certificates(
        self,
        status: Optional[str] = None,
        subject_id: Optional[str] = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> Page[Certificate]:
        offset, limit = validate_paging(page, page_size)
        is_revoked = None
        if status is not None:
            try:
                is_revoked = CertificateStatus(status.lower()) == CertificateStatus.REVOKED
            except ValueError:
                raise ValidationError("status must be 'active' or 'revoked'") from None
        rows, total = self._store.list_certificates(
            is_revoked=is_revoked,
            subject_id=subject_id.strip() if subject_id else None,
            offset=offset,
            limit=limit,
        )
        return build_page(rows, total, page, page_size)

    # ================================================================
    # ACCOUNTS
    # ================================================================

    def get_account(self, address: str) -> Account:
        account = self._store.get_account(self._clean_address(address))
        if account is None:
            raise AccountNotFound(f"Account {address} is not registered")
        return account

    def list_accounts(
        self,
        status: Optional[str] = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> Page[Account]:
        """status: 'authorized', 'revoked', or None for all."""
        offset, limit = validate_paging(page, page_size)
        if status is None:
            is_authorized = None
        elif status.lower() == "authorized":
            is_authorized = True
        elif status.lower() == "revoked":
            is_authorized = False
        else:
            raise ValidationError("status must be 'authorized' or 'revoked'")
        rows, total = self._store.list_accounts(
            is_authorized=is_authorized, offset=offset, limit=limit
        )
        return build_page(rows, total, page, page_size)

    # ================================================================
    # SEARCH & DASHBOARD
    # ================================================================

    def search(self, query: str) -> dict[str, list]:
        """
        Find subjects by id fragment, a certificate by exact hash, and an
        account by exact address. At most SEARCH_LIMIT results per kind.
        """
        query = (query or "").strip()
        results: dict[str, list] = {"subjects": [], "certificates": [], "accounts": []}
        if not query:
            return results

        for subject_id in self._store.search_subject_ids(query, SEARCH_LIMIT):
            current = self._store.list_versions(subject_id)[-1]
            results["subjects"].append(current)

        if is_cert_hash(query):
            cert = self._store.get_certificate(normalize_hash(query))
            if cert is not None:
                results["certificates"].append(cert)

        try:
            account = self._store.get_account(normalize_address(query))
        except ValueError:
            account = None
        if account is not None:
            results["accounts"].append(account)

        return results

    def dashboard_summary(self) -> dict:
        stats = self._store.stats()
        recent, _ = self._store.list_certificates(offset=0, limit=SEARCH_LIMIT)
        return {
            "certificates": {
                "total": stats.certificates,
                "active": stats.active_certificates,
                "revoked": stats.revoked_certificates,
                "subjects": stats.subjects,
            },
            "accounts": {
                "total": stats.accounts,
                "authorized": stats.authorized_accounts,
                "admins": stats.admins,
            },
            "audit_entries": stats.audit_entries,
            "indexed_cursor": stats.cursor,
            "recent_certificates": recent,
        }

    # ================================================================
    # INPUT CLEANING
    # ================================================================

    @staticmethod
    def _clean_hash(cert_hash: str) -> str:
        if not isinstance(cert_hash, str) or not is_cert_hash(cert_hash):
            raise ValidationError(f"Malformed certificate hash: {cert_hash!r}")
        return normalize_hash(cert_hash)

    @staticmethod
    def _clean_address(address: str) -> str:
        try:
            return normalize_address(address)
        except ValueError as e:
            raise ValidationError(str(e)) from None
