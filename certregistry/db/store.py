"""
Read Model Store Abstraction

This module defines the ReadModelStore interface and the in-memory
implementation. The PostgreSQL implementation lives in db/postgres.py.

The ReadModelStore holds everything the indexer derives from the ledger:
- certificates (one row per version)
- accounts
- the audit log
- the applied-event index (dedup keys + content fingerprints)
- the indexer cursor (single row)

It also keeps local state that is never derived from the ledger and
survives a rebuild: login sessions, certificate action requests, and
verifier records (verifiers, verification logs, blocked IPs).

TRANSACTION CONTRACT:
All indexer writes MUST use the begin_apply() context manager:

    with store.begin_apply() as ctx:
        if ctx.get_applied(event.dedup_key) is None:
            ... ctx.put_certificate(...) / ctx.append_audit(...) ...
            ctx.record_applied(event.dedup_key, fingerprint, event.cursor)
        ctx.set_cursor(event.cursor)
        ctx.commit()

Either every write in the block becomes visible, or none does.
Leaving the block without commit() rolls back.
"""

import itertools
import threading
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Generator, Optional

from ..schemas import (
    Account,
    ActionRequest,
    AuditLogEntry,
    BlockedVerifier,
    Certificate,
    RequestStatus,
    VerificationLogEntry,
    Verifier,
)


# ============================================================
# EXCEPTIONS
# ============================================================

class StoreError(Exception):
    """Base exception for read model store errors."""
    pass


class TransactionClosedError(StoreError):
    """Raised when a finished ApplyContext is used again."""
    pass


class OpenRequestExists(StoreError):
    """Raised when a certificate already has a pending or processing request."""

    def __init__(self, existing: ActionRequest):
        super().__init__(
            f"Request {existing.id} ({existing.action.value}, {existing.status.value}) "
            f"is already open for {existing.cert_hash}"
        )
        self.existing = existing


# ============================================================
# DATA STRUCTURES
# ============================================================

@dataclass(frozen=True)
class AppliedEvent:
    """Index row proving an event was already absorbed."""
    tx_id: str
    event_type: str
    target: str
    fingerprint: str
    cursor: int

    @property
    def key(self) -> tuple[str, str, str]:
        return (self.tx_id, self.event_type, self.target)


class SessionStatus(str, Enum):
    ACTIVE = "active"
    LOGGED_OUT = "logged_out"
    EXPIRED = "expired"
    REVOKED = "revoked"


@dataclass
class LoginSession:
    """A login minted after a successful challenge."""
    session_id: str
    address: str
    is_admin: bool
    issued_at: datetime
    expires_at: datetime
    status: SessionStatus = SessionStatus.ACTIVE
    ended_at: Optional[datetime] = None


@dataclass
class StoreStats:
    certificates: int = 0
    active_certificates: int = 0
    revoked_certificates: int = 0
    subjects: int = 0
    accounts: int = 0
    authorized_accounts: int = 0
    admins: int = 0
    audit_entries: int = 0
    cursor: int = 0


def audit_sort_key(entry: AuditLogEntry) -> tuple:
    return (entry.timestamp, entry.sequence, entry.ledger_tx_id)


def _lower(value: Optional[str]) -> Optional[str]:
    return value.lower() if value is not None else None


# ============================================================
# APPLY CONTEXT
# ============================================================

class ApplyContext(ABC):
    """
    One read-model transaction.

    Reads see the transaction's own uncommitted writes.
    """

    def __init__(self):
        self._committed = False
        self._rolled_back = False

    @property
    def is_open(self) -> bool:
        return not self._committed and not self._rolled_back

    def _ensure_open(self) -> None:
        if self._committed:
            raise TransactionClosedError("Transaction already committed")
        if self._rolled_back:
            raise TransactionClosedError("Transaction already rolled back")

    # Reads

    @abstractmethod
    def get_cursor(self) -> int:
        pass

    @abstractmethod
    def get_applied(self, key: tuple[str, str, str]) -> Optional[AppliedEvent]:
        pass

    @abstractmethod
    def get_certificate(self, cert_hash: str) -> Optional[Certificate]:
        pass

    @abstractmethod
    def get_latest_version(self, subject_id: str) -> int:
        """Highest stored version for subject_id, 0 if none."""
        pass

    @abstractmethod
    def get_account(self, address: str) -> Optional[Account]:
        pass

    # Writes

    @abstractmethod
    def put_certificate(self, certificate: Certificate) -> None:
        pass

    @abstractmethod
    def put_account(self, account: Account) -> None:
        pass

    @abstractmethod
    def append_audit(self, entry: AuditLogEntry) -> None:
        pass

    @abstractmethod
    def record_applied(self, applied: AppliedEvent) -> None:
        pass

    @abstractmethod
    def set_cursor(self, cursor: int) -> None:
        pass

    def commit(self) -> None:
        self._ensure_open()
        self._do_commit()
        self._committed = True

    def rollback(self) -> None:
        if self.is_open:
            self._do_rollback()
            self._rolled_back = True

    @abstractmethod
    def _do_commit(self) -> None:
        pass

    @abstractmethod
    def _do_rollback(self) -> None:
        pass


# ============================================================
# ABSTRACT BASE CLASS
# ============================================================

class ReadModelStore(ABC):
    """
    Abstract base class for the read model.

    Implementations must ensure:
    1. begin_apply() transactions are all-or-nothing
    2. Only one apply transaction is open at a time
    3. Readers never observe a half-applied event
    """

    @contextmanager
    @abstractmethod
    def begin_apply(self) -> Generator[ApplyContext, None, None]:
        pass

    # Indexer bookkeeping

    @abstractmethod
    def get_cursor(self) -> int:
        """Last durably applied ledger cursor, 0 if nothing applied."""
        pass

    @abstractmethod
    def clear(self) -> None:
        """Drop every ledger-derived row (sessions are kept)."""
        pass

    @abstractmethod
    def ping(self) -> bool:
        pass

    # Certificates

    @abstractmethod
    def get_certificate(self, cert_hash: str) -> Optional[Certificate]:
        pass

    @abstractmethod
    def get_latest_version(self, subject_id: str) -> int:
        """Highest stored version for subject_id, 0 if none."""
        pass

    @abstractmethod
    def list_versions(self, subject_id: str) -> list[Certificate]:
        """All versions of a subject, oldest first."""
        pass

    @abstractmethod
    def list_certificates(
        self,
        is_revoked: Optional[bool] = None,
        subject_id: Optional[str] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[Certificate], int]:
        """Certificates newest first. Returns (rows, total_count)."""
        pass

    @abstractmethod
    def search_subject_ids(self, fragment: str, limit: int) -> list[str]:
        pass

    # Accounts

    @abstractmethod
    def get_account(self, address: str) -> Optional[Account]:
        pass

    @abstractmethod
    def list_accounts(
        self,
        is_authorized: Optional[bool] = None,
        offset: int = 0,
        limit: int = 20,
    ) -> tuple[list[Account], int]:
        pass

    # Audit

    @abstractmethod
    def list_audit(
        self,
        cert_hash: Optional[str] = None,
        actor_address: Optional[str] = None,
        offset: int = 0,
        limit: Optional[int] = 20,
    ) -> tuple[list[AuditLogEntry], int]:
        """Audit entries in ledger order; limit=None returns all. Returns (rows, total_count)."""
        pass

    @abstractmethod
    def stats(self) -> StoreStats:
        pass

    # Login sessions

    @abstractmethod
    def save_session(self, session: LoginSession) -> None:
        """Insert or update a login session."""
        pass

    @abstractmethod
    def get_session(self, session_id: str) -> Optional[LoginSession]:
        pass

    @abstractmethod
    def list_sessions(
        self,
        status: Optional[SessionStatus] = None,
        address: Optional[str] = None,
    ) -> list[LoginSession]:
        pass

    @abstractmethod
    def delete_sessions_ended_before(self, cutoff: datetime) -> int:
        """Remove sessions that ended before `cutoff`. Active sessions are kept."""
        pass

    # Certificate action requests

    @abstractmethod
    def insert_action_request(self, request: ActionRequest) -> ActionRequest:
        """
        Store a new request and return it with its id assigned.

        Raises:
            OpenRequestExists: The certificate already has a pending or
                processing request
        """
        pass

    @abstractmethod
    def get_action_request(self, request_id: int) -> Optional[ActionRequest]:
        pass

    @abstractmethod
    def update_action_request(self, request: ActionRequest, expected_status: RequestStatus) -> bool:
        """Overwrite a request only if its stored status is still `expected_status`."""
        pass

    @abstractmethod
    def delete_action_request(self, request_id: int, expected_status: RequestStatus) -> bool:
        pass

    @abstractmethod
    def list_action_requests(
        self,
        statuses: Optional[tuple[RequestStatus, ...]] = None,
        cert_hash: Optional[str] = None,
        requested_by: Optional[str] = None,
        taken_by: Optional[str] = None,
        offset: int = 0,
        limit: Optional[int] = 20,
    ) -> tuple[list[ActionRequest], int]:
        """Newest first; limit=None returns all. Returns (rows, total_count)."""
        pass

    # Verifiers

    @abstractmethod
    def upsert_verifier(self, verifier: Verifier) -> Verifier:
        """Insert, or update name/institution/website of the verifier with the same email."""
        pass

    @abstractmethod
    def get_verifier(self, verifier_id: int) -> Optional[Verifier]:
        pass

    @abstractmethod
    def append_verification_log(self, entry: VerificationLogEntry) -> VerificationLogEntry:
        pass

    @abstractmethod
    def list_verification_logs(
        self,
        offset: int = 0,
        limit: int = 20,
        newest_first: bool = True,
    ) -> tuple[list[VerificationLogEntry], int]:
        pass

    @abstractmethod
    def save_blocked_verifier(self, block: BlockedVerifier) -> None:
        """Insert or replace the block for an IP address."""
        pass

    @abstractmethod
    def get_blocked_verifier(self, ip_address: str) -> Optional[BlockedVerifier]:
        pass

    @abstractmethod
    def delete_blocked_verifier(self, ip_address: str) -> bool:
        pass

    @abstractmethod
    def list_blocked_verifiers(self, active_at: datetime) -> list[BlockedVerifier]:
        """Blocks still in force at `active_at`, newest first."""
        pass


# ============================================================
# IN-MEMORY IMPLEMENTATION
# ============================================================

@dataclass
class _Tables:
    certificates: dict[str, Certificate] = field(default_factory=dict)
    versions: dict[str, dict[int, str]] = field(default_factory=dict)
    accounts: dict[str, Account] = field(default_factory=dict)
    audit: list[AuditLogEntry] = field(default_factory=list)
    applied: dict[tuple[str, str, str], AppliedEvent] = field(default_factory=dict)
    cursor: int = 0


class InMemoryApplyContext(ApplyContext):
    """Buffers writes and publishes them in one step on commit."""

    def __init__(self, store: "InMemoryReadModelStore"):
        super().__init__()
        self._store = store
        self._certificates: dict[str, Certificate] = {}
        self._accounts: dict[str, Account] = {}
        self._audit: list[AuditLogEntry] = []
        self._applied: dict[tuple[str, str, str], AppliedEvent] = {}
        self._cursor: Optional[int] = None

    @property
    def _tables(self) -> _Tables:
        return self._store._tables

    def get_cursor(self) -> int:
        return self._cursor if self._cursor is not None else self._tables.cursor

    def get_applied(self, key):
        return self._applied.get(key) or self._tables.applied.get(key)

    def get_certificate(self, cert_hash):
        cert_hash = cert_hash.lower()
        return self._certificates.get(cert_hash) or self._tables.certificates.get(cert_hash)

    def get_latest_version(self, subject_id):
        versions = set(self._tables.versions.get(subject_id, {}).keys())
        versions.update(
            c.version for c in self._certificates.values() if c.subject_id == subject_id
        )
        return max(versions, default=0)

    def get_account(self, address):
        address = address.lower()
        return self._accounts.get(address) or self._tables.accounts.get(address)

    def put_certificate(self, certificate):
        self._ensure_open()
        self._certificates[certificate.cert_hash.lower()] = certificate

    def put_account(self, account):
        self._ensure_open()
        self._accounts[account.address.lower()] = account

    def append_audit(self, entry):
        self._ensure_open()
        self._audit.append(entry)

    def record_applied(self, applied):
        self._ensure_open()
        self._applied[applied.key] = applied

    def set_cursor(self, cursor):
        self._ensure_open()
        self._cursor = cursor

    def _do_commit(self) -> None:
        with self._store._read_lock:
            tables = self._tables
            for cert_hash, cert in self._certificates.items():
                tables.certificates[cert_hash] = cert
                tables.versions.setdefault(cert.subject_id, {})[cert.version] = cert_hash
            tables.accounts.update(self._accounts)
            if self._audit:
                tables.audit.extend(self._audit)
                tables.audit.sort(key=audit_sort_key)
            tables.applied.update(self._applied)
            if self._cursor is not None:
                tables.cursor = self._cursor

    def _do_rollback(self) -> None:
        self._certificates.clear()
        self._accounts.clear()
        self._audit.clear()
        self._applied.clear()
        self._cursor = None


class InMemoryReadModelStore(ReadModelStore):
    """
    In-memory implementation of ReadModelStore.

    Suitable for:
    - Development
    - Testing
    - Single-instance deployments that can replay the ledger on start

    NOT suitable for:
    - Multi-instance deployments (no shared state)
    """

    def __init__(self):
        self._tables = _Tables()
        self._sessions: dict[str, LoginSession] = {}
        self._requests: dict[int, ActionRequest] = {}
        self._request_ids = itertools.count(1)
        self._verifiers: dict[int, Verifier] = {}
        self._verifiers_by_email: dict[str, Verifier] = {}
        self._verifier_ids = itertools.count(1)
        self._verification_logs: list[VerificationLogEntry] = []
        self._log_ids = itertools.count(1)
        self._blocked: dict[str, BlockedVerifier] = {}
        # Guards the local (non-ledger) tables above
        self._local_lock = threading.Lock()
        # Serializes writers
        self._write_lock = threading.Lock()
        # Held only while a commit publishes or a reader copies
        self._read_lock = threading.RLock()

    @contextmanager
    def begin_apply(self) -> Generator[ApplyContext, None, None]:
        with self._write_lock:
            ctx = InMemoryApplyContext(self)
            try:
                yield ctx
            finally:
                ctx.rollback()

    def get_cursor(self) -> int:
        return self._tables.cursor

    def clear(self) -> None:
        with self._write_lock, self._read_lock:
            self._tables = _Tables()

    def ping(self) -> bool:
        return True

    # Certificates

    def get_certificate(self, cert_hash):
        return self._tables.certificates.get(cert_hash.lower())

    def get_latest_version(self, subject_id):
        return max(self._tables.versions.get(subject_id, {}).keys(), default=0)

    def list_versions(self, subject_id):
        with self._read_lock:
            hashes = dict(self._tables.versions.get(subject_id, {}))
            certs = self._tables.certificates
            return [certs[hashes[v]] for v in sorted(hashes)]

    def list_certificates(self, is_revoked=None, subject_id=None, offset=0, limit=20):
        with self._read_lock:
            rows = list(self._tables.certificates.values())
        if is_revoked is not None:
            rows = [c for c in rows if c.is_revoked == is_revoked]
        if subject_id is not None:
            rows = [c for c in rows if c.subject_id == subject_id]
        rows.sort(key=lambda c: (c.issuance_time, c.cert_hash), reverse=True)
        return rows[offset:offset + limit], len(rows)

    def search_subject_ids(self, fragment, limit):
        fragment = fragment.lower()
        with self._read_lock:
            subject_ids = list(self._tables.versions.keys())
        return sorted(s for s in subject_ids if fragment in s.lower())[:limit]

    # Accounts

    def get_account(self, address):
        return self._tables.accounts.get(address.lower())

    def list_accounts(self, is_authorized=None, offset=0, limit=20):
        with self._read_lock:
            rows = list(self._tables.accounts.values())
        if is_authorized is not None:
            rows = [a for a in rows if a.is_authorized == is_authorized]
        rows.sort(key=lambda a: (a.registered_at, a.address))
        return rows[offset:offset + limit], len(rows)

    # Audit

    def list_audit(self, cert_hash=None, actor_address=None, offset=0, limit=20):
        cert_hash = _lower(cert_hash)
        actor_address = _lower(actor_address)
        with self._read_lock:
            rows = list(self._tables.audit)
        if cert_hash is not None:
            rows = [e for e in rows if e.cert_hash.lower() == cert_hash]
            # One certificate reads in ledger order regardless of timestamp ties
            rows.sort(key=lambda e: e.sequence)
        if actor_address is not None:
            rows = [e for e in rows if e.actor_address.lower() == actor_address]
        end = None if limit is None else offset + limit
        return rows[offset:end], len(rows)

    def stats(self) -> StoreStats:
        with self._read_lock:
            certs = list(self._tables.certificates.values())
            accounts = list(self._tables.accounts.values())
            revoked = sum(1 for c in certs if c.is_revoked)
            return StoreStats(
                certificates=len(certs),
                active_certificates=len(certs) - revoked,
                revoked_certificates=revoked,
                subjects=len(self._tables.versions),
                accounts=len(accounts),
                authorized_accounts=sum(1 for a in accounts if a.is_authorized),
                admins=sum(1 for a in accounts if a.is_admin and a.is_authorized),
                audit_entries=len(self._tables.audit),
                cursor=self._tables.cursor,
            )

    def snapshot(self) -> dict[str, Any]:
        """Plain-data dump of every ledger-derived row (used to compare replays)."""
        with self._read_lock:
            return {
                "certificates": {
                    k: v.model_dump(mode="json") for k, v in self._tables.certificates.items()
                },
                "accounts": {
                    k: v.model_dump(mode="json") for k, v in self._tables.accounts.items()
                },
                "audit": [e.model_dump(mode="json") for e in self._tables.audit],
                "cursor": self._tables.cursor,
            }

    # Login sessions

    def save_session(self, session):
        with self._read_lock:
            self._sessions[session.session_id] = session

    def get_session(self, session_id):
        return self._sessions.get(session_id)

    def list_sessions(self, status=None, address=None):
        with self._read_lock:
            rows = list(self._sessions.values())
        if status is not None:
            rows = [s for s in rows if s.status == status]
        if address is not None:
            rows = [s for s in rows if s.address.lower() == address.lower()]
        return sorted(rows, key=lambda s: s.issued_at)

    def delete_sessions_ended_before(self, cutoff):
        with self._read_lock:
            stale = [
                sid for sid, s in self._sessions.items()
                if s.status != SessionStatus.ACTIVE and s.ended_at is not None and s.ended_at < cutoff
            ]
            for sid in stale:
                del self._sessions[sid]
        return len(stale)

    # Certificate action requests

    def insert_action_request(self, request):
        with self._local_lock:
            for existing in self._requests.values():
                if existing.cert_hash == request.cert_hash and existing.is_open:
                    raise OpenRequestExists(existing)
            stored = request.model_copy(update={"id": next(self._request_ids)})
            self._requests[stored.id] = stored
            return stored

    def get_action_request(self, request_id):
        return self._requests.get(request_id)

    def update_action_request(self, request, expected_status):
        with self._local_lock:
            current = self._requests.get(request.id)
            if current is None or current.status != expected_status:
                return False
            self._requests[request.id] = request
            return True

    def delete_action_request(self, request_id, expected_status):
        with self._local_lock:
            current = self._requests.get(request_id)
            if current is None or current.status != expected_status:
                return False
            del self._requests[request_id]
            return True

    def list_action_requests(
        self, statuses=None, cert_hash=None, requested_by=None, taken_by=None, offset=0, limit=20
    ):
        with self._local_lock:
            rows = list(self._requests.values())
        if statuses is not None:
            rows = [r for r in rows if r.status in statuses]
        if cert_hash is not None:
            rows = [r for r in rows if r.cert_hash == cert_hash.lower()]
        if requested_by is not None:
            rows = [r for r in rows if r.requested_by.lower() == requested_by.lower()]
        if taken_by is not None:
            rows = [r for r in rows if r.taken_by and r.taken_by.lower() == taken_by.lower()]
        rows.sort(key=lambda r: (r.requested_at, r.id), reverse=True)
        end = None if limit is None else offset + limit
        return rows[offset:end], len(rows)

    # Verifiers

    def upsert_verifier(self, verifier):
        email_key = verifier.email.strip().lower()
        with self._local_lock:
            existing = self._verifiers_by_email.get(email_key)
            if existing is None:
                stored = verifier.model_copy(update={"id": next(self._verifier_ids)})
            else:
                stored = existing.model_copy(update={
                    "name": verifier.name,
                    "institution": verifier.institution,
                    "website": verifier.website,
                })
            self._verifiers_by_email[email_key] = stored
            self._verifiers[stored.id] = stored
            return stored

    def get_verifier(self, verifier_id):
        return self._verifiers.get(verifier_id)

    def append_verification_log(self, entry):
        with self._local_lock:
            stored = entry.model_copy(update={"id": next(self._log_ids)})
            self._verification_logs.append(stored)
            return stored

    def list_verification_logs(self, offset=0, limit=20, newest_first=True):
        with self._local_lock:
            rows = sorted(self._verification_logs, key=lambda e: (e.verified_at, e.id))
        if newest_first:
            rows.reverse()
        return rows[offset:offset + limit], len(rows)

    def save_blocked_verifier(self, block):
        with self._local_lock:
            self._blocked[block.ip_address] = block

    def get_blocked_verifier(self, ip_address):
        return self._blocked.get(ip_address)

    def delete_blocked_verifier(self, ip_address):
        with self._local_lock:
            return self._blocked.pop(ip_address, None) is not None

    def list_blocked_verifiers(self, active_at):
        with self._local_lock:
            rows = [b for b in self._blocked.values() if b.is_active(active_at)]
        return sorted(rows, key=lambda b: b.created_at, reverse=True)
