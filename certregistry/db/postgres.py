"""
PostgreSQL Read Model Store

Provides:
- Full ACID guarantees: one transaction per applied event
- Single-writer safety via FOR UPDATE on the indexer_cursor row
- Durability: the read model and cursor survive restarts, so the indexer
  resumes instead of replaying from genesis
- Lock/statement timeouts to prevent hanging

THREAD SAFETY:
Transaction state (conn, cursor) lives in PostgresApplyContext, never on
the store. One store instance can be shared by the indexer thread and
request handlers.

Usage:
    store = PostgresReadModelStore.from_settings(ReadModelSettings.from_env())
    store.ensure_schema()
"""

from contextlib import contextmanager
from typing import Any, Callable, Generator, Optional

import psycopg2
from psycopg2 import errors as pg_errors

from ..schemas import (
    OPEN_REQUEST_STATUSES,
    Account,
    ActionRequest,
    AuditAction,
    AuditLogEntry,
    BlockedVerifier,
    Certificate,
    CertificateAction,
    RequestStatus,
    VerificationLogEntry,
    VerificationOutcome,
    Verifier,
)
from .config import ReadModelSettings
from .store import (
    AppliedEvent,
    ApplyContext,
    LoginSession,
    OpenRequestExists,
    ReadModelStore,
    SessionStatus,
    StoreError,
    StoreStats,
)


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS accounts (
    address_key     TEXT PRIMARY KEY,
    address         TEXT NOT NULL,
    display_name    TEXT NOT NULL,
    email           TEXT NOT NULL,
    is_admin        BOOLEAN NOT NULL DEFAULT FALSE,
    is_authorized   BOOLEAN NOT NULL DEFAULT TRUE,
    registered_at   TIMESTAMPTZ NOT NULL,
    registered_by   TEXT,
    last_cursor     BIGINT NOT NULL
);

CREATE TABLE IF NOT EXISTS certificates (
    cert_hash           TEXT PRIMARY KEY,
    subject_id          TEXT NOT NULL,
    version             INTEGER NOT NULL CHECK (version >= 1),
    subject_name        TEXT NOT NULL,
    program             TEXT NOT NULL,
    credential_value    INTEGER NOT NULL,
    issuing_authority   TEXT NOT NULL,
    issuer_address      TEXT NOT NULL,
    issuance_time       TIMESTAMPTZ NOT NULL,
    is_revoked          BOOLEAN NOT NULL DEFAULT FALSE,
    revocation_reason   TEXT,
    issued_tx_id        TEXT,
    last_cursor         BIGINT NOT NULL,
    UNIQUE (subject_id, version)
);
CREATE INDEX IF NOT EXISTS idx_certificates_issuance ON certificates (issuance_time DESC);

CREATE TABLE IF NOT EXISTS audit_log (
    id              BIGSERIAL PRIMARY KEY,
    cert_hash       TEXT NOT NULL,
    action          TEXT NOT NULL,
    actor_address   TEXT NOT NULL,
    timestamp       TIMESTAMPTZ NOT NULL,
    ledger_tx_id    TEXT NOT NULL,
    sequence        BIGINT NOT NULL,
    subject_id      TEXT NOT NULL,
    version         INTEGER NOT NULL,
    reason          TEXT,
    UNIQUE (ledger_tx_id, action, cert_hash)
);
CREATE INDEX IF NOT EXISTS idx_audit_ledger_order ON audit_log (timestamp, sequence, ledger_tx_id);
CREATE INDEX IF NOT EXISTS idx_audit_cert_sequence ON audit_log (cert_hash, sequence);
CREATE INDEX IF NOT EXISTS idx_audit_actor ON audit_log (lower(actor_address));

CREATE TABLE IF NOT EXISTS applied_events (
    tx_id           TEXT NOT NULL,
    event_type      TEXT NOT NULL,
    target          TEXT NOT NULL,
    fingerprint     TEXT NOT NULL,
    cursor          BIGINT NOT NULL,
    PRIMARY KEY (tx_id, event_type, target)
);

CREATE TABLE IF NOT EXISTS indexer_cursor (
    id              BOOLEAN PRIMARY KEY DEFAULT TRUE CHECK (id),
    cursor          BIGINT NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS login_sessions (
    session_id      TEXT PRIMARY KEY,
    address         TEXT NOT NULL,
    is_admin        BOOLEAN NOT NULL,
    issued_at       TIMESTAMPTZ NOT NULL,
    expires_at      TIMESTAMPTZ NOT NULL,
    status          TEXT NOT NULL,
    ended_at        TIMESTAMPTZ
);
CREATE INDEX IF NOT EXISTS idx_sessions_status ON login_sessions (status);

CREATE TABLE IF NOT EXISTS action_requests (
    id                  BIGSERIAL PRIMARY KEY,
    cert_hash           TEXT NOT NULL,
    subject_id          TEXT NOT NULL,
    action              TEXT NOT NULL,
    reason              TEXT NOT NULL,
    status              TEXT NOT NULL,
    requested_by        TEXT NOT NULL,
    requested_by_name   TEXT NOT NULL,
    taken_by            TEXT,
    rejection_reason    TEXT,
    completion_tx_id    TEXT,
    requested_at        TIMESTAMPTZ NOT NULL,
    updated_at          TIMESTAMPTZ NOT NULL
);
-- One open request per certificate
CREATE UNIQUE INDEX IF NOT EXISTS uq_action_requests_open
    ON action_requests (cert_hash) WHERE status IN ('pending', 'processing');
CREATE INDEX IF NOT EXISTS idx_action_requests_status ON action_requests (status, requested_at);

CREATE TABLE IF NOT EXISTS verifiers (
    id              BIGSERIAL PRIMARY KEY,
    email_key       TEXT NOT NULL UNIQUE,
    name            TEXT NOT NULL,
    email           TEXT NOT NULL,
    institution     TEXT NOT NULL,
    website         TEXT NOT NULL,
    created_at      TIMESTAMPTZ NOT NULL
);

CREATE TABLE IF NOT EXISTS verification_logs (
    id              BIGSERIAL PRIMARY KEY,
    verifier_id     BIGINT NOT NULL REFERENCES verifiers (id),
    cert_hash       TEXT NOT NULL,
    ip_address      TEXT NOT NULL,
    user_agent      TEXT,
    outcome         TEXT NOT NULL,
    verified_at     TIMESTAMPTZ NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_verification_logs_time ON verification_logs (verified_at, id);

CREATE TABLE IF NOT EXISTS blocked_verifiers (
    ip_address      TEXT PRIMARY KEY,
    blocked_until   TIMESTAMPTZ NOT NULL,
    reason          TEXT NOT NULL,
    blocked_by      TEXT NOT NULL,
    created_at      TIMESTAMPTZ NOT NULL
);
"""

_CERT_COLUMNS = """
    cert_hash, subject_id, version, subject_name, program, credential_value,
    issuing_authority, issuer_address, issuance_time, is_revoked,
    revocation_reason, issued_tx_id, last_cursor
"""

_ACCOUNT_COLUMNS = """
    address, display_name, email, is_admin, is_authorized,
    registered_at, registered_by, last_cursor
"""

_AUDIT_COLUMNS = """
    cert_hash, action, actor_address, timestamp, ledger_tx_id,
    sequence, subject_id, version, reason
"""

_SESSION_COLUMNS = "session_id, address, is_admin, issued_at, expires_at, status, ended_at"

_REQUEST_COLUMNS = """
    id, cert_hash, subject_id, action, reason, status, requested_by,
    requested_by_name, taken_by, rejection_reason, completion_tx_id,
    requested_at, updated_at
"""

_VERIFIER_COLUMNS = "id, name, email, institution, website, created_at"

_LOG_COLUMNS = "id, verifier_id, cert_hash, ip_address, user_agent, outcome, verified_at"

_BLOCK_COLUMNS = "ip_address, blocked_until, reason, blocked_by, created_at"


def _row_to_certificate(row: tuple) -> Certificate:
    return Certificate(
        cert_hash=row[0],
        subject_id=row[1],
        version=row[2],
        subject_name=row[3],
        program=row[4],
        credential_value=row[5],
        issuing_authority=row[6],
        issuer_address=row[7],
        issuance_time=row[8],
        is_revoked=row[9],
        revocation_reason=row[10],
        issued_tx_id=row[11],
        last_cursor=row[12],
    )


def _row_to_account(row: tuple) -> Account:
    return Account(
        address=row[0],
        display_name=row[1],
        email=row[2],
        is_admin=row[3],
        is_authorized=row[4],
        registered_at=row[5],
        registered_by=row[6],
        last_cursor=row[7],
    )


def _row_to_audit(row: tuple) -> AuditLogEntry:
    return AuditLogEntry(
        cert_hash=row[0],
        action=AuditAction(row[1]),
        actor_address=row[2],
        timestamp=row[3],
        ledger_tx_id=row[4],
        sequence=row[5],
        subject_id=row[6],
        version=row[7],
        reason=row[8],
    )


def _row_to_session(row: tuple) -> LoginSession:
    return LoginSession(
        session_id=row[0],
        address=row[1],
        is_admin=row[2],
        issued_at=row[3],
        expires_at=row[4],
        status=SessionStatus(row[5]),
        ended_at=row[6],
    )


def _row_to_request(row: tuple) -> ActionRequest:
    return ActionRequest(
        id=row[0],
        cert_hash=row[1],
        subject_id=row[2],
        action=CertificateAction(row[3]),
        reason=row[4],
        status=RequestStatus(row[5]),
        requested_by=row[6],
        requested_by_name=row[7],
        taken_by=row[8],
        rejection_reason=row[9],
        completion_tx_id=row[10],
        requested_at=row[11],
        updated_at=row[12],
    )


def _row_to_verifier(row: tuple) -> Verifier:
    return Verifier(
        id=row[0],
        name=row[1],
        email=row[2],
        institution=row[3],
        website=row[4],
        created_at=row[5],
    )


def _row_to_log(row: tuple) -> VerificationLogEntry:
    return VerificationLogEntry(
        id=row[0],
        verifier_id=row[1],
        cert_hash=row[2],
        ip_address=row[3],
        user_agent=row[4],
        outcome=VerificationOutcome(row[5]),
        verified_at=row[6],
    )


def _row_to_block(row: tuple) -> BlockedVerifier:
    return BlockedVerifier(
        ip_address=row[0],
        blocked_until=row[1],
        reason=row[2],
        blocked_by=row[3],
        created_at=row[4],
    )


# ============================================================
# APPLY CONTEXT
# ============================================================

class PostgresApplyContext(ApplyContext):
    """Runs every read and write on the connection that holds the cursor lock."""

    def __init__(self, conn: Any, cursor: Any):
        super().__init__()
        self._conn = conn
        self._cursor = cursor

    def _fetchone(self, sql: str, params: tuple = ()) -> Optional[tuple]:
        self._cursor.execute(sql, params)
        return self._cursor.fetchone()

    def get_cursor(self) -> int:
        row = self._fetchone("SELECT cursor FROM indexer_cursor WHERE id = TRUE")
        return row[0] if row else 0

    def get_applied(self, key):
        row = self._fetchone(
            """
            SELECT tx_id, event_type, target, fingerprint, cursor
            FROM applied_events
            WHERE tx_id = %s AND event_type = %s AND target = %s
            """,
            key,
        )
        return AppliedEvent(*row) if row else None

    def get_certificate(self, cert_hash):
        row = self._fetchone(
            f"SELECT {_CERT_COLUMNS} FROM certificates WHERE cert_hash = %s",
            (cert_hash.lower(),),
        )
        return _row_to_certificate(row) if row else None

    def get_latest_version(self, subject_id):
        row = self._fetchone(
            "SELECT COALESCE(MAX(version), 0) FROM certificates WHERE subject_id = %s",
            (subject_id,),
        )
        return row[0]

    def get_account(self, address):
        row = self._fetchone(
            f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE address_key = %s",
            (address.lower(),),
        )
        return _row_to_account(row) if row else None

    def put_certificate(self, certificate):
        self._ensure_open()
        c = certificate
        self._cursor.execute(
            f"""
            INSERT INTO certificates ({_CERT_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (cert_hash) DO UPDATE SET
                is_revoked = EXCLUDED.is_revoked,
                revocation_reason = EXCLUDED.revocation_reason,
                last_cursor = EXCLUDED.last_cursor
            """,
            (
                c.cert_hash.lower(), c.subject_id, c.version, c.subject_name,
                c.program, c.credential_value, c.issuing_authority,
                c.issuer_address, c.issuance_time, c.is_revoked,
                c.revocation_reason, c.issued_tx_id, c.last_cursor,
            ),
        )

    def put_account(self, account):
        self._ensure_open()
        a = account
        self._cursor.execute(
            f"""
            INSERT INTO accounts (address_key, {_ACCOUNT_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (address_key) DO UPDATE SET
                is_admin = EXCLUDED.is_admin,
                is_authorized = EXCLUDED.is_authorized,
                last_cursor = EXCLUDED.last_cursor
            """,
            (
                a.address.lower(), a.address, a.display_name, a.email,
                a.is_admin, a.is_authorized, a.registered_at,
                a.registered_by, a.last_cursor,
            ),
        )

    def append_audit(self, entry):
        self._ensure_open()
        e = entry
        self._cursor.execute(
            f"""
            INSERT INTO audit_log ({_AUDIT_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                e.cert_hash.lower(), e.action.value, e.actor_address, e.timestamp,
                e.ledger_tx_id, e.sequence, e.subject_id, e.version, e.reason,
            ),
        )

    def record_applied(self, applied):
        self._ensure_open()
        self._cursor.execute(
            """
            INSERT INTO applied_events (tx_id, event_type, target, fingerprint, cursor)
            VALUES (%s, %s, %s, %s, %s)
            """,
            (applied.tx_id, applied.event_type, applied.target,
             applied.fingerprint, applied.cursor),
        )

    def set_cursor(self, cursor):
        self._ensure_open()
        self._cursor.execute(
            "UPDATE indexer_cursor SET cursor = %s WHERE id = TRUE", (cursor,)
        )

    def _do_commit(self) -> None:
        self._conn.commit()

    def _do_rollback(self) -> None:
        self._conn.rollback()


# ============================================================
# STORE
# ============================================================

class PostgresReadModelStore(ReadModelStore):
    """
    PostgreSQL implementation of ReadModelStore.

    Requirements:
    - PostgreSQL 12+
    - Tables created by ensure_schema()
    """

    LOCK_TIMEOUT_MS = 2000
    STATEMENT_TIMEOUT_MS = 10000

    def __init__(
        self,
        connection_factory: Callable[[], Any],
        lock_timeout_ms: int = LOCK_TIMEOUT_MS,
        statement_timeout_ms: int = STATEMENT_TIMEOUT_MS,
    ):
        """
        Args:
            connection_factory: Callable that returns a psycopg2 connection.
            lock_timeout_ms: How long to wait for the cursor row lock (ms).
            statement_timeout_ms: Max statement execution time (ms).
        """
        self._connection_factory = connection_factory
        self._lock_timeout_ms = lock_timeout_ms
        self._statement_timeout_ms = statement_timeout_ms

    @classmethod
    def from_settings(cls, settings: ReadModelSettings) -> "PostgresReadModelStore":
        if not settings.url:
            raise ValueError("DATABASE_URL is required for the PostgreSQL read model")
        return cls(
            lambda: psycopg2.connect(settings.url, connect_timeout=settings.connect_timeout),
            lock_timeout_ms=settings.lock_timeout_ms,
            statement_timeout_ms=settings.statement_timeout_ms,
        )

    @classmethod
    def from_url(cls, url: str) -> "PostgresReadModelStore":
        return cls(lambda: psycopg2.connect(url))

    # ================================================================
    # CONNECTION HELPERS
    # ================================================================

    @contextmanager
    def _connection(self) -> Generator[Any, None, None]:
        conn = self._connection_factory()
        try:
            yield conn
        finally:
            conn.close()

    def _fetchall(self, sql: str, params: tuple = ()) -> list[tuple]:
        with self._connection() as conn:
            with conn.cursor() as cursor:
                cursor.execute(sql, params)
                return cursor.fetchall()

    def _fetchone(self, sql: str, params: tuple = ()) -> Optional[tuple]:
        with self._connection() as conn:
            with conn.cursor() as cursor:
                cursor.execute(sql, params)
                return cursor.fetchone()

    def _execute(self, sql: str, params: tuple = ()) -> None:
        with self._connection() as conn:
            with conn.cursor() as cursor:
                cursor.execute(sql, params)
            conn.commit()

    def _execute_count(self, sql: str, params: tuple = ()) -> int:
        with self._connection() as conn:
            with conn.cursor() as cursor:
                cursor.execute(sql, params)
                count = cursor.rowcount
            conn.commit()
        return count

    def _fetchone_commit(self, sql: str, params: tuple = ()) -> Optional[tuple]:
        """Run a write with RETURNING and commit it."""
        with self._connection() as conn:
            with conn.cursor() as cursor:
                cursor.execute(sql, params)
                row = cursor.fetchone()
            conn.commit()
        return row

    def ensure_schema(self) -> None:
        """Create tables if they do not exist and seed the cursor row."""
        self._execute(SCHEMA_SQL)
        self._execute(
            "INSERT INTO indexer_cursor (id, cursor) VALUES (TRUE, 0) ON CONFLICT (id) DO NOTHING"
        )

    # ================================================================
    # TRANSACTIONS
    # ================================================================

    @contextmanager
    def begin_apply(self) -> Generator[ApplyContext, None, None]:
        """
        Begin one read-model transaction holding the cursor row lock.

        A second writer blocks on the lock (up to lock_timeout_ms) instead
        of interleaving with this one.
        """
        conn = self._connection_factory()
        conn.autocommit = False
        cursor = conn.cursor()
        ctx = None

        try:
            cursor.execute(f"SET LOCAL lock_timeout = '{self._lock_timeout_ms}ms'")
            cursor.execute(f"SET LOCAL statement_timeout = '{self._statement_timeout_ms}ms'")
            try:
                cursor.execute("SELECT cursor FROM indexer_cursor WHERE id = TRUE FOR UPDATE")
            except pg_errors.LockNotAvailable as e:
                raise StoreError("Read model busy - could not lock indexer cursor") from e
            except pg_errors.QueryCanceled as e:
                raise StoreError("Timed out waiting for the indexer cursor lock") from e
            if cursor.fetchone() is None:
                raise StoreError("indexer_cursor row missing; run ensure_schema()")

            ctx = PostgresApplyContext(conn, cursor)
            yield ctx
        finally:
            if ctx is not None:
                ctx.rollback()
            else:
                conn.rollback()
            try:
                cursor.close()
            finally:
                conn.close()

    # ================================================================
    # READS
    # ================================================================

    def get_cursor(self) -> int:
        row = self._fetchone("SELECT cursor FROM indexer_cursor WHERE id = TRUE")
        return row[0] if row else 0

    def clear(self) -> None:
        with self._connection() as conn:
            with conn.cursor() as cursor:
                cursor.execute("SELECT cursor FROM indexer_cursor WHERE id = TRUE FOR UPDATE")
                cursor.execute(
                    "TRUNCATE certificates, accounts, audit_log, applied_events RESTART IDENTITY"
                )
                cursor.execute("UPDATE indexer_cursor SET cursor = 0 WHERE id = TRUE")
            conn.commit()

    def ping(self) -> bool:
        try:
            return self._fetchone("SELECT 1") == (1,)
        except psycopg2.Error:
            return False

    def get_certificate(self, cert_hash):
        row = self._fetchone(
            f"SELECT {_CERT_COLUMNS} FROM certificates WHERE cert_hash = %s",
            (cert_hash.lower(),),
        )
        return _row_to_certificate(row) if row else None

    def get_latest_version(self, subject_id):
        row = self._fetchone(
            "SELECT COALESCE(MAX(version), 0) FROM certificates WHERE subject_id = %s",
            (subject_id,),
        )
        return row[0]

    def list_versions(self, subject_id):
        rows = self._fetchall(
            f"SELECT {_CERT_COLUMNS} FROM certificates WHERE subject_id = %s ORDER BY version",
            (subject_id,),
        )
        return [_row_to_certificate(r) for r in rows]

    def list_certificates(self, is_revoked=None, subject_id=None, offset=0, limit=20):
        where, params = [], []
        if is_revoked is not None:
            where.append("is_revoked = %s")
            params.append(is_revoked)
        if subject_id is not None:
            where.append("subject_id = %s")
            params.append(subject_id)
        clause = f"WHERE {' AND '.join(where)}" if where else ""

        total = self._fetchone(f"SELECT COUNT(*) FROM certificates {clause}", tuple(params))[0]
        rows = self._fetchall(
            f"""
            SELECT {_CERT_COLUMNS} FROM certificates {clause}
            ORDER BY issuance_time DESC, cert_hash DESC
            LIMIT %s OFFSET %s
            """,
            tuple(params) + (limit, offset),
        )
        return [_row_to_certificate(r) for r in rows], total

    def search_subject_ids(self, fragment, limit):
        rows = self._fetchall(
            """
            SELECT DISTINCT subject_id FROM certificates
            WHERE subject_id ILIKE %s
            ORDER BY subject_id
            LIMIT %s
            """,
            (f"%{fragment}%", limit),
        )
        return [r[0] for r in rows]

    def get_account(self, address):
        row = self._fetchone(
            f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE address_key = %s",
            (address.lower(),),
        )
        return _row_to_account(row) if row else None

    def list_accounts(self, is_authorized=None, offset=0, limit=20):
        clause, params = "", ()
        if is_authorized is not None:
            clause, params = "WHERE is_authorized = %s", (is_authorized,)
        total = self._fetchone(f"SELECT COUNT(*) FROM accounts {clause}", params)[0]
        rows = self._fetchall(
            f"""
            SELECT {_ACCOUNT_COLUMNS} FROM accounts {clause}
            ORDER BY registered_at, address_key
            LIMIT %s OFFSET %s
            """,
            params + (limit, offset),
        )
        return [_row_to_account(r) for r in rows], total

    def list_audit(self, cert_hash=None, actor_address=None, offset=0, limit=20):
        where, params = [], []
        if cert_hash is not None:
            where.append("cert_hash = %s")
            params.append(cert_hash.lower())
        if actor_address is not None:
            where.append("lower(actor_address) = %s")
            params.append(actor_address.lower())
        clause = f"WHERE {' AND '.join(where)}" if where else ""
        order = "sequence" if cert_hash is not None else "timestamp, sequence, ledger_tx_id"

        total = self._fetchone(f"SELECT COUNT(*) FROM audit_log {clause}", tuple(params))[0]
        paging = "LIMIT %s OFFSET %s" if limit is not None else "OFFSET %s"
        paging_params = (limit, offset) if limit is not None else (offset,)
        rows = self._fetchall(
            f"""
            SELECT {_AUDIT_COLUMNS} FROM audit_log {clause}
            ORDER BY {order}
            {paging}
            """,
            tuple(params) + paging_params,
        )
        return [_row_to_audit(r) for r in rows], total

    def stats(self) -> StoreStats:
        row = self._fetchone(
            """
            SELECT
                (SELECT COUNT(*) FROM certificates),
                (SELECT COUNT(*) FROM certificates WHERE is_revoked),
                (SELECT COUNT(DISTINCT subject_id) FROM certificates),
                (SELECT COUNT(*) FROM accounts),
                (SELECT COUNT(*) FROM accounts WHERE is_authorized),
                (SELECT COUNT(*) FROM accounts WHERE is_admin AND is_authorized),
                (SELECT COUNT(*) FROM audit_log),
                (SELECT cursor FROM indexer_cursor WHERE id = TRUE)
            """
        )
        return StoreStats(
            certificates=row[0],
            active_certificates=row[0] - row[1],
            revoked_certificates=row[1],
            subjects=row[2],
            accounts=row[3],
            authorized_accounts=row[4],
            admins=row[5],
            audit_entries=row[6],
            cursor=row[7] or 0,
        )

    # ================================================================
    # LOGIN SESSIONS
    # ================================================================

    def save_session(self, session):
        self._execute(
            f"""
            INSERT INTO login_sessions ({_SESSION_COLUMNS})
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (session_id) DO UPDATE SET
                is_admin = EXCLUDED.is_admin,
                status = EXCLUDED.status,
                ended_at = EXCLUDED.ended_at
            """,
            (
                session.session_id, session.address, session.is_admin,
                session.issued_at, session.expires_at, session.status.value,
                session.ended_at,
            ),
        )

    def get_session(self, session_id):
        row = self._fetchone(
            f"SELECT {_SESSION_COLUMNS} FROM login_sessions WHERE session_id = %s",
            (session_id,),
        )
        return _row_to_session(row) if row else None

    def list_sessions(self, status=None, address=None):
        where, params = [], []
        if status is not None:
            where.append("status = %s")
            params.append(status.value)
        if address is not None:
            where.append("lower(address) = %s")
            params.append(address.lower())
        clause = f"WHERE {' AND '.join(where)}" if where else ""
        rows = self._fetchall(
            f"SELECT {_SESSION_COLUMNS} FROM login_sessions {clause} ORDER BY issued_at",
            tuple(params),
        )
        return [_row_to_session(r) for r in rows]

    def delete_sessions_ended_before(self, cutoff):
        return self._execute_count(
            "DELETE FROM login_sessions WHERE status <> %s AND ended_at < %s",
            (SessionStatus.ACTIVE.value, cutoff),
        )

    # ================================================================
    # CERTIFICATE ACTION REQUESTS
    # ================================================================

    def insert_action_request(self, request):
        try:
            row = self._fetchone_commit(
                f"""
                INSERT INTO action_requests (
                    cert_hash, subject_id, action, reason, status, requested_by,
                    requested_by_name, taken_by, rejection_reason, completion_tx_id,
                    requested_at, updated_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING {_REQUEST_COLUMNS}
                """,
                (
                    request.cert_hash, request.subject_id, request.action.value,
                    request.reason, request.status.value, request.requested_by,
                    request.requested_by_name, request.taken_by, request.rejection_reason,
                    request.completion_tx_id, request.requested_at, request.updated_at,
                ),
            )
        except pg_errors.UniqueViolation:
            open_rows, _ = self.list_action_requests(
                statuses=OPEN_REQUEST_STATUSES, cert_hash=request.cert_hash, limit=1
            )
            if not open_rows:
                raise
            raise OpenRequestExists(open_rows[0]) from None
        return _row_to_request(row)

    def get_action_request(self, request_id):
        row = self._fetchone(
            f"SELECT {_REQUEST_COLUMNS} FROM action_requests WHERE id = %s", (request_id,)
        )
        return _row_to_request(row) if row else None

    def update_action_request(self, request, expected_status):
        updated = self._execute_count(
            """
            UPDATE action_requests
            SET status = %s, taken_by = %s, rejection_reason = %s,
                completion_tx_id = %s, updated_at = %s
            WHERE id = %s AND status = %s
            """,
            (
                request.status.value, request.taken_by, request.rejection_reason,
                request.completion_tx_id, request.updated_at, request.id,
                expected_status.value,
            ),
        )
        return updated == 1

    def delete_action_request(self, request_id, expected_status):
        deleted = self._execute_count(
            "DELETE FROM action_requests WHERE id = %s AND status = %s",
            (request_id, expected_status.value),
        )
        return deleted == 1

    def list_action_requests(
        self, statuses=None, cert_hash=None, requested_by=None, taken_by=None, offset=0, limit=20
    ):
        where, params = [], []
        if statuses is not None:
            where.append("status = ANY(%s)")
            params.append([s.value for s in statuses])
        if cert_hash is not None:
            where.append("cert_hash = %s")
            params.append(cert_hash.lower())
        if requested_by is not None:
            where.append("lower(requested_by) = %s")
            params.append(requested_by.lower())
        if taken_by is not None:
            where.append("lower(taken_by) = %s")
            params.append(taken_by.lower())
        clause = f"WHERE {' AND '.join(where)}" if where else ""

        total = self._fetchone(f"SELECT COUNT(*) FROM action_requests {clause}", tuple(params))[0]
        paging = "LIMIT %s OFFSET %s" if limit is not None else "OFFSET %s"
        paging_params = (limit, offset) if limit is not None else (offset,)
        rows = self._fetchall(
            f"""
            SELECT {_REQUEST_COLUMNS} FROM action_requests {clause}
            ORDER BY requested_at DESC, id DESC
            {paging}
            """,
            tuple(params) + paging_params,
        )
        return [_row_to_request(r) for r in rows], total

    # ================================================================
    # VERIFIERS
    # ================================================================

    def upsert_verifier(self, verifier):
        row = self._fetchone_commit(
            f"""
            INSERT INTO verifiers (email_key, name, email, institution, website, created_at)
            VALUES (%s, %s, %s, %s, %s, %s)
            ON CONFLICT (email_key) DO UPDATE SET
                name = EXCLUDED.name,
                institution = EXCLUDED.institution,
                website = EXCLUDED.website
            RETURNING {_VERIFIER_COLUMNS}
            """,
            (
                verifier.email.strip().lower(), verifier.name, verifier.email,
                verifier.institution, verifier.website, verifier.created_at,
            ),
        )
        return _row_to_verifier(row)

    def get_verifier(self, verifier_id):
        row = self._fetchone(
            f"SELECT {_VERIFIER_COLUMNS} FROM verifiers WHERE id = %s", (verifier_id,)
        )
        return _row_to_verifier(row) if row else None

    def append_verification_log(self, entry):
        row = self._fetchone_commit(
            f"""
            INSERT INTO verification_logs
                (verifier_id, cert_hash, ip_address, user_agent, outcome, verified_at)
            VALUES (%s, %s, %s, %s, %s, %s)
            RETURNING {_LOG_COLUMNS}
            """,
            (
                entry.verifier_id, entry.cert_hash, entry.ip_address,
                entry.user_agent, entry.outcome.value, entry.verified_at,
            ),
        )
        return _row_to_log(row)

    def list_verification_logs(self, offset=0, limit=20, newest_first=True):
        direction = "DESC" if newest_first else "ASC"
        total = self._fetchone("SELECT COUNT(*) FROM verification_logs")[0]
        rows = self._fetchall(
            f"""
            SELECT {_LOG_COLUMNS} FROM verification_logs
            ORDER BY verified_at {direction}, id {direction}
            LIMIT %s OFFSET %s
            """,
            (limit, offset),
        )
        return [_row_to_log(r) for r in rows], total

    def save_blocked_verifier(self, block):
        self._execute(
            f"""
            INSERT INTO blocked_verifiers ({_BLOCK_COLUMNS})
            VALUES (%s, %s, %s, %s, %s)
            ON CONFLICT (ip_address) DO UPDATE SET
                blocked_until = EXCLUDED.blocked_until,
                reason = EXCLUDED.reason,
                blocked_by = EXCLUDED.blocked_by
            """,
            (block.ip_address, block.blocked_until, block.reason, block.blocked_by, block.created_at),
        )

    def get_blocked_verifier(self, ip_address):
        row = self._fetchone(
            f"SELECT {_BLOCK_COLUMNS} FROM blocked_verifiers WHERE ip_address = %s", (ip_address,)
        )
        return _row_to_block(row) if row else None

    def delete_blocked_verifier(self, ip_address):
        return self._execute_count(
            "DELETE FROM blocked_verifiers WHERE ip_address = %s", (ip_address,)
        ) == 1

    def list_blocked_verifiers(self, active_at):
        rows = self._fetchall(
            f"""
            SELECT {_BLOCK_COLUMNS} FROM blocked_verifiers
            WHERE blocked_until > %s
            ORDER BY created_at DESC
            """,
            (active_at,),
        )
        return [_row_to_block(r) for r in rows]
