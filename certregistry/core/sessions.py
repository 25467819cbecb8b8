"""
Login Sessions

A session is minted after a successful challenge-response login and
carried as a bearer token.

Security Features:
- Tokens signed with itsdangerous (URLSafeTimedSerializer), max age enforced
- Every token maps to a stored LoginSession; logout and revocation are
  effective immediately, not only at expiry
- Sessions of accounts that lose authorization are revoked by the
  maintenance scheduler
"""

import logging
import secrets
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from itsdangerous import BadSignature, SignatureExpired, URLSafeTimedSerializer

from ..db.store import LoginSession, ReadModelStore, SessionStatus
from .errors import AuthenticationError

logger = logging.getLogger(__name__)

TOKEN_SALT = "certregistry-session-v1"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SessionToken:
    access_token: str
    session_id: str
    address: str
    is_admin: bool
    expires_at: datetime

    token_type: str = "bearer"


class SessionRegistry:
    """
    Mints, resolves, and ends login sessions.

    Args:
        store: ReadModelStore holding the login_sessions table
        secret: Token signing key
        ttl_seconds: Session lifetime
        clock: Injected for tests
    """

    def __init__(
        self,
        store: ReadModelStore,
        secret: str,
        ttl_seconds: int = 3600,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._store = store
        self._serializer = URLSafeTimedSerializer(secret_key=secret, salt=TOKEN_SALT)
        self._ttl = timedelta(seconds=ttl_seconds)
        self._ttl_seconds = ttl_seconds
        self._clock = clock

    def open(self, address: str, is_admin: bool = False) -> SessionToken:
        now = self._clock()
        session = LoginSession(
            session_id=secrets.token_urlsafe(16),
            address=address,
            is_admin=is_admin,
            issued_at=now,
            expires_at=now + self._ttl,
        )
        self._store.save_session(session)
        token = self._serializer.dumps({"addr": address, "sid": session.session_id})
        logger.info(f"Session opened for {address} (admin={is_admin})")
        return SessionToken(
            access_token=token,
            session_id=session.session_id,
            address=address,
            is_admin=is_admin,
            expires_at=session.expires_at,
        )

    def resolve(self, token: str) -> LoginSession:
        """
        Map a bearer token to its active session.

        Raises AuthenticationError for bad signatures, expired tokens, and
        sessions that were logged out, expired, or revoked.
        """
        if not token:
            raise AuthenticationError("Missing session token")
        try:
            data = self._serializer.loads(token, max_age=self._ttl_seconds)
        except SignatureExpired:
            raise AuthenticationError("Session expired; log in again") from None
        except BadSignature:
            raise AuthenticationError("Invalid session token") from None

        session = self._store.get_session(str(data.get("sid", "")))
        if session is None or session.address != data.get("addr"):
            raise AuthenticationError("Unknown session")
        if session.status != SessionStatus.ACTIVE:
            raise AuthenticationError(f"Session is {session.status.value}")
        if self._clock() >= session.expires_at:
            self._end(session, SessionStatus.EXPIRED)
            raise AuthenticationError("Session expired; log in again")
        return session

    def close(self, session_id: str) -> bool:
        """Log out. Returns False when the session was not active."""
        session = self._store.get_session(session_id)
        if session is None or session.status != SessionStatus.ACTIVE:
            return False
        self._end(session, SessionStatus.LOGGED_OUT)
        logger.info(f"Session closed for {session.address}")
        return True

    def expire_stale(self) -> int:
        """Mark active sessions past their expiry as expired."""
        now = self._clock()
        expired = 0
        for session in self._store.list_sessions(status=SessionStatus.ACTIVE):
            if now >= session.expires_at:
                self._end(session, SessionStatus.EXPIRED)
                expired += 1
        return expired

    def revoke_for_address(self, address: str) -> int:
        """End every active session of an address."""
        revoked = 0
        for session in self._store.list_sessions(status=SessionStatus.ACTIVE, address=address):
            self._end(session, SessionStatus.REVOKED)
            revoked += 1
        return revoked

    def demote(self, session: LoginSession) -> None:
        """Drop admin rights from a live session."""
        session.is_admin = False
        self._store.save_session(session)

    def purge_ended(self, retention_seconds: float) -> int:
        """Delete logged-out, expired and revoked sessions older than the retention window."""
        cutoff = self._clock() - timedelta(seconds=retention_seconds)
        return self._store.delete_sessions_ended_before(cutoff)

    def active_sessions(self) -> list[LoginSession]:
        return self._store.list_sessions(status=SessionStatus.ACTIVE)

    def _end(self, session: LoginSession, status: SessionStatus) -> None:
        session.status = status
        session.ended_at = self._clock()
        self._store.save_session(session)


class LoginRateLimiter:
    """
    Sliding-window limit on login attempts per client key (IP).

    In-process only; use a shared store for multi-server deployments.
    """

    def __init__(
        self,
        max_attempts: int = 10,
        window_seconds: float = 15 * 60,
        clock: Callable[[], float] | None = None,
    ):
        self._max_attempts = max_attempts
        self._window = window_seconds
        self._clock = clock or time.monotonic
        self._attempts: dict[str, deque[float]] = defaultdict(deque)
        self._lock = threading.Lock()

    def check(self, key: str) -> tuple[bool, int]:
        """Returns (is_allowed, retry_after_seconds)."""
        now = self._clock()
        with self._lock:
            attempts = self._live_attempts(key, now)
            if len(attempts) >= self._max_attempts:
                retry_after = int(self._window - (now - attempts[0]))
                return False, max(1, retry_after)
            return True, 0

    def record(self, key: str) -> None:
        with self._lock:
            self._attempts[key].append(self._clock())

    def remaining(self, key: str) -> int:
        """Attempts left in the current window."""
        with self._lock:
            used = len(self._live_attempts(key, self._clock()))
        return max(0, self._max_attempts - used)

    def clear(self, key: str) -> None:
        with self._lock:
            self._attempts.pop(key, None)

    def clear_prefix(self, prefix: str) -> None:
        with self._lock:
            for key in [k for k in self._attempts if k.startswith(prefix)]:
                del self._attempts[key]

    def _live_attempts(self, key: str, now: float) -> deque[float]:
        # Caller holds self._lock. Keys with no live attempts are dropped.
        attempts = self._attempts[key]
        while attempts and attempts[0] <= now - self._window:
            attempts.popleft()
        if not attempts:
            del self._attempts[key]
        return attempts
