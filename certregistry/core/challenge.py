"""
Challenge-Response Login

A wallet proves control of an address by signing a one-time message.

FLOW:
1. create_challenge(address) → message with a fresh nonce (TTL 5 min)
2. the wallet signs the message (personal_sign)
3. consume_challenge(address, signature) → SessionToken

RULES:
- One outstanding challenge per address; a new one replaces the old
- A challenge can be consumed exactly once, even under concurrent logins
- Expired, missing, or already-used challenges are rejected with distinct errors
"""

import logging
import secrets
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Callable, Optional

from .errors import AlreadyConsumed, ExpiredChallenge, NoSuchChallenge, SignatureMismatch
from .signature import SignatureVerifier, normalize_address

if TYPE_CHECKING:
    from .sessions import SessionRegistry, SessionToken

logger = logging.getLogger(__name__)

DEFAULT_CHALLENGE_TTL = 300

CHALLENGE_TEMPLATE = (
    "Sign this message to log in to the certificate registry.\n"
    "\n"
    "Address: {address}\n"
    "Nonce: {nonce}\n"
    "Issued At: {issued_at}"
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class ChallengeSession:
    """One outstanding login challenge."""
    address: str
    nonce_message: str
    issued_at: datetime
    expires_at: datetime
    consumed: bool = False

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


# ============================================================
# Challenge Store
# ============================================================

class ChallengeStore(ABC):
    """
    Storage for outstanding challenges, keyed by checksummed address.

    Implementations must make replace() and consume_if() atomic per address.
    """

    @abstractmethod
    def replace(self, session: ChallengeSession) -> None:
        """Store a challenge, discarding any previous one for the address."""
        pass

    @abstractmethod
    def get(self, address: str) -> Optional[ChallengeSession]:
        pass

    @abstractmethod
    def consume_if(
        self,
        address: str,
        check: Callable[[Optional[ChallengeSession]], None],
    ) -> ChallengeSession:
        """
        Atomically run `check` on the current challenge and mark it consumed.

        `check` raises to abort; the challenge is then left untouched.
        """
        pass

    @abstractmethod
    def purge(self, now: datetime) -> int:
        """Drop expired and consumed challenges. Returns how many were removed."""
        pass


class InMemoryChallengeStore(ChallengeStore):
    """
    Dict-backed store.

    Addresses hash onto a fixed set of lock stripes, so the lock table does
    not grow with the number of addresses that ever asked for a challenge.
    """

    DEFAULT_STRIPES = 64

    def __init__(self, stripes: int = DEFAULT_STRIPES):
        if stripes < 1:
            raise ValueError("stripes must be at least 1")
        self._sessions: dict[str, ChallengeSession] = {}
        self._locks = tuple(threading.Lock() for _ in range(stripes))

    @property
    def lock_count(self) -> int:
        return len(self._locks)

    def _lock_for(self, address: str) -> threading.Lock:
        return self._locks[hash(address) % len(self._locks)]

    def replace(self, session: ChallengeSession) -> None:
        with self._lock_for(session.address):
            self._sessions[session.address] = session

    def get(self, address: str) -> Optional[ChallengeSession]:
        return self._sessions.get(address)

    def consume_if(self, address, check) -> ChallengeSession:
        with self._lock_for(address):
            current = self._sessions.get(address)
            check(current)
            consumed = replace(current, consumed=True)
            self._sessions[address] = consumed
            return consumed

    def purge(self, now: datetime) -> int:
        removed = 0
        for address in list(self._sessions.keys()):
            with self._lock_for(address):
                session = self._sessions.get(address)
                if session is not None and (session.consumed or session.is_expired(now)):
                    del self._sessions[address]
                    removed += 1
        return removed

    def __len__(self) -> int:
        return len(self._sessions)


# ============================================================
# Manager
# ============================================================

class ChallengeSessionManager:
    """
    Issues and consumes login challenges.

    Args:
        verifier: SignatureVerifier used against the STORED message
        sessions: SessionRegistry that mints the token on success
        store: ChallengeStore (in-memory by default)
        ttl_seconds: Challenge lifetime
        admit: Optional hook called with the address after the signature
            checks out and before a token is minted. Returns whether the
            account is an admin; raises to refuse login.
        clock: Injected for tests
    """

    def __init__(
        self,
        verifier: SignatureVerifier,
        sessions: "SessionRegistry",
        store: Optional[ChallengeStore] = None,
        ttl_seconds: int = DEFAULT_CHALLENGE_TTL,
        admit: Optional[Callable[[str], bool]] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._verifier = verifier
        self._sessions = sessions
        self._store = store or InMemoryChallengeStore()
        self._ttl = timedelta(seconds=ttl_seconds)
        self._admit = admit
        self._clock = clock

    @property
    def store(self) -> ChallengeStore:
        return self._store

    def create_challenge(self, address: str) -> ChallengeSession:
        """
        Issue a fresh challenge for `address`.

        Raises ValueError for a malformed address.
        """
        address = normalize_address(address)
        now = self._clock()
        message = CHALLENGE_TEMPLATE.format(
            address=address,
            nonce=secrets.token_hex(16),
            issued_at=now.isoformat(),
        )
        session = ChallengeSession(
            address=address,
            nonce_message=message,
            issued_at=now,
            expires_at=now + self._ttl,
        )
        self._store.replace(session)
        logger.debug(f"Challenge issued for {address}")
        return session

    def consume_challenge(
        self,
        address: str,
        signature: str,
        message: Optional[str] = None,
    ) -> "SessionToken":
        """
        Verify a signed challenge and open a session.

        Args:
            address: Address that claims to have signed
            signature: 0x-prefixed 65-byte hex signature
            message: Optional echo of the challenge text; must match exactly

        Raises:
            NoSuchChallenge, AlreadyConsumed, ExpiredChallenge, SignatureMismatch
        """
        try:
            address = normalize_address(address)
        except ValueError:
            raise NoSuchChallenge("No challenge issued for this address") from None

        now = self._clock()

        def check(session: Optional[ChallengeSession]) -> None:
            if session is None:
                raise NoSuchChallenge("No challenge issued for this address")
            if session.consumed:
                raise AlreadyConsumed("Challenge has already been used")
            if session.is_expired(now):
                raise ExpiredChallenge("Challenge expired; request a new one")
            if message is not None and message != session.nonce_message:
                raise SignatureMismatch("Signed message does not match the issued challenge")
            if not self._verifier.verify(address, session.nonce_message, signature):
                raise SignatureMismatch("Signature does not match address")

        self._store.consume_if(address, check)

        is_admin = self._admit(address) if self._admit is not None else False
        return self._sessions.open(address, is_admin=is_admin)

    def purge_expired(self) -> int:
        removed = self._store.purge(self._clock())
        if removed:
            logger.debug(f"Purged {removed} stale challenges")
        return removed
