"""
Ledger Client Boundary

The ledger (a certificate registry contract) is the authoritative,
append-only record. This module defines the interface the rest of the
service talks to, and InMemoryLedger, an in-process registry that applies
the same rules a deployed contract would.

CONTRACT:
- submit() blocks until the transaction is confirmed or times out
- submit() raises SubmissionRejected when the ledger's own rules refuse
  the call, LedgerTimeout when no confirmation arrives in time
- stream_events(cursor) replays every event strictly after `cursor`, in
  ledger order; with follow=True it keeps yielding new events until
  `stop` is set
- Delivery is at-least-once: consumers must deduplicate
"""

import logging
import secrets
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Iterator, Optional

from pydantic import ValidationError as PydanticValidationError

from ..schemas import (
    ACTION_PAYLOADS,
    CertificateAttributes,
    EventType,
    IssuePayload,
    LedgerAction,
    LedgerEvent,
    RegisterUserPayload,
    TxReceipt,
)
from .errors import LedgerTimeout, LedgerUnavailableError, SubmissionRejected
from .hasher import Hasher
from .signature import normalize_address

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LedgerClient(ABC):
    """Abstract boundary to the authoritative ledger."""

    @abstractmethod
    def submit(
        self,
        action: LedgerAction,
        payload: dict[str, Any],
        *,
        actor: str,
        timeout: Optional[float] = None,
    ) -> TxReceipt:
        """
        Submit a mutation signed by `actor` and wait for confirmation.

        Raises:
            SubmissionRejected: The ledger refused the call
            LedgerTimeout: No confirmation within `timeout` seconds
        """
        pass

    @abstractmethod
    def stream_events(
        self,
        cursor: Optional[int] = None,
        follow: bool = False,
        stop: Optional[threading.Event] = None,
    ) -> Iterator[LedgerEvent]:
        """
        Yield events with event.cursor > cursor, in ledger order.

        Raises:
            LedgerUnavailableError: The stream broke; resume from the last cursor seen
        """
        pass

    @abstractmethod
    def head_cursor(self) -> int:
        """Cursor of the newest confirmed event (0 if none)."""
        pass

    def ping(self) -> bool:
        try:
            self.head_cursor()
            return True
        except LedgerUnavailableError:
            return False


# ============================================================
# IN-PROCESS REGISTRY
# ============================================================

@dataclass
class _CertState:
    subject_id: str
    version: int
    revoked: bool = False


@dataclass
class _AccountState:
    authorized: bool = True
    admin: bool = False


class InMemoryLedger(LedgerClient):
    """
    In-process registry with contract semantics.

    It is authoritative for its own rules:
    - ISSUE requires version == latest + 1 and a matching content hash
    - REVOKE only from active, REACTIVATE only from revoked
    - certificate actions require an authorized account
    - account actions require an authorized admin
    - the last admin can never lose admin rights

    Fault injection (tests):
    - duplicate_delivery: every streamed event is yielded twice
    - fail_stream_after(n): the next stream breaks after n events
    - append_raw(event): push an event that bypasses the rules
    """

    def __init__(
        self,
        genesis_admin: Optional[str] = None,
        genesis_name: str = "Registry Administrator",
        genesis_email: str = "admin@localhost",
        confirmation_delay: float = 0.0,
        poll_interval: float = 0.25,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._events: list[LedgerEvent] = []
        self._certificates: dict[str, _CertState] = {}
        self._latest_versions: dict[str, int] = {}
        self._accounts: dict[str, _AccountState] = {}
        self._lock = threading.Lock()
        self._new_event = threading.Condition(self._lock)
        self._clock = clock
        self._poll_interval = poll_interval

        self.confirmation_delay = confirmation_delay
        self.duplicate_delivery = False
        self._fail_after: Optional[int] = None

        if genesis_admin:
            address = normalize_address(genesis_admin)
            with self._lock:
                self._accounts[address.lower()] = _AccountState(authorized=True, admin=True)
                self._emit(
                    EventType.USER_REGISTERED,
                    actor=address,
                    address=address,
                    payload=RegisterUserPayload(
                        address=address,
                        display_name=genesis_name,
                        email=genesis_email,
                        is_admin=True,
                    ).model_dump(mode="json"),
                )

    # ================================================================
    # SUBMISSION
    # ================================================================

    def submit(self, action, payload, *, actor, timeout=None) -> TxReceipt:
        action = LedgerAction(action)
        try:
            actor = normalize_address(actor)
        except ValueError:
            raise SubmissionRejected(f"invalid sender {actor!r}") from None

        model_cls = ACTION_PAYLOADS[action]
        try:
            model = model_cls.model_validate(payload)
        except PydanticValidationError as e:
            raise SubmissionRejected(f"malformed {action.value} payload: {e}") from e

        # Block time
        delay = self.confirmation_delay
        if delay > 0:
            if timeout is not None and delay > timeout:
                time.sleep(timeout)
                raise LedgerTimeout(
                    f"{action.value} not confirmed within {timeout}s"
                )
            time.sleep(delay)

        with self._lock:
            handler = getattr(self, f"_exec_{action.value.lower()}")
            event = handler(actor, model)

        logger.debug(f"Confirmed {action.value} tx={event.tx_id} cursor={event.cursor}")
        return TxReceipt(
            tx_id=event.tx_id,
            cursor=event.cursor,
            action=action,
            confirmed_at=event.timestamp,
            cert_hash=event.cert_hash,
            address=event.address,
        )

    def _require_authorized(self, actor: str) -> _AccountState:
        account = self._accounts.get(actor.lower())
        if account is None:
            raise SubmissionRejected(f"sender {actor} is not registered")
        if not account.authorized:
            raise SubmissionRejected(f"sender {actor} is not authorized")
        return account

    def _require_admin(self, actor: str) -> None:
        if not self._require_authorized(actor).admin:
            raise SubmissionRejected(f"sender {actor} is not an admin")

    def _require_cert(self, cert_hash: str) -> _CertState:
        cert = self._certificates.get(cert_hash.lower())
        if cert is None:
            raise SubmissionRejected(f"certificate {cert_hash} does not exist")
        return cert

    def _require_account(self, address: str) -> tuple[str, _AccountState]:
        try:
            address = normalize_address(address)
        except ValueError:
            raise SubmissionRejected(f"invalid address {address!r}") from None
        account = self._accounts.get(address.lower())
        if account is None:
            raise SubmissionRejected(f"account {address} is not registered")
        return address, account

    def _admin_count(self) -> int:
        return sum(1 for a in self._accounts.values() if a.admin and a.authorized)

    def _exec_issue(self, actor: str, model: IssuePayload) -> LedgerEvent:
        self._require_authorized(actor)
        if model.issuer_address.lower() != actor.lower():
            raise SubmissionRejected("issuer_address must be the sender")
        expected = self._latest_versions.get(model.subject_id, 0) + 1
        if model.version != expected:
            raise SubmissionRejected(
                f"version conflict for {model.subject_id}: "
                f"expected {expected}, got {model.version}"
            )
        attributes = CertificateAttributes(
            subject_name=model.subject_name,
            program=model.program,
            credential_value=model.credential_value,
            issuing_authority=model.issuing_authority,
        )
        if not Hasher.verify_certificate_hash(
            model.cert_hash, model.subject_id, model.version, attributes,
            model.issuer_address, model.issuance_time,
        ):
            raise SubmissionRejected("cert_hash does not match certificate content")
        cert_hash = model.cert_hash.lower()
        if cert_hash in self._certificates:
            raise SubmissionRejected(f"certificate {cert_hash} already exists")

        self._certificates[cert_hash] = _CertState(model.subject_id, model.version)
        self._latest_versions[model.subject_id] = model.version
        return self._emit(
            EventType.ISSUED,
            actor=actor,
            cert_hash=cert_hash,
            subject_id=model.subject_id,
            version=model.version,
            payload=model.model_dump(mode="json") | {"cert_hash": cert_hash},
        )

    def _exec_revoke(self, actor, model) -> LedgerEvent:
        self._require_authorized(actor)
        cert = self._require_cert(model.cert_hash)
        if cert.revoked:
            raise SubmissionRejected("certificate already revoked")
        cert.revoked = True
        return self._emit(
            EventType.REVOKED,
            actor=actor,
            cert_hash=model.cert_hash.lower(),
            subject_id=cert.subject_id,
            version=cert.version,
            payload={"reason": model.reason},
        )

    def _exec_reactivate(self, actor, model) -> LedgerEvent:
        self._require_authorized(actor)
        cert = self._require_cert(model.cert_hash)
        if not cert.revoked:
            raise SubmissionRejected("certificate is not revoked")
        cert.revoked = False
        return self._emit(
            EventType.REACTIVATED,
            actor=actor,
            cert_hash=model.cert_hash.lower(),
            subject_id=cert.subject_id,
            version=cert.version,
        )

    def _exec_register_user(self, actor, model) -> LedgerEvent:
        self._require_admin(actor)
        try:
            address = normalize_address(model.address)
        except ValueError:
            raise SubmissionRejected(f"invalid address {model.address!r}") from None
        if address.lower() in self._accounts:
            raise SubmissionRejected(f"account {address} already registered")
        self._accounts[address.lower()] = _AccountState(authorized=True, admin=model.is_admin)
        return self._emit(
            EventType.USER_REGISTERED,
            actor=actor,
            address=address,
            payload=model.model_dump(mode="json") | {"address": address},
        )

    def _exec_revoke_user(self, actor, model) -> LedgerEvent:
        self._require_admin(actor)
        address, account = self._require_account(model.address)
        if not account.authorized:
            raise SubmissionRejected(f"account {address} already revoked")
        if account.admin and self._admin_count() <= 1:
            raise SubmissionRejected("cannot revoke the last admin")
        account.authorized = False
        return self._emit(EventType.USER_REVOKED, actor=actor, address=address)

    def _exec_restore_user(self, actor, model) -> LedgerEvent:
        self._require_admin(actor)
        address, account = self._require_account(model.address)
        if account.authorized:
            raise SubmissionRejected(f"account {address} is already authorized")
        account.authorized = True
        return self._emit(EventType.USER_RESTORED, actor=actor, address=address)

    def _exec_grant_admin(self, actor, model) -> LedgerEvent:
        self._require_admin(actor)
        address, account = self._require_account(model.address)
        if account.admin:
            raise SubmissionRejected(f"account {address} is already an admin")
        if not account.authorized:
            raise SubmissionRejected(f"account {address} is revoked")
        account.admin = True
        return self._emit(EventType.ADMIN_GRANTED, actor=actor, address=address)

    def _exec_revoke_admin(self, actor, model) -> LedgerEvent:
        self._require_admin(actor)
        address, account = self._require_account(model.address)
        if not account.admin:
            raise SubmissionRejected(f"account {address} is not an admin")
        if self._admin_count() <= 1:
            raise SubmissionRejected("cannot revoke admin from the last admin")
        account.admin = False
        return self._emit(EventType.ADMIN_REVOKED, actor=actor, address=address)

    def _emit(
        self,
        event_type: EventType,
        actor: str,
        payload: Optional[dict[str, Any]] = None,
        **targets: Any,
    ) -> LedgerEvent:
        """Append one event. Caller holds the lock."""
        event = LedgerEvent(
            cursor=len(self._events) + 1,
            tx_id="0x" + secrets.token_hex(32),
            event_type=event_type,
            actor_address=actor,
            timestamp=self._clock(),
            payload=payload or {},
            **targets,
        )
        self._events.append(event)
        self._new_event.notify_all()
        return event

    # ================================================================
    # STREAMING
    # ================================================================

    def stream_events(self, cursor=None, follow=False, stop=None) -> Iterator[LedgerEvent]:
        position = cursor or 0
        delivered = 0
        with self._lock:
            fail_after = self._fail_after
            self._fail_after = None

        while True:
            with self._lock:
                batch = [e for e in self._events[position:]]
                if not batch and follow:
                    self._new_event.wait(timeout=self._poll_interval)
                    batch = [e for e in self._events[position:]]

            for event in batch:
                copies = 2 if self.duplicate_delivery else 1
                for _ in range(copies):
                    if fail_after is not None and delivered >= fail_after:
                        raise LedgerUnavailableError(
                            f"Event stream interrupted after cursor {position}"
                        )
                    delivered += 1
                    yield event
                position = event.cursor

            if not follow:
                return
            if stop is not None and stop.is_set():
                return

    def head_cursor(self) -> int:
        with self._lock:
            return len(self._events)

    # ================================================================
    # FAULT INJECTION
    # ================================================================

    def fail_stream_after(self, n: int) -> None:
        """Make the next stream_events call raise after yielding n events."""
        with self._lock:
            self._fail_after = n

    def append_raw(self, event: LedgerEvent) -> LedgerEvent:
        """
        Push an event without rule checks or state changes.

        The event keeps its own tx_id and payload; only the cursor is
        reassigned so the stream stays monotonic.
        """
        with self._lock:
            event = event.model_copy(update={"cursor": len(self._events) + 1})
            self._events.append(event)
            self._new_event.notify_all()
            return event

    def events(self) -> list[LedgerEvent]:
        with self._lock:
            return list(self._events)
