"""
Tests for the AuditIndexer: idempotent replay, fail-stop halts, and
resumption after stream interruptions.
"""

import time
from contextlib import contextmanager
from datetime import datetime, timezone

import pytest

from conftest import FixedClock, make_attributes, make_container

from certregistry.config import IndexerConfig
from certregistry.core.errors import ConsistencyViolation, IndexerBusy, LedgerUnavailableError
from certregistry.core.hasher import Hasher
from certregistry.core.indexer import AuditIndexer
from certregistry.core.ledger_client import InMemoryLedger
from certregistry.db.store import InMemoryReadModelStore, StoreError
from certregistry.observability import check_health
from certregistry.schemas import AuditAction, EventType, IssuePayload, LedgerAction, LedgerEvent

ISSUED_AT = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FlakyStore(InMemoryReadModelStore):
    """Raises `error` from the next `failures` apply transactions."""

    def __init__(self, failures=1, error=None):
        super().__init__()
        self.failures = failures
        self.error = error or StoreError("server closed the connection unexpectedly")

    @contextmanager
    def begin_apply(self):
        if self.failures:
            self.failures -= 1
            raise self.error
        with super().begin_apply() as ctx:
            yield ctx


def following_indexer(ledger, store):
    return AuditIndexer(
        ledger,
        store,
        config=IndexerConfig(enabled=True, backoff_initial_seconds=0.01, backoff_max_seconds=0.05),
    )


def fresh_indexer(ledger, **config):
    store = InMemoryReadModelStore()
    indexer = AuditIndexer(ledger, store, config=IndexerConfig(enabled=False, **config))
    return indexer, store


@pytest.fixture
def history(container, registered_issuer):
    """S1 issued, revoked, reactivated, revoked again; S1 v2 and S2 v1 issued."""
    certs = container.certificates
    actor = registered_issuer.address
    h1 = certs.issue(actor, "S1", make_attributes()).cert_hash
    certs.revoke(actor, h1, "fraud")
    certs.reactivate(actor, h1)
    certs.revoke(actor, h1, "fraud confirmed")
    h2 = certs.issue(actor, "S1", make_attributes(value=390)).cert_hash
    h3 = certs.issue(actor, "S2", make_attributes(name="Charles Babbage")).cert_hash
    return {"h1": h1, "h2": h2, "h3": h3}


class TestReplay:

    def test_projection_matches_history(self, container, history):
        h1 = history["h1"]
        cert = container.queries.get_certificate(h1)
        assert cert.is_revoked
        assert cert.revocation_reason == "fraud confirmed"

        audit = container.queries.audit_for_certificate(h1)
        assert [e.action for e in audit] == [
            AuditAction.ISSUED,
            AuditAction.REVOKED,
            AuditAction.REACTIVATED,
            AuditAction.REVOKED,
        ]
        assert [e.reason for e in audit] == [None, "fraud", None, "fraud confirmed"]
        sequences = [e.sequence for e in audit]
        assert sequences == sorted(sequences)

    def test_fraud_scenario(self, container, registered_issuer):
        """S1 v1 is issued as H1, revoked for fraud, and reported revoked."""
        certs = container.certificates
        h1 = certs.issue(registered_issuer.address, "S1", make_attributes()).cert_hash
        certs.revoke(registered_issuer.address, h1, "fraud")

        result = certs.verify(h1)
        assert result.status.value == "revoked"
        assert not result.is_valid
        audit = container.queries.audit_for_certificate(h1)
        assert [(e.action, e.reason) for e in audit] == [
            (AuditAction.ISSUED, None),
            (AuditAction.REVOKED, "fraud"),
        ]
        assert all(e.actor_address == registered_issuer.address for e in audit)

    def test_second_run_is_noop(self, container, history):
        before = container.store.snapshot()
        result = container.indexer.run_once()
        assert result.applied == 0
        assert container.store.snapshot() == before

    def test_replay_into_fresh_store_is_identical(self, container, ledger, history):
        indexer, store = fresh_indexer(ledger)
        result = indexer.run_once()
        assert result.applied == ledger.head_cursor()
        assert store.snapshot() == container.store.snapshot()

    def test_rebuild(self, container, history):
        before = container.store.snapshot()
        container.indexer.rebuild()
        assert container.store.snapshot() == before

    def test_versions_have_no_gaps(self, container, history):
        for subject_id in ("S1", "S2"):
            versions = [c.version for c in container.queries.get_history(subject_id)]
            assert versions == list(range(1, len(versions) + 1))

    def test_duplicate_delivery(self, container, ledger, history):
        ledger.duplicate_delivery = True
        indexer, store = fresh_indexer(ledger)
        result = indexer.run_once()
        assert result.applied == ledger.head_cursor()
        assert result.duplicates == ledger.head_cursor()
        assert store.snapshot() == container.store.snapshot()

    def test_identical_redelivery_at_new_cursor(self, container, ledger, history):
        """Same transaction seen again later in the stream is skipped."""
        revoked = next(e for e in ledger.events() if e.event_type == EventType.REVOKED)
        before = container.store.snapshot()
        ledger.append_raw(revoked)

        result = container.indexer.run_once()
        assert result.applied == 0
        assert result.duplicates == 1
        assert container.store.get_cursor() == ledger.head_cursor()
        assert container.store.snapshot()["audit"] == before["audit"]


class TestSharedTimestamps:
    """All events land in one block and carry the same timestamp."""

    @pytest.fixture
    def pinned(self, admin, issuer):
        ledger = InMemoryLedger(genesis_admin=admin.address, clock=FixedClock())
        container = make_container(InMemoryReadModelStore(), ledger)
        container.accounts.register(admin.address, issuer.address, "Registrar", "r@example.edu")
        yield container
        container.stop()

    def test_certificate_audit_follows_ledger_order(self, pinned, issuer):
        certs = pinned.certificates
        for subject_id in ("S1", "S2", "S3"):
            h1 = certs.issue(issuer.address, subject_id, make_attributes()).cert_hash
            certs.revoke(issuer.address, h1, "fraud")
            certs.reactivate(issuer.address, h1)
            certs.revoke(issuer.address, h1, "fraud confirmed")

            audit = pinned.queries.audit_for_certificate(h1)
            assert [e.action for e in audit] == [
                AuditAction.ISSUED,
                AuditAction.REVOKED,
                AuditAction.REACTIVATED,
                AuditAction.REVOKED,
            ]
            assert [e.reason for e in audit] == [None, "fraud", None, "fraud confirmed"]

    def test_global_audit_breaks_ties_by_sequence(self, pinned, issuer):
        certs = pinned.certificates
        h1 = certs.issue(issuer.address, "S1", make_attributes()).cert_hash
        certs.revoke(issuer.address, h1, "fraud")
        certs.issue(issuer.address, "S2", make_attributes(name="Charles Babbage"))
        certs.reactivate(issuer.address, h1)

        page = pinned.queries.list_audit(page=1, page_size=100)
        sequences = [e.sequence for e in page.data]
        assert len(sequences) == 4
        assert sequences == sorted(sequences)


class TestHalt:

    def test_conflicting_duplicate_halts(self, container, ledger, history):
        revoked = next(e for e in ledger.events() if e.event_type == EventType.REVOKED)
        cursor_before = container.store.get_cursor()
        ledger.append_raw(revoked.model_copy(update={"payload": {"reason": "something else"}}))

        with pytest.raises(ConsistencyViolation, match="Conflicting duplicate"):
            container.indexer.run_once()

        assert container.indexer.is_halted
        assert container.indexer.status().state == "halted"
        assert container.store.get_cursor() == cursor_before

        # Stays halted until resumed
        with pytest.raises(ConsistencyViolation, match="halted"):
            container.indexer.run_once()

    def test_version_gap_halts(self, container, ledger, registered_issuer):
        attributes = make_attributes()
        cert_hash = Hasher.certificate_hash("S9", 2, attributes, registered_issuer.address, ISSUED_AT)
        payload = IssuePayload(
            cert_hash=cert_hash,
            subject_id="S9",
            version=2,
            issuer_address=registered_issuer.address,
            issuance_time=ISSUED_AT,
            **attributes.model_dump(),
        )
        ledger.append_raw(LedgerEvent(
            cursor=1,
            tx_id="0x" + "ee" * 32,
            event_type=EventType.ISSUED,
            actor_address=registered_issuer.address,
            timestamp=ISSUED_AT,
            cert_hash=cert_hash,
            subject_id="S9",
            version=2,
            payload=payload.model_dump(mode="json"),
        ))

        with pytest.raises(ConsistencyViolation, match="Version gap"):
            container.indexer.run_once()
        assert container.store.get_certificate(cert_hash) is None
        assert container.store.get_latest_version("S9") == 0

    def test_unknown_certificate_halts(self, container, ledger, admin):
        ledger.append_raw(LedgerEvent(
            cursor=1,
            tx_id="0x" + "dd" * 32,
            event_type=EventType.REACTIVATED,
            actor_address=admin.address,
            timestamp=ISSUED_AT,
            cert_hash="0x" + "ab" * 32,
        ))
        with pytest.raises(ConsistencyViolation, match="unknown certificate"):
            container.indexer.run_once()

    def test_resume_does_not_skip(self, container, ledger, history):
        revoked = next(e for e in ledger.events() if e.event_type == EventType.REVOKED)
        ledger.append_raw(revoked.model_copy(update={"payload": {"reason": "changed"}}))
        with pytest.raises(ConsistencyViolation):
            container.indexer.run_once()

        container.indexer.resume()
        assert not container.indexer.is_halted
        assert container.indexer.status().last_error is None
        with pytest.raises(ConsistencyViolation):
            container.indexer.run_once()

    def test_halted_indexer_blocks_read_your_writes(self, container, ledger, admin, history):
        revoked = next(e for e in ledger.events() if e.event_type == EventType.REVOKED)
        ledger.append_raw(revoked.model_copy(update={"payload": {"reason": "forged"}}))
        with pytest.raises(ConsistencyViolation):
            container.indexer.run_once()
        assert container.indexer.sync_to(ledger.head_cursor(), timeout=0.1) is False


class TestInterruption:

    def test_resumes_from_last_cursor(self, container, ledger, history):
        ledger.fail_stream_after(3)
        indexer, store = fresh_indexer(ledger)

        with pytest.raises(LedgerUnavailableError):
            indexer.run_once()
        assert store.get_cursor() == 3
        assert not indexer.is_halted

        indexer.run_once()
        assert store.get_cursor() == ledger.head_cursor()
        assert store.snapshot() == container.store.snapshot()

    def test_follower_retries_after_interruption(self, container, ledger, history):
        ledger.fail_stream_after(2)
        store = InMemoryReadModelStore()
        indexer = AuditIndexer(
            ledger,
            store,
            config=IndexerConfig(enabled=True, backoff_initial_seconds=0.01, backoff_max_seconds=0.05),
        )
        indexer.start()
        try:
            assert indexer.sync_to(ledger.head_cursor(), timeout=5.0)
        finally:
            indexer.stop()
        assert store.snapshot() == container.store.snapshot()

    def test_follower_survives_read_model_outage(self, container, ledger, history):
        store = FlakyStore(failures=2)
        indexer = following_indexer(ledger, store)
        indexer.start()
        try:
            assert indexer.sync_to(ledger.head_cursor(), timeout=5.0)
            status = indexer.status()
            assert status.running
            assert status.state == "running"
            assert status.last_error is None
        finally:
            indexer.stop()
        assert store.failures == 0
        assert store.snapshot() == container.store.snapshot()

    def test_follower_picks_up_writes_after_outage(self, container, ledger, history, registered_issuer):
        store = FlakyStore(failures=0)
        indexer = following_indexer(ledger, store)
        indexer.start()
        try:
            assert indexer.sync_to(ledger.head_cursor(), timeout=5.0)
            store.failures = 1
            container.certificates.issue(registered_issuer.address, "S3", make_attributes())
            assert indexer.sync_to(ledger.head_cursor(), timeout=5.0)
        finally:
            indexer.stop()
        assert store.get_cursor() == ledger.head_cursor()

    def test_crashed_follower_is_reported_unhealthy(self, ledger, history):
        store = FlakyStore(error=RuntimeError("projection bug"))
        indexer = following_indexer(ledger, store)
        indexer.start()
        deadline = time.monotonic() + 5.0
        while (indexer.is_running or indexer.status().state != "failed") and time.monotonic() < deadline:
            time.sleep(0.01)

        status = indexer.status()
        assert status.state == "failed"
        assert not status.running
        assert "projection bug" in status.last_error

        health = check_health(store=store, ledger=ledger, indexer=indexer)
        assert not health.healthy
        assert health.checks["indexer"]["status"] == "unhealthy"


class TestConcurrency:

    def test_second_consumer_is_busy(self, container):
        indexer = container.indexer
        indexer._run_lock.acquire()
        try:
            with pytest.raises(IndexerBusy):
                indexer.run_once()
            with pytest.raises(IndexerBusy):
                indexer.rebuild()
        finally:
            indexer._run_lock.release()

    def test_follower_picks_up_direct_ledger_writes(self, ledger, admin):
        store = InMemoryReadModelStore()
        indexer = AuditIndexer(ledger, store, config=IndexerConfig(enabled=True))
        indexer.start()
        try:
            issuer = "0x" + "12" * 20
            receipt = ledger.submit(
                LedgerAction.REGISTER_USER,
                {"address": issuer, "display_name": "Registrar", "email": "r@example.edu"},
                actor=admin.address,
            )
            assert indexer.sync_to(receipt.cursor, timeout=5.0)
            assert store.get_account(issuer) is not None
            assert indexer.status().running
        finally:
            indexer.stop()
        assert not indexer.is_running
