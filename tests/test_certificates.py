"""
Tests for the certificate lifecycle and account administration.
"""

from datetime import datetime, timezone

import pytest

from conftest import Wallet, make_attributes, make_container

from certregistry.config import LedgerConfig
from certregistry.core.errors import (
    AccountNotFound,
    AuthenticationError,
    AuthorizationError,
    CertificateNotFound,
    ConcurrentModificationError,
    InvalidTransition,
    LedgerUnavailableError,
    ValidationError,
)
from certregistry.core.hasher import Hasher
from certregistry.schemas import CertificateStatus, IssuePayload, LedgerAction

ISSUED_AT = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def certs(container):
    return container.certificates


class TestIssue:

    def test_first_version(self, container, certs, registered_issuer):
        result = certs.issue(registered_issuer.address, "S1", make_attributes(), ISSUED_AT)
        assert result.version == 1
        assert result.cert_hash == Hasher.certificate_hash(
            "S1", 1, make_attributes(), registered_issuer.address, ISSUED_AT
        )

        cert = container.queries.get_certificate(result.cert_hash)
        assert cert.status == CertificateStatus.ACTIVE
        assert cert.issuer_address == registered_issuer.address
        assert cert.issued_tx_id == result.tx_id

    def test_versions_increment(self, container, certs, registered_issuer):
        v1 = certs.issue(registered_issuer.address, "S1", make_attributes())
        v2 = certs.issue(registered_issuer.address, "S1", make_attributes(value=390))
        other = certs.issue(registered_issuer.address, "S2", make_attributes())

        assert (v1.version, v2.version, other.version) == (1, 2, 1)
        assert v1.cert_hash != v2.cert_hash
        history = container.queries.get_history("S1")
        assert [c.version for c in history] == [1, 2]
        assert container.queries.get_current_status("S1").cert_hash == v2.cert_hash

    def test_new_version_keeps_old_queryable(self, container, certs, registered_issuer):
        v1 = certs.issue(registered_issuer.address, "S1", make_attributes())
        certs.issue(registered_issuer.address, "S1", make_attributes(value=390))
        old = certs.verify(v1.cert_hash)
        assert old.is_valid
        assert not old.is_current

    def test_subject_id_is_stripped(self, certs, registered_issuer):
        result = certs.issue(registered_issuer.address, "  S1 ", make_attributes())
        assert result.subject_id == "S1"

    @pytest.mark.parametrize("subject_id", ["", "   ", "x" * 129])
    def test_bad_subject_id(self, certs, registered_issuer, subject_id):
        with pytest.raises(ValidationError):
            certs.issue(registered_issuer.address, subject_id, make_attributes())

    def test_naive_issuance_time(self, certs, registered_issuer):
        with pytest.raises(ValidationError):
            certs.issue(registered_issuer.address, "S1", make_attributes(), datetime(2026, 1, 1))

    def test_unregistered_actor(self, certs, outsider):
        with pytest.raises(AuthorizationError):
            certs.issue(outsider.address, "S1", make_attributes())

    def test_revoked_actor(self, container, certs, admin, registered_issuer):
        container.accounts.revoke(admin.address, registered_issuer.address)
        with pytest.raises(AuthorizationError):
            certs.issue(registered_issuer.address, "S1", make_attributes())

    def test_malformed_actor(self, certs):
        with pytest.raises(ValidationError):
            certs.issue("not-an-address", "S1", make_attributes())

    def test_stale_version_is_concurrent_modification(self, container, ledger, certs, registered_issuer):
        """Another writer takes v1 on the ledger before the read model sees it."""
        attributes = make_attributes(name="Someone Else")
        payload = IssuePayload(
            cert_hash=Hasher.certificate_hash("S1", 1, attributes, registered_issuer.address, ISSUED_AT),
            subject_id="S1",
            version=1,
            issuer_address=registered_issuer.address,
            issuance_time=ISSUED_AT,
            **attributes.model_dump(),
        )
        ledger.submit(
            LedgerAction.ISSUE, payload.model_dump(mode="json"), actor=registered_issuer.address
        )

        with pytest.raises(ConcurrentModificationError) as exc:
            certs.issue(registered_issuer.address, "S1", make_attributes())
        assert str(exc.value).endswith("Refresh the certificate state and retry.")
        assert "version conflict" in exc.value.ledger_reason

        # After a refresh the next version goes through
        container.indexer.run_once()
        assert certs.issue(registered_issuer.address, "S1", make_attributes()).version == 2

    def test_timeout_is_retryable(self, store, ledger, admin):
        container = make_container(
            store, ledger, ledger_config=LedgerConfig(submit_timeout_seconds=0.2)
        )
        try:
            ledger.confirmation_delay = 1.0
            issuer = Wallet()
            with pytest.raises(LedgerUnavailableError) as exc:
                container.accounts.register(admin.address, issuer.address, "Registrar", "r@example.edu")
            assert exc.value.retryable
            assert container.store.get_account(issuer.address) is None
        finally:
            container.stop()


class TestRevokeReactivate:

    @pytest.fixture
    def issued(self, certs, registered_issuer):
        return certs.issue(registered_issuer.address, "S1", make_attributes())

    def test_revoke(self, container, certs, registered_issuer, issued):
        certs.revoke(registered_issuer.address, issued.cert_hash, "  fraud  ")
        cert = container.queries.get_certificate(issued.cert_hash)
        assert cert.is_revoked
        assert cert.revocation_reason == "fraud"

        result = certs.verify(issued.cert_hash)
        assert result.hash_valid
        assert not result.is_valid
        assert result.status == CertificateStatus.REVOKED

    def test_reason_max_length(self, certs, registered_issuer, issued):
        with pytest.raises(ValidationError):
            certs.revoke(registered_issuer.address, issued.cert_hash, "x" * 501)
        certs.revoke(registered_issuer.address, issued.cert_hash, "x" * 500)

    @pytest.mark.parametrize("reason", ["", "   ", None])
    def test_reason_required(self, certs, registered_issuer, issued, reason):
        with pytest.raises(ValidationError):
            certs.revoke(registered_issuer.address, issued.cert_hash, reason)

    def test_revoke_twice(self, certs, registered_issuer, issued):
        certs.revoke(registered_issuer.address, issued.cert_hash, "fraud")
        with pytest.raises(InvalidTransition):
            certs.revoke(registered_issuer.address, issued.cert_hash, "again")

    def test_reactivate(self, container, certs, registered_issuer, issued):
        certs.revoke(registered_issuer.address, issued.cert_hash, "fraud")
        certs.reactivate(registered_issuer.address, issued.cert_hash)
        cert = container.queries.get_certificate(issued.cert_hash)
        assert not cert.is_revoked
        assert cert.revocation_reason is None

    def test_reactivate_active(self, certs, registered_issuer, issued):
        with pytest.raises(InvalidTransition):
            certs.reactivate(registered_issuer.address, issued.cert_hash)

    def test_unknown_certificate(self, certs, registered_issuer):
        with pytest.raises(CertificateNotFound):
            certs.revoke(registered_issuer.address, "0x" + "ab" * 32, "fraud")
        with pytest.raises(CertificateNotFound):
            certs.verify("0x" + "ab" * 32)

    def test_malformed_hash(self, certs, registered_issuer):
        with pytest.raises(ValidationError):
            certs.reactivate(registered_issuer.address, "0x1234")

    def test_hash_lookup_is_case_insensitive(self, certs, issued):
        upper = "0x" + issued.cert_hash[2:].upper()
        assert certs.verify(upper).certificate.cert_hash == issued.cert_hash

    def test_outsider_cannot_revoke(self, certs, outsider, issued):
        with pytest.raises(AuthorizationError):
            certs.revoke(outsider.address, issued.cert_hash, "fraud")

    def test_tampered_row_fails_verification(self, container, certs, issued):
        cert = container.store.get_certificate(issued.cert_hash)
        container.store._tables.certificates[issued.cert_hash] = cert.model_copy(
            update={"credential_value": 400}
        )
        result = certs.verify(issued.cert_hash)
        assert not result.hash_valid
        assert not result.is_valid


class TestAccountRegistry:

    def test_register(self, container, registered_issuer):
        account = container.queries.get_account(registered_issuer.address)
        assert account.is_authorized
        assert not account.is_admin
        assert account.display_name == "Registrar"

    def test_register_twice(self, container, admin, registered_issuer):
        with pytest.raises(InvalidTransition):
            container.accounts.register(admin.address, registered_issuer.address, "Again", "a@b.c")

    def test_non_admin_cannot_register(self, container, registered_issuer, outsider):
        with pytest.raises(AuthorizationError):
            container.accounts.register(registered_issuer.address, outsider.address, "X", "x@y.z")

    def test_unknown_account(self, container, admin, outsider):
        with pytest.raises(AccountNotFound):
            container.accounts.revoke(admin.address, outsider.address)

    def test_revoke_and_restore(self, container, admin, registered_issuer):
        container.accounts.revoke(admin.address, registered_issuer.address)
        assert not container.queries.get_account(registered_issuer.address).is_authorized
        with pytest.raises(InvalidTransition):
            container.accounts.revoke(admin.address, registered_issuer.address)

        container.accounts.restore(admin.address, registered_issuer.address)
        assert container.queries.get_account(registered_issuer.address).is_authorized

    def test_last_admin_is_protected(self, container, admin):
        with pytest.raises(InvalidTransition):
            container.accounts.revoke(admin.address, admin.address)
        with pytest.raises(InvalidTransition):
            container.accounts.revoke_admin(admin.address, admin.address)

    def test_second_admin(self, container, admin, registered_issuer):
        container.accounts.grant_admin(admin.address, registered_issuer.address)
        assert container.queries.get_account(registered_issuer.address).is_admin

        container.accounts.revoke_admin(registered_issuer.address, admin.address)
        assert not container.queries.get_account(admin.address).is_admin

    def test_revoke_ends_sessions(self, container, admin, registered_issuer):
        token = container.sessions.open(registered_issuer.address)
        container.accounts.revoke(admin.address, registered_issuer.address)
        with pytest.raises(AuthenticationError):
            container.sessions.resolve(token.access_token)

    def test_revoke_admin_demotes_sessions(self, container, admin, registered_issuer):
        container.accounts.grant_admin(admin.address, registered_issuer.address)
        token = container.sessions.open(registered_issuer.address, is_admin=True)
        container.accounts.revoke_admin(admin.address, registered_issuer.address)
        assert container.sessions.resolve(token.access_token).is_admin is False
