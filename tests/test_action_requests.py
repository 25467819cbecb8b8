"""
Tests for the revoke/reactivate request workflow.
"""

import pytest

from conftest import Wallet, make_attributes

from certregistry.core.errors import (
    ActionRequestNotFound,
    AuthorizationError,
    DuplicateActionRequest,
    InvalidTransition,
    RequestStateError,
    ValidationError,
)
from certregistry.schemas import AuditAction, CertificateAction, CertificateStatus, RequestStatus


@pytest.fixture
def requests(container):
    return container.action_requests


@pytest.fixture
def cert_hash(container, registered_issuer):
    return container.certificates.issue(registered_issuer.address, "S1", make_attributes()).cert_hash


@pytest.fixture
def second_admin(container, admin):
    wallet = Wallet()
    container.accounts.register(
        admin.address, wallet.address, "Deputy", "deputy@example.edu", is_admin=True
    )
    return wallet


@pytest.fixture
def revoke_request(requests, registered_issuer, cert_hash):
    return requests.create_request(
        registered_issuer.address, cert_hash, CertificateAction.REVOKE, "Issued in error"
    )


class TestCreate:

    def test_create(self, requests, registered_issuer, cert_hash, revoke_request):
        assert revoke_request.id is not None
        assert revoke_request.status == RequestStatus.PENDING
        assert revoke_request.requested_by == registered_issuer.address
        assert revoke_request.requested_by_name == "Registrar"
        assert revoke_request.subject_id == "S1"
        assert requests.get_request(revoke_request.id) == revoke_request

    def test_one_open_request_per_certificate(self, requests, admin, cert_hash, revoke_request):
        with pytest.raises(DuplicateActionRequest, match="pending revoke"):
            requests.create_request(admin.address, cert_hash, CertificateAction.REVOKE, "Again")

    def test_closed_request_allows_a_new_one(
        self, requests, admin, registered_issuer, cert_hash, revoke_request
    ):
        requests.take_request(revoke_request.id, admin.address)
        requests.reject_request(revoke_request.id, admin.address, "Not enough evidence")
        again = requests.create_request(
            registered_issuer.address, cert_hash, CertificateAction.REVOKE, "New evidence"
        )
        assert again.id != revoke_request.id

    def test_reactivate_needs_revoked_certificate(self, requests, registered_issuer, cert_hash):
        with pytest.raises(InvalidTransition, match="not revoked"):
            requests.create_request(
                registered_issuer.address, cert_hash, CertificateAction.REACTIVATE, "Restore"
            )

    def test_revoke_of_revoked_certificate(self, container, requests, registered_issuer, cert_hash):
        container.certificates.revoke(registered_issuer.address, cert_hash, "Fraud")
        with pytest.raises(InvalidTransition, match="already revoked"):
            requests.create_request(
                registered_issuer.address, cert_hash, CertificateAction.REVOKE, "Fraud"
            )

    def test_requires_reason(self, requests, registered_issuer, cert_hash):
        with pytest.raises(ValidationError):
            requests.create_request(registered_issuer.address, cert_hash, CertificateAction.REVOKE, "  ")

    def test_unregistered_requester(self, requests, outsider, cert_hash):
        with pytest.raises(AuthorizationError):
            requests.create_request(outsider.address, cert_hash, CertificateAction.REVOKE, "Fraud")

    def test_unknown_request(self, requests):
        with pytest.raises(ActionRequestNotFound):
            requests.get_request(999)


class TestAdminWorkflow:

    def test_take_and_complete_revokes_on_ledger(
        self, container, requests, admin, cert_hash, revoke_request
    ):
        taken = requests.take_request(revoke_request.id, admin.address)
        assert taken.status == RequestStatus.PROCESSING
        assert taken.taken_by == admin.address

        done = requests.complete_request(revoke_request.id, admin.address)
        assert done.status == RequestStatus.COMPLETED
        assert done.completion_tx_id

        cert = container.queries.get_certificate(cert_hash)
        assert cert.status == CertificateStatus.REVOKED
        assert cert.revocation_reason == "Issued in error"
        last = container.queries.audit_for_certificate(cert_hash)[-1]
        assert last.action == AuditAction.REVOKED
        assert last.actor_address == admin.address
        assert last.ledger_tx_id == done.completion_tx_id

    def test_complete_reactivation(self, container, requests, admin, registered_issuer, cert_hash):
        container.certificates.revoke(registered_issuer.address, cert_hash, "Fraud")
        request = requests.create_request(
            registered_issuer.address, cert_hash, CertificateAction.REACTIVATE, "Cleared on appeal"
        )
        requests.take_request(request.id, admin.address)
        requests.complete_request(request.id, admin.address)
        assert container.queries.get_certificate(cert_hash).status == CertificateStatus.ACTIVE

    def test_release_returns_to_queue(self, requests, admin, second_admin, revoke_request):
        requests.take_request(revoke_request.id, admin.address)
        released = requests.release_request(revoke_request.id, admin.address)
        assert released.status == RequestStatus.PENDING
        assert released.taken_by is None
        assert requests.take_request(revoke_request.id, second_admin.address).taken_by == second_admin.address

    def test_cannot_take_twice(self, requests, admin, second_admin, revoke_request):
        requests.take_request(revoke_request.id, admin.address)
        with pytest.raises(RequestStateError, match="already processing"):
            requests.take_request(revoke_request.id, second_admin.address)

    @pytest.mark.parametrize("verb", ["release", "complete", "reject"])
    def test_only_taker_may_finish(self, requests, admin, second_admin, revoke_request, verb):
        requests.take_request(revoke_request.id, admin.address)
        with pytest.raises(AuthorizationError, match="you have taken"):
            if verb == "reject":
                requests.reject_request(revoke_request.id, second_admin.address, "No")
            else:
                getattr(requests, f"{verb}_request")(revoke_request.id, second_admin.address)

    def test_complete_needs_processing(self, requests, admin, revoke_request):
        with pytest.raises(RequestStateError):
            requests.complete_request(revoke_request.id, admin.address)

    def test_reject_needs_reason(self, requests, admin, revoke_request):
        requests.take_request(revoke_request.id, admin.address)
        with pytest.raises(ValidationError, match="rejection reason"):
            requests.reject_request(revoke_request.id, admin.address, "")

    def test_reject(self, container, requests, admin, cert_hash, revoke_request):
        requests.take_request(revoke_request.id, admin.address)
        rejected = requests.reject_request(revoke_request.id, admin.address, "Not enough evidence")
        assert rejected.status == RequestStatus.REJECTED
        assert rejected.rejection_reason == "Not enough evidence"
        assert container.queries.get_certificate(cert_hash).status == CertificateStatus.ACTIVE

    def test_non_admin_cannot_take(self, requests, registered_issuer, revoke_request):
        with pytest.raises(AuthorizationError, match="not an admin"):
            requests.take_request(revoke_request.id, registered_issuer.address)

    def test_ledger_failure_leaves_request_processing(
        self, container, requests, admin, registered_issuer, cert_hash, revoke_request
    ):
        requests.take_request(revoke_request.id, admin.address)
        container.certificates.revoke(registered_issuer.address, cert_hash, "Revoked directly")
        with pytest.raises(InvalidTransition):
            requests.complete_request(revoke_request.id, admin.address)
        assert requests.get_request(revoke_request.id).status == RequestStatus.PROCESSING


class TestCancel:

    def test_requester_cancels_pending(self, requests, registered_issuer, revoke_request):
        requests.cancel_request(revoke_request.id, registered_issuer.address)
        with pytest.raises(ActionRequestNotFound):
            requests.get_request(revoke_request.id)

    def test_only_requester_cancels(self, requests, admin, revoke_request):
        with pytest.raises(AuthorizationError, match="your own"):
            requests.cancel_request(revoke_request.id, admin.address)

    def test_taken_request_cannot_be_cancelled(
        self, requests, admin, registered_issuer, revoke_request
    ):
        requests.take_request(revoke_request.id, admin.address)
        with pytest.raises(RequestStateError, match="pending"):
            requests.cancel_request(revoke_request.id, registered_issuer.address)


class TestQueries:

    def test_counts_and_listing(self, container, requests, admin, registered_issuer, revoke_request):
        other = container.certificates.issue(registered_issuer.address, "S2", make_attributes())
        second = requests.create_request(
            registered_issuer.address, other.cert_hash, CertificateAction.REVOKE, "Typo in name"
        )
        assert requests.pending_count() == 2
        assert requests.open_count_for(registered_issuer.address) == 2

        requests.take_request(second.id, admin.address)
        assert requests.pending_count() == 1
        assert requests.open_count_for(registered_issuer.address) == 2

        mine = requests.my_requests(registered_issuer.address, is_admin=False)
        assert mine.meta.total == 2
        taken = requests.my_requests(admin.address, is_admin=True)
        assert [r.id for r in taken.data] == [second.id]

        processing = requests.list_requests(status=RequestStatus.PROCESSING)
        assert [r.id for r in processing.data] == [second.id]
        assert [r.id for r in requests.latest_requests()] == [second.id, revoke_request.id]

    def test_requests_for_certificate(self, requests, admin, registered_issuer, cert_hash, revoke_request):
        requests.take_request(revoke_request.id, admin.address)
        requests.reject_request(revoke_request.id, admin.address, "No")
        newer = requests.create_request(
            registered_issuer.address, cert_hash, CertificateAction.REVOKE, "Second attempt"
        )
        history = requests.requests_for_certificate(cert_hash.upper().replace("0X", "0x"))
        assert [r.id for r in history] == [newer.id, revoke_request.id]
