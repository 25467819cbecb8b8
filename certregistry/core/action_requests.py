"""
Certificate Action Requests

Staff who should not revoke or reactivate on their own raise a request;
an admin takes it, then completes (executes it on the ledger) or rejects it.

    create   any authorized account; one open request per certificate
    take     admin; PENDING -> PROCESSING
    release  the admin who took it; PROCESSING -> PENDING
    complete the admin who took it; runs the ledger action, -> COMPLETED
    reject   the admin who took it; PROCESSING -> REJECTED
    cancel   the requester; deletes a PENDING request

Every status change is a compare-and-set on the stored status, so two
admins racing to take the same request cannot both win.
"""

from datetime import datetime, timezone
from typing import Callable, Optional

from ..db.store import OpenRequestExists, ReadModelStore
from ..observability import get_logger
from ..schemas import (
    OPEN_REQUEST_STATUSES,
    Account,
    ActionRequest,
    CertificateAction,
    Page,
    RequestStatus,
)
from .certificates import CertificateLedger
from .errors import (
    ActionRequestNotFound,
    AuthorizationError,
    CertificateNotFound,
    DuplicateActionRequest,
    InvalidTransition,
    RequestStateError,
    ValidationError,
)
from .hasher import is_cert_hash, normalize_hash
from .query import DEFAULT_PAGE_SIZE, build_page, validate_paging
from .signature import normalize_address

logger = get_logger(__name__)

LATEST_LIMIT = 5


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ActionRequestService:
    """
    Args:
        store: ReadModelStore holding the action_requests table
        certificates: CertificateLedger that executes completed requests
        clock: Injected for tests
    """

    def __init__(
        self,
        store: ReadModelStore,
        certificates: CertificateLedger,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._store = store
        self._certificates = certificates
        self._clock = clock

    # ================================================================
    # REQUESTER
    # ================================================================

    def create_request(
        self,
        actor: str,
        cert_hash: str,
        action: CertificateAction,
        reason: str,
    ) -> ActionRequest:
        """
        Raise a revoke or reactivate request.

        Raises:
            ValidationError, CertificateNotFound, InvalidTransition,
            AuthorizationError, DuplicateActionRequest
        """
        account = self._require_account(actor)
        reason = CertificateLedger.clean_reason(reason)
        cert_hash = self._clean_hash(cert_hash)
        cert = self._store.get_certificate(cert_hash)
        if cert is None:
            raise CertificateNotFound(f"Certificate {cert_hash} not found")

        if action == CertificateAction.REVOKE and cert.is_revoked:
            raise InvalidTransition(f"Certificate {cert_hash} is already revoked")
        if action == CertificateAction.REACTIVATE and not cert.is_revoked:
            raise InvalidTransition(f"Certificate {cert_hash} is not revoked")

        now = self._clock()
        request = ActionRequest(
            cert_hash=cert.cert_hash,
            subject_id=cert.subject_id,
            action=action,
            reason=reason,
            requested_by=account.address,
            requested_by_name=account.display_name,
            requested_at=now,
            updated_at=now,
        )
        try:
            stored = self._store.insert_action_request(request)
        except OpenRequestExists as e:
            existing = e.existing
            raise DuplicateActionRequest(
                f"There is already a {existing.status.value} {existing.action.value} "
                f"request for this certificate"
            ) from None

        logger.info(
            f"Action request {stored.id} raised",
            request_id=stored.id,
            cert_hash=stored.cert_hash,
            action=action.value,
        )
        return stored

    def cancel_request(self, request_id: int, actor: str) -> None:
        """Withdraw one of your own PENDING requests."""
        actor = self._address(actor)
        request = self.get_request(request_id)
        if request.requested_by != actor:
            raise AuthorizationError("You can only cancel your own requests")
        if request.status != RequestStatus.PENDING:
            raise RequestStateError("Only pending requests can be cancelled")
        if not self._store.delete_action_request(request.id, RequestStatus.PENDING):
            raise RequestStateError(f"Request {request.id} changed state; reload and retry")
        logger.info(f"Action request {request.id} cancelled", request_id=request.id)

    # ================================================================
    # ADMIN
    # ================================================================

    def take_request(self, request_id: int, admin: str) -> ActionRequest:
        admin = self._require_admin(admin)
        request = self.get_request(request_id)
        if request.status != RequestStatus.PENDING:
            raise RequestStateError(
                f"Request is already {request.status.value}. Only pending requests can be taken."
            )
        return self._transition(
            request,
            RequestStatus.PENDING,
            status=RequestStatus.PROCESSING,
            taken_by=admin,
        )

    def release_request(self, request_id: int, admin: str) -> ActionRequest:
        request = self._require_taken_by(request_id, admin, "release")
        return self._transition(
            request,
            RequestStatus.PROCESSING,
            status=RequestStatus.PENDING,
            taken_by=None,
        )

    def complete_request(self, request_id: int, admin: str) -> ActionRequest:
        """
        Execute the requested action on the ledger, then mark the request
        completed. A ledger failure leaves the request PROCESSING.
        """
        request = self._require_taken_by(request_id, admin, "complete")
        if request.action == CertificateAction.REVOKE:
            receipt = self._certificates.revoke(request.taken_by, request.cert_hash, request.reason)
        else:
            receipt = self._certificates.reactivate(request.taken_by, request.cert_hash)
        return self._transition(
            request,
            RequestStatus.PROCESSING,
            status=RequestStatus.COMPLETED,
            completion_tx_id=receipt.tx_id,
        )

    def reject_request(self, request_id: int, admin: str, rejection_reason: str) -> ActionRequest:
        rejection_reason = (rejection_reason or "").strip()
        if not rejection_reason:
            raise ValidationError("A rejection reason is required")
        request = self._require_taken_by(request_id, admin, "reject")
        return self._transition(
            request,
            RequestStatus.PROCESSING,
            status=RequestStatus.REJECTED,
            rejection_reason=rejection_reason,
        )

    # ================================================================
    # QUERIES
    # ================================================================

    def get_request(self, request_id: int) -> ActionRequest:
        request = self._store.get_action_request(request_id)
        if request is None:
            raise ActionRequestNotFound(f"Request {request_id} not found")
        return request

    def list_requests(
        self,
        status: Optional[RequestStatus] = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> Page[ActionRequest]:
        offset, limit = validate_paging(page, page_size)
        rows, total = self._store.list_action_requests(
            statuses=(status,) if status else None, offset=offset, limit=limit
        )
        return build_page(rows, total, page, page_size)

    def my_requests(
        self,
        actor: str,
        is_admin: bool,
        status: Optional[RequestStatus] = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> Page[ActionRequest]:
        """Admins see the requests they took; everyone else the ones they raised."""
        offset, limit = validate_paging(page, page_size)
        actor = self._address(actor)
        owner = {"taken_by": actor} if is_admin else {"requested_by": actor}
        rows, total = self._store.list_action_requests(
            statuses=(status,) if status else None, offset=offset, limit=limit, **owner
        )
        return build_page(rows, total, page, page_size)

    def latest_requests(self, limit: int = LATEST_LIMIT) -> list[ActionRequest]:
        rows, _ = self._store.list_action_requests(limit=limit)
        return rows

    def requests_for_certificate(self, cert_hash: str) -> list[ActionRequest]:
        rows, _ = self._store.list_action_requests(
            cert_hash=self._clean_hash(cert_hash), limit=None
        )
        return rows

    def pending_count(self) -> int:
        _, total = self._store.list_action_requests(statuses=(RequestStatus.PENDING,), limit=0)
        return total

    def open_count_for(self, actor: str) -> int:
        """Requests a requester still has in flight (pending or processing)."""
        _, total = self._store.list_action_requests(
            statuses=OPEN_REQUEST_STATUSES, requested_by=self._address(actor), limit=0
        )
        return total

    # ================================================================
    # HELPERS
    # ================================================================

    def _transition(
        self,
        request: ActionRequest,
        expected: RequestStatus,
        **changes,
    ) -> ActionRequest:
        updated = request.model_copy(update={**changes, "updated_at": self._clock()})
        if not self._store.update_action_request(updated, expected):
            raise RequestStateError(f"Request {request.id} changed state; reload and retry")
        logger.info(
            f"Action request {request.id} {expected.value} -> {updated.status.value}",
            request_id=request.id,
            cert_hash=request.cert_hash,
        )
        return updated

    def _require_taken_by(self, request_id: int, admin: str, verb: str) -> ActionRequest:
        admin = self._require_admin(admin)
        request = self.get_request(request_id)
        if request.status != RequestStatus.PROCESSING:
            raise RequestStateError(f"Only processing requests can be {verb}d")
        if request.taken_by != admin:
            raise AuthorizationError(f"You can only {verb} requests that you have taken")
        return request

    def _require_account(self, actor: str) -> Account:
        address = self._address(actor)
        account = self._store.get_account(address)
        if account is None or not account.is_authorized:
            raise AuthorizationError(f"{address} is not an authorized account")
        return account

    def _require_admin(self, actor: str) -> str:
        account = self._require_account(actor)
        if not account.is_admin:
            raise AuthorizationError(f"{account.address} is not an admin")
        return account.address

    @staticmethod
    def _address(address: str) -> str:
        try:
            return normalize_address(address)
        except ValueError as e:
            raise ValidationError(str(e)) from None

    @staticmethod
    def _clean_hash(cert_hash: str) -> str:
        if not isinstance(cert_hash, str) or not is_cert_hash(cert_hash):
            raise ValidationError(f"Malformed certificate hash: {cert_hash!r}")
        return normalize_hash(cert_hash)
