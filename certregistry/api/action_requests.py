"""
Certificate Action Request Routes

Requester (any authorized account):
    POST /certificate-requests                      {cert_hash, action, reason}
    GET  /certificate-requests/my?status=
    GET  /certificate-requests/my/open/count
    POST /certificate-requests/{id}/cancel

Admin:
    GET  /certificate-requests?status=
    GET  /certificate-requests/latest
    GET  /certificate-requests/pending/count
    POST /certificate-requests/{id}/take
    POST /certificate-requests/{id}/release
    POST /certificate-requests/{id}/complete
    POST /certificate-requests/{id}/reject          {rejection_reason}

Either:
    GET  /certificate-requests/certificate/{cert_hash}
    GET  /certificate-requests/{id}
"""

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from ..container import Container
from ..core.query import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from ..schemas import CertificateAction, Page, RequestStatus
from .deps import Caller, get_container, require_admin, require_session

router = APIRouter(prefix="/certificate-requests", tags=["Certificate Requests"])


class CreateActionRequest(BaseModel):
    cert_hash: str = Field(..., min_length=1, max_length=80)
    action: CertificateAction
    reason: str = Field(..., min_length=1, max_length=500)


class RejectRequest(BaseModel):
    rejection_reason: str = Field(..., min_length=1, max_length=500)


def _page(result: Page) -> dict:
    return {
        "data": [r.to_public_dict() for r in result.data],
        "meta": result.meta.model_dump(),
    }


@router.post("", status_code=201)
def create_request(
    body: CreateActionRequest,
    caller: Caller = Depends(require_session),
    container: Container = Depends(get_container),
):
    request = container.action_requests.create_request(
        caller.address, body.cert_hash, body.action, body.reason
    )
    return request.to_public_dict()


@router.get("")
async def list_requests(
    status: RequestStatus | None = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE, alias="pageSize"),
    caller: Caller = Depends(require_admin),
    container: Container = Depends(get_container),
):
    return _page(container.action_requests.list_requests(status, page=page, page_size=page_size))


@router.get("/latest")
async def latest_requests(
    caller: Caller = Depends(require_admin),
    container: Container = Depends(get_container),
):
    return [r.to_public_dict() for r in container.action_requests.latest_requests()]


@router.get("/pending/count")
async def pending_count(
    caller: Caller = Depends(require_admin),
    container: Container = Depends(get_container),
):
    return {"count": container.action_requests.pending_count()}


@router.get("/my")
async def my_requests(
    status: RequestStatus | None = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE, alias="pageSize"),
    caller: Caller = Depends(require_session),
    container: Container = Depends(get_container),
):
    """Admins get the requests they have taken; others the ones they raised."""
    result = container.action_requests.my_requests(
        caller.address,
        is_admin=caller.account.is_admin,
        status=status,
        page=page,
        page_size=page_size,
    )
    return _page(result)


@router.get("/my/open/count")
async def my_open_count(
    caller: Caller = Depends(require_session),
    container: Container = Depends(get_container),
):
    return {"count": container.action_requests.open_count_for(caller.address)}


@router.get("/certificate/{cert_hash}")
async def requests_for_certificate(
    cert_hash: str,
    caller: Caller = Depends(require_session),
    container: Container = Depends(get_container),
):
    return [r.to_public_dict() for r in container.action_requests.requests_for_certificate(cert_hash)]


@router.get("/{request_id}")
async def get_request(
    request_id: int,
    caller: Caller = Depends(require_session),
    container: Container = Depends(get_container),
):
    return container.action_requests.get_request(request_id).to_public_dict()


@router.post("/{request_id}/take")
def take_request(
    request_id: int,
    caller: Caller = Depends(require_admin),
    container: Container = Depends(get_container),
):
    return container.action_requests.take_request(request_id, caller.address).to_public_dict()


@router.post("/{request_id}/release")
def release_request(
    request_id: int,
    caller: Caller = Depends(require_admin),
    container: Container = Depends(get_container),
):
    return container.action_requests.release_request(request_id, caller.address).to_public_dict()


@router.post("/{request_id}/complete")
def complete_request(
    request_id: int,
    caller: Caller = Depends(require_admin),
    container: Container = Depends(get_container),
):
    """Runs the revoke or reactivate on the ledger; blocks until confirmed."""
    return container.action_requests.complete_request(request_id, caller.address).to_public_dict()


@router.post("/{request_id}/reject")
def reject_request(
    request_id: int,
    body: RejectRequest,
    caller: Caller = Depends(require_admin),
    container: Container = Depends(get_container),
):
    request = container.action_requests.reject_request(
        request_id, caller.address, body.rejection_reason
    )
    return request.to_public_dict()


@router.post("/{request_id}/cancel", status_code=204)
def cancel_request(
    request_id: int,
    caller: Caller = Depends(require_session),
    container: Container = Depends(get_container),
):
    container.action_requests.cancel_request(request_id, caller.address)
