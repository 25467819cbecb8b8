"""
Audit Query Routes

All three return the same envelope:

    {"data": [...], "meta": {"current_page", "total_pages", "total_count", "has_more"}}

Entries are in ledger order. Pages are offset-based over an append-only
set, so new entries can shift where a later page starts.
"""

from fastapi import APIRouter, Depends, Query

from ..container import Container
from ..core.errors import AuthorizationError
from ..core.query import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from ..schemas import AuditLogEntry, Page
from .deps import Caller, get_container, require_admin, require_session

router = APIRouter(prefix="/audit", tags=["Audit"])


def _envelope(page: Page[AuditLogEntry]) -> dict:
    return {
        "data": [e.to_public_dict() for e in page.data],
        "meta": page.meta.model_dump(),
    }


@router.get("")
async def list_audit(
    page: int = Query(1, ge=1),
    page_size: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE, alias="pageSize"),
    caller: Caller = Depends(require_admin),
    container: Container = Depends(get_container),
):
    """The whole audit log (admin only)."""
    return _envelope(container.queries.list_audit(page=page, page_size=page_size))


@router.get("/certificate/{cert_hash}")
async def audit_for_certificate(
    cert_hash: str,
    page: int = Query(1, ge=1),
    page_size: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE, alias="pageSize"),
    container: Container = Depends(get_container),
):
    """Lifecycle of one certificate version (public)."""
    container.queries.get_certificate(cert_hash)
    return _envelope(
        container.queries.list_audit(cert_hash=cert_hash, page=page, page_size=page_size)
    )


@router.get("/user/{address}")
async def audit_for_user(
    address: str,
    page: int = Query(1, ge=1),
    page_size: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE, alias="pageSize"),
    caller: Caller = Depends(require_session),
    container: Container = Depends(get_container),
):
    """Actions performed by one address. Own history, or any for admins."""
    if address.lower() != caller.address.lower() and not caller.account.is_admin:
        raise AuthorizationError("Admins only for other accounts")
    return _envelope(
        container.queries.list_audit(subject_address=address, page=page, page_size=page_size)
    )
