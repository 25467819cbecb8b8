"""
Certificate Routes

Commands (authorized accounts):
    POST /certificates                          issue next version
    POST /certificates/{cert_hash}/revoke       {reason}
    POST /certificates/{cert_hash}/reactivate

Queries (public; verification needs no login):
    GET /certificates?status=&subject_id=&page=&pageSize=
    GET /certificates/{cert_hash}
    GET /certificates/{cert_hash}/verify
    GET /certificates/{cert_hash}/export.md
    GET /certificates/subject/{subject_id}
    GET /certificates/subject/{subject_id}/history

Command handlers are plain `def`: submission blocks until the ledger
confirms, so they run in the threadpool instead of on the event loop.
"""

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response
from pydantic import BaseModel, Field

from ..container import Container
from ..core.errors import ValidationError
from ..core.query import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from ..schemas import CertificateAttributes, scale_credential_value
from .deps import Caller, get_container, require_session

router = APIRouter(prefix="/certificates", tags=["Certificates"])


# Default cache for public read endpoints (30 seconds)
CACHE_CONTROL_PUBLIC = "public, max-age=30"


# ============================================================
# Request/Response Models
# ============================================================

class IssueRequest(BaseModel):
    subject_id: str = Field(..., min_length=1, max_length=128)
    subject_name: str = Field(..., min_length=1, max_length=200)
    program: str = Field(..., min_length=1, max_length=200)
    # Decimal as string ("3.85"); floats are refused
    credential_value: str | int
    issuing_authority: str = Field(..., min_length=1, max_length=200)
    issuance_time: datetime | None = None


class RevokeRequest(BaseModel):
    reason: str


class IssueResponse(BaseModel):
    cert_hash: str
    subject_id: str
    version: int
    tx_id: str
    issuance_time: datetime


class TransitionResponse(BaseModel):
    cert_hash: str
    tx_id: str
    status: str


# ============================================================
# Commands
# ============================================================

@router.post("", response_model=IssueResponse, status_code=201)
def issue_certificate(
    body: IssueRequest,
    caller: Caller = Depends(require_session),
    container: Container = Depends(get_container),
):
    try:
        attributes = CertificateAttributes(
            subject_name=body.subject_name.strip(),
            program=body.program.strip(),
            credential_value=scale_credential_value(body.credential_value),
            issuing_authority=body.issuing_authority.strip(),
        )
    except ValueError as e:
        raise ValidationError(str(e)) from None

    result = container.certificates.issue(
        caller.address,
        body.subject_id,
        attributes,
        issuance_time=body.issuance_time,
    )
    return IssueResponse(
        cert_hash=result.cert_hash,
        subject_id=result.subject_id,
        version=result.version,
        tx_id=result.tx_id,
        issuance_time=result.issuance_time,
    )


@router.post("/{cert_hash}/revoke", response_model=TransitionResponse)
def revoke_certificate(
    cert_hash: str,
    body: RevokeRequest,
    caller: Caller = Depends(require_session),
    container: Container = Depends(get_container),
):
    receipt = container.certificates.revoke(caller.address, cert_hash, body.reason)
    return TransitionResponse(cert_hash=receipt.cert_hash, tx_id=receipt.tx_id, status="revoked")


@router.post("/{cert_hash}/reactivate", response_model=TransitionResponse)
def reactivate_certificate(
    cert_hash: str,
    caller: Caller = Depends(require_session),
    container: Container = Depends(get_container),
):
    receipt = container.certificates.reactivate(caller.address, cert_hash)
    return TransitionResponse(cert_hash=receipt.cert_hash, tx_id=receipt.tx_id, status="active")


# ============================================================
# Queries
# ============================================================

@router.get("")
async def list_certificates(
    status: str | None = None,
    subject_id: str | None = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE, alias="pageSize"),
    container: Container = Depends(get_container),
):
    result = container.queries.list_certificates(
        status=status, subject_id=subject_id, page=page, page_size=page_size
    )
    return {
        "data": [c.to_public_dict() for c in result.data],
        "meta": result.meta.model_dump(),
    }


@router.get("/subject/{subject_id}")
async def get_current_status(subject_id: str, container: Container = Depends(get_container)):
    """Highest version of a subject's certificate."""
    return container.queries.get_current_status(subject_id).to_public_dict()


@router.get("/subject/{subject_id}/history")
async def get_history(subject_id: str, container: Container = Depends(get_container)):
    """Every version, oldest first."""
    versions = container.queries.get_history(subject_id)
    return {
        "subject_id": versions[0].subject_id,
        "versions": [c.to_public_dict() for c in versions],
    }


@router.get("/{cert_hash}")
async def get_certificate(cert_hash: str, container: Container = Depends(get_container)):
    cert = container.queries.get_certificate(cert_hash)
    audit = container.queries.audit_for_certificate(cert.cert_hash)
    return {
        **cert.to_public_dict(),
        "history": [e.to_public_dict() for e in audit],
    }


@router.get("/{cert_hash}/verify")
async def verify_certificate(cert_hash: str, container: Container = Depends(get_container)):
    """
    Check a presented certificate hash.

    valid = the stored content still hashes to cert_hash and the version
    is not revoked. is_current tells whether a newer version exists.
    """
    result = container.certificates.verify(cert_hash)
    return {
        "cert_hash": result.certificate.cert_hash,
        "valid": result.is_valid,
        "hash_valid": result.hash_valid,
        "status": result.status.value,
        "is_current": result.is_current,
        "subject_id": result.certificate.subject_id,
        "version": result.certificate.version,
        "revocation_reason": result.certificate.revocation_reason,
    }


@router.get("/{cert_hash}/export.md")
async def export_certificate(cert_hash: str, container: Container = Depends(get_container)):
    """Render the certificate and its history as a document."""
    result = container.certificates.verify(cert_hash)
    audit = container.queries.audit_for_certificate(result.certificate.cert_hash)
    body = container.renderer.render(result.certificate, audit=audit, hash_valid=result.hash_valid)
    filename = f"certificate-{result.certificate.subject_id}-v{result.certificate.version}.md"
    return Response(
        content=body,
        media_type=container.renderer.media_type,
        headers={
            "Content-Disposition": f'attachment; filename="{filename}"',
            "Cache-Control": CACHE_CONTROL_PUBLIC,
        },
    )
