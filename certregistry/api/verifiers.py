"""
Verifier Routes

Public:
    POST /verifiers/verify          {cert_hash, name, email, institution, website}

Admin:
    GET    /verifiers/logs?page=&pageSize=
    GET    /verifiers/blocked
    POST   /verifiers/blocked       {ip_address, minutes, reason}
    DELETE /verifiers/blocked/{ip_address}

A blocked client gets 429 with Retry-After.
"""

from fastapi import APIRouter, Depends, Query, Request
from pydantic import BaseModel, Field

from ..container import Container
from ..core.query import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from .auth import get_client_ip
from .deps import Caller, get_container, require_admin

router = APIRouter(prefix="/verifiers", tags=["Verifiers"])


class VerifyRequest(BaseModel):
    cert_hash: str = Field(..., min_length=1, max_length=80)
    name: str = Field(..., min_length=1, max_length=200)
    email: str = Field(..., min_length=3, max_length=320)
    institution: str = Field(..., min_length=1, max_length=200)
    website: str = Field("", max_length=500)


class BlockRequest(BaseModel):
    ip_address: str = Field(..., min_length=1, max_length=64)
    minutes: int = Field(60, ge=1)
    reason: str = Field(..., min_length=1, max_length=500)


@router.post("/verify")
async def verify(
    body: VerifyRequest,
    request: Request,
    container: Container = Depends(get_container),
):
    result, remaining = container.verification.verify(
        body.cert_hash,
        ip_address=get_client_ip(request),
        name=body.name,
        email=body.email,
        institution=body.institution,
        website=body.website,
        user_agent=request.headers.get("User-Agent"),
    )
    cert = result.certificate
    return {
        "cert_hash": cert.cert_hash,
        "valid": result.is_valid,
        "hash_valid": result.hash_valid,
        "status": result.status.value,
        "is_current": result.is_current,
        "subject_id": cert.subject_id,
        "subject_name": cert.subject_name,
        "program": cert.program,
        "version": cert.version,
        "attempts_remaining": remaining,
    }


@router.get("/logs")
async def list_logs(
    page: int = Query(1, ge=1),
    page_size: int = Query(DEFAULT_PAGE_SIZE, ge=1, le=MAX_PAGE_SIZE, alias="pageSize"),
    caller: Caller = Depends(require_admin),
    container: Container = Depends(get_container),
):
    result = container.verification.list_logs(page=page, page_size=page_size)
    return {
        "data": [
            entry.to_public_dict(container.verification.get_verifier(entry.verifier_id))
            for entry in result.data
        ],
        "meta": result.meta.model_dump(),
    }


@router.get("/blocked")
async def list_blocked(
    caller: Caller = Depends(require_admin),
    container: Container = Depends(get_container),
):
    return [b.to_public_dict() for b in container.verification.list_blocked()]


@router.post("/blocked", status_code=201)
async def block_ip(
    body: BlockRequest,
    caller: Caller = Depends(require_admin),
    container: Container = Depends(get_container),
):
    block = container.verification.block(
        body.ip_address, body.minutes, body.reason, caller.address
    )
    return block.to_public_dict()


@router.delete("/blocked/{ip_address}")
async def unblock_ip(
    ip_address: str,
    caller: Caller = Depends(require_admin),
    container: Container = Depends(get_container),
):
    return {"ip_address": ip_address, "unblocked": container.verification.unblock(ip_address)}
