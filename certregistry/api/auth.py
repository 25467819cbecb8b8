"""
Wallet Login Routes

Challenge-response authentication. No passwords: the client proves control
of an address by signing the one-time challenge text with its wallet.

Flow:
    POST /auth/challenge {address}                      -> {message, expires_at}
    POST /auth/login     {address, message, signature}  -> {access_token, ...}
    GET  /auth/me        (Authorization: Bearer <token>)
    POST /auth/logout

Security Features:
- One outstanding challenge per address; a new request replaces the old one
- Challenges are single-use and expire (default 5 minutes)
- Rate limiting on login (10 attempts per 15 minutes per IP)
"""

from datetime import datetime

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from ..container import Container
from ..core.errors import RegistryError, ValidationError
from ..observability import get_logger
from .deps import Caller, get_container, require_session

logger = get_logger(__name__)

router = APIRouter(prefix="/auth", tags=["Auth"])


# ============================================================
# Request/Response Models
# ============================================================

class ChallengeRequest(BaseModel):
    address: str = Field(..., min_length=1, max_length=64)


class ChallengeResponse(BaseModel):
    address: str
    message: str
    expires_at: datetime


class LoginRequest(BaseModel):
    address: str = Field(..., min_length=1, max_length=64)
    message: str | None = None
    signature: str = Field(..., min_length=1, max_length=200)


class LoginResponse(BaseModel):
    access_token: str
    token_type: str
    address: str
    is_admin: bool
    expires_at: datetime


class MeResponse(BaseModel):
    address: str
    display_name: str
    email: str
    is_admin: bool
    session_expires_at: datetime


# ============================================================
# Helper Functions
# ============================================================

def get_client_ip(request: Request) -> str:
    """Extract client IP from request (handles proxies)."""
    forwarded = request.headers.get("X-Forwarded-For", "")
    if forwarded:
        return forwarded.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP", "")
    if real_ip:
        return real_ip

    if request.client:
        return request.client.host

    return "unknown"


# ============================================================
# Auth Endpoints
# ============================================================

@router.post("/challenge", response_model=ChallengeResponse)
async def request_challenge(
    body: ChallengeRequest,
    container: Container = Depends(get_container),
):
    """
    Issue a one-time challenge for an address.

    Any address may ask; registration is checked at login so the endpoint
    does not reveal which addresses are registered.
    """
    try:
        challenge = container.challenges.create_challenge(body.address)
    except ValueError as e:
        raise ValidationError(str(e)) from None
    return ChallengeResponse(
        address=challenge.address,
        message=challenge.nonce_message,
        expires_at=challenge.expires_at,
    )


@router.post("/login", response_model=LoginResponse)
async def login(
    request: Request,
    body: LoginRequest,
    container: Container = Depends(get_container),
):
    """
    Exchange a signed challenge for a bearer token.

    Errors:
    - 404 NoSuchChallenge / account not registered
    - 410 ExpiredChallenge
    - 409 AlreadyConsumed
    - 401 SignatureMismatch
    - 403 account revoked
    - 429 too many attempts
    """
    client_ip = get_client_ip(request)
    is_allowed, retry_after = container.rate_limiter.check(client_ip)
    if not is_allowed:
        logger.warning(f"Rate limited login from {client_ip}")
        raise HTTPException(
            status_code=429,
            detail=f"Too many login attempts. Try again in {retry_after} seconds.",
            headers={"Retry-After": str(retry_after)},
        )

    # Recorded before verification so failures count too
    container.rate_limiter.record(client_ip)

    try:
        token = container.challenges.consume_challenge(
            body.address, body.signature, message=body.message
        )
    except RegistryError as e:
        container.metrics.record_login(False)
        logger.warning(
            f"Login failed: {type(e).__name__}",
            address=body.address,
            client_ip=client_ip,
        )
        raise

    container.rate_limiter.clear(client_ip)
    container.metrics.record_login(True)
    logger.info("Login succeeded", address=token.address, is_admin=token.is_admin)

    return LoginResponse(
        access_token=token.access_token,
        token_type=token.token_type,
        address=token.address,
        is_admin=token.is_admin,
        expires_at=token.expires_at,
    )


@router.post("/logout")
async def logout(
    caller: Caller = Depends(require_session),
    container: Container = Depends(get_container),
):
    container.sessions.close(caller.session.session_id)
    return {"success": True}


@router.get("/me", response_model=MeResponse)
async def get_me(caller: Caller = Depends(require_session)):
    return MeResponse(
        address=caller.account.address,
        display_name=caller.account.display_name,
        email=caller.account.email,
        is_admin=caller.account.is_admin,
        session_expires_at=caller.session.expires_at,
    )
