"""
HTTP Error Mapping

Maps the registry error taxonomy onto status codes. Every error response
has the same body:

    {"detail": "...", "error": "ExceptionName", "retryable": false}

Retryable errors (ledger unavailable, indexer busy) and blocked verifiers
also carry a Retry-After header.
"""

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..core.errors import (
    AccountNotFound,
    ActionRequestNotFound,
    AlreadyConsumed,
    AuthenticationError,
    AuthorizationError,
    CertificateNotFound,
    ConcurrentModificationError,
    ConsistencyViolation,
    ExpiredChallenge,
    IndexerBusy,
    InvalidTransition,
    LedgerUnavailableError,
    NoSuchChallenge,
    RegistryError,
    SignatureMismatch,
    ValidationError,
    VerifierBlocked,
)
from ..observability import get_logger

logger = get_logger(__name__)

RETRY_AFTER_SECONDS = 5

# Most specific first; the first isinstance match wins
STATUS_CODES: list[tuple[type[RegistryError], int]] = [
    (CertificateNotFound, 404),
    (AccountNotFound, 404),
    (ActionRequestNotFound, 404),
    (InvalidTransition, 409),
    (ValidationError, 400),
    (AuthenticationError, 401),
    (AuthorizationError, 403),
    (VerifierBlocked, 429),
    (NoSuchChallenge, 404),
    (ExpiredChallenge, 410),
    (AlreadyConsumed, 409),
    (SignatureMismatch, 401),
    (ConcurrentModificationError, 409),
    (LedgerUnavailableError, 503),
    (IndexerBusy, 503),
    (ConsistencyViolation, 500),
]


def status_for(error: RegistryError) -> int:
    for error_type, status_code in STATUS_CODES:
        if isinstance(error, error_type):
            return status_code
    return 500


def error_body(error: RegistryError) -> dict:
    return {
        "detail": str(error),
        "error": type(error).__name__,
        "retryable": error.retryable,
    }


async def registry_error_handler(request: Request, exc: RegistryError) -> JSONResponse:
    status_code = status_for(exc)
    if status_code >= 500:
        logger.error(
            f"{type(exc).__name__}: {exc}",
            path=request.url.path,
            status_code=status_code,
        )
    headers = None
    if isinstance(exc, VerifierBlocked):
        headers = {"Retry-After": str(exc.retry_after)}
    elif exc.retryable:
        headers = {"Retry-After": str(RETRY_AFTER_SECONDS)}
    return JSONResponse(status_code=status_code, content=error_body(exc), headers=headers)


def install_error_handlers(app: FastAPI) -> None:
    app.add_exception_handler(RegistryError, registry_error_handler)
