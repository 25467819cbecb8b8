"""
Certificate Registry

Main application entry point.

The ledger is the source of truth. This service validates and submits
lifecycle actions, follows the ledger's event stream into a queryable
read model, and authenticates wallets by challenge-response.
"""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .api import action_requests, audit, auth, certificates, users, verifiers
from .api.deps import Caller, get_container, require_admin, require_session
from .api.errors import install_error_handlers
from .container import Container, build_container
from .db.store import SessionStatus
from .observability import (
    RequestContextMiddleware,
    check_health,
    get_logger,
    setup_logging,
)

# Setup logging at import time
setup_logging()
logger = get_logger(__name__)


def create_app(container: Optional[Container] = None, start_workers: bool = True) -> FastAPI:
    """
    Build the FastAPI app.

    Args:
        container: Prebuilt service graph (tests); built from the environment if None
        start_workers: Start the background indexer and maintenance scheduler
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan events."""
        if app.state.container is None:
            app.state.container = build_container()
        active = app.state.container

        if start_workers:
            active.start()
        else:
            active.indexer.run_once()

        logger.info(
            "Application startup complete",
            store_type=type(active.store).__name__,
            cursor=active.store.get_cursor(),
            indexer_enabled=active.indexer.config.enabled,
        )

        yield

        active.stop()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Certificate Registry",
        description="""
## Ledger-Backed Certificate Registry

Issue, revoke and reactivate versioned certificates. Every mutation is a
confirmed ledger transaction; everything you read is projected from the
ledger's event stream.

### Certificate Lifecycle

```
(none) -> Active <-> Revoked
```

A new version of a subject's certificate is a new record; earlier
versions stay queryable.

### Authentication

1. `POST /auth/challenge` with your address
2. Sign the returned message with your wallet (EIP-191 personal_sign)
3. `POST /auth/login` with the signature; use the token as `Authorization: Bearer`

### Storage Backends

- **InMemoryReadModelStore**: Development/testing (default)
- **PostgresReadModelStore**: Production

Set the `DATABASE_URL` environment variable to use PostgreSQL.
        """,
        version="0.1.0",
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.container = container

    # Add request context middleware for logging
    app.add_middleware(RequestContextMiddleware)

    # In production, restrict to your actual domain
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[
            "http://localhost:5173",
            "http://127.0.0.1:5173",
            "http://localhost:3000",
            "http://127.0.0.1:3000",
        ],
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    install_error_handlers(app)

    app.include_router(auth.router)
    app.include_router(certificates.router)
    app.include_router(users.router)
    app.include_router(audit.router)
    app.include_router(action_requests.router)
    app.include_router(verifiers.router)

    _add_system_routes(app)
    return app


def _add_system_routes(app: FastAPI) -> None:

    @app.get("/health", tags=["System"])
    async def health():
        """
        Basic health check endpoint.

        Returns 200 if the service is running.
        For detailed health, use /health/detailed
        """
        return {"status": "healthy", "service": "certregistry"}

    @app.get("/health/detailed", tags=["System"])
    async def health_detailed(container: Container = Depends(get_container)):
        """
        Detailed health check.

        Checks:
        - Read model connectivity and cursor
        - Ledger reachability and head cursor
        - Indexer state and lag (a halted indexer is unhealthy)

        Returns 200 if healthy, 503 if unhealthy.
        """
        health_status = check_health(
            store=container.store,
            ledger=container.ledger,
            indexer=container.indexer,
        )
        return JSONResponse(
            status_code=200 if health_status.healthy else 503,
            content={
                "status": "healthy" if health_status.healthy else "unhealthy",
                "checks": health_status.checks,
                "duration_ms": health_status.duration_ms,
            },
        )

    @app.get("/metrics", tags=["System"])
    async def metrics(container: Container = Depends(get_container)):
        """
        Get application metrics.

        Returns counters, gauges, and latency percentiles.
        """
        active = len(container.store.list_sessions(status=SessionStatus.ACTIVE))
        return container.metrics.get_summary(active_sessions=active)

    @app.get("/search", tags=["System"])
    async def search(q: str = "", container: Container = Depends(get_container)):
        """Subjects by id fragment, certificates by hash, accounts by address."""
        results = container.queries.search(q)
        return {
            "query": q,
            "subjects": [c.to_public_dict() for c in results["subjects"]],
            "certificates": [c.to_public_dict() for c in results["certificates"]],
            "accounts": [a.to_public_dict() for a in results["accounts"]],
        }

    @app.get("/dashboard", tags=["System"])
    async def dashboard(
        caller: Caller = Depends(require_session),
        container: Container = Depends(get_container),
    ):
        summary = container.queries.dashboard_summary()
        summary["recent_certificates"] = [
            c.to_public_dict() for c in summary["recent_certificates"]
        ]
        return summary

    @app.get("/indexer/status", tags=["System"])
    async def indexer_status(
        caller: Caller = Depends(require_admin),
        container: Container = Depends(get_container),
    ):
        status = container.indexer.status().to_dict()
        status["head_cursor"] = container.ledger.head_cursor()
        return status

    @app.post("/indexer/resume", tags=["System"])
    def indexer_resume(
        caller: Caller = Depends(require_admin),
        container: Container = Depends(get_container),
    ):
        """Clear a halt and catch up. Restarts the follower if it had stopped."""
        container.indexer.resume()
        if not container.indexer.is_running:
            if container.indexer.config.enabled:
                container.indexer.start()
            else:
                container.indexer.run_once()
        logger.warning("Indexer resumed by admin", admin=caller.address)
        return container.indexer.status().to_dict()

    @app.get("/api", tags=["System"])
    async def api_info(container: Container = Depends(get_container)):
        return {
            "name": "Certificate Registry API",
            "version": "0.1.0",
            "storage_backend": type(container.store).__name__,
            "indexed_cursor": container.store.get_cursor(),
            "endpoints": {
                "auth": ["/auth/challenge", "/auth/login", "/auth/logout", "/auth/me"],
                "certificates": [
                    "/certificates",
                    "/certificates/{cert_hash}",
                    "/certificates/{cert_hash}/verify",
                    "/certificates/{cert_hash}/export.md",
                    "/certificates/{cert_hash}/revoke",
                    "/certificates/{cert_hash}/reactivate",
                    "/certificates/subject/{subject_id}",
                    "/certificates/subject/{subject_id}/history",
                ],
                "users": ["/users", "/users/{address}"],
                "audit": ["/audit", "/audit/certificate/{cert_hash}", "/audit/user/{address}"],
                "certificate_requests": [
                    "/certificate-requests",
                    "/certificate-requests/my",
                    "/certificate-requests/{request_id}",
                    "/certificate-requests/{request_id}/take",
                    "/certificate-requests/{request_id}/complete",
                    "/certificate-requests/{request_id}/reject",
                ],
                "verifiers": ["/verifiers/verify", "/verifiers/logs", "/verifiers/blocked"],
            },
        }


app = create_app()
