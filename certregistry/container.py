"""
Service Container

Builds and holds the shared service graph: ledger client, read model,
indexer, write services, request workflow, verifier logging, auth and
maintenance.

Mode is determined by environment variables:
- READMODEL_DRIVER: Explicit driver selection (memory, psycopg2)
- DATABASE_URL: Database connection (auto-selects psycopg2)
- Neither set: Use in-memory (default for development)

Tests build their own container with build_container(...) and inject an
InMemoryLedger and InMemoryReadModelStore directly.
"""

from dataclasses import dataclass
from typing import Optional

import psycopg2

from .config import AuthConfig, IndexerConfig, LedgerConfig, SchedulerConfig, is_production
from .core.action_requests import ActionRequestService
from .core.accounts import AccountRegistry
from .core.certificates import CertificateLedger
from .core.challenge import ChallengeSessionManager
from .core.errors import (
    AccountNotFound,
    AuthorizationError,
    ConsistencyViolation,
    LedgerUnavailableError,
)
from .core.indexer import AuditIndexer
from .core.ledger_client import InMemoryLedger, LedgerClient
from .core.query import QueryService
from .core.rendering import CertificateRenderer, MarkdownRenderer
from .core.scheduler import MaintenanceScheduler
from .core.sessions import LoginRateLimiter, SessionRegistry
from .core.signature import SignatureVerifier
from .core.submission import SubmissionGateway
from .core.verification import VerificationService
from .db.config import ReadModelDriver, ReadModelSettings
from .db.store import InMemoryReadModelStore, ReadModelStore
from .observability import MetricsCollector, get_logger
from .schemas import TxReceipt

logger = get_logger(__name__)


def create_store(settings: Optional[ReadModelSettings] = None) -> ReadModelStore:
    """
    Create the appropriate ReadModelStore based on configuration.

    Returns:
        InMemoryReadModelStore for development/testing
        PostgresReadModelStore when a database is configured
    """
    settings = settings or ReadModelSettings.from_env()

    if settings.driver == ReadModelDriver.MEMORY:
        logger.info("Using in-memory read model (rebuilt from the ledger on start)")
        return InMemoryReadModelStore()

    if not settings.uses_postgres:
        logger.warning(f"Driver is {settings.driver.value} but DATABASE_URL is not set; using in-memory read model")
        return InMemoryReadModelStore()

    from .db.postgres import PostgresReadModelStore

    store = PostgresReadModelStore.from_settings(settings)
    try:
        store.ensure_schema()
    except psycopg2.Error as e:
        if is_production():
            raise
        logger.error(
            f"Could not connect to PostgreSQL: {e}; falling back to in-memory read model",
            database=settings.redacted_url(),
        )
        return InMemoryReadModelStore()

    logger.info("PostgreSQL read model ready", database=settings.redacted_url())
    return store


@dataclass
class Container:
    """Everything a request handler or CLI command needs."""
    store: ReadModelStore
    ledger: LedgerClient
    metrics: MetricsCollector
    gateway: SubmissionGateway
    indexer: AuditIndexer
    certificates: CertificateLedger
    accounts: AccountRegistry
    sessions: SessionRegistry
    challenges: ChallengeSessionManager
    queries: QueryService
    scheduler: MaintenanceScheduler
    renderer: CertificateRenderer
    rate_limiter: LoginRateLimiter
    action_requests: ActionRequestService
    verification: VerificationService

    def start(self) -> None:
        """
        Catch the read model up, then start background workers.

        A halted indexer is left halted so /health/detailed reports it.
        """
        head = self.ledger.head_cursor()
        if self.store.get_cursor() > head:
            # Ledger was reset under a persistent read model
            logger.warning(
                "Read model is ahead of the ledger; dropping it",
                indexed_cursor=self.store.get_cursor(),
                head_cursor=head,
            )
            self.store.clear()
        try:
            result = self.indexer.run_once()
        except ConsistencyViolation:
            logger.error("Read model is halted; indexer not started")
        except LedgerUnavailableError as e:
            logger.warning(f"Initial catch-up failed: {e}; the indexer will retry")
            self.indexer.start()
        else:
            logger.info(
                "Read model caught up",
                applied=result.applied,
                duplicates=result.duplicates,
                cursor=result.cursor,
            )
            self.indexer.start()
        self.scheduler.start()

    def stop(self) -> None:
        self.scheduler.stop()
        self.indexer.stop()
        self.gateway.shutdown()


def build_container(
    store: Optional[ReadModelStore] = None,
    ledger: Optional[LedgerClient] = None,
    auth_config: Optional[AuthConfig] = None,
    ledger_config: Optional[LedgerConfig] = None,
    indexer_config: Optional[IndexerConfig] = None,
    scheduler_config: Optional[SchedulerConfig] = None,
    renderer: Optional[CertificateRenderer] = None,
) -> Container:
    """Wire the service graph. Anything not passed in is built from the environment."""
    auth_config = auth_config or AuthConfig.from_env()
    ledger_config = ledger_config or LedgerConfig.from_env()

    store = store if store is not None else create_store()
    if ledger is None:
        if not ledger_config.genesis_admin:
            logger.warning(
                "CERTREGISTRY_GENESIS_ADMIN is not set; the registry has no admin "
                "and nobody can log in"
            )
        ledger = InMemoryLedger(
            genesis_admin=ledger_config.genesis_admin,
            confirmation_delay=ledger_config.confirmation_delay_seconds,
        )

    metrics = MetricsCollector()
    indexer = AuditIndexer(ledger, store, config=indexer_config, metrics=metrics)

    def read_your_writes(receipt: TxReceipt) -> None:
        if not indexer.sync_to(receipt.cursor):
            logger.warning(
                "Read model has not caught up with a confirmed write",
                tx_id=receipt.tx_id,
                cursor=receipt.cursor,
            )

    gateway = SubmissionGateway(
        ledger,
        timeout_seconds=ledger_config.submit_timeout_seconds,
        metrics=metrics,
        on_confirmed=read_your_writes,
    )
    sessions = SessionRegistry(
        store,
        secret=auth_config.session_secret,
        ttl_seconds=auth_config.session_ttl_seconds,
    )

    def admit(address: str) -> bool:
        account = store.get_account(address)
        if account is None:
            raise AccountNotFound(f"Account {address} is not registered")
        if not account.is_authorized:
            raise AuthorizationError(f"Account {address} has been revoked")
        return account.is_admin

    challenges = ChallengeSessionManager(
        SignatureVerifier(),
        sessions,
        ttl_seconds=auth_config.challenge_ttl_seconds,
        admit=admit,
    )

    certificates = CertificateLedger(store, gateway)

    return Container(
        store=store,
        ledger=ledger,
        metrics=metrics,
        gateway=gateway,
        indexer=indexer,
        certificates=certificates,
        accounts=AccountRegistry(store, gateway, sessions=sessions),
        sessions=sessions,
        challenges=challenges,
        queries=QueryService(store),
        scheduler=MaintenanceScheduler(sessions, challenges, store, config=scheduler_config),
        renderer=renderer or MarkdownRenderer(),
        rate_limiter=LoginRateLimiter(),
        action_requests=ActionRequestService(store, certificates),
        verification=VerificationService(store, certificates),
    )
