"""
Service Configuration

Environment-driven settings for every component that is not the database.
Each dataclass loads itself with from_env(); tests construct them directly.

AUTH:
- CERTREGISTRY_SESSION_SECRET: Key for signing session tokens (required in production)
- CERTREGISTRY_SESSION_TTL_SECONDS: Session lifetime (default: 3600)
- CERTREGISTRY_CHALLENGE_TTL_SECONDS: Login challenge lifetime (default: 300)

LEDGER:
- CERTREGISTRY_SUBMIT_TIMEOUT_SECONDS: Max wait for a confirmation (default: 120)
- CERTREGISTRY_CONFIRMATION_DELAY_SECONDS: Simulated block time (default: 0)
- CERTREGISTRY_GENESIS_ADMIN: Address of the first admin account

INDEXER:
- CERTREGISTRY_INDEXER_ENABLED: Run the background indexer (default: true)
- CERTREGISTRY_INDEXER_POLL_SECONDS: Idle wait between stream reads (default: 1)
- CERTREGISTRY_INDEXER_BACKOFF_INITIAL_SECONDS: First retry delay (default: 0.5)
- CERTREGISTRY_INDEXER_BACKOFF_MAX_SECONDS: Retry delay cap (default: 30)

SCHEDULER:
- CERTREGISTRY_SCHEDULER_ENABLED: Run maintenance tasks (default: true)
- CERTREGISTRY_SCHEDULER_INTERVAL_SECONDS: Seconds between sweeps (default: 60)
"""

import os
import secrets
from dataclasses import dataclass, field
from typing import Optional


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    return raw.lower() in ("1", "true", "yes")


def is_production() -> bool:
    return _env_bool("CERTREGISTRY_PRODUCTION", False)


@dataclass
class AuthConfig:
    """Challenge and session settings."""
    session_secret: str = field(default_factory=lambda: secrets.token_urlsafe(32))
    session_ttl_seconds: int = 3600
    challenge_ttl_seconds: int = 300

    @classmethod
    def from_env(cls) -> "AuthConfig":
        secret = os.environ.get("CERTREGISTRY_SESSION_SECRET")
        if not secret:
            if is_production():
                raise RuntimeError(
                    "CERTREGISTRY_SESSION_SECRET must be set in production"
                )
            # Ephemeral: sessions do not survive a restart
            secret = secrets.token_urlsafe(32)
        return cls(
            session_secret=secret,
            session_ttl_seconds=int(os.environ.get("CERTREGISTRY_SESSION_TTL_SECONDS", "3600")),
            challenge_ttl_seconds=int(os.environ.get("CERTREGISTRY_CHALLENGE_TTL_SECONDS", "300")),
        )


@dataclass
class LedgerConfig:
    """Ledger boundary settings."""
    submit_timeout_seconds: float = 120.0
    confirmation_delay_seconds: float = 0.0
    genesis_admin: Optional[str] = None

    @classmethod
    def from_env(cls) -> "LedgerConfig":
        return cls(
            submit_timeout_seconds=float(os.environ.get("CERTREGISTRY_SUBMIT_TIMEOUT_SECONDS", "120")),
            confirmation_delay_seconds=float(os.environ.get("CERTREGISTRY_CONFIRMATION_DELAY_SECONDS", "0")),
            genesis_admin=os.environ.get("CERTREGISTRY_GENESIS_ADMIN") or None,
        )


@dataclass
class IndexerConfig:
    """AuditIndexer settings."""
    enabled: bool = True
    poll_interval_seconds: float = 1.0
    backoff_initial_seconds: float = 0.5
    backoff_max_seconds: float = 30.0
    backoff_multiplier: float = 2.0

    @classmethod
    def from_env(cls) -> "IndexerConfig":
        return cls(
            enabled=_env_bool("CERTREGISTRY_INDEXER_ENABLED", True),
            poll_interval_seconds=float(os.environ.get("CERTREGISTRY_INDEXER_POLL_SECONDS", "1")),
            backoff_initial_seconds=float(os.environ.get("CERTREGISTRY_INDEXER_BACKOFF_INITIAL_SECONDS", "0.5")),
            backoff_max_seconds=float(os.environ.get("CERTREGISTRY_INDEXER_BACKOFF_MAX_SECONDS", "30")),
        )


@dataclass
class SchedulerConfig:
    """MaintenanceScheduler settings."""
    enabled: bool = True
    interval_seconds: float = 60.0
    session_retention_seconds: float = 86400.0

    @classmethod
    def from_env(cls) -> "SchedulerConfig":
        return cls(
            enabled=_env_bool("CERTREGISTRY_SCHEDULER_ENABLED", True),
            interval_seconds=float(os.environ.get("CERTREGISTRY_SCHEDULER_INTERVAL_SECONDS", "60")),
            session_retention_seconds=float(
                os.environ.get("CERTREGISTRY_SESSION_RETENTION_SECONDS", "86400")
            ),
        )
