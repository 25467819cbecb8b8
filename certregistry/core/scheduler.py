"""
Maintenance Scheduler

Periodic housekeeping that must not depend on request traffic:
- expire login sessions past their lifetime
- purge expired and consumed login challenges
- delete ended login sessions once they are older than the retention window
- re-check every active session against the read model: sessions of
  revoked or unknown accounts are revoked, admin sessions of demoted
  admins lose admin rights

CONFIGURATION:
- CERTREGISTRY_SCHEDULER_ENABLED: Enable the background thread (default: true)
- CERTREGISTRY_SCHEDULER_INTERVAL_SECONDS: Seconds between sweeps (default: 60)
- CERTREGISTRY_SESSION_RETENTION_SECONDS: Keep ended sessions this long (default: 86400)

USAGE:
    scheduler = MaintenanceScheduler(sessions, challenges, store)
    scheduler.start()

    # Or run one sweep by hand
    report = scheduler.run_once()

    scheduler.stop()
"""

import threading
from dataclasses import asdict, dataclass
from typing import Optional

from ..config import SchedulerConfig
from ..db.store import ReadModelStore
from ..observability import get_logger
from .challenge import ChallengeSessionManager
from .sessions import SessionRegistry

logger = get_logger(__name__)


@dataclass
class MaintenanceReport:
    sessions_expired: int = 0
    sessions_revoked: int = 0
    sessions_demoted: int = 0
    challenges_purged: int = 0
    sessions_purged: int = 0

    def to_dict(self) -> dict:
        return asdict(self)


class MaintenanceScheduler:
    """Runs housekeeping sweeps on a background thread."""

    def __init__(
        self,
        sessions: SessionRegistry,
        challenges: ChallengeSessionManager,
        store: ReadModelStore,
        config: Optional[SchedulerConfig] = None,
    ):
        self._sessions = sessions
        self._challenges = challenges
        self._store = store
        self._config = config or SchedulerConfig.from_env()

        self._running = False
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._last_report: Optional[MaintenanceReport] = None

    @property
    def config(self) -> SchedulerConfig:
        return self._config

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def last_report(self) -> Optional[MaintenanceReport]:
        return self._last_report

    def start(self) -> None:
        """Start the background scheduler."""
        if not self._config.enabled:
            logger.info("Maintenance scheduler disabled (CERTREGISTRY_SCHEDULER_ENABLED=0)")
            return

        if self._running:
            logger.warning("Maintenance scheduler already running")
            return

        self._running = True
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop, name="maintenance", daemon=True
        )
        self._thread.start()
        logger.info(f"Maintenance scheduler started (interval={self._config.interval_seconds}s)")

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the background scheduler."""
        if not self._running:
            return

        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)

        self._running = False
        logger.info("Maintenance scheduler stopped")

    def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.run_once()
            except Exception as e:
                logger.exception(f"Maintenance sweep failed: {e}")

            self._stop_event.wait(timeout=self._config.interval_seconds)

    def run_once(self) -> MaintenanceReport:
        report = MaintenanceReport()
        report.sessions_expired = self._sessions.expire_stale()
        report.challenges_purged = self._challenges.purge_expired()
        self._recheck_privileges(report)
        report.sessions_purged = self._sessions.purge_ended(self._config.session_retention_seconds)

        self._last_report = report
        if any(asdict(report).values()):
            logger.info("Maintenance sweep", **report.to_dict())
        return report

    def _recheck_privileges(self, report: MaintenanceReport) -> None:
        for session in self._sessions.active_sessions():
            account = self._store.get_account(session.address)
            if account is None or not account.is_authorized:
                report.sessions_revoked += self._sessions.revoke_for_address(session.address)
            elif session.is_admin and not account.is_admin:
                self._sessions.demote(session)
                report.sessions_demoted += 1
