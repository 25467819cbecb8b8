"""
Audit Indexer

Consumes the ledger event stream and keeps the read model in step with it.

GUARANTEES:
- Idempotent: an event whose (tx_id, event_type, target) was already
  applied is skipped; replaying the whole stream twice changes nothing
- Atomic: projection rows, the audit entry, and the cursor are written in
  one read-model transaction
- Fail-stop: an event that cannot be applied (version gap, conflicting
  duplicate, impossible transition) halts the indexer with the transaction
  rolled back; nothing is skipped silently
- Single consumer: a second concurrent run raises IndexerBusy

CONFIGURATION (see config.IndexerConfig):
- CERTREGISTRY_INDEXER_ENABLED
- CERTREGISTRY_INDEXER_POLL_SECONDS
- CERTREGISTRY_INDEXER_BACKOFF_INITIAL_SECONDS / _MAX_SECONDS

USAGE:
    indexer = AuditIndexer(ledger, store)
    indexer.run_once()       # catch up and return

    indexer.start()          # follow the stream on a background thread
    indexer.stop()
"""

import threading
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

import psycopg2

from ..config import IndexerConfig
from ..db.projections import Projector
from ..db.store import AppliedEvent, ReadModelStore, StoreError
from ..observability import MetricsCollector, get_logger
from ..schemas import LedgerEvent
from .errors import ConsistencyViolation, IndexerBusy, LedgerUnavailableError
from .hasher import Hasher
from .ledger_client import LedgerClient

logger = get_logger(__name__)

# Retried with backoff by the follower; the read model never moves past them
TRANSIENT_ERRORS = (
    LedgerUnavailableError,
    StoreError,
    psycopg2.OperationalError,
    psycopg2.InterfaceError,
)


@dataclass
class RunResult:
    applied: int = 0
    duplicates: int = 0
    cursor: int = 0


@dataclass
class IndexerStatus:
    state: str
    cursor: int
    applied: int
    duplicates: int
    halted: bool
    running: bool
    last_error: Optional[str] = None
    last_applied_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        return {
            "state": self.state,
            "cursor": self.cursor,
            "applied": self.applied,
            "duplicates": self.duplicates,
            "halted": self.halted,
            "running": self.running,
            "last_error": self.last_error,
            "last_applied_at": self.last_applied_at.isoformat() if self.last_applied_at else None,
        }

    @property
    def healthy(self) -> bool:
        return self.state not in ("halted", "failed")


class AuditIndexer:
    """
    Event stream → read model.

    Args:
        ledger: LedgerClient providing stream_events
        store: ReadModelStore to project into
        config: IndexerConfig (or loads from environment)
        metrics: Optional MetricsCollector
        projector: Projection rules (default Projector())
    """

    def __init__(
        self,
        ledger: LedgerClient,
        store: ReadModelStore,
        config: Optional[IndexerConfig] = None,
        metrics: Optional[MetricsCollector] = None,
        projector: Optional[Projector] = None,
    ):
        self._ledger = ledger
        self._store = store
        self._config = config or IndexerConfig.from_env()
        self._metrics = metrics
        self._projector = projector or Projector()

        # Non-reentrant; acquired without blocking
        self._run_lock = threading.Lock()
        self._progress = threading.Condition()

        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._running = False

        self._halted = False
        self._retrying = False
        self._failed = False
        self._last_error: Optional[str] = None
        self._applied = 0
        self._duplicates = 0
        self._last_applied_at: Optional[datetime] = None

    @property
    def config(self) -> IndexerConfig:
        return self._config

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_halted(self) -> bool:
        return self._halted

    # ================================================================
    # APPLY
    # ================================================================

    def _apply(self, event: LedgerEvent) -> bool:
        """
        Apply one event in its own transaction.

        Returns True if applied, False if it was a duplicate.
        """
        key = event.dedup_key
        fingerprint = Hasher.hash_data(event.content())

        with self._store.begin_apply() as ctx:
            previous = ctx.get_applied(key)
            if previous is not None:
                if previous.fingerprint != fingerprint:
                    raise ConsistencyViolation(
                        f"Conflicting duplicate for tx {event.tx_id} "
                        f"({event.event_type.value} {event.target}): "
                        f"content differs from the copy applied at cursor {previous.cursor}",
                        cursor=event.cursor,
                    )
                if event.cursor > ctx.get_cursor():
                    ctx.set_cursor(event.cursor)
                    ctx.commit()
                return False

            if event.cursor <= ctx.get_cursor():
                raise ConsistencyViolation(
                    f"Unseen event at cursor {event.cursor} arrived behind "
                    f"the indexed cursor {ctx.get_cursor()}",
                    cursor=event.cursor,
                )

            self._projector.apply(ctx, event)
            ctx.record_applied(AppliedEvent(
                tx_id=key[0],
                event_type=key[1],
                target=key[2],
                fingerprint=fingerprint,
                cursor=event.cursor,
            ))
            ctx.set_cursor(event.cursor)
            ctx.commit()
        return True

    def _consume(self, events, result: RunResult) -> None:
        for event in events:
            try:
                applied = self._apply(event)
            except ConsistencyViolation as e:
                self._halt(e)
                raise

            if applied:
                result.applied += 1
                self._applied += 1
                self._last_applied_at = datetime.now(timezone.utc)
                if self._metrics is not None:
                    self._metrics.record_applied()
                logger.debug(
                    f"Applied {event.event_type.value} at cursor {event.cursor}",
                    cursor=event.cursor,
                    tx_id=event.tx_id,
                )
            else:
                result.duplicates += 1
                self._duplicates += 1
                if self._metrics is not None:
                    self._metrics.record_duplicate()
                logger.debug(f"Skipped duplicate {event.dedup_key}", cursor=event.cursor)

            result.cursor = self._store.get_cursor()
            with self._progress:
                self._progress.notify_all()

    def _halt(self, error: ConsistencyViolation) -> None:
        self._halted = True
        self._last_error = str(error)
        if self._metrics is not None:
            self._metrics.record_violation()
        logger.error(
            f"Indexer halted: {error}",
            cursor=error.cursor,
            indexed_cursor=self._store.get_cursor(),
        )
        with self._progress:
            self._progress.notify_all()

    def _ensure_not_halted(self) -> None:
        if self._halted:
            raise ConsistencyViolation(
                f"Indexer is halted: {self._last_error}", cursor=self._store.get_cursor()
            )

    # ================================================================
    # RUN MODES
    # ================================================================

    def run_once(self) -> RunResult:
        """
        Apply every event after the stored cursor, then return.

        Raises:
            IndexerBusy: Another run is in progress
            ConsistencyViolation: An event could not be applied (indexer halts)
            LedgerUnavailableError: The stream broke; safe to call again
        """
        if not self._run_lock.acquire(blocking=False):
            raise IndexerBusy("Indexer is already running")
        try:
            self._ensure_not_halted()
            result = RunResult(cursor=self._store.get_cursor())
            self._consume(
                self._ledger.stream_events(cursor=result.cursor, follow=False),
                result,
            )
            return result
        finally:
            self._run_lock.release()

    def run_forever(self, stop: Optional[threading.Event] = None) -> None:
        """
        Follow the stream until `stop` is set or the indexer halts.

        Ledger stream interruptions and read-model connectivity errors are
        retried with exponential backoff, resuming from the last committed
        cursor.
        """
        stop = stop or self._stop_event
        if not self._run_lock.acquire(blocking=False):
            raise IndexerBusy("Indexer is already running")
        try:
            self._ensure_not_halted()
            delay = self._config.backoff_initial_seconds
            while not stop.is_set():
                result = RunResult()
                try:
                    cursor = self._store.get_cursor()
                    if self._retrying:
                        self._recovered()
                    self._consume(
                        self._ledger.stream_events(cursor=cursor, follow=True, stop=stop),
                        result,
                    )
                    delay = self._config.backoff_initial_seconds
                except TRANSIENT_ERRORS as e:
                    if result.applied or result.duplicates:
                        delay = self._config.backoff_initial_seconds
                    self._retrying = True
                    self._last_error = f"{type(e).__name__}: {e}"
                    logger.warning(
                        f"Indexer interrupted, retrying in {delay:.1f}s: {self._last_error}",
                        cursor=result.cursor or None,
                    )
                    stop.wait(timeout=delay)
                    delay = min(
                        delay * self._config.backoff_multiplier,
                        self._config.backoff_max_seconds,
                    )
                except ConsistencyViolation:
                    return
        finally:
            self._run_lock.release()

    def start(self) -> None:
        """Start following the stream on a background thread."""
        if not self._config.enabled:
            logger.info("Audit indexer disabled (CERTREGISTRY_INDEXER_ENABLED=0)")
            return

        if self._running:
            logger.warning("Audit indexer already running")
            return

        self._running = True
        self._failed = False
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run_loop, name="audit-indexer", daemon=True
        )
        self._thread.start()
        logger.info(f"Audit indexer started from cursor {self._store.get_cursor()}")

    def stop(self, timeout: float = 5.0) -> None:
        """Stop the background thread."""
        if not self._running:
            return

        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=timeout)

        self._running = False
        logger.info("Audit indexer stopped")

    def _run_loop(self) -> None:
        try:
            self.run_forever(self._stop_event)
        except Exception as e:
            self._failed = True
            self._last_error = f"{type(e).__name__}: {e}"
            logger.exception(f"Audit indexer crashed: {e}")
        finally:
            self._running = False

    def _recovered(self) -> None:
        logger.info("Indexer recovered", previous_error=self._last_error)
        self._retrying = False
        self._last_error = None

    # ================================================================
    # OPERATIONS
    # ================================================================

    def sync_to(self, cursor: int, timeout: float = 5.0) -> bool:
        """
        Wait until the read model has absorbed `cursor`.

        Catches up inline when no background thread is following the
        stream. Returns False if the read model does not get there.
        """
        deadline = time.monotonic() + timeout
        if self._store.get_cursor() >= cursor:
            return True

        if not self._running:
            try:
                self.run_once()
            except IndexerBusy:
                pass  # someone else is consuming; wait for them below
            except (ConsistencyViolation,) + TRANSIENT_ERRORS as e:
                logger.warning(f"Inline catch-up failed: {e}")
                return False

        with self._progress:
            while self._store.get_cursor() < cursor and not self._halted:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._progress.wait(timeout=remaining)
        return self._store.get_cursor() >= cursor

    def rebuild(self) -> RunResult:
        """
        Drop the read model and replay the ledger from genesis.

        The background thread must be stopped first.
        """
        if not self._run_lock.acquire(blocking=False):
            raise IndexerBusy("Stop the indexer before rebuilding")
        try:
            logger.warning("Rebuilding read model from genesis")
            self._store.clear()
            self._halted = False
            self._last_error = None
            self._applied = 0
            self._duplicates = 0
        finally:
            self._run_lock.release()
        return self.run_once()

    def resume(self) -> None:
        """Clear a halt after an operator has dealt with its cause."""
        if self._halted:
            logger.warning(f"Indexer resumed after halt: {self._last_error}")
        self._halted = False
        self._failed = False
        self._retrying = False
        self._last_error = None

    def status(self) -> IndexerStatus:
        if self._halted:
            state = "halted"
        elif self._failed:
            state = "failed"
        elif self._running and self._retrying:
            state = "retrying"
        elif self._running:
            state = "running"
        else:
            state = "idle"
        return IndexerStatus(
            state=state,
            cursor=self._store.get_cursor(),
            applied=self._applied,
            duplicates=self._duplicates,
            halted=self._halted,
            running=self._running,
            last_error=self._last_error,
            last_applied_at=self._last_applied_at,
        )
