"""
Ledger Submission Gateway

Runs every ledger mutation the same way:
- on a worker thread, bounded by a timeout, so an abandoned HTTP request
  cannot leave a half-submitted transaction behind
- with ledger rejections mapped onto ConcurrentModificationError (the
  caller already pre-validated against the read model, so a rejection
  means the ledger moved on)
- with timing recorded in the MetricsCollector
"""

import time
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Callable, Optional

from ..observability import MetricsCollector, get_logger
from ..schemas import LedgerAction, TxReceipt
from .errors import (
    ConcurrentModificationError,
    LedgerTimeout,
    LedgerUnavailableError,
    SubmissionRejected,
)
from .ledger_client import LedgerClient

logger = get_logger(__name__)


class SubmissionGateway:
    """
    Args:
        ledger: LedgerClient to submit to
        timeout_seconds: Max wait for confirmation
        metrics: Optional MetricsCollector
        on_confirmed: Called with each receipt (used to let the indexer
            catch up so the caller can read its own write)
        max_workers: Size of the submission thread pool
    """

    def __init__(
        self,
        ledger: LedgerClient,
        timeout_seconds: float = 120.0,
        metrics: Optional[MetricsCollector] = None,
        on_confirmed: Optional[Callable[[TxReceipt], None]] = None,
        max_workers: int = 4,
    ):
        self._ledger = ledger
        self._timeout = timeout_seconds
        self._metrics = metrics
        self._on_confirmed = on_confirmed
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="ledger-submit"
        )

    @property
    def ledger(self) -> LedgerClient:
        return self._ledger

    def submit(
        self,
        action: LedgerAction,
        payload: dict[str, Any],
        actor: str,
        conflict_message: str,
    ) -> TxReceipt:
        """
        Submit and wait.

        Raises:
            ConcurrentModificationError: Ledger rejected the pre-validated call
            LedgerUnavailableError: No confirmation within the timeout
        """
        start = time.perf_counter()
        future = self._executor.submit(
            self._ledger.submit, action, payload, actor=actor, timeout=self._timeout
        )
        try:
            # Small grace period so the ledger's own timeout wins the race
            receipt = future.result(timeout=self._timeout + 1.0)
        except SubmissionRejected as e:
            self._record(start, False)
            logger.warning(
                f"{action.value} rejected by ledger: {e.reason}",
                action=action.value,
                actor=actor,
            )
            raise ConcurrentModificationError(conflict_message, ledger_reason=e.reason) from e
        except (LedgerTimeout, FutureTimeout) as e:
            self._record(start, False)
            logger.error(f"{action.value} timed out after {self._timeout}s", action=action.value)
            raise LedgerUnavailableError(
                f"Ledger did not confirm {action.value} within {self._timeout:g}s"
            ) from e

        self._record(start, True)
        logger.info(
            f"{action.value} confirmed",
            action=action.value,
            tx_id=receipt.tx_id,
            cursor=receipt.cursor,
        )
        if self._on_confirmed is not None:
            self._on_confirmed(receipt)
        return receipt

    def _record(self, start: float, success: bool) -> None:
        if self._metrics is not None:
            self._metrics.record_submission((time.perf_counter() - start) * 1000, success)

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)
