"""
============================================================================
Preparation Expiry Worker - Background Job for Stale Preparations
============================================================================

Reliability Level: L6 Critical (money movement)
Traceability: All operations include correlation_id for audit

A preparation whose widget checkout was abandoned would otherwise stay
prepared forever. This worker:
- Periodically scans for prepared records with expires_at < now
- Transitions them to failed with failure_reason PREPARATION_EXPIRED
- Increments payment_preparations_expired_total

The transition is the same conditional update confirm() uses, so a
confirmation that wins the race is never overwritten.

ERROR CODES:
    - PAY-EXPIRY-001: Expiry pass failed

============================================================================
"""

from datetime import datetime
from typing import Optional, Callable
import asyncio
import logging
import uuid

from sqlalchemy.orm import Session

from app.observability.metrics import record_expired
from services.payment_models import PreparationStatus, utc_now
from services.payment_store import SQLPaymentStore, StoreError
from services.preparation_ledger import PreparationLedger

# Configure module logger
logger = logging.getLogger(__name__)


EXPIRED_FAILURE_REASON = "PREPARATION_EXPIRED"
DEFAULT_BATCH_SIZE = 100


# =============================================================================
# ExpiryWorker Class
# =============================================================================

class ExpiryWorker:
    """
    Background job that fails expired payment preparations.

    ============================================================================
    EXPIRY WORKER RESPONSIBILITIES:
    ============================================================================
    1. Periodically scan for prepared records past expires_at
    2. Transition each to failed (conditional on status = prepared)
    3. Set failure_reason = 'PREPARATION_EXPIRED'
    4. Increment the Prometheus expiry counter
    ============================================================================

    Reliability Level: L6 Critical
    Input Constraints: session_factory returns a new SQLAlchemy Session
    Side Effects: Database writes, metrics updates
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        interval_seconds: int = 60,
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> None:
        """
        Initialize ExpiryWorker.

        Args:
            session_factory: Callable returning a new database session
            interval_seconds: Interval between expiry passes (default: 60)
            batch_size: Maximum records processed per pass

        Raises:
            ValueError: If interval_seconds or batch_size is not positive
        """
        if interval_seconds <= 0:
            raise ValueError(
                f"interval_seconds must be positive, got: {interval_seconds}"
            )
        if batch_size <= 0:
            raise ValueError(f"batch_size must be positive, got: {batch_size}")

        self._session_factory = session_factory
        self._interval_seconds = interval_seconds
        self._batch_size = batch_size
        self._running = False
        self._task: Optional[asyncio.Task] = None

        logger.info(
            f"[PAY-EXPIRY] Initialized | "
            f"interval_seconds={interval_seconds} | batch_size={batch_size}"
        )

    @property
    def interval_seconds(self) -> int:
        return self._interval_seconds

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the expiry worker background task."""
        if self._running:
            logger.warning("[PAY-EXPIRY] start() called while running, ignored")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())

        logger.info(
            f"[PAY-EXPIRY] Started | "
            f"interval_seconds={self._interval_seconds}"
        )

    async def stop(self) -> None:
        """Stop the expiry worker background task."""
        if not self._running:
            logger.warning("[PAY-EXPIRY] stop() called while stopped, ignored")
            return

        self._running = False

        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info("[PAY-EXPIRY] Stopped")

    async def _run_loop(self) -> None:
        logger.info("[PAY-EXPIRY] Sweep loop started")

        while self._running:
            try:
                processed_count = self.process_expired()

                if processed_count > 0:
                    logger.info(
                        f"[PAY-EXPIRY] Expired {processed_count} preparations"
                    )

            except Exception as e:
                logger.error(
                    f"[PAY-EXPIRY-001] Sweep pass failed | "
                    f"error={str(e)}"
                )

            try:
                await asyncio.sleep(self._interval_seconds)
            except asyncio.CancelledError:
                break

        logger.info("[PAY-EXPIRY] Sweep loop exited")

    # =========================================================================
    # process_expired() Method
    # =========================================================================

    def process_expired(self, now: Optional[datetime] = None) -> int:
        """
        Fail every prepared record whose expires_at has passed.

        ========================================================================
        EXPIRY PROCESSING PROCEDURE:
        ========================================================================
        1. Query payment_preparations WHERE status = 'prepared'
           AND expires_at < now (oldest first, one batch)
        2. For each record, conditionally transition to failed with
           failure_reason = 'PREPARATION_EXPIRED'
        3. Increment payment_preparations_expired_total by the number moved
        4. Return that number
        ========================================================================

        Args:
            now: Reference time (defaults to current UTC time)

        Returns:
            Number of preparations expired in this pass

        Raises:
            StoreError: If the expired records cannot be listed
        """
        correlation_id = str(uuid.uuid4())
        now = now or utc_now()

        session = self._session_factory()
        try:
            store = SQLPaymentStore(session)
            ledger = PreparationLedger(store, ttl_seconds=0)

            expired = store.list_expired_preparations(now, limit=self._batch_size)
            if not expired:
                logger.debug(
                    f"[PAY-EXPIRY] No expired preparations | "
                    f"correlation_id={correlation_id}"
                )
                store.rollback()
                return 0

            processed_count = 0
            for record in expired:
                try:
                    moved = ledger.transition(
                        record,
                        PreparationStatus.FAILED.value,
                        fields={"failure_reason": EXPIRED_FAILURE_REASON},
                        correlation_id=correlation_id,
                    )
                except StoreError as e:
                    store.rollback()
                    logger.error(
                        f"[PAY-EXPIRY-001] Failed to expire preparation | "
                        f"preparation_id={record.id} | order_id={record.order_id} | "
                        f"error={e.message} | correlation_id={correlation_id}"
                    )
                    continue

                if moved:
                    processed_count += 1
                    logger.info(
                        f"[PAY-EXPIRY] Preparation expired | "
                        f"preparation_id={record.id} | order_id={record.order_id} | "
                        f"expires_at={record.expires_at.isoformat()} | "
                        f"correlation_id={correlation_id}"
                    )

            record_expired(processed_count)
            return processed_count
        finally:
            session.close()


__all__ = [
    "ExpiryWorker",
    "EXPIRED_FAILURE_REASON",
]
