"""
============================================================================
Preparation Ledger - Pending Payment Intents
============================================================================

Reliability Level: L6 Critical (money movement)
Input Constraints: Validated prepare() inputs
Side Effects: payment_preparations inserts and status transitions

The ledger is the only writer of payment_preparations. It owns:

    - order id convention:   ORDER_<itemId>_<timestampMillis>
    - record creation:       status=prepared, expires_at=created_at+ttl
    - state transitions:     validated against VALID_TRANSITIONS, applied
                             as a conditional update on status=prepared

A transition that matches zero rows means another settlement got there
first. The ledger reports it as a lost race rather than an error.

ERROR CODES:
    - PAY-LEDGER-001: Purchase exists, preparation not inserted
    - PAY-LEDGER-002: Invalid transition requested

============================================================================
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any
import logging
import re
import time
import uuid

from services.payment_models import (
    PreparationRecord,
    PreparationStatus,
    utc_now,
)
from services.payment_state_machine import validate_transition
from services.payment_store import PaymentStore

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

ORDER_ID_PREFIX = "ORDER"

# ORDER_<itemId>_<digits>. itemId may itself contain underscores, so the
# timestamp is anchored to the end.
ORDER_ID_PATTERN = re.compile(r"^ORDER_(?P<item_id>.+)_(?P<timestamp>\d+)$")


# =============================================================================
# Exceptions
# =============================================================================

class PurchaseExistsError(Exception):
    """
    Raised when the conditional insert was blocked by an existing purchase
    (PAY-LEDGER-001).
    """

    def __init__(self, user_id: str, prompt_id: str):
        self.user_id = user_id
        self.prompt_id = prompt_id
        super().__init__(
            f"PAY-LEDGER-001: purchase exists | user_id={user_id} | prompt_id={prompt_id}"
        )


class InvalidPreparationTransitionError(Exception):
    """Raised when a transition is not allowed by the state machine (PAY-LEDGER-002)."""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"PAY-LEDGER-002: {current} -> {target} is not allowed")


# =============================================================================
# Order Id Convention
# =============================================================================

@dataclass
class ParsedOrderId:
    item_id: str
    timestamp_ms: int

    @property
    def created_at(self) -> datetime:
        return datetime.fromtimestamp(self.timestamp_ms / 1000, tz=timezone.utc)


def build_order_id(item_id: str, timestamp_ms: Optional[int] = None) -> str:
    """Build an order id in the ORDER_<itemId>_<timestampMillis> format."""
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    return f"{ORDER_ID_PREFIX}_{item_id}_{timestamp_ms}"


def parse_order_id(order_id: Optional[str]) -> Optional[ParsedOrderId]:
    """
    Split an order id back into item id and timestamp.

    Returns None when the order id does not follow the convention. The
    convention is advisory; prepare() accepts any non-empty order id.
    """
    if not order_id:
        return None
    match = ORDER_ID_PATTERN.match(order_id.strip())
    if match is None:
        return None
    return ParsedOrderId(
        item_id=match.group("item_id"),
        timestamp_ms=int(match.group("timestamp")),
    )


# =============================================================================
# Ledger
# =============================================================================

class PreparationLedger:
    """
    Preparation ledger over a PaymentStore.

    Example Usage:
        ledger = PreparationLedger(store, ttl_seconds=1800)
        record = ledger.create("u1", "p1", "ORDER_p1_1", 1000, "Prompt")
        ledger.transition(record, "confirmed", {"payment_key": "pk"})
    """

    def __init__(self, store: PaymentStore, ttl_seconds: int):
        self.store = store
        self.ttl_seconds = ttl_seconds

    def create(
        self,
        user_id: str,
        prompt_id: str,
        order_id: str,
        amount: int,
        order_name: str,
        correlation_id: Optional[str] = None,
    ) -> PreparationRecord:
        """
        Insert and commit a prepared record.

        Raises:
            PurchaseExistsError: A purchase for (user_id, prompt_id) landed
                before the insert
            DuplicateOrderError: order_id is already in the ledger
            StoreError: Any other store failure
        """
        now = utc_now()
        record = PreparationRecord(
            id=str(uuid.uuid4()),
            order_id=order_id,
            user_id=user_id,
            prompt_id=prompt_id,
            amount=amount,
            order_name=order_name,
            status=PreparationStatus.PREPARED.value,
            expires_at=now + timedelta(seconds=self.ttl_seconds),
            created_at=now,
            updated_at=now,
        )

        inserted = self.store.insert_preparation(record)
        if not inserted:
            self.store.rollback()
            logger.info(
                f"[PAY-LEDGER-001] Preparation blocked by existing purchase | "
                f"user_id={user_id} | prompt_id={prompt_id} | order_id={order_id} | "
                f"correlation_id={correlation_id}"
            )
            raise PurchaseExistsError(user_id, prompt_id)

        self.store.commit()

        logger.info(
            f"[PAY-LEDGER] Preparation saved | preparation_id={record.id} | "
            f"order_id={order_id} | amount={amount} | "
            f"expires_at={record.expires_at.isoformat()} | correlation_id={correlation_id}"
        )
        return record

    def find_prepared(self, order_id: str, lock: bool = False) -> Optional[PreparationRecord]:
        """Record for order_id still in prepared status, or None."""
        return self.store.get_prepared_by_order_id(order_id, lock=lock)

    def find_latest(self, order_id: str) -> Optional[PreparationRecord]:
        """Record for order_id in any status, or None."""
        return self.store.get_preparation_by_order_id(order_id)

    def transition(
        self,
        record: PreparationRecord,
        target_status: str,
        fields: Optional[Dict[str, Any]] = None,
        correlation_id: Optional[str] = None,
        commit: bool = True,
    ) -> bool:
        """
        Move a prepared record to target_status.

        Args:
            record: Record as read from the ledger
            target_status: confirmed or failed
            fields: Extra columns to set with the status
            correlation_id: Audit trail identifier
            commit: Commit immediately. Pass False to let the caller add
                more writes to the same transaction.

        Returns:
            True if the row moved, False if it had already left prepared

        Raises:
            InvalidPreparationTransitionError: Transition not allowed
            StoreError: Store failure
        """
        is_valid, _ = validate_transition(record.status, target_status, correlation_id)
        if not is_valid:
            raise InvalidPreparationTransitionError(record.status, target_status)

        changed = self.store.transition_preparation(
            preparation_id=record.id,
            expected_status=record.status,
            target_status=target_status,
            fields=fields,
        )

        if not changed:
            logger.warning(
                f"[PAY-LEDGER] Preparation settled concurrently | "
                f"preparation_id={record.id} | order_id={record.order_id} | "
                f"target={target_status} | correlation_id={correlation_id}"
            )
            if commit:
                self.store.rollback()
            return False

        if commit:
            self.store.commit()

        logger.info(
            f"[PAY-LEDGER] Preparation {record.status} -> {target_status} | "
            f"preparation_id={record.id} | order_id={record.order_id} | "
            f"correlation_id={correlation_id}"
        )
        return True


# =============================================================================
# Module Exports
# =============================================================================

__all__ = [
    "ORDER_ID_PREFIX",
    "PurchaseExistsError",
    "InvalidPreparationTransitionError",
    "ParsedOrderId",
    "build_order_id",
    "parse_order_id",
    "PreparationLedger",
]
