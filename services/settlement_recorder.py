"""
============================================================================
Settlement Recorder - Applies Gateway Outcomes to the Ledger
============================================================================

Reliability Level: L6 Critical (money movement)
Side Effects: payment_preparations transitions, purchases insert

Once the gateway has answered, the money has moved (or not). Nothing the
recorder does may change that answer:

    - success: prepared -> confirmed with payment_key, payment_method,
      approved_at; the PurchaseRecord is written in the same transaction
      when record_purchase is enabled
    - decline: prepared -> failed with failure_reason "<code>: <message>"

A payment approved for an item the user already owns is a duplicate charge:
the ledger is confirmed, no purchase is inserted, and the outcome is flagged.

Store failures are logged and reported through SettlementOutcome. They are
never raised to the caller.

============================================================================
"""

from dataclasses import dataclass
from typing import Optional, Dict, Any
import logging
import uuid

from services.payment_models import (
    PreparationRecord,
    PreparationStatus,
    PurchaseRecord,
    mask_secret,
    parse_gateway_timestamp,
    utc_now,
)
from services.gateway_client import GatewayConfirmation
from services.payment_store import DuplicatePurchaseError, PaymentStore, StoreError
from services.preparation_ledger import PreparationLedger

# Configure module logger
logger = logging.getLogger(__name__)


@dataclass
class SettlementOutcome:
    """What the recorder managed to persist."""
    ledger_updated: bool
    purchase_recorded: bool = False
    purchase_id: Optional[str] = None
    duplicate_charge: bool = False
    error_message: Optional[str] = None


class SettlementRecorder:
    """
    Writes the result of a gateway confirmation.

    Example Usage:
        recorder = SettlementRecorder(ledger, store, record_purchase=True)
        outcome = recorder.record_success(record, payment, correlation_id)
    """

    def __init__(
        self,
        ledger: PreparationLedger,
        store: PaymentStore,
        record_purchase: bool = True,
    ):
        self.ledger = ledger
        self.store = store
        self.record_purchase = record_purchase

    def record_success(
        self,
        record: PreparationRecord,
        payment: Dict[str, Any],
        correlation_id: Optional[str] = None,
    ) -> SettlementOutcome:
        """
        Mark the record confirmed and, if enabled, write the PurchaseRecord.

        Args:
            record: Prepared record the payment settles
            payment: Gateway payment object
            correlation_id: Audit trail identifier

        Returns:
            SettlementOutcome describing what was persisted
        """
        fields = {
            "payment_key": payment.get("paymentKey"),
            "payment_method": payment.get("method"),
            "approved_at": parse_gateway_timestamp(payment.get("approvedAt")) or utc_now(),
        }

        try:
            changed = self.ledger.transition(
                record,
                PreparationStatus.CONFIRMED.value,
                fields=fields,
                correlation_id=correlation_id,
                commit=False,
            )
            if not changed:
                self.store.rollback()
                return SettlementOutcome(
                    ledger_updated=False,
                    error_message="Preparation was settled concurrently",
                )

            purchase_id = None
            duplicate_charge = False
            if self.record_purchase:
                existing = self.store.find_purchase(record.user_id, record.prompt_id)
                if existing is not None:
                    duplicate_charge = True
                    self._log_duplicate_charge(
                        record, payment.get("paymentKey"), existing.id, correlation_id
                    )
                else:
                    purchase_id = self._insert_purchase(record, payment)

            self.store.commit()

        except DuplicatePurchaseError:
            return self._confirm_without_purchase(record, fields, correlation_id)

        except StoreError as e:
            self._rollback_quietly(correlation_id)
            logger.error(
                f"[PAY-SETTLE] Failed to record confirmation | "
                f"preparation_id={record.id} | order_id={record.order_id} | "
                f"error={e.message} | correlation_id={correlation_id}"
            )
            return SettlementOutcome(ledger_updated=False, error_message=e.message)

        logger.info(
            f"[PAY-SETTLE] Confirmation recorded | preparation_id={record.id} | "
            f"order_id={record.order_id} | purchase_id={purchase_id} | "
            f"correlation_id={correlation_id}"
        )
        return SettlementOutcome(
            ledger_updated=True,
            purchase_recorded=purchase_id is not None,
            purchase_id=purchase_id,
            duplicate_charge=duplicate_charge,
        )

    def record_failure(
        self,
        record: PreparationRecord,
        confirmation: GatewayConfirmation,
        correlation_id: Optional[str] = None,
    ) -> bool:
        """
        Mark the record failed with the decline's failure_reason
        ("<code>: <message>").

        Returns:
            True if the ledger was updated
        """
        failure_reason = confirmation.failure_reason
        try:
            return self.ledger.transition(
                record,
                PreparationStatus.FAILED.value,
                fields={"failure_reason": failure_reason},
                correlation_id=correlation_id,
            )
        except StoreError as e:
            self._rollback_quietly(correlation_id)
            logger.error(
                f"[PAY-SETTLE] Failed to record decline | "
                f"preparation_id={record.id} | failure_reason={failure_reason} | "
                f"error={e.message} | correlation_id={correlation_id}"
            )
            return False

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _insert_purchase(self, record: PreparationRecord, payment: Dict[str, Any]) -> str:
        purchase = PurchaseRecord(
            id=str(uuid.uuid4()),
            user_id=record.user_id,
            prompt_id=record.prompt_id,
            price=record.amount,
            created_at=utc_now(),
            order_id=record.order_id,
            payment_method=payment.get("method"),
            transaction_id=payment.get("paymentKey"),
        )
        self.store.insert_purchase(purchase)
        return purchase.id

    def _confirm_without_purchase(
        self,
        record: PreparationRecord,
        fields: Dict[str, Any],
        correlation_id: Optional[str],
    ) -> SettlementOutcome:
        # A purchase landed between find_purchase and the insert. The flip
        # was rolled back with it, so apply it again on its own.
        self._log_duplicate_charge(record, fields["payment_key"], None, correlation_id)
        self._rollback_quietly(correlation_id)
        try:
            changed = self.ledger.transition(
                record,
                PreparationStatus.CONFIRMED.value,
                fields=fields,
                correlation_id=correlation_id,
            )
        except StoreError as e:
            self._rollback_quietly(correlation_id)
            logger.error(
                f"[PAY-SETTLE] Failed to record confirmation | "
                f"preparation_id={record.id} | error={e.message} | "
                f"correlation_id={correlation_id}"
            )
            return SettlementOutcome(ledger_updated=False, error_message=e.message)

        return SettlementOutcome(ledger_updated=changed, duplicate_charge=True)

    def _log_duplicate_charge(
        self,
        record: PreparationRecord,
        payment_key: Optional[str],
        purchase_id: Optional[str],
        correlation_id: Optional[str],
    ) -> None:
        logger.error(
            f"[PAY-SETTLE-002] Payment approved for an item already purchased, "
            f"not inserting | user_id={record.user_id} | prompt_id={record.prompt_id} | "
            f"order_id={record.order_id} | payment_key={mask_secret(payment_key)} | "
            f"purchase_id={purchase_id} | correlation_id={correlation_id}"
        )

    def _rollback_quietly(self, correlation_id: Optional[str]) -> None:
        try:
            self.store.rollback()
        except StoreError as e:
            logger.error(
                f"[PAY-SETTLE] Rollback failed | error={e.message} | "
                f"correlation_id={correlation_id}"
            )


__all__ = [
    "SettlementOutcome",
    "SettlementRecorder",
]
