"""
============================================================================
Payment Service - Preparation / Confirmation Handshake
============================================================================

Reliability Level: L6 Critical (money movement)
Traceability: Every call gets a correlation_id, logged on every step and
              returned inside the PaymentResult

This module implements the two handlers of the handshake:

    prepare(user_id, item_id, order_id, amount, order_name)
        validate inputs -> validate catalog item -> duplicate-purchase
        guard -> insert prepared record

    confirm(payment_key, order_id, amount)
        validate inputs -> load prepared record (row lock) -> amount check
        -> gateway confirmation -> settlement

Both return a PaymentResult and never raise. The HTTP layer renders the
result into each endpoint's wire shape.

FAIL-CLOSED BEHAVIOR:
    - The gateway is never called unless the prepared record exists and
      its amount matches exactly
    - A gateway transport failure leaves the record prepared; the money
      may or may not have moved, so nothing is written
    - Once the gateway approves, a ledger write failure is logged and the
      response still reports success

============================================================================
"""

from typing import Optional, Any
import logging
import traceback
import uuid

from app.observability.metrics import (
    record_confirmation,
    record_duplicate_charge,
    record_gateway_latency,
    record_preparation,
)
from services.gateway_client import GatewayClientError, PaymentGatewayClient
from services.payment_config import PaymentConfig
from services.payment_models import (
    ConfirmedPayment,
    PaymentError,
    PaymentErrorCode,
    PaymentResult,
    PreparedPayment,
    mask_secret,
)
from services.payment_store import DuplicateOrderError, PaymentStore, StoreError
from services.payment_validation import (
    already_purchased_error,
    check_duplicate_purchase,
    find_missing_parameters,
    is_integral_amount,
    validate_catalog_item,
)
from services.preparation_ledger import PreparationLedger, PurchaseExistsError
from services.settlement_recorder import SettlementRecorder

# Configure module logger
logger = logging.getLogger(__name__)


PREPARE_REQUIRED = "userId, promptId, orderId, amount, orderName are required"
CONFIRM_REQUIRED = "paymentKey, orderId, amount are required"


class PaymentService:
    """
    Payment handshake service.

    Example Usage:
        service = PaymentService(SQLPaymentStore(db), gateway, config)
        result = service.prepare("u1", "p1", "ORDER_p1_1", 1000, "Prompt")
        if result.success:
            print(result.data.preparation.id)
    """

    def __init__(
        self,
        store: PaymentStore,
        gateway: PaymentGatewayClient,
        config: PaymentConfig,
    ):
        self.store = store
        self.gateway = gateway
        self.config = config
        self.ledger = PreparationLedger(store, ttl_seconds=config.preparation_ttl_seconds)
        self.recorder = SettlementRecorder(
            self.ledger,
            store,
            record_purchase=config.record_purchase_on_settlement,
        )

    # ========================================================================
    # prepare
    # ========================================================================

    def prepare(
        self,
        user_id: Optional[str],
        item_id: Optional[str],
        order_id: Optional[str],
        amount: Any,
        order_name: Optional[str],
    ) -> PaymentResult:
        """
        Reserve an order for a validated (user, item, amount).

        On success exactly one prepared record exists for order_id. On any
        failure nothing is written.
        """
        correlation_id = str(uuid.uuid4())
        logger.info(
            f"[PAY-PREPARE] Request received | user_id={user_id} | "
            f"prompt_id={item_id} | order_id={order_id} | amount={amount} | "
            f"correlation_id={correlation_id}"
        )

        try:
            result = self._prepare(user_id, item_id, order_id, amount, order_name, correlation_id)
        except Exception as e:
            result = PaymentResult.fail(
                self._internal_error(e, "prepare", correlation_id),
                correlation_id,
            )

        record_preparation(
            "success" if result.success else result.error.code,
            correlation_id,
        )
        return result

    def _prepare(
        self,
        user_id: Optional[str],
        item_id: Optional[str],
        order_id: Optional[str],
        amount: Any,
        order_name: Optional[str],
        correlation_id: str,
    ) -> PaymentResult:
        missing = find_missing_parameters({
            "userId": user_id,
            "promptId": item_id,
            "orderId": order_id,
            "amount": amount,
            "orderName": order_name,
        })
        if missing:
            logger.warning(
                f"[{PaymentErrorCode.MISSING_PARAMETERS}] missing={missing} | "
                f"correlation_id={correlation_id}"
            )
            return PaymentResult.fail(
                PaymentError.from_code(
                    PaymentErrorCode.MISSING_PARAMETERS,
                    message=PREPARE_REQUIRED,
                    missing=missing,
                ),
                correlation_id,
            )

        if not is_integral_amount(amount):
            return PaymentResult.fail(
                PaymentError.from_code(
                    PaymentErrorCode.INVALID_REQUEST,
                    message="amount must be an integer",
                ),
                correlation_id,
            )

        item, error = validate_catalog_item(self.store, item_id, amount, correlation_id)
        if error is not None:
            return PaymentResult.fail(error, correlation_id)

        error = check_duplicate_purchase(self.store, user_id, item_id, correlation_id)
        if error is not None:
            return PaymentResult.fail(error, correlation_id)

        try:
            record = self.ledger.create(
                user_id=user_id,
                prompt_id=item_id,
                order_id=order_id,
                amount=amount,
                order_name=order_name,
                correlation_id=correlation_id,
            )
        except PurchaseExistsError:
            return PaymentResult.fail(
                self._purchase_landed_error(user_id, item_id, correlation_id),
                correlation_id,
            )
        except DuplicateOrderError:
            logger.warning(
                f"[{PaymentErrorCode.DUPLICATE_ORDER_ID}] order_id={order_id} | "
                f"correlation_id={correlation_id}"
            )
            return PaymentResult.fail(
                PaymentError.from_code(PaymentErrorCode.DUPLICATE_ORDER_ID),
                correlation_id,
            )
        except StoreError as e:
            self._rollback(correlation_id)
            logger.error(
                f"[{PaymentErrorCode.PREPARATION_SAVE_ERROR}] order_id={order_id} | "
                f"error={e.message} | correlation_id={correlation_id}"
            )
            return PaymentResult.fail(
                PaymentError.from_code(
                    PaymentErrorCode.PREPARATION_SAVE_ERROR,
                    preparationError=e.message,
                ),
                correlation_id,
            )

        return PaymentResult.ok(
            PreparedPayment(order_id=order_id, preparation=record, item=item),
            correlation_id,
        )

    def _purchase_landed_error(
        self,
        user_id: str,
        item_id: str,
        correlation_id: str,
    ) -> PaymentError:
        # The guard saw no purchase but the conditional insert did.
        try:
            purchase = self.store.find_purchase(user_id, item_id)
        except StoreError as e:
            logger.error(
                f"[{PaymentErrorCode.PURCHASE_CHECK_ERROR}] Purchase re-read failed | "
                f"error={e.message} | correlation_id={correlation_id}"
            )
            purchase = None

        if purchase is None:
            return PaymentError.from_code(PaymentErrorCode.ALREADY_PURCHASED)
        return already_purchased_error(purchase, correlation_id)

    # ========================================================================
    # confirm
    # ========================================================================

    def confirm(
        self,
        payment_key: Optional[str],
        order_id: Optional[str],
        amount: Any,
    ) -> PaymentResult:
        """
        Confirm a widget payment against its prepared record.

        A second confirmation for the same order finds no prepared record
        and fails with PREPARATION_NOT_FOUND.
        """
        correlation_id = str(uuid.uuid4())
        logger.info(
            f"[PAY-CONFIRM] Request received | order_id={order_id} | amount={amount} | "
            f"payment_key={mask_secret(payment_key)} | correlation_id={correlation_id}"
        )

        try:
            result, outcome = self._confirm(payment_key, order_id, amount, correlation_id)
        except Exception as e:
            error = self._internal_error(e, "confirm", correlation_id)
            result, outcome = PaymentResult.fail(error, correlation_id), error.code

        record_confirmation(outcome, correlation_id)
        return result

    def _confirm(
        self,
        payment_key: Optional[str],
        order_id: Optional[str],
        amount: Any,
        correlation_id: str,
    ):
        missing = find_missing_parameters({
            "paymentKey": payment_key,
            "orderId": order_id,
            "amount": amount,
        })
        if missing:
            logger.warning(
                f"[{PaymentErrorCode.MISSING_PARAMETERS}] missing={missing} | "
                f"correlation_id={correlation_id}"
            )
            error = PaymentError.from_code(
                PaymentErrorCode.MISSING_PARAMETERS,
                message=CONFIRM_REQUIRED,
                missing=missing,
            )
            return PaymentResult.fail(error, correlation_id), error.code

        if not is_integral_amount(amount):
            error = PaymentError.from_code(
                PaymentErrorCode.INVALID_REQUEST,
                message="amount must be an integer",
            )
            return PaymentResult.fail(error, correlation_id), error.code

        try:
            record = self.ledger.find_prepared(order_id, lock=True)
        except StoreError as e:
            self._rollback(correlation_id)
            logger.error(
                f"[{PaymentErrorCode.PREPARATION_QUERY_ERROR}] order_id={order_id} | "
                f"error={e.message} | correlation_id={correlation_id}"
            )
            error = PaymentError.from_code(
                PaymentErrorCode.PREPARATION_QUERY_ERROR,
                details=e.message,
            )
            return PaymentResult.fail(error, correlation_id), error.code

        if record is None:
            self._rollback(correlation_id)
            logger.warning(
                f"[{PaymentErrorCode.PREPARATION_NOT_FOUND}] order_id={order_id} | "
                f"correlation_id={correlation_id}"
            )
            error = PaymentError.from_code(PaymentErrorCode.PREPARATION_NOT_FOUND)
            return PaymentResult.fail(error, correlation_id), error.code

        if record.amount != amount:
            self._rollback(correlation_id)
            logger.warning(
                f"[{PaymentErrorCode.AMOUNT_MISMATCH}] order_id={order_id} | "
                f"expected={record.amount} | actual={amount} | correlation_id={correlation_id}"
            )
            error = PaymentError.from_code(PaymentErrorCode.AMOUNT_MISMATCH)
            return PaymentResult.fail(error, correlation_id), error.code

        try:
            confirmation = self.gateway.confirm_payment(
                payment_key=payment_key,
                order_id=order_id,
                amount=amount,
                correlation_id=correlation_id,
            )
        except GatewayClientError as e:
            self._rollback(correlation_id)
            logger.error(
                f"[PAY-CONFIRM] Gateway unreachable, record left prepared | "
                f"order_id={order_id} | error={e} | correlation_id={correlation_id}"
            )
            record_gateway_latency(0.0, "error", correlation_id)
            error = PaymentError.from_code(
                PaymentErrorCode.INTERNAL_SERVER_ERROR,
                details=str(e),
            )
            return PaymentResult.fail(error, correlation_id), error.code

        if not confirmation.success:
            record_gateway_latency(confirmation.latency_seconds, "declined", correlation_id)
            self.recorder.record_failure(record, confirmation, correlation_id)
            error = PaymentError.gateway(confirmation.error_code, confirmation.error_message)
            return PaymentResult.fail(error, correlation_id), "GATEWAY_DECLINED"

        record_gateway_latency(confirmation.latency_seconds, "approved", correlation_id)
        outcome = self.recorder.record_success(record, confirmation.payment, correlation_id)
        if outcome.duplicate_charge:
            record_duplicate_charge(correlation_id)
            logger.error(
                f"[PAY-CONFIRM] Duplicate charge, user already owned the item | "
                f"order_id={order_id} | user_id={record.user_id} | "
                f"prompt_id={record.prompt_id} | correlation_id={correlation_id}"
            )
        if not outcome.ledger_updated:
            logger.error(
                f"[PAY-CONFIRM] Payment approved but ledger not updated | "
                f"order_id={order_id} | reason={outcome.error_message} | "
                f"correlation_id={correlation_id}"
            )

        logger.info(
            f"[PAY-CONFIRM] Payment confirmed | order_id={order_id} | "
            f"preparation_id={record.id} | purchase_recorded={outcome.purchase_recorded} | "
            f"correlation_id={correlation_id}"
        )
        confirmed = ConfirmedPayment(
            payment=confirmation.payment,
            preparation=record,
            ledger_updated=outcome.ledger_updated,
            purchase_recorded=outcome.purchase_recorded,
        )
        return PaymentResult.ok(confirmed, correlation_id), "success"

    # ========================================================================
    # Lookup
    # ========================================================================

    def get_preparation(self, order_id: str) -> PaymentResult:
        """Current ledger record for order_id in any status."""
        correlation_id = str(uuid.uuid4())
        try:
            record = self.ledger.find_latest(order_id)
        except StoreError as e:
            self._rollback(correlation_id)
            logger.error(
                f"[{PaymentErrorCode.PREPARATION_QUERY_ERROR}] order_id={order_id} | "
                f"error={e.message} | correlation_id={correlation_id}"
            )
            return PaymentResult.fail(
                PaymentError.from_code(
                    PaymentErrorCode.PREPARATION_QUERY_ERROR,
                    details=e.message,
                ),
                correlation_id,
            )

        if record is None:
            return PaymentResult.fail(
                PaymentError.from_code(PaymentErrorCode.PREPARATION_NOT_FOUND),
                correlation_id,
            )
        return PaymentResult.ok(record, correlation_id)

    # ========================================================================
    # Internal
    # ========================================================================

    def _internal_error(
        self,
        exc: Exception,
        operation: str,
        correlation_id: str,
    ) -> PaymentError:
        logger.error(
            f"[{PaymentErrorCode.INTERNAL_SERVER_ERROR}] Unexpected error in {operation} | "
            f"error={exc} | correlation_id={correlation_id}",
            exc_info=True,
        )
        self._rollback(correlation_id)

        extras = {}
        if self.config.debug_errors:
            extras["stack"] = traceback.format_exc()

        return PaymentError.from_code(
            PaymentErrorCode.INTERNAL_SERVER_ERROR,
            details=str(exc),
            **extras
        )

    def _rollback(self, correlation_id: str) -> None:
        try:
            self.store.rollback()
        except StoreError as e:
            logger.error(
                f"[PAY-SERVICE] Rollback failed | error={e.message} | "
                f"correlation_id={correlation_id}"
            )


__all__ = [
    "PaymentService",
    "PREPARE_REQUIRED",
    "CONFIRM_REQUIRED",
]
