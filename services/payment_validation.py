"""
============================================================================
Payment Validation - Price/Eligibility Validator & Duplicate-Purchase Guard
============================================================================

Reliability Level: L6 Critical (money movement)
Side Effects: Read-only store queries

Gates applied by prepare(), in order. The first failing gate wins:

    1. find_missing_parameters()   -> MISSING_PARAMETERS
    2. validate_catalog_item()     -> PROMPT_QUERY_ERROR / PROMPT_NOT_FOUND
                                      / PROMPT_NOT_APPROVED / PRICE_MISMATCH
    3. check_duplicate_purchase()  -> PURCHASE_CHECK_ERROR / ALREADY_PURCHASED

Prices are compared with exact integer equality. There is no tolerance.

============================================================================
"""

from typing import Optional, Dict, Any, List, Tuple
import logging

from services.payment_models import (
    CatalogItem,
    PaymentError,
    PaymentErrorCode,
    PurchaseRecord,
)
from services.payment_store import PaymentStore, StoreError

# Configure module logger
logger = logging.getLogger(__name__)


def find_missing_parameters(params: Dict[str, Any]) -> List[str]:
    """
    Names of parameters that are absent or empty.

    Any falsy value counts as missing, so an amount of 0 and a
    whitespace-only string are both rejected.
    """
    missing: List[str] = []
    for name, value in params.items():
        if isinstance(value, str):
            if not value.strip():
                missing.append(name)
        elif not value:
            missing.append(name)
    return missing


def is_integral_amount(value: Any) -> bool:
    """True for int amounts. bool is rejected even though it subclasses int."""
    return isinstance(value, int) and not isinstance(value, bool)


def validate_catalog_item(
    store: PaymentStore,
    item_id: str,
    amount: int,
    correlation_id: Optional[str] = None,
) -> Tuple[Optional[CatalogItem], Optional[PaymentError]]:
    """
    Check a catalog item exists, is approved, and is priced at amount.

    Args:
        store: Payment store
        item_id: Catalog item (prompt) id
        amount: Client-declared amount
        correlation_id: Audit trail identifier

    Returns:
        (item, None) when every gate passes, (item_or_None, error) otherwise
    """
    try:
        item = store.get_catalog_item(item_id)
    except StoreError as e:
        logger.error(
            f"[{PaymentErrorCode.PROMPT_QUERY_ERROR}] Catalog lookup failed | "
            f"prompt_id={item_id} | error={e.message} | correlation_id={correlation_id}"
        )
        return None, PaymentError.from_code(
            PaymentErrorCode.PROMPT_QUERY_ERROR,
            promptError=e.message,
        )

    if item is None:
        logger.warning(
            f"[{PaymentErrorCode.PROMPT_NOT_FOUND}] prompt_id={item_id} | "
            f"correlation_id={correlation_id}"
        )
        return None, PaymentError.from_code(PaymentErrorCode.PROMPT_NOT_FOUND)

    if not item.is_purchasable:
        logger.warning(
            f"[{PaymentErrorCode.PROMPT_NOT_APPROVED}] prompt_id={item_id} | "
            f"status={item.status} | correlation_id={correlation_id}"
        )
        return item, PaymentError.from_code(
            PaymentErrorCode.PROMPT_NOT_APPROVED,
            status=item.status,
        )

    if item.price != amount:
        logger.warning(
            f"[{PaymentErrorCode.PRICE_MISMATCH}] prompt_id={item_id} | "
            f"expected={item.price} | actual={amount} | correlation_id={correlation_id}"
        )
        return item, PaymentError.from_code(
            PaymentErrorCode.PRICE_MISMATCH,
            expected=item.price,
            actual=amount,
        )

    logger.debug(
        f"[PAY-VALIDATION] Catalog item valid | prompt_id={item_id} | "
        f"price={item.price} | correlation_id={correlation_id}"
    )
    return item, None


def check_duplicate_purchase(
    store: PaymentStore,
    user_id: str,
    item_id: str,
    correlation_id: Optional[str] = None,
) -> Optional[PaymentError]:
    """
    Reject a preparation when the user already owns the item.

    A store failure is reported as PURCHASE_CHECK_ERROR, never as
    "not purchased".
    """
    try:
        purchase: Optional[PurchaseRecord] = store.find_purchase(user_id, item_id)
    except StoreError as e:
        logger.error(
            f"[{PaymentErrorCode.PURCHASE_CHECK_ERROR}] Purchase lookup failed | "
            f"user_id={user_id} | prompt_id={item_id} | error={e.message} | "
            f"correlation_id={correlation_id}"
        )
        return PaymentError.from_code(
            PaymentErrorCode.PURCHASE_CHECK_ERROR,
            purchaseCheckError=e.message,
        )

    if purchase is not None:
        return already_purchased_error(purchase, correlation_id)

    return None


def already_purchased_error(
    purchase: PurchaseRecord,
    correlation_id: Optional[str] = None,
) -> PaymentError:
    logger.info(
        f"[{PaymentErrorCode.ALREADY_PURCHASED}] user_id={purchase.user_id} | "
        f"prompt_id={purchase.prompt_id} | purchased_at={purchase.created_at.isoformat()} | "
        f"correlation_id={correlation_id}"
    )
    return PaymentError.from_code(
        PaymentErrorCode.ALREADY_PURCHASED,
        purchaseDate=purchase.created_at.isoformat(),
    )


__all__ = [
    "find_missing_parameters",
    "is_integral_amount",
    "validate_catalog_item",
    "check_duplicate_purchase",
    "already_purchased_error",
]
