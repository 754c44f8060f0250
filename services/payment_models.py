"""
============================================================================
Payment Handshake - Core Data Models
============================================================================

Reliability Level: L6 Critical (money movement)
Amount Integrity: All amounts are integral currency units (no floats)
Traceability: All operations include correlation_id for audit

This module defines the core data models for the payment handshake:
- CatalogItem: read-only view of a purchasable prompt
- PurchaseRecord: proof that a user owns a prompt
- PreparationRecord: pending payment intent in the ledger
- PaymentError / PaymentResult: the single tagged result type returned by
  both prepare and confirm

ERROR CODES:
    - MISSING_PARAMETERS, INVALID_REQUEST
    - PROMPT_NOT_FOUND, PREPARATION_NOT_FOUND
    - PROMPT_NOT_APPROVED, PRICE_MISMATCH, ALREADY_PURCHASED,
      AMOUNT_MISMATCH, DUPLICATE_ORDER_ID
    - PROMPT_QUERY_ERROR, PURCHASE_CHECK_ERROR, PREPARATION_SAVE_ERROR,
      PREPARATION_QUERY_ERROR
    - INTERNAL_SERVER_ERROR

============================================================================
"""

from typing import Optional, Dict, Any
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
import logging

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Error Codes
# =============================================================================

class PaymentErrorCode:
    """Error codes surfaced to callers of the payment endpoints."""
    MISSING_PARAMETERS = "MISSING_PARAMETERS"
    INVALID_REQUEST = "INVALID_REQUEST"
    PROMPT_NOT_FOUND = "PROMPT_NOT_FOUND"
    PROMPT_QUERY_ERROR = "PROMPT_QUERY_ERROR"
    PROMPT_NOT_APPROVED = "PROMPT_NOT_APPROVED"
    PRICE_MISMATCH = "PRICE_MISMATCH"
    ALREADY_PURCHASED = "ALREADY_PURCHASED"
    PURCHASE_CHECK_ERROR = "PURCHASE_CHECK_ERROR"
    DUPLICATE_ORDER_ID = "DUPLICATE_ORDER_ID"
    PREPARATION_SAVE_ERROR = "PREPARATION_SAVE_ERROR"
    PREPARATION_NOT_FOUND = "PREPARATION_NOT_FOUND"
    PREPARATION_QUERY_ERROR = "PREPARATION_QUERY_ERROR"
    AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"


# =============================================================================
# Enums
# =============================================================================

class PaymentErrorKind(Enum):
    """
    Error taxonomy.

    INPUT      - caller fixes the request, nothing mutated
    NOT_FOUND  - resource absent or in the wrong state
    POLICY     - well-formed request that breaks a business rule
    UPSTREAM   - the relational store failed, retryable
    GATEWAY    - the payment gateway declined, terminal business outcome
    INTERNAL   - anything unexpected
    """
    INPUT = "INPUT"
    NOT_FOUND = "NOT_FOUND"
    POLICY = "POLICY"
    UPSTREAM = "UPSTREAM"
    GATEWAY = "GATEWAY"
    INTERNAL = "INTERNAL"


class PreparationStatus(Enum):
    """
    PreparationRecord lifecycle.

        prepared -> confirmed (gateway success)
        prepared -> failed    (gateway failure or expiry)

    Terminal States: confirmed, failed
    """
    PREPARED = "prepared"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class CatalogStatus(Enum):
    """Moderation status of a catalog item. Only APPROVED is purchasable."""
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


# =============================================================================
# Error Catalog
# =============================================================================

# code -> (kind, http_status, default message)
ERROR_CATALOG: Dict[str, tuple] = {
    PaymentErrorCode.MISSING_PARAMETERS: (
        PaymentErrorKind.INPUT, 400, "Required parameters are missing."),
    PaymentErrorCode.INVALID_REQUEST: (
        PaymentErrorKind.INPUT, 400, "Request body is malformed."),
    PaymentErrorCode.PROMPT_NOT_FOUND: (
        PaymentErrorKind.NOT_FOUND, 404, "The requested prompt could not be found."),
    PaymentErrorCode.PROMPT_QUERY_ERROR: (
        PaymentErrorKind.UPSTREAM, 500, "An error occurred while looking up the prompt."),
    PaymentErrorCode.PROMPT_NOT_APPROVED: (
        PaymentErrorKind.POLICY, 400, "The prompt has not been approved for sale."),
    PaymentErrorCode.PRICE_MISMATCH: (
        PaymentErrorKind.POLICY, 400, "The requested amount does not match the prompt price."),
    PaymentErrorCode.ALREADY_PURCHASED: (
        PaymentErrorKind.POLICY, 409, "The prompt has already been purchased."),
    PaymentErrorCode.PURCHASE_CHECK_ERROR: (
        PaymentErrorKind.UPSTREAM, 500, "An error occurred while checking purchase history."),
    PaymentErrorCode.DUPLICATE_ORDER_ID: (
        PaymentErrorKind.POLICY, 409, "A payment has already been prepared for this order id."),
    PaymentErrorCode.PREPARATION_SAVE_ERROR: (
        PaymentErrorKind.UPSTREAM, 500, "An error occurred while saving the payment preparation."),
    PaymentErrorCode.PREPARATION_NOT_FOUND: (
        PaymentErrorKind.NOT_FOUND, 404, "No prepared payment was found for this order."),
    PaymentErrorCode.PREPARATION_QUERY_ERROR: (
        PaymentErrorKind.UPSTREAM, 500, "An error occurred while looking up the payment preparation."),
    PaymentErrorCode.AMOUNT_MISMATCH: (
        PaymentErrorKind.POLICY, 400, "The requested amount does not match the prepared amount."),
    PaymentErrorCode.INTERNAL_SERVER_ERROR: (
        PaymentErrorKind.INTERNAL, 500, "An internal server error occurred."),
}


# =============================================================================
# Domain Records
# =============================================================================

@dataclass
class CatalogItem:
    """Read-only view of a row in the prompts table."""

    id: str
    title: str
    price: int
    is_free: bool
    status: str

    @property
    def is_purchasable(self) -> bool:
        return self.status == CatalogStatus.APPROVED.value

    def summary(self) -> Dict[str, Any]:
        """Trimmed item summary echoed back by prepare."""
        return {
            "id": self.id,
            "title": self.title,
            "price": self.price,
            "is_free": self.is_free,
        }


@dataclass
class PurchaseRecord:
    """A row in the purchases table."""

    id: str
    user_id: str
    prompt_id: str
    price: int
    created_at: datetime
    order_id: Optional[str] = None
    payment_method: Optional[str] = None
    transaction_id: Optional[str] = None


@dataclass
class PreparationRecord:
    """
    Pending payment intent.

    ============================================================================
    PREPARATION RECORD FIELDS:
    ============================================================================
    - id: server-generated identifier (preparationId)
    - order_id: caller-supplied order id, ORDER_<itemId>_<timestamp>
    - user_id / prompt_id: acting user and catalog item
    - amount: integral amount, authoritative once validated
    - order_name: display label for the gateway
    - status: prepared | confirmed | failed
    - payment_key, payment_method, approved_at, failure_reason: populated
      only on the transition out of prepared
    - expires_at, created_at, updated_at
    ============================================================================

    Reliability Level: L6 Critical
    Side Effects: None (data container)
    """

    id: str
    order_id: str
    user_id: str
    prompt_id: str
    amount: int
    order_name: str
    status: str
    expires_at: datetime
    created_at: datetime
    updated_at: datetime
    payment_key: Optional[str] = None
    payment_method: Optional[str] = None
    approved_at: Optional[datetime] = None
    failure_reason: Optional[str] = None

    @property
    def is_prepared(self) -> bool:
        return self.status == PreparationStatus.PREPARED.value

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or datetime.now(timezone.utc)
        return self.expires_at < now


# =============================================================================
# Tagged Result Type
# =============================================================================

@dataclass
class PaymentError:
    """
    Uniform error payload for both endpoints.

    extras carries branch-specific context, e.g. expected/actual for
    PRICE_MISMATCH or purchaseDate for ALREADY_PURCHASED.
    """

    code: str
    kind: PaymentErrorKind
    message: str
    http_status: int
    details: Optional[str] = None
    extras: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_code(
        cls,
        code: str,
        message: Optional[str] = None,
        details: Optional[str] = None,
        **extras: Any
    ) -> "PaymentError":
        """
        Build an error from the catalog, falling back to INTERNAL for
        unknown codes.
        """
        kind, http_status, default_message = ERROR_CATALOG.get(
            code, ERROR_CATALOG[PaymentErrorCode.INTERNAL_SERVER_ERROR]
        )
        return cls(
            code=code,
            kind=kind,
            message=message or default_message,
            http_status=http_status,
            details=details,
            extras=extras,
        )

    @classmethod
    def gateway(
        cls,
        code: str,
        message: str,
        details: Optional[str] = None
    ) -> "PaymentError":
        """Gateway-reported declines are surfaced verbatim with HTTP 400."""
        return cls(
            code=code,
            kind=PaymentErrorKind.GATEWAY,
            message=message,
            http_status=400,
            details=details,
        )


@dataclass
class PaymentResult:
    """
    Result of prepare() and confirm().

    Exactly one of data / error is populated.
    """

    success: bool
    correlation_id: str
    data: Optional[Any] = None
    error: Optional[PaymentError] = None

    @classmethod
    def ok(cls, data: Any, correlation_id: str) -> "PaymentResult":
        return cls(success=True, data=data, error=None, correlation_id=correlation_id)

    @classmethod
    def fail(cls, error: PaymentError, correlation_id: str) -> "PaymentResult":
        return cls(success=False, data=None, error=error, correlation_id=correlation_id)

    @property
    def http_status(self) -> int:
        if self.success:
            return 200
        return self.error.http_status


@dataclass
class PreparedPayment:
    """Success payload of prepare()."""

    order_id: str
    preparation: PreparationRecord
    item: CatalogItem


@dataclass
class ConfirmedPayment:
    """Success payload of confirm()."""

    payment: Dict[str, Any]
    preparation: PreparationRecord
    ledger_updated: bool
    purchase_recorded: bool


# =============================================================================
# Helpers
# =============================================================================

def mask_secret(value: Optional[str], visible: int = 4) -> str:
    """Mask a payment key or secret for logging, keeping the last characters."""
    if not value:
        return "[EMPTY]"
    if len(value) <= visible:
        return "*" * len(value)
    return "*" * (len(value) - visible) + value[-visible:]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Attach UTC to naive datetimes read back from the store."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_gateway_timestamp(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an ISO-8601 timestamp from the gateway (e.g.
    2024-02-13T12:18:14+09:00) into an aware UTC datetime.

    Returns None for empty or unparseable values.
    """
    if not value:
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        return ensure_utc(datetime.fromisoformat(text))
    except ValueError:
        logger.warning(f"[PAYMENT-MODELS] Unparseable gateway timestamp: {value}")
        return None


# =============================================================================
# Module Exports
# =============================================================================

__all__ = [
    "PaymentErrorCode",
    "PaymentErrorKind",
    "PreparationStatus",
    "CatalogStatus",
    "ERROR_CATALOG",
    "CatalogItem",
    "PurchaseRecord",
    "PreparationRecord",
    "PaymentError",
    "PaymentResult",
    "PreparedPayment",
    "ConfirmedPayment",
    "mask_secret",
    "utc_now",
    "ensure_utc",
    "parse_gateway_timestamp",
]
