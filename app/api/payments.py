"""
============================================================================
Prompt Market Payments
Payment Handshake API Endpoints
============================================================================

Reliability Level: L6 Critical (money movement)
Input Constraints:
    - JSON bodies; amount must be a JSON integer
    - userId is supplied by the identity provider in front of this service
Side Effects:
    - payment_preparations inserts and transitions
    - purchases insert on settlement
    - Gateway confirmation call
    - Prometheus metrics updates

ENDPOINTS:
    POST    /prepare-payment                     - Reserve an order
    POST    /confirm-payment                     - Confirm a widget payment
    OPTIONS /prepare-payment, /confirm-payment   - CORS pre-flight ("ok")
    GET     /payments/preparations/{order_id}    - Ledger status lookup

WIRE SHAPES:
    prepare-payment failure:  {success: false, error: "<CODE>", details, ...extras}
    confirm-payment failure:  {success: false, error: {code, message, details?}, timestamp}
    INTERNAL_SERVER_ERROR uses the confirm-payment shape on both endpoints.

============================================================================
"""

from datetime import datetime, timezone
from typing import Optional, Dict, Any
import logging

from fastapi import APIRouter, Depends, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, StrictInt
from sqlalchemy.orm import Session

from app.database.session import get_db
from services.gateway_client import PaymentGatewayClient
from services.payment_config import PaymentConfig, get_payment_config
from services.payment_models import (
    ConfirmedPayment,
    PaymentError,
    PaymentErrorCode,
    PaymentResult,
    PreparationRecord,
    PreparedPayment,
)
from services.payment_service import PaymentService
from services.payment_store import SQLPaymentStore
from services.preparation_ledger import parse_order_id

# Configure module logger
logger = logging.getLogger(__name__)


# ============================================================================
# Router Configuration
# ============================================================================

router = APIRouter()

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Headers": "authorization, x-client-info, apikey, content-type",
}

UNSUPPORTED_METHODS = ["GET", "PUT", "PATCH", "DELETE"]

# Payment object keys echoed only when the gateway sent them
OPTIONAL_PAYMENT_KEYS = ("card", "virtualAccount", "transfer")


# ============================================================================
# Dependencies
# ============================================================================

def get_payment_config_dep() -> PaymentConfig:
    return get_payment_config()


def get_gateway_client(config: PaymentConfig = Depends(get_payment_config_dep)):
    """One gateway client per request, closed when the response is sent."""
    client = PaymentGatewayClient.from_config(config)
    try:
        yield client
    finally:
        client.close()


def get_payment_service(
    db: Session = Depends(get_db),
    config: PaymentConfig = Depends(get_payment_config_dep),
    gateway: PaymentGatewayClient = Depends(get_gateway_client),
) -> PaymentService:
    return PaymentService(SQLPaymentStore(db), gateway, config)


# ============================================================================
# Request Models
# ============================================================================

class PreparePaymentRequest(BaseModel):
    """
    Body of POST /prepare-payment.

    Fields are optional at the schema level so that absent values surface
    as MISSING_PARAMETERS rather than a validation error.
    """
    userId: Optional[str] = None
    promptId: Optional[str] = None
    orderId: Optional[str] = None
    amount: Optional[StrictInt] = None
    orderName: Optional[str] = None


class ConfirmPaymentRequest(BaseModel):
    """Body of POST /confirm-payment."""
    paymentKey: Optional[str] = None
    orderId: Optional[str] = None
    amount: Optional[StrictInt] = None


# ============================================================================
# Rendering
# ============================================================================

def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def json_response(status_code: int, content: Dict[str, Any]) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=content, headers=CORS_HEADERS)


def render_nested_error(error: PaymentError) -> Dict[str, Any]:
    body: Dict[str, Any] = {"code": error.code, "message": error.message}
    if error.details:
        body["details"] = error.details
    if "stack" in error.extras:
        body["stack"] = error.extras["stack"]
    return {"success": False, "error": body, "timestamp": _timestamp()}


def render_flat_error(error: PaymentError) -> Dict[str, Any]:
    if error.code == PaymentErrorCode.INTERNAL_SERVER_ERROR:
        return render_nested_error(error)
    body: Dict[str, Any] = {
        "success": False,
        "error": error.code,
        "details": error.message,
    }
    body.update(error.extras)
    return body


def render_prepare_success(prepared: PreparedPayment) -> Dict[str, Any]:
    return {
        "success": True,
        "orderId": prepared.order_id,
        "preparationId": prepared.preparation.id,
        "promptInfo": prepared.item.summary(),
        "validationStatus": {
            "promptFound": True,
            "priceValid": True,
            "notPurchased": True,
            "approved": True,
            "preparationSaved": True,
        },
        "timestamp": _timestamp(),
    }


def render_confirm_success(confirmed: ConfirmedPayment) -> Dict[str, Any]:
    payment = confirmed.payment
    summary = {
        "paymentKey": payment.get("paymentKey"),
        "orderId": payment.get("orderId"),
        "orderName": payment.get("orderName"),
        "method": payment.get("method"),
        "totalAmount": payment.get("totalAmount"),
        "status": payment.get("status"),
        "requestedAt": payment.get("requestedAt"),
        "approvedAt": payment.get("approvedAt"),
    }
    for key in OPTIONAL_PAYMENT_KEYS:
        if key in payment:
            summary[key] = payment[key]

    record = confirmed.preparation
    return {
        "success": True,
        "payment": summary,
        "preparationInfo": {
            "preparationId": record.id,
            "promptId": record.prompt_id,
            "userId": record.user_id,
            "purchaseRecorded": confirmed.purchase_recorded,
        },
        "timestamp": _timestamp(),
    }


def render_preparation(record: PreparationRecord) -> Dict[str, Any]:
    body: Dict[str, Any] = {
        "success": True,
        "preparation": {
            "preparationId": record.id,
            "orderId": record.order_id,
            "promptId": record.prompt_id,
            "status": record.status,
            "amount": record.amount,
            "orderName": record.order_name,
            "failureReason": record.failure_reason,
            "approvedAt": _isoformat(record.approved_at),
            "expiresAt": _isoformat(record.expires_at),
            "expired": record.is_prepared and record.is_expired(),
        },
        "timestamp": _timestamp(),
    }
    parsed = parse_order_id(record.order_id)
    if parsed is not None:
        body["orderInfo"] = {
            "itemId": parsed.item_id,
            "orderedAt": parsed.created_at.isoformat(),
        }
    return body


def render_invalid_request(request: Request, exc: RequestValidationError) -> JSONResponse:
    """
    Malformed JSON or wrongly typed fields, rendered in the shape of the
    endpoint that received them.
    """
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    details = f"{location}: {first.get('msg')}" if location else str(first.get("msg", ""))

    error = PaymentError.from_code(PaymentErrorCode.INVALID_REQUEST, details=details)
    logger.warning(
        f"[{PaymentErrorCode.INVALID_REQUEST}] path={request.url.path} | details={details}"
    )

    if request.url.path.endswith("/prepare-payment"):
        body = render_flat_error(error)
        body["validationError"] = details
        return json_response(error.http_status, body)
    return json_response(error.http_status, render_nested_error(error))


def _method_not_allowed() -> JSONResponse:
    return json_response(405, {"error": "Method not allowed"})


# ============================================================================
# prepare-payment
# ============================================================================

@router.options("/prepare-payment", include_in_schema=False)
async def prepare_payment_preflight():
    return PlainTextResponse("ok", headers=CORS_HEADERS)


@router.post(
    "/prepare-payment",
    summary="Prepare Payment",
    description=(
        "Validates the item, price and ownership, then records a prepared "
        "payment for orderId.\n\n"
        "**Price check:** amount must equal the catalog price exactly"
    ),
    responses={
        200: {"description": "Payment prepared"},
        400: {"description": "MISSING_PARAMETERS, PROMPT_NOT_APPROVED, PRICE_MISMATCH"},
        404: {"description": "PROMPT_NOT_FOUND"},
        409: {"description": "ALREADY_PURCHASED, DUPLICATE_ORDER_ID"},
        500: {"description": "Store or internal failure"},
    },
    tags=["Payments"],
)
def prepare_payment(
    body: PreparePaymentRequest,
    service: PaymentService = Depends(get_payment_service),
) -> JSONResponse:
    result: PaymentResult = service.prepare(
        user_id=body.userId,
        item_id=body.promptId,
        order_id=body.orderId,
        amount=body.amount,
        order_name=body.orderName,
    )
    if not result.success:
        return json_response(result.http_status, render_flat_error(result.error))
    return json_response(200, render_prepare_success(result.data))


@router.api_route("/prepare-payment", methods=UNSUPPORTED_METHODS, include_in_schema=False)
async def prepare_payment_method_not_allowed():
    return _method_not_allowed()


# ============================================================================
# confirm-payment
# ============================================================================

@router.options("/confirm-payment", include_in_schema=False)
async def confirm_payment_preflight():
    return PlainTextResponse("ok", headers=CORS_HEADERS)


@router.post(
    "/confirm-payment",
    summary="Confirm Payment",
    description=(
        "Confirms a widget payment with the gateway against its prepared "
        "record and settles the ledger.\n\n"
        "**Amount check:** amount must equal the prepared amount; the gateway "
        "is not called otherwise"
    ),
    responses={
        200: {"description": "Payment confirmed"},
        400: {"description": "MISSING_PARAMETERS, AMOUNT_MISMATCH, gateway decline"},
        404: {"description": "PREPARATION_NOT_FOUND"},
        500: {"description": "Store, gateway transport or internal failure"},
    },
    tags=["Payments"],
)
def confirm_payment(
    body: ConfirmPaymentRequest,
    service: PaymentService = Depends(get_payment_service),
) -> JSONResponse:
    result: PaymentResult = service.confirm(
        payment_key=body.paymentKey,
        order_id=body.orderId,
        amount=body.amount,
    )
    if not result.success:
        return json_response(result.http_status, render_nested_error(result.error))
    return json_response(200, render_confirm_success(result.data))


@router.api_route("/confirm-payment", methods=UNSUPPORTED_METHODS, include_in_schema=False)
async def confirm_payment_method_not_allowed():
    return _method_not_allowed()


# ============================================================================
# Ledger lookup
# ============================================================================

@router.get(
    "/payments/preparations/{order_id}",
    summary="Get Payment Preparation",
    description="Current ledger status of an order, for the success and fail pages.",
    responses={
        200: {"description": "Preparation found"},
        404: {"description": "PREPARATION_NOT_FOUND"},
        500: {"description": "PREPARATION_QUERY_ERROR"},
    },
    tags=["Payments"],
)
def get_payment_preparation(
    order_id: str,
    service: PaymentService = Depends(get_payment_service),
) -> JSONResponse:
    result = service.get_preparation(order_id)
    if not result.success:
        return json_response(result.http_status, render_nested_error(result.error))
    return json_response(200, render_preparation(result.data))


__all__ = [
    "router",
    "CORS_HEADERS",
    "get_payment_config_dep",
    "get_gateway_client",
    "get_payment_service",
    "render_invalid_request",
    "render_nested_error",
    "render_preparation",
    "json_response",
]
