# ============================================================================
# Prompt Market Payments
# Payment Gateway Client - Server-to-Server Confirmation
# ============================================================================
#
# Reliability Level: L6 Critical (money movement)
# Purpose: Confirms widget payments with the gateway using the server-held
#          secret key. The browser never sees the secret.
#
# MANDATE:
#   - HTTP Basic auth: base64("<secret_key>:")
#   - Secret key and payment keys NEVER appear in logs in full
#   - Exactly one attempt per call; no internal retry
#   - Transport failures raise GatewayConnectionError
#
# Gateway API:
#   POST {base_url}/v1/payments/confirm
#   body: {"paymentKey": ..., "orderId": ..., "amount": ...}
#   2xx:  payment object
#   4xx/5xx: {"code": ..., "message": ...}
#
# Error Codes:
#   - PAY-GW-001: Gateway declined the confirmation
#   - PAY-GW-002: Invalid response format
#   - PAY-GW-003: Connection failure or timeout
#   - PAY-GW-004: Missing gateway credentials
#
# ============================================================================

import time
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any

import requests
from requests.auth import HTTPBasicAuth
from requests.exceptions import Timeout, ConnectionError as RequestsConnectionError, RequestException

from services.payment_models import mask_secret

logger = logging.getLogger(__name__)


# ============================================================================
# Exceptions
# ============================================================================

class GatewayClientError(Exception):
    """Base exception for gateway client errors."""
    pass


class MissingGatewayCredentialsError(GatewayClientError):
    """Raised when the gateway secret key is missing (PAY-GW-004)."""
    pass


class GatewayConnectionError(GatewayClientError):
    """Raised on network failure or timeout (PAY-GW-003)."""
    pass


class GatewayResponseError(GatewayClientError):
    """Raised when the gateway response cannot be parsed (PAY-GW-002)."""
    pass


# ============================================================================
# Data Classes
# ============================================================================

@dataclass
class GatewayConfirmation:
    """
    Outcome of a confirmation call.

    On success, payment holds the gateway's payment object. On decline,
    error_code / error_message hold the gateway's {code, message}.
    """
    success: bool
    status_code: int
    payment: Optional[Dict[str, Any]] = None
    error_code: Optional[str] = None
    error_message: Optional[str] = None
    latency_seconds: float = 0.0

    @property
    def failure_reason(self) -> Optional[str]:
        if self.success:
            return None
        return f"{self.error_code}: {self.error_message}"


# ============================================================================
# Gateway Client
# ============================================================================

class PaymentGatewayClient:
    """
    Payment gateway confirmation client.

    Example Usage:
        with PaymentGatewayClient(secret_key="test_gsk_...") as client:
            result = client.confirm_payment("pk1", "ORDER_p1_1", 1000)
            if result.success:
                print(result.payment["method"])
    """

    DEFAULT_BASE_URL = "https://api.tosspayments.com"
    CONFIRM_PATH = "/v1/payments/confirm"
    DEFAULT_TIMEOUT = 30.0

    def __init__(
        self,
        secret_key: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        """
        Initialize the gateway client.

        Args:
            secret_key: Server-held gateway secret
            base_url: Gateway root URL
            timeout: HTTP request timeout in seconds
            session: Optional requests session (injected in tests)

        Raises:
            MissingGatewayCredentialsError: If secret_key is empty
        """
        if not secret_key or not secret_key.strip():
            logger.error("[PAY-GW-004] Missing gateway secret key")
            raise MissingGatewayCredentialsError(
                "PAY-GW-004: Gateway secret key is required to confirm payments"
            )

        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._auth = HTTPBasicAuth(secret_key.strip(), "")
        self._session = session or requests.Session()

        logger.debug(
            f"[PAY-GW] Client initialized | "
            f"base_url={self.base_url} | secret_key=[REDACTED]"
        )

    @classmethod
    def from_config(cls, config) -> "PaymentGatewayClient":
        """Build a client from a PaymentConfig."""
        return cls(
            secret_key=config.gateway_secret_key,
            base_url=config.gateway_base_url,
            timeout=config.gateway_timeout_seconds,
        )

    # ========================================================================
    # Confirmation
    # ========================================================================

    def confirm_payment(
        self,
        payment_key: str,
        order_id: str,
        amount: int,
        correlation_id: Optional[str] = None,
    ) -> GatewayConfirmation:
        """
        Confirm a widget payment with the gateway.

        Args:
            payment_key: Opaque payment reference issued by the widget
            order_id: Order id the payment was made against
            amount: Amount to confirm (must equal the prepared amount)
            correlation_id: Audit trail identifier

        Returns:
            GatewayConfirmation (success or gateway-reported decline)

        Raises:
            GatewayConnectionError: Network failure or timeout
            GatewayResponseError: Body is not a JSON object
        """
        url = f"{self.base_url}{self.CONFIRM_PATH}"
        body = {"paymentKey": payment_key, "orderId": order_id, "amount": amount}

        logger.info(
            f"[PAY-GW] Confirming payment | "
            f"order_id={order_id} | amount={amount} | "
            f"payment_key={mask_secret(payment_key)} | "
            f"correlation_id={correlation_id}"
        )

        started = time.monotonic()
        try:
            response = self._session.post(
                url,
                json=body,
                auth=self._auth,
                headers={"Content-Type": "application/json"},
                timeout=self.timeout,
            )
        except Timeout as e:
            logger.error(
                f"[PAY-GW-003] Timeout after {self.timeout}s | "
                f"order_id={order_id} | correlation_id={correlation_id}"
            )
            raise GatewayConnectionError(f"PAY-GW-003: Gateway timeout: {e}")
        except RequestsConnectionError as e:
            logger.error(
                f"[PAY-GW-003] Connection error | "
                f"order_id={order_id} | error={e} | correlation_id={correlation_id}"
            )
            raise GatewayConnectionError(f"PAY-GW-003: Gateway connection error: {e}")
        except RequestException as e:
            logger.error(
                f"[PAY-GW-003] Request failed | "
                f"order_id={order_id} | error={e} | correlation_id={correlation_id}"
            )
            raise GatewayConnectionError(f"PAY-GW-003: Gateway request failed: {e}")

        latency = time.monotonic() - started

        try:
            data = response.json()
        except ValueError:
            logger.error(
                f"[PAY-GW-002] Non-JSON response | "
                f"status={response.status_code} | order_id={order_id} | "
                f"correlation_id={correlation_id}"
            )
            raise GatewayResponseError(
                f"PAY-GW-002: Gateway returned a non-JSON body (HTTP {response.status_code})"
            )

        if not isinstance(data, dict):
            raise GatewayResponseError(
                f"PAY-GW-002: Gateway returned {type(data).__name__}, expected an object"
            )

        if not response.ok:
            error_code = str(data.get("code") or f"HTTP_{response.status_code}")
            error_message = str(data.get("message") or "Payment confirmation was declined.")
            logger.warning(
                f"[PAY-GW-001] Gateway declined | "
                f"status={response.status_code} | code={error_code} | "
                f"message={error_message} | order_id={order_id} | "
                f"latency={latency:.3f}s | correlation_id={correlation_id}"
            )
            return GatewayConfirmation(
                success=False,
                status_code=response.status_code,
                error_code=error_code,
                error_message=error_message,
                latency_seconds=latency,
            )

        logger.info(
            f"[PAY-GW] Payment confirmed | "
            f"order_id={order_id} | status={data.get('status')} | "
            f"method={data.get('method')} | latency={latency:.3f}s | "
            f"correlation_id={correlation_id}"
        )

        return GatewayConfirmation(
            success=True,
            status_code=response.status_code,
            payment=data,
            latency_seconds=latency,
        )

    # ========================================================================
    # Lifecycle
    # ========================================================================

    def close(self) -> None:
        """Close HTTP session."""
        self._session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


# ============================================================================
# Module Exports
# ============================================================================

__all__ = [
    "GatewayClientError",
    "MissingGatewayCredentialsError",
    "GatewayConnectionError",
    "GatewayResponseError",
    "GatewayConfirmation",
    "PaymentGatewayClient",
]
