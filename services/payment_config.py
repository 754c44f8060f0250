"""
============================================================================
Payment Handshake - Configuration
============================================================================

Reliability Level: L6 Critical (money movement)

This module provides configuration management for the payment handshake:
- Environment variable parsing with type safety
- Default values for optional configuration
- Validation of required configuration
- Fail-closed behavior on missing gateway credentials (PAY-CFG-001)

ENVIRONMENT VARIABLES:
    - PAYMENT_GATEWAY_BASE_URL: Gateway root URL
      (default: https://api.tosspayments.com)
    - PAYMENT_GATEWAY_SECRET_KEY: Server-held secret for Basic auth (REQUIRED)
    - PAYMENT_GATEWAY_TIMEOUT_SECONDS: Gateway HTTP timeout (default: 30)
    - PAYMENT_PREPARATION_TTL_SECONDS: Preparation lifetime (default: 1800)
    - PAYMENT_EXPIRY_SWEEP_ENABLED: Run the expiry sweep (default: true)
    - PAYMENT_EXPIRY_SWEEP_INTERVAL_SECONDS: Sweep period (default: 60)
    - PAYMENT_RECORD_PURCHASE_ON_SETTLEMENT: Write the purchase row when a
      payment is confirmed (default: true)
    - PAYMENT_DEBUG_ERRORS: Include stack traces in 500 responses
      (default: false)

ERROR CODES:
    - PAY-CFG-001: Required configuration missing or invalid

============================================================================
"""

from typing import Optional, List
from dataclasses import dataclass
import logging
import os

from dotenv import load_dotenv

# Load environment variables from .env if present
load_dotenv()

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Error Codes
# =============================================================================

class PaymentConfigErrorCode:
    """Configuration error codes for audit logging."""
    CONFIG_MISSING = "PAY-CFG-001"


# =============================================================================
# Default Values
# =============================================================================

DEFAULT_GATEWAY_BASE_URL = "https://api.tosspayments.com"
DEFAULT_GATEWAY_TIMEOUT_SECONDS = 30.0
DEFAULT_PREPARATION_TTL_SECONDS = 1800
DEFAULT_EXPIRY_SWEEP_ENABLED = True
DEFAULT_EXPIRY_SWEEP_INTERVAL_SECONDS = 60
DEFAULT_RECORD_PURCHASE_ON_SETTLEMENT = True
DEFAULT_DEBUG_ERRORS = False

_TRUE_VALUES = ("true", "1", "yes", "on")


# =============================================================================
# Configuration Validation Exception
# =============================================================================

class PaymentConfigurationError(Exception):
    """
    Raised when payment configuration is invalid or missing.

    Raised during startup so the service refuses to accept payments
    without gateway credentials.
    """

    def __init__(self, message: str, error_code: str = PaymentConfigErrorCode.CONFIG_MISSING):
        self.error_code = error_code
        self.message = message
        super().__init__(f"[{error_code}] {message}")


# =============================================================================
# PaymentConfig Class
# =============================================================================

@dataclass
class PaymentConfig:
    """
    Payment handshake configuration.

    ============================================================================
    CONFIGURATION PARAMETERS:
    ============================================================================
    - gateway_base_url: Root URL of the payment gateway
    - gateway_secret_key: Secret used for HTTP Basic auth (REQUIRED)
    - gateway_timeout_seconds: Per-request gateway timeout
    - preparation_ttl_seconds: expires_at = created_at + ttl
    - expiry_sweep_enabled: Whether the background sweep runs
    - expiry_sweep_interval_seconds: Seconds between sweeps
    - record_purchase_on_settlement: Write the purchase row on confirmation
    - debug_errors: Include stack traces in internal error responses
    ============================================================================
    """

    gateway_base_url: str = DEFAULT_GATEWAY_BASE_URL
    gateway_secret_key: str = ""
    gateway_timeout_seconds: float = DEFAULT_GATEWAY_TIMEOUT_SECONDS
    preparation_ttl_seconds: int = DEFAULT_PREPARATION_TTL_SECONDS
    expiry_sweep_enabled: bool = DEFAULT_EXPIRY_SWEEP_ENABLED
    expiry_sweep_interval_seconds: int = DEFAULT_EXPIRY_SWEEP_INTERVAL_SECONDS
    record_purchase_on_settlement: bool = DEFAULT_RECORD_PURCHASE_ON_SETTLEMENT
    debug_errors: bool = DEFAULT_DEBUG_ERRORS

    def __post_init__(self) -> None:
        self.gateway_base_url = self.gateway_base_url.rstrip("/")

    @property
    def has_gateway_credentials(self) -> bool:
        return bool(self.gateway_secret_key and self.gateway_secret_key.strip())

    def validate(self) -> None:
        """
        Validate configuration completeness.

        Raises:
            PaymentConfigurationError: If required configuration is missing
        """
        errors: List[str] = []

        if not self.has_gateway_credentials:
            errors.append(
                "PAYMENT_GATEWAY_SECRET_KEY must be set. "
                "Payments cannot be confirmed without gateway credentials."
            )

        if not self.gateway_base_url.startswith(("http://", "https://")):
            errors.append(
                f"PAYMENT_GATEWAY_BASE_URL must be an http(s) URL, got: {self.gateway_base_url}"
            )

        if self.gateway_timeout_seconds <= 0:
            errors.append(
                f"PAYMENT_GATEWAY_TIMEOUT_SECONDS must be positive, got: {self.gateway_timeout_seconds}"
            )

        if self.preparation_ttl_seconds <= 0:
            errors.append(
                f"PAYMENT_PREPARATION_TTL_SECONDS must be positive, got: {self.preparation_ttl_seconds}"
            )

        if self.expiry_sweep_interval_seconds <= 0:
            errors.append(
                f"PAYMENT_EXPIRY_SWEEP_INTERVAL_SECONDS must be positive, "
                f"got: {self.expiry_sweep_interval_seconds}"
            )

        if errors:
            error_msg = "Payment configuration validation failed: " + "; ".join(errors)
            logger.error(f"[{PaymentConfigErrorCode.CONFIG_MISSING}] {error_msg}")
            raise PaymentConfigurationError(error_msg)

        logger.info(
            f"[PAYMENT-CONFIG] Configuration validated | "
            f"gateway_base_url={self.gateway_base_url} | "
            f"gateway_secret_key=[REDACTED] | "
            f"preparation_ttl_seconds={self.preparation_ttl_seconds} | "
            f"expiry_sweep_enabled={self.expiry_sweep_enabled}"
        )

    @classmethod
    def from_environment(cls, validate: bool = True) -> "PaymentConfig":
        """
        Load configuration from environment variables.

        Args:
            validate: Whether to validate configuration after loading

        Returns:
            PaymentConfig instance with values from environment

        Raises:
            PaymentConfigurationError: If validate is True and required
                configuration is missing
        """
        config = cls(
            gateway_base_url=os.environ.get(
                "PAYMENT_GATEWAY_BASE_URL", DEFAULT_GATEWAY_BASE_URL
            ).strip(),
            gateway_secret_key=os.environ.get("PAYMENT_GATEWAY_SECRET_KEY", "").strip(),
            gateway_timeout_seconds=_read_float(
                "PAYMENT_GATEWAY_TIMEOUT_SECONDS", DEFAULT_GATEWAY_TIMEOUT_SECONDS
            ),
            preparation_ttl_seconds=_read_int(
                "PAYMENT_PREPARATION_TTL_SECONDS", DEFAULT_PREPARATION_TTL_SECONDS
            ),
            expiry_sweep_enabled=_read_bool(
                "PAYMENT_EXPIRY_SWEEP_ENABLED", DEFAULT_EXPIRY_SWEEP_ENABLED
            ),
            expiry_sweep_interval_seconds=_read_int(
                "PAYMENT_EXPIRY_SWEEP_INTERVAL_SECONDS", DEFAULT_EXPIRY_SWEEP_INTERVAL_SECONDS
            ),
            record_purchase_on_settlement=_read_bool(
                "PAYMENT_RECORD_PURCHASE_ON_SETTLEMENT", DEFAULT_RECORD_PURCHASE_ON_SETTLEMENT
            ),
            debug_errors=_read_bool("PAYMENT_DEBUG_ERRORS", DEFAULT_DEBUG_ERRORS),
        )

        logger.info(
            f"[PAYMENT-CONFIG] Loading configuration from environment | "
            f"PAYMENT_GATEWAY_BASE_URL={config.gateway_base_url} | "
            f"PAYMENT_GATEWAY_SECRET_KEY_SET={config.has_gateway_credentials} | "
            f"PAYMENT_PREPARATION_TTL_SECONDS={config.preparation_ttl_seconds} | "
            f"PAYMENT_RECORD_PURCHASE_ON_SETTLEMENT={config.record_purchase_on_settlement}"
        )

        if validate:
            config.validate()

        return config

    def to_dict(self) -> dict:
        """Configuration as a dictionary, secret redacted."""
        return {
            "gateway_base_url": self.gateway_base_url,
            "gateway_secret_key": "[REDACTED]" if self.has_gateway_credentials else None,
            "gateway_timeout_seconds": self.gateway_timeout_seconds,
            "preparation_ttl_seconds": self.preparation_ttl_seconds,
            "expiry_sweep_enabled": self.expiry_sweep_enabled,
            "expiry_sweep_interval_seconds": self.expiry_sweep_interval_seconds,
            "record_purchase_on_settlement": self.record_purchase_on_settlement,
            "debug_errors": self.debug_errors,
        }


# =============================================================================
# Environment Parsing Helpers
# =============================================================================

def _read_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in _TRUE_VALUES


def _read_int(name: str, default: int) -> int:
    raw = os.environ.get(name, str(default))
    try:
        return int(raw.strip())
    except ValueError:
        logger.warning(
            f"[PAYMENT-CONFIG] Invalid {name} value: {raw}, using default: {default}"
        )
        return default


def _read_float(name: str, default: float) -> float:
    raw = os.environ.get(name, str(default))
    try:
        return float(raw.strip())
    except ValueError:
        logger.warning(
            f"[PAYMENT-CONFIG] Invalid {name} value: {raw}, using default: {default}"
        )
        return default


# =============================================================================
# Module-Level Configuration Instance
# =============================================================================

_config_instance: Optional[PaymentConfig] = None


def get_payment_config(validate: bool = True) -> PaymentConfig:
    """
    Get the global payment configuration instance, loading it from the
    environment on first access.

    Raises:
        PaymentConfigurationError: If required configuration is missing
    """
    global _config_instance

    if _config_instance is None:
        _config_instance = PaymentConfig.from_environment(validate=validate)

    return _config_instance


def reset_payment_config() -> None:
    """Clear the cached configuration (used by tests)."""
    global _config_instance
    _config_instance = None
    logger.debug("[PAYMENT-CONFIG] Configuration instance reset")


# =============================================================================
# Module Exports
# =============================================================================

__all__ = [
    "PaymentConfig",
    "PaymentConfigurationError",
    "PaymentConfigErrorCode",
    "DEFAULT_GATEWAY_BASE_URL",
    "DEFAULT_GATEWAY_TIMEOUT_SECONDS",
    "DEFAULT_PREPARATION_TTL_SECONDS",
    "DEFAULT_EXPIRY_SWEEP_INTERVAL_SECONDS",
    "get_payment_config",
    "reset_payment_config",
]
