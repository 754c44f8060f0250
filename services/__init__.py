"""
============================================================================
Prompt Market Payments - Services Layer
============================================================================

Payment preparation / confirmation handshake: validation, preparation
ledger, gateway confirmation client and settlement recording.

Reliability Level: L6 Critical
============================================================================
"""

from services.payment_models import (
    PaymentErrorCode,
    PaymentErrorKind,
    PreparationStatus,
    PaymentError,
    PaymentResult,
)

from services.payment_config import (
    PaymentConfig,
    PaymentConfigurationError,
    get_payment_config,
    reset_payment_config,
)

from services.payment_service import PaymentService

__all__ = [
    "PaymentErrorCode",
    "PaymentErrorKind",
    "PreparationStatus",
    "PaymentError",
    "PaymentResult",
    "PaymentConfig",
    "PaymentConfigurationError",
    "get_payment_config",
    "reset_payment_config",
    "PaymentService",
]
