"""
============================================================================
Prompt Market Payments
Observability Module - Prometheus Metrics
============================================================================
"""

from app.observability.metrics import (
    PREPARATIONS_TOTAL,
    CONFIRMATIONS_TOTAL,
    GATEWAY_LATENCY,
    PREPARATIONS_EXPIRED,
    record_preparation,
    record_confirmation,
    record_gateway_latency,
    record_expired,
)

__all__ = [
    "PREPARATIONS_TOTAL",
    "CONFIRMATIONS_TOTAL",
    "GATEWAY_LATENCY",
    "PREPARATIONS_EXPIRED",
    "record_preparation",
    "record_confirmation",
    "record_gateway_latency",
    "record_expired",
]
