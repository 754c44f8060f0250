"""
============================================================================
Prompt Market Payments
Prometheus Metrics - Payment Handshake
============================================================================

Reliability Level: L6 Critical (money movement)
Input Constraints: Outcome labels are error codes or "success"
Side Effects: Updates Prometheus metrics registry

METRICS EXPOSED
---------------
- payment_preparations_total{outcome}: prepare() results by outcome
- payment_confirmations_total{outcome}: confirm() results by outcome
- payment_gateway_latency_seconds{outcome}: gateway confirm round trip
- payment_preparations_expired_total: records failed by the expiry sweep
- payment_duplicate_charges_total: approved payments for an item the user
  already owned

A metric failure is logged and never affects the payment outcome.

============================================================================
"""

import logging
from typing import Optional

from prometheus_client import Counter, Histogram

# Configure module logger
logger = logging.getLogger(__name__)


# ============================================================================
# PROMETHEUS METRICS DEFINITIONS
# ============================================================================

PREPARATIONS_TOTAL = Counter(
    "payment_preparations_total",
    "Total number of payment preparations by outcome",
    ["outcome"]
)

CONFIRMATIONS_TOTAL = Counter(
    "payment_confirmations_total",
    "Total number of payment confirmations by outcome",
    ["outcome"]
)

# Buckets: 50ms .. 30s (the default gateway timeout)
GATEWAY_LATENCY = Histogram(
    "payment_gateway_latency_seconds",
    "Round-trip latency of gateway confirmation calls",
    ["outcome"],
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0]
)

PREPARATIONS_EXPIRED = Counter(
    "payment_preparations_expired_total",
    "Total number of prepared payments failed by the expiry sweep"
)

DUPLICATE_CHARGES = Counter(
    "payment_duplicate_charges_total",
    "Total number of approved payments settled against an existing purchase"
)


# ============================================================================
# METRIC UPDATE FUNCTIONS
# ============================================================================

def record_preparation(outcome: str, correlation_id: Optional[str] = None) -> None:
    """
    Record a prepare() result.

    Args:
        outcome: "success" or the error code
        correlation_id: Optional tracking ID
    """
    try:
        PREPARATIONS_TOTAL.labels(outcome=outcome).inc()
        logger.debug(
            "Metric: preparation | outcome=%s | correlation_id=%s",
            outcome, correlation_id
        )
    except Exception as e:
        logger.error(
            "[OBS-001] Failed to record preparation metric | error=%s",
            str(e)
        )


def record_confirmation(outcome: str, correlation_id: Optional[str] = None) -> None:
    """
    Record a confirm() result.

    Args:
        outcome: "success", the error code, or the gateway decline code
        correlation_id: Optional tracking ID
    """
    try:
        CONFIRMATIONS_TOTAL.labels(outcome=outcome).inc()
        logger.debug(
            "Metric: confirmation | outcome=%s | correlation_id=%s",
            outcome, correlation_id
        )
    except Exception as e:
        logger.error(
            "[OBS-002] Failed to record confirmation metric | error=%s",
            str(e)
        )


def record_gateway_latency(
    seconds: float,
    outcome: str,
    correlation_id: Optional[str] = None
) -> None:
    """Observe one gateway round trip ("approved", "declined" or "error")."""
    try:
        GATEWAY_LATENCY.labels(outcome=outcome).observe(seconds)
        logger.debug(
            "Metric: gateway_latency | seconds=%.3f | outcome=%s | correlation_id=%s",
            seconds, outcome, correlation_id
        )
    except Exception as e:
        logger.error(
            "[OBS-003] Failed to record gateway latency metric | error=%s",
            str(e)
        )


def record_expired(count: int) -> None:
    try:
        if count > 0:
            PREPARATIONS_EXPIRED.inc(count)
    except Exception as e:
        logger.error(
            "[OBS-004] Failed to record expiry metric | error=%s",
            str(e)
        )


def record_duplicate_charge(correlation_id: Optional[str] = None) -> None:
    try:
        DUPLICATE_CHARGES.inc()
        logger.debug("Metric: duplicate_charge | correlation_id=%s", correlation_id)
    except Exception as e:
        logger.error(
            "[OBS-005] Failed to record duplicate charge metric | error=%s",
            str(e)
        )


# ============================================================================
# MODULE EXPORTS
# ============================================================================

__all__ = [
    "PREPARATIONS_TOTAL",
    "CONFIRMATIONS_TOTAL",
    "GATEWAY_LATENCY",
    "PREPARATIONS_EXPIRED",
    "DUPLICATE_CHARGES",
    "record_preparation",
    "record_confirmation",
    "record_gateway_latency",
    "record_expired",
    "record_duplicate_charge",
]
