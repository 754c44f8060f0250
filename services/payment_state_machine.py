"""
============================================================================
Payment Preparation State Machine
============================================================================

Reliability Level: L6 Critical (money movement)
Traceability: All operations include correlation_id for audit

PREPARATION LIFECYCLE:
    Every payment preparation follows a strict state machine:

    prepared → confirmed (gateway confirmed the payment)
    prepared → failed    (gateway declined, or the preparation expired)

    Terminal States: confirmed, failed (no further transitions)

    A second confirmation attempt against a non-prepared record can never
    move it back to prepared; the ledger only ever updates rows whose
    current status is prepared.

ERROR CODES:
    - PAY-STATE-001: Invalid state transition attempted

============================================================================
"""

from typing import Optional, Dict, List, Tuple
import logging

from services.payment_models import PreparationStatus

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Error Codes
# =============================================================================

class PaymentStateErrorCode:
    """State machine error codes for audit logging."""
    INVALID_TRANSITION = "PAY-STATE-001"


# =============================================================================
# VALID_TRANSITIONS Constant
# =============================================================================

VALID_TRANSITIONS: Dict[str, List[str]] = {
    PreparationStatus.PREPARED.value: [
        PreparationStatus.CONFIRMED.value,
        PreparationStatus.FAILED.value,
    ],
    PreparationStatus.CONFIRMED.value: [],  # Terminal
    PreparationStatus.FAILED.value: [],  # Terminal
}

TERMINAL_STATES: List[str] = [
    PreparationStatus.CONFIRMED.value,
    PreparationStatus.FAILED.value,
]

VALID_STATES: List[str] = list(VALID_TRANSITIONS.keys())


# =============================================================================
# validate_transition() Function
# =============================================================================

def validate_transition(
    current_state: str,
    target_state: str,
    correlation_id: Optional[str] = None
) -> Tuple[bool, Optional[str]]:
    """
    Validate if a state transition is allowed.

    ============================================================================
    VALIDATION PROCEDURE:
    ============================================================================
    1. Check if current_state is a valid state
    2. Check if target_state is a valid state
    3. Check if the pair is listed in VALID_TRANSITIONS
    4. If invalid, log PAY-STATE-001 with correlation_id
    ============================================================================

    Args:
        current_state: Current status of the preparation
        target_state: Status to transition to
        correlation_id: Optional correlation ID for audit logging

    Returns:
        (True, None) if the transition is valid,
        (False, "PAY-STATE-001") otherwise
    """
    if current_state not in VALID_STATES:
        logger.error(
            f"[{PaymentStateErrorCode.INVALID_TRANSITION}] "
            f"Invalid current state: {current_state}. "
            f"Valid states: {VALID_STATES}. "
            f"correlation_id={correlation_id}"
        )
        return (False, PaymentStateErrorCode.INVALID_TRANSITION)

    if target_state not in VALID_STATES:
        logger.error(
            f"[{PaymentStateErrorCode.INVALID_TRANSITION}] "
            f"Invalid target state: {target_state}. "
            f"Valid states: {VALID_STATES}. "
            f"correlation_id={correlation_id}"
        )
        return (False, PaymentStateErrorCode.INVALID_TRANSITION)

    valid_targets = VALID_TRANSITIONS.get(current_state, [])

    if target_state not in valid_targets:
        valid_str = "/".join(valid_targets) if valid_targets else "NONE (terminal state)"
        logger.error(
            f"[{PaymentStateErrorCode.INVALID_TRANSITION}] "
            f"Invalid state transition: {current_state} → {target_state}. "
            f"Valid transitions from {current_state}: {valid_str}. "
            f"correlation_id={correlation_id}"
        )
        return (False, PaymentStateErrorCode.INVALID_TRANSITION)

    logger.debug(
        f"[PAY-STATE] Transition validated: {current_state} → {target_state} | "
        f"correlation_id={correlation_id}"
    )
    return (True, None)


# =============================================================================
# Utility Functions
# =============================================================================

def get_valid_transitions(state: str) -> List[str]:
    """Valid target states from a given state (empty for terminal states)."""
    return VALID_TRANSITIONS.get(state, [])


def is_terminal_state(state: str) -> bool:
    return state in TERMINAL_STATES


def is_valid_state(state: str) -> bool:
    return state in VALID_STATES


# =============================================================================
# Module Exports
# =============================================================================

__all__ = [
    "VALID_TRANSITIONS",
    "TERMINAL_STATES",
    "VALID_STATES",
    "PaymentStateErrorCode",
    "validate_transition",
    "get_valid_transitions",
    "is_terminal_state",
    "is_valid_state",
]
