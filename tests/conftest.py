"""
Shared fixtures for the payment handshake tests.

The database is an in-memory SQLite shared through a StaticPool, so the
environment must be set before app.database.session is imported.
"""

import os
import sys
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from unittest.mock import Mock

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

os.environ["DATABASE_URL"] = "sqlite://"
os.environ.setdefault("PAYMENT_GATEWAY_SECRET_KEY", "test_gsk_docs_OaPz8L5KdmQXkzRz3y47BMw6")
os.environ.setdefault("PAYMENT_EXPIRY_SWEEP_ENABLED", "false")

import pytest

from app.database.models import Base, Prompt, Purchase
from app.database.session import SessionLocal, engine
from services.gateway_client import GatewayConfirmation, PaymentGatewayClient
from services.payment_config import PaymentConfig
from services.payment_store import SQLPaymentStore


TEST_SECRET_KEY = "test_gsk_docs_OaPz8L5KdmQXkzRz3y47BMw6"


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture
def db_engine():
    """Fresh payment tables for every test."""
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db_session(db_engine):
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def store(db_session) -> SQLPaymentStore:
    return SQLPaymentStore(db_session)


@pytest.fixture
def seed_prompt(db_session):
    """Factory inserting a catalog item."""

    def _seed(
        prompt_id: str = "p1",
        price: int = 1000,
        status: str = "approved",
        title: str = "Cinematic Portrait Prompt",
        is_free: bool = False,
    ) -> Prompt:
        prompt = Prompt(id=prompt_id, title=title, price=price, is_free=is_free, status=status)
        db_session.add(prompt)
        db_session.commit()
        return prompt

    return _seed


@pytest.fixture
def seed_purchase(db_session):
    """Factory inserting a purchase (ownership) row."""

    def _seed(
        user_id: str = "u1",
        prompt_id: str = "p1",
        price: int = 1000,
        created_at: Optional[datetime] = None,
    ) -> Purchase:
        purchase = Purchase(
            id=str(uuid.uuid4()),
            user_id=user_id,
            prompt_id=prompt_id,
            price=price,
            created_at=created_at or datetime(2024, 2, 13, 3, 18, 14, tzinfo=timezone.utc),
        )
        db_session.add(purchase)
        db_session.commit()
        return purchase

    return _seed


# =============================================================================
# Configuration / Gateway Fixtures
# =============================================================================

@pytest.fixture
def payment_config() -> PaymentConfig:
    return PaymentConfig(
        gateway_secret_key=TEST_SECRET_KEY,
        preparation_ttl_seconds=1800,
        expiry_sweep_enabled=False,
    )


@pytest.fixture
def mock_gateway() -> Mock:
    """Gateway client that approves whatever it is asked to confirm."""
    gateway = Mock(spec=PaymentGatewayClient)
    gateway.confirm_payment.side_effect = lambda payment_key, order_id, amount, correlation_id=None: (
        approved_confirmation(payment_key, order_id, amount)
    )
    return gateway


def gateway_payment(
    payment_key: str,
    order_id: str,
    amount: int,
    method: str = "카드",
) -> Dict[str, Any]:
    """A gateway payment object as returned by /v1/payments/confirm."""
    return {
        "paymentKey": payment_key,
        "orderId": order_id,
        "orderName": "Cinematic Portrait Prompt",
        "method": method,
        "totalAmount": amount,
        "status": "DONE",
        "requestedAt": "2024-02-13T12:17:57+09:00",
        "approvedAt": "2024-02-13T12:18:14+09:00",
        "card": {"company": "현대", "number": "433012******1234", "installmentPlanMonths": 0},
        "virtualAccount": None,
        "transfer": None,
    }


def approved_confirmation(payment_key: str, order_id: str, amount: int) -> GatewayConfirmation:
    return GatewayConfirmation(
        success=True,
        status_code=200,
        payment=gateway_payment(payment_key, order_id, amount),
        latency_seconds=0.12,
    )


def declined_confirmation(
    code: str = "REJECT_CARD_PAYMENT",
    message: str = "한도초과 혹은 잔액부족으로 결제에 실패했습니다.",
) -> GatewayConfirmation:
    return GatewayConfirmation(
        success=False,
        status_code=403,
        error_code=code,
        error_message=message,
        latency_seconds=0.08,
    )


@pytest.fixture
def make_payment():
    return gateway_payment


@pytest.fixture
def approve():
    return approved_confirmation


@pytest.fixture
def decline():
    return declined_confirmation
