"""
============================================================================
Prompt Market Payments
Integration Test: Payment Handshake API Endpoints
============================================================================

Reliability Level: L6 Critical
Input Constraints: FastAPI TestClient, in-memory SQLite, mocked gateway
Side Effects: None outside the test database

Covers:
- prepare-payment / confirm-payment wire shapes (flat vs nested errors)
- CORS headers, OPTIONS pre-flight and 405 for other methods
- INVALID_REQUEST for malformed bodies
- Ledger status lookup
- /health and /metrics

============================================================================
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict
from unittest.mock import Mock

import pytest
from fastapi.testclient import TestClient

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from app.api.payments import (
    get_gateway_client,
    get_payment_config_dep,
    get_payment_service,
    render_preparation,
)
from app.main import app
from services.gateway_client import GatewayConnectionError
from services.payment_config import reset_payment_config
from services.payment_models import PreparationRecord


ORDER_ID = "ORDER_p1_1707793200000"
PAYMENT_KEY = "tgen_20240213121757MvuS8"


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def client(db_engine, mock_gateway, payment_config):
    """TestClient with the gateway and configuration overridden."""
    app.dependency_overrides[get_gateway_client] = lambda: mock_gateway
    app.dependency_overrides[get_payment_config_dep] = lambda: payment_config
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def catalog(seed_prompt):
    seed_prompt("p1", price=1000)


def _prepare_body(**overrides) -> Dict[str, Any]:
    body = {
        "userId": "u1",
        "promptId": "p1",
        "orderId": ORDER_ID,
        "amount": 1000,
        "orderName": "Cinematic Portrait Prompt",
    }
    body.update(overrides)
    return body


def _confirm_body(**overrides) -> Dict[str, Any]:
    body = {"paymentKey": PAYMENT_KEY, "orderId": ORDER_ID, "amount": 1000}
    body.update(overrides)
    return body


# ============================================================================
# prepare-payment
# ============================================================================

class TestPreparePayment:

    def test_success_shape(self, client, catalog) -> None:
        response = client.post("/prepare-payment", json=_prepare_body())

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "*"
        body = response.json()
        assert body["success"] is True
        assert body["orderId"] == ORDER_ID
        assert body["preparationId"]
        assert body["promptInfo"] == {
            "id": "p1",
            "title": "Cinematic Portrait Prompt",
            "price": 1000,
            "is_free": False,
        }
        assert all(body["validationStatus"].values())
        assert body["timestamp"]

    def test_missing_parameters_flat_shape(self, client) -> None:
        response = client.post("/prepare-payment", json=_prepare_body(userId=None, amount=0))

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["error"] == "MISSING_PARAMETERS"
        assert body["details"] == "userId, promptId, orderId, amount, orderName are required"
        assert body["missing"] == ["userId", "amount"]

    def test_empty_body(self, client) -> None:
        response = client.post("/prepare-payment", json={})

        assert response.status_code == 400
        assert response.json()["error"] == "MISSING_PARAMETERS"

    def test_prompt_not_found(self, client) -> None:
        response = client.post("/prepare-payment", json=_prepare_body(promptId="p404"))

        assert response.status_code == 404
        assert response.json()["error"] == "PROMPT_NOT_FOUND"

    def test_price_mismatch(self, client, catalog) -> None:
        response = client.post("/prepare-payment", json=_prepare_body(amount=1500))

        assert response.status_code == 400
        body = response.json()
        assert body["error"] == "PRICE_MISMATCH"
        assert body["expected"] == 1000
        assert body["actual"] == 1500

    def test_already_purchased(self, client, catalog, seed_purchase) -> None:
        seed_purchase("u1", "p1")

        response = client.post("/prepare-payment", json=_prepare_body())

        assert response.status_code == 409
        body = response.json()
        assert body["error"] == "ALREADY_PURCHASED"
        assert body["purchaseDate"].startswith("2024-02-13T03:18:14")

    def test_duplicate_order_id(self, client, catalog) -> None:
        client.post("/prepare-payment", json=_prepare_body())

        response = client.post("/prepare-payment", json=_prepare_body(userId="u2"))

        assert response.status_code == 409
        assert response.json()["error"] == "DUPLICATE_ORDER_ID"

    def test_string_amount_is_invalid_request(self, client) -> None:
        response = client.post("/prepare-payment", json=_prepare_body(amount="1000"))

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["error"] == "INVALID_REQUEST"
        assert "amount" in body["validationError"]

    def test_malformed_json(self, client) -> None:
        response = client.post(
            "/prepare-payment",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_REQUEST"


# ============================================================================
# confirm-payment
# ============================================================================

class TestConfirmPayment:

    def test_success_shape(self, client, catalog) -> None:
        prepared = client.post("/prepare-payment", json=_prepare_body()).json()

        response = client.post("/confirm-payment", json=_confirm_body())

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "*"
        body = response.json()
        assert body["success"] is True
        assert body["payment"]["paymentKey"] == PAYMENT_KEY
        assert body["payment"]["orderId"] == ORDER_ID
        assert body["payment"]["totalAmount"] == 1000
        assert body["payment"]["method"] == "카드"
        assert body["payment"]["card"]["company"] == "현대"
        assert body["payment"]["virtualAccount"] is None
        assert body["preparationInfo"] == {
            "preparationId": prepared["preparationId"],
            "promptId": "p1",
            "userId": "u1",
            "purchaseRecorded": True,
        }

    def test_missing_parameters_nested_shape(self, client) -> None:
        response = client.post("/confirm-payment", json={"orderId": ORDER_ID})

        assert response.status_code == 400
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "MISSING_PARAMETERS"
        assert body["error"]["message"] == "paymentKey, orderId, amount are required"
        assert body["timestamp"]

    def test_preparation_not_found(self, client, mock_gateway) -> None:
        response = client.post("/confirm-payment", json=_confirm_body())

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "PREPARATION_NOT_FOUND"
        mock_gateway.confirm_payment.assert_not_called()

    def test_amount_mismatch(self, client, catalog, mock_gateway) -> None:
        client.post("/prepare-payment", json=_prepare_body())

        response = client.post("/confirm-payment", json=_confirm_body(amount=100))

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "AMOUNT_MISMATCH"
        mock_gateway.confirm_payment.assert_not_called()

    def test_gateway_decline_surfaces_gateway_error(self, client, catalog, mock_gateway, decline) -> None:
        client.post("/prepare-payment", json=_prepare_body())
        mock_gateway.confirm_payment.side_effect = None
        mock_gateway.confirm_payment.return_value = decline()

        response = client.post("/confirm-payment", json=_confirm_body())

        assert response.status_code == 400
        error = response.json()["error"]
        assert error["code"] == "REJECT_CARD_PAYMENT"
        assert error["message"] == "한도초과 혹은 잔액부족으로 결제에 실패했습니다."

    def test_gateway_unreachable_is_internal(self, client, catalog, mock_gateway) -> None:
        client.post("/prepare-payment", json=_prepare_body())
        mock_gateway.confirm_payment.side_effect = GatewayConnectionError("PAY-GW-003: timeout")

        response = client.post("/confirm-payment", json=_confirm_body())

        assert response.status_code == 500
        error = response.json()["error"]
        assert error["code"] == "INTERNAL_SERVER_ERROR"
        assert "timeout" in error["details"]
        assert "stack" not in error

    def test_double_confirmation(self, client, catalog, mock_gateway) -> None:
        client.post("/prepare-payment", json=_prepare_body())
        assert client.post("/confirm-payment", json=_confirm_body()).status_code == 200

        response = client.post("/confirm-payment", json=_confirm_body())

        assert response.status_code == 404
        assert mock_gateway.confirm_payment.call_count == 1

    def test_float_amount_is_invalid_request(self, client) -> None:
        response = client.post("/confirm-payment", json=_confirm_body(amount=1000.5))

        assert response.status_code == 400
        body = response.json()
        assert body["error"]["code"] == "INVALID_REQUEST"
        assert "amount" in body["error"]["details"]


# ============================================================================
# CORS / Methods
# ============================================================================

class TestCorsAndMethods:

    @pytest.mark.parametrize("path", ["/prepare-payment", "/confirm-payment"])
    def test_options_returns_ok(self, client, path: str) -> None:
        response = client.options(path)

        assert response.status_code == 200
        assert response.text == "ok"
        assert response.headers["access-control-allow-origin"] == "*"
        assert response.headers["access-control-allow-headers"] == (
            "authorization, x-client-info, apikey, content-type"
        )

    @pytest.mark.parametrize("path", ["/prepare-payment", "/confirm-payment"])
    @pytest.mark.parametrize("method", ["GET", "PUT", "PATCH", "DELETE"])
    def test_other_methods_not_allowed(self, client, path: str, method: str) -> None:
        response = client.request(method, path)

        assert response.status_code == 405
        assert response.json() == {"error": "Method not allowed"}
        assert response.headers["access-control-allow-origin"] == "*"

    def test_preflight_from_browser(self, client) -> None:
        response = client.options(
            "/confirm-payment",
            headers={
                "Origin": "https://market.example.com",
                "Access-Control-Request-Method": "POST",
                "Access-Control-Request-Headers": "content-type",
            },
        )

        assert response.status_code == 200
        assert response.headers["access-control-allow-origin"] == "*"
        assert response.text == "OK"
        allowed = response.headers["access-control-allow-headers"].lower()
        for header in ("authorization", "x-client-info", "apikey", "content-type"):
            assert header in allowed


# ============================================================================
# Unhandled errors
# ============================================================================

class TestUnhandledErrors:

    def test_global_handler_uses_nested_shape(self, db_engine) -> None:
        broken = Mock()
        broken.prepare.side_effect = RuntimeError("service exploded")
        app.dependency_overrides[get_payment_service] = lambda: broken
        try:
            client = TestClient(app, raise_server_exceptions=False)
            response = client.post("/prepare-payment", json=_prepare_body())
        finally:
            app.dependency_overrides.clear()

        assert response.status_code == 500
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "INTERNAL_SERVER_ERROR"
        assert body["error"]["details"] == "service exploded"


# ============================================================================
# Ledger lookup
# ============================================================================

class TestPreparationLookup:

    def test_lookup_after_confirmation(self, client, catalog) -> None:
        client.post("/prepare-payment", json=_prepare_body())
        client.post("/confirm-payment", json=_confirm_body())

        response = client.get(f"/payments/preparations/{ORDER_ID}")

        assert response.status_code == 200
        body = response.json()
        assert body["preparation"]["status"] == "confirmed"
        assert body["preparation"]["approvedAt"] == "2024-02-13T03:18:14+00:00"
        assert body["orderInfo"] == {
            "itemId": "p1",
            "orderedAt": "2024-02-13T03:00:00+00:00",
        }
        assert body["preparation"]["expired"] is False

    def test_lookup_fresh_preparation(self, client, catalog) -> None:
        client.post("/prepare-payment", json=_prepare_body())

        response = client.get(f"/payments/preparations/{ORDER_ID}")

        assert response.status_code == 200
        preparation = response.json()["preparation"]
        assert preparation["status"] == "prepared"
        assert preparation["expired"] is False

    @pytest.mark.parametrize("status, expired", [
        ("prepared", True),
        ("failed", False),
    ])
    def test_stale_preparation_marked_expired(self, status: str, expired: bool) -> None:
        created = datetime(2024, 2, 13, 3, 0, tzinfo=timezone.utc)
        record = PreparationRecord(
            id="prep-1",
            order_id=ORDER_ID,
            user_id="u1",
            prompt_id="p1",
            amount=1000,
            order_name="Cinematic Portrait Prompt",
            status=status,
            expires_at=created + timedelta(minutes=30),
            created_at=created,
            updated_at=created,
        )

        assert render_preparation(record)["preparation"]["expired"] is expired

    def test_lookup_unknown_order(self, client) -> None:
        response = client.get("/payments/preparations/ORDER_nope_1")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "PREPARATION_NOT_FOUND"


# ============================================================================
# System endpoints
# ============================================================================

class TestSystemEndpoints:

    def test_health(self, client) -> None:
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "database": "connected"}

    def test_metrics_exposes_payment_counters(self, client, catalog) -> None:
        client.post("/prepare-payment", json=_prepare_body())

        response = client.get("/metrics")

        assert response.status_code == 200
        assert 'payment_preparations_total{outcome="success"}' in response.text

    def test_startup_banner_redacts_gateway_secret(self, db_engine, capsys) -> None:
        reset_payment_config()
        try:
            with TestClient(app) as started:
                assert started.get("/health").status_code == 200
        finally:
            reset_payment_config()

        banner = capsys.readouterr().out
        assert "[OK] Payment configuration validated" in banner
        assert "gateway_secret_key: [REDACTED]" in banner
        assert "preparation_ttl_seconds: " in banner
        assert os.environ["PAYMENT_GATEWAY_SECRET_KEY"] not in banner
