"""
Unit Tests for the Payment Service

Reliability Level: L6 Critical

Walks the handshake end to end against in-memory SQLite with a mocked
gateway:
- prepare() gate order and the error each gate produces
- confirm() never calls the gateway unless the prepared amount matches
- gateway declines fail the record; transport failures leave it prepared
- a second confirmation finds no prepared record
- unexpected exceptions become INTERNAL_SERVER_ERROR
"""

from unittest.mock import Mock

import pytest
from prometheus_client import REGISTRY

from services.gateway_client import GatewayConnectionError
from services.payment_models import PaymentErrorCode, PaymentErrorKind
from services.payment_service import CONFIRM_REQUIRED, PREPARE_REQUIRED, PaymentService
from services.payment_store import PaymentStore, StoreError


ORDER_ID = "ORDER_p1_1707793200000"
PAYMENT_KEY = "tgen_20240213121757MvuS8"


@pytest.fixture
def service(store, mock_gateway, payment_config) -> PaymentService:
    return PaymentService(store, mock_gateway, payment_config)


@pytest.fixture
def catalog(seed_prompt):
    seed_prompt("p1", price=1000)


def _prepare(service: PaymentService, **overrides):
    values = dict(
        user_id="u1",
        item_id="p1",
        order_id=ORDER_ID,
        amount=1000,
        order_name="Cinematic Portrait Prompt",
    )
    values.update(overrides)
    return service.prepare(**values)


# =============================================================================
# prepare()
# =============================================================================

class TestPrepare:

    def test_successful_preparation(self, service, catalog, store) -> None:
        result = _prepare(service)

        assert result.success is True
        assert result.http_status == 200
        assert result.data.order_id == ORDER_ID
        assert result.data.item.summary() == {
            "id": "p1", "title": "Cinematic Portrait Prompt", "price": 1000, "is_free": False,
        }

        record = store.get_prepared_by_order_id(ORDER_ID)
        assert record.id == result.data.preparation.id
        assert record.user_id == "u1"
        assert record.amount == 1000

    def test_missing_parameters(self, service) -> None:
        result = _prepare(service, user_id=None, order_name="")

        assert result.error.code == PaymentErrorCode.MISSING_PARAMETERS
        assert result.error.message == PREPARE_REQUIRED
        assert result.error.extras["missing"] == ["userId", "orderName"]
        assert result.http_status == 400

    def test_zero_amount_is_missing(self, service) -> None:
        result = _prepare(service, amount=0)

        assert result.error.code == PaymentErrorCode.MISSING_PARAMETERS

    @pytest.mark.parametrize("amount", ["1000", 1000.5, True])
    def test_non_integer_amount(self, service, amount) -> None:
        result = _prepare(service, amount=amount)

        assert result.error.code == PaymentErrorCode.INVALID_REQUEST

    def test_prompt_not_found(self, service) -> None:
        result = _prepare(service, item_id="p404")

        assert result.error.code == PaymentErrorCode.PROMPT_NOT_FOUND
        assert result.http_status == 404

    def test_prompt_not_approved(self, service, seed_prompt) -> None:
        seed_prompt("p1", status="pending")

        result = _prepare(service)

        assert result.error.code == PaymentErrorCode.PROMPT_NOT_APPROVED

    def test_price_mismatch_writes_nothing(self, service, catalog, store) -> None:
        result = _prepare(service, amount=1500)

        assert result.error.code == PaymentErrorCode.PRICE_MISMATCH
        assert result.error.extras == {"expected": 1000, "actual": 1500}
        assert store.get_preparation_by_order_id(ORDER_ID) is None

    def test_already_purchased(self, service, catalog, seed_purchase, store) -> None:
        seed_purchase("u1", "p1")

        result = _prepare(service)

        assert result.error.code == PaymentErrorCode.ALREADY_PURCHASED
        assert result.http_status == 409
        assert "purchaseDate" in result.error.extras
        assert store.get_preparation_by_order_id(ORDER_ID) is None

    def test_purchase_landing_after_guard(self, mock_gateway, payment_config, catalog, store, seed_purchase) -> None:
        # The guard sees no purchase; the conditional insert does.
        seed_purchase("u1", "p1")
        guarded = Mock(wraps=store)
        guarded.find_purchase.side_effect = [None, store.find_purchase("u1", "p1")]
        service = PaymentService(guarded, mock_gateway, payment_config)

        result = _prepare(service)

        assert result.error.code == PaymentErrorCode.ALREADY_PURCHASED
        assert store.get_preparation_by_order_id(ORDER_ID) is None

    def test_duplicate_order_id(self, service, catalog) -> None:
        _prepare(service)

        result = _prepare(service)

        assert result.error.code == PaymentErrorCode.DUPLICATE_ORDER_ID
        assert result.http_status == 409

    def test_prompt_store_failure(self, mock_gateway, payment_config) -> None:
        failing = Mock(spec=PaymentStore)
        failing.get_catalog_item.side_effect = StoreError("get_catalog_item", "connection reset")
        service = PaymentService(failing, mock_gateway, payment_config)

        result = _prepare(service)

        assert result.error.code == PaymentErrorCode.PROMPT_QUERY_ERROR
        assert result.error.kind is PaymentErrorKind.UPSTREAM

    def test_preparation_save_failure(self, mock_gateway, payment_config, catalog, store) -> None:
        failing = Mock(wraps=store)
        failing.insert_preparation.side_effect = StoreError("insert_preparation", "disk full")
        service = PaymentService(failing, mock_gateway, payment_config)

        result = _prepare(service)

        assert result.error.code == PaymentErrorCode.PREPARATION_SAVE_ERROR
        assert result.error.extras == {"preparationError": "disk full"}

    def test_unexpected_exception_is_internal(self, mock_gateway, payment_config) -> None:
        broken = Mock(spec=PaymentStore)
        broken.get_catalog_item.side_effect = RuntimeError("unexpected")
        service = PaymentService(broken, mock_gateway, payment_config)

        result = _prepare(service)

        assert result.error.code == PaymentErrorCode.INTERNAL_SERVER_ERROR
        assert result.error.details == "unexpected"
        assert "stack" not in result.error.extras
        broken.rollback.assert_called()

    def test_debug_errors_include_stack(self, mock_gateway, payment_config) -> None:
        payment_config.debug_errors = True
        broken = Mock(spec=PaymentStore)
        broken.get_catalog_item.side_effect = RuntimeError("unexpected")
        service = PaymentService(broken, mock_gateway, payment_config)

        result = _prepare(service)

        assert "RuntimeError: unexpected" in result.error.extras["stack"]

    def test_prepare_never_calls_gateway(self, service, catalog, mock_gateway) -> None:
        _prepare(service)

        mock_gateway.confirm_payment.assert_not_called()


# =============================================================================
# confirm()
# =============================================================================

class TestConfirm:

    def test_successful_confirmation(self, service, catalog, store, mock_gateway) -> None:
        prepared = _prepare(service).data.preparation

        result = service.confirm(PAYMENT_KEY, ORDER_ID, 1000)

        assert result.success is True
        assert result.data.payment["paymentKey"] == PAYMENT_KEY
        assert result.data.preparation.id == prepared.id
        assert result.data.ledger_updated is True
        assert result.data.purchase_recorded is True

        mock_gateway.confirm_payment.assert_called_once_with(
            payment_key=PAYMENT_KEY,
            order_id=ORDER_ID,
            amount=1000,
            correlation_id=result.correlation_id,
        )

        record = store.get_preparation_by_order_id(ORDER_ID)
        assert record.status == "confirmed"
        assert record.payment_key == PAYMENT_KEY
        assert store.find_purchase("u1", "p1") is not None

    def test_missing_parameters(self, service, mock_gateway) -> None:
        result = service.confirm(None, ORDER_ID, 0)

        assert result.error.code == PaymentErrorCode.MISSING_PARAMETERS
        assert result.error.message == CONFIRM_REQUIRED
        assert result.error.extras["missing"] == ["paymentKey", "amount"]
        mock_gateway.confirm_payment.assert_not_called()

    def test_non_integer_amount(self, service, mock_gateway) -> None:
        result = service.confirm(PAYMENT_KEY, ORDER_ID, "1000")

        assert result.error.code == PaymentErrorCode.INVALID_REQUEST
        mock_gateway.confirm_payment.assert_not_called()

    def test_unknown_order(self, service, mock_gateway) -> None:
        result = service.confirm(PAYMENT_KEY, "ORDER_nope_1", 1000)

        assert result.error.code == PaymentErrorCode.PREPARATION_NOT_FOUND
        assert result.http_status == 404
        mock_gateway.confirm_payment.assert_not_called()

    def test_amount_mismatch_never_calls_gateway(self, service, catalog, store, mock_gateway) -> None:
        _prepare(service)

        result = service.confirm(PAYMENT_KEY, ORDER_ID, 100)

        assert result.error.code == PaymentErrorCode.AMOUNT_MISMATCH
        assert result.http_status == 400
        mock_gateway.confirm_payment.assert_not_called()
        assert store.get_preparation_by_order_id(ORDER_ID).status == "prepared"

    def test_gateway_decline(self, service, catalog, store, mock_gateway, decline) -> None:
        _prepare(service)
        mock_gateway.confirm_payment.side_effect = None
        mock_gateway.confirm_payment.return_value = decline()

        result = service.confirm(PAYMENT_KEY, ORDER_ID, 1000)

        assert result.success is False
        assert result.error.code == "REJECT_CARD_PAYMENT"
        assert result.error.kind is PaymentErrorKind.GATEWAY
        assert result.http_status == 400

        record = store.get_preparation_by_order_id(ORDER_ID)
        assert record.status == "failed"
        assert record.failure_reason.startswith("REJECT_CARD_PAYMENT: ")
        assert store.find_purchase("u1", "p1") is None

    def test_gateway_transport_failure_leaves_record_prepared(
        self, service, catalog, store, mock_gateway
    ) -> None:
        _prepare(service)
        mock_gateway.confirm_payment.side_effect = GatewayConnectionError("PAY-GW-003: timeout")

        result = service.confirm(PAYMENT_KEY, ORDER_ID, 1000)

        assert result.error.code == PaymentErrorCode.INTERNAL_SERVER_ERROR
        assert result.http_status == 500
        assert "timeout" in result.error.details
        assert store.get_prepared_by_order_id(ORDER_ID) is not None

    def test_retry_after_transport_failure(self, service, catalog, mock_gateway, approve) -> None:
        _prepare(service)
        mock_gateway.confirm_payment.side_effect = [
            GatewayConnectionError("PAY-GW-003: timeout"),
            approve(PAYMENT_KEY, ORDER_ID, 1000),
        ]

        assert service.confirm(PAYMENT_KEY, ORDER_ID, 1000).success is False
        assert service.confirm(PAYMENT_KEY, ORDER_ID, 1000).success is True

    def test_second_confirmation_finds_nothing(self, service, catalog, mock_gateway) -> None:
        _prepare(service)
        assert service.confirm(PAYMENT_KEY, ORDER_ID, 1000).success is True

        result = service.confirm(PAYMENT_KEY, ORDER_ID, 1000)

        assert result.error.code == PaymentErrorCode.PREPARATION_NOT_FOUND
        assert mock_gateway.confirm_payment.call_count == 1

    def test_confirm_after_decline_finds_nothing(self, service, catalog, mock_gateway, decline) -> None:
        _prepare(service)
        mock_gateway.confirm_payment.side_effect = None
        mock_gateway.confirm_payment.return_value = decline()
        service.confirm(PAYMENT_KEY, ORDER_ID, 1000)

        result = service.confirm(PAYMENT_KEY, ORDER_ID, 1000)

        assert result.error.code == PaymentErrorCode.PREPARATION_NOT_FOUND

    def test_ledger_failure_after_approval_still_succeeds(
        self, mock_gateway, payment_config, catalog, store
    ) -> None:
        PaymentService(store, mock_gateway, payment_config).prepare(
            "u1", "p1", ORDER_ID, 1000, "Prompt"
        )
        flaky = Mock(wraps=store)
        flaky.transition_preparation.side_effect = StoreError("transition_preparation", "deadlock")
        service = PaymentService(flaky, mock_gateway, payment_config)

        result = service.confirm(PAYMENT_KEY, ORDER_ID, 1000)

        assert result.success is True
        assert result.data.ledger_updated is False
        assert result.data.purchase_recorded is False

    def test_preparation_query_failure(self, mock_gateway, payment_config) -> None:
        failing = Mock(spec=PaymentStore)
        failing.get_prepared_by_order_id.side_effect = StoreError(
            "get_prepared_by_order_id", "connection reset"
        )
        service = PaymentService(failing, mock_gateway, payment_config)

        result = service.confirm(PAYMENT_KEY, ORDER_ID, 1000)

        assert result.error.code == PaymentErrorCode.PREPARATION_QUERY_ERROR
        assert result.error.details == "connection reset"
        mock_gateway.confirm_payment.assert_not_called()

    def test_purchase_not_recorded_when_disabled(
        self, store, mock_gateway, payment_config, catalog
    ) -> None:
        payment_config.record_purchase_on_settlement = False
        service = PaymentService(store, mock_gateway, payment_config)
        _prepare(service)

        result = service.confirm(PAYMENT_KEY, ORDER_ID, 1000)

        assert result.data.purchase_recorded is False
        assert store.find_purchase("u1", "p1") is None
        assert store.get_preparation_by_order_id(ORDER_ID).status == "confirmed"

    def test_second_order_for_owned_item_is_flagged_as_duplicate_charge(
        self, service, catalog, store, mock_gateway, caplog
    ) -> None:
        second_order = "ORDER_p1_1707793260000"
        _prepare(service)
        _prepare(service, order_id=second_order)
        assert service.confirm(PAYMENT_KEY, ORDER_ID, 1000).data.purchase_recorded is True
        before = REGISTRY.get_sample_value("payment_duplicate_charges_total") or 0.0

        with caplog.at_level("ERROR"):
            result = service.confirm("tgen_second_key_0002", second_order, 1000)

        assert result.success is True
        assert result.data.purchase_recorded is False
        assert mock_gateway.confirm_payment.call_count == 2
        assert store.get_preparation_by_order_id(second_order).status == "confirmed"
        assert "Duplicate charge" in caplog.text
        assert "tgen_second_key_0002" not in caplog.text
        assert REGISTRY.get_sample_value("payment_duplicate_charges_total") == before + 1


# =============================================================================
# get_preparation()
# =============================================================================

class TestGetPreparation:

    def test_found_in_any_status(self, service, catalog, decline, mock_gateway) -> None:
        _prepare(service)
        mock_gateway.confirm_payment.side_effect = None
        mock_gateway.confirm_payment.return_value = decline()
        service.confirm(PAYMENT_KEY, ORDER_ID, 1000)

        result = service.get_preparation(ORDER_ID)

        assert result.success is True
        assert result.data.status == "failed"

    def test_not_found(self, service) -> None:
        result = service.get_preparation("ORDER_nope_1")

        assert result.error.code == PaymentErrorCode.PREPARATION_NOT_FOUND
