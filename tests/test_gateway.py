"""Tests for the HTTP payment gateway adapter."""

import json

import httpx
import pytest

from carebook.domain.payments.gateway import (
    HttpPaymentGateway,
    LoggingPaymentGateway,
    PaymentGatewayError,
)
from carebook.models import EscrowTransaction


@pytest.fixture
def txn() -> EscrowTransaction:
    return EscrowTransaction(
        id="txn_1",
        appointment_id="appt_1",
        patient_id="patient_1",
        doctor_id="doctor_1",
        amount=1050,
        platform_fee=50,
        doctor_payout=1000,
        currency="INR",
        gateway_payment_id="pay_1",
    )


def make_gateway(handler) -> HttpPaymentGateway:
    return HttpPaymentGateway(
        "https://gateway.test/v1/", api_key="sk_test", transport=httpx.MockTransport(handler)
    )


class TestHttpPaymentGateway:
    """Tests for HttpPaymentGateway against a mocked transport."""

    def test_create_order(self, txn) -> None:
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={"id": "order_abc"})

        assert make_gateway(handler).create_order(txn) == "order_abc"
        assert seen["path"] == "/v1/orders"
        assert seen["auth"] == "Bearer sk_test"
        assert seen["body"]["amount"] == 1050
        assert seen["body"]["notes"]["escrow_txn_id"] == "txn_1"

    def test_refund(self, txn) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/v1/refunds"
            assert json.loads(request.content)["payment_id"] == "pay_1"
            return httpx.Response(200, json={"id": "rfnd_1"})

        assert make_gateway(handler).refund(txn) == "rfnd_1"

    def test_refund_needs_captured_payment(self, txn) -> None:
        """Nothing to refund before the gateway reported a payment."""
        txn.gateway_payment_id = None
        gateway = make_gateway(lambda request: httpx.Response(200, json={"id": "x"}))
        with pytest.raises(PaymentGatewayError):
            gateway.refund(txn)

    def test_error_status(self, txn) -> None:
        gateway = make_gateway(lambda request: httpx.Response(402, json={"error": "declined"}))
        with pytest.raises(PaymentGatewayError, match="402"):
            gateway.create_order(txn)

    def test_missing_id(self, txn) -> None:
        gateway = make_gateway(lambda request: httpx.Response(200, json={}))
        with pytest.raises(PaymentGatewayError):
            gateway.create_order(txn)

    def test_network_error(self, txn) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(PaymentGatewayError, match="unreachable"):
            make_gateway(handler).create_order(txn)


def test_logging_gateway_issues_ids(txn) -> None:
    """The offline gateway never fails and returns distinct ids."""
    gateway = LoggingPaymentGateway()
    assert gateway.create_order(txn).startswith("order_")
    assert gateway.refund(txn) != gateway.refund(txn)
