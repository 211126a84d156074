"""
Payment gateway boundary

The engine only needs two calls from a gateway: open an order for an escrow
amount, and refund a captured payment. Capture confirmations arrive later via
the signed webhook. Calls are always made after the database commit and
outside every entity lock.
"""

import logging
import uuid
from typing import Optional

import httpx

from ...config import PAYMENT_GATEWAY_API_KEY, PAYMENT_GATEWAY_TIMEOUT, PAYMENT_GATEWAY_URL
from ...models import EscrowTransaction

logger = logging.getLogger(__name__)


class PaymentGatewayError(Exception):
    """Raised when the gateway rejects or cannot process a request"""

    pass


class PaymentGateway:
    """Interface implemented by gateway adapters"""

    def create_order(self, txn: EscrowTransaction) -> str:
        """Open a payment order for the transaction amount; returns the gateway order id"""
        raise NotImplementedError

    def refund(self, txn: EscrowTransaction) -> str:
        """Return captured funds to the patient; returns the gateway refund id"""
        raise NotImplementedError


class LoggingPaymentGateway(PaymentGateway):
    """Offline gateway: issues local order/refund ids and logs the calls"""

    def create_order(self, txn: EscrowTransaction) -> str:
        order_id = f"order_{uuid.uuid4().hex[:16]}"
        logger.info(
            f"💳 Gateway order {order_id} for escrow {txn.id}: {txn.amount} {txn.currency}"
        )
        return order_id

    def refund(self, txn: EscrowTransaction) -> str:
        refund_id = f"rfnd_{uuid.uuid4().hex[:16]}"
        logger.info(
            f"💳 Gateway refund {refund_id} for escrow {txn.id} "
            f"(payment {txn.gateway_payment_id}): {txn.amount} {txn.currency}"
        )
        return refund_id


class HttpPaymentGateway(PaymentGateway):
    """REST gateway adapter: POST /orders and POST /refunds with a bearer API key"""

    def __init__(
        self,
        base_url: str,
        api_key: Optional[str] = None,
        timeout: float = PAYMENT_GATEWAY_TIMEOUT,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self.client = httpx.Client(
            base_url=base_url.rstrip("/"), headers=headers, timeout=timeout, transport=transport
        )

    def _post(self, path: str, payload: dict, id_field: str) -> str:
        try:
            response = self.client.post(path, json=payload)
        except httpx.HTTPError as e:
            raise PaymentGatewayError(f"Gateway unreachable: {e}") from e

        if response.status_code not in [200, 201]:
            logger.error(f"❌ Gateway {path} failed ({response.status_code}): {response.text}")
            raise PaymentGatewayError(f"Gateway error {response.status_code}")

        gateway_id = response.json().get(id_field)
        if not gateway_id:
            raise PaymentGatewayError(f"No {id_field} in gateway response")
        return gateway_id

    def create_order(self, txn: EscrowTransaction) -> str:
        order_id = self._post(
            "/orders",
            {
                "amount": txn.amount,
                "currency": txn.currency,
                "receipt": txn.id,
                "notes": {"escrow_txn_id": txn.id, "appointment_id": txn.appointment_id},
            },
            "id",
        )
        logger.info(f"💳 Gateway order {order_id} created for escrow {txn.id}")
        return order_id

    def refund(self, txn: EscrowTransaction) -> str:
        if not txn.gateway_payment_id:
            raise PaymentGatewayError(f"Escrow {txn.id} has no captured payment to refund")
        refund_id = self._post(
            "/refunds",
            {
                "payment_id": txn.gateway_payment_id,
                "amount": txn.amount,
                "notes": {"escrow_txn_id": txn.id},
            },
            "id",
        )
        logger.info(f"💳 Gateway refund {refund_id} issued for escrow {txn.id}")
        return refund_id


def get_payment_gateway() -> PaymentGateway:
    """HTTP adapter when a gateway URL is configured, else the logging gateway"""
    if PAYMENT_GATEWAY_URL:
        return HttpPaymentGateway(PAYMENT_GATEWAY_URL, PAYMENT_GATEWAY_API_KEY)
    logger.warning("⚠️ PAYMENT_GATEWAY_URL not set; gateway calls are only logged")
    return LoggingPaymentGateway()


default_gateway = get_payment_gateway()
