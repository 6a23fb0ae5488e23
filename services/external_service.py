"""External service communication layer."""
import httpx
import logging
import time
from decimal import Decimal
from typing import Any, Dict

from config import (
    CURRENCY,
    NOTIFICATION_SERVICE_URL,
    PAYMENT_PROVIDER_API_KEY,
    PAYMENT_PROVIDER_URL
)
from monitoring import (
    external_notification_duration_histogram,
    external_payment_duration_histogram
)

logger = logging.getLogger(__name__)


def to_minor_units(amount: Decimal) -> int:
    """Convert an amount to cents, as the payment provider expects."""
    return int((Decimal(amount) * 100).to_integral_value())


class ExternalServiceClient:
    """Client for the payment provider and notification service."""

    def __init__(self, http_client: httpx.AsyncClient):
        """
        Initialize external service client.

        Args:
            http_client: Async HTTP client
        """
        self.http_client = http_client

    def _provider_headers(self, idempotency_key: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {PAYMENT_PROVIDER_API_KEY}",
            "Idempotency-Key": idempotency_key
        }

    async def create_payment_intent(
        self,
        order_id: int,
        amount: Decimal,
        payment_method: str,
        currency: str = CURRENCY
    ) -> Dict[str, Any]:
        """
        Create a payment intent for an order.

        Args:
            order_id: Order identifier, sent as metadata and echoed back in webhooks
            amount: Amount to collect
            payment_method: Payment method chosen at checkout
            currency: Currency code

        Returns:
            Provider response with the intent ``id`` and ``client_secret``

        Raises:
            httpx.HTTPError: If the provider is unavailable or rejects the request
        """
        # HTTPXClientInstrumentor already creates spans for HTTP calls
        start_time = time.time()
        status = "success"
        try:
            response = await self.http_client.post(
                f"{PAYMENT_PROVIDER_URL}/v1/payment_intents",
                json={
                    "amount": to_minor_units(amount),
                    "currency": currency.lower(),
                    "payment_method_types": [payment_method],
                    "metadata": {"order_id": str(order_id)}
                },
                headers=self._provider_headers(f"order-{order_id}-intent")
            )
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError:
            status = "error"
            raise
        finally:
            external_payment_duration_histogram.record(
                time.time() - start_time,
                {"operation": "create_intent", "status": status}
            )

    async def create_refund(
        self,
        order_id: int,
        payment_intent_id: str,
        amount: Decimal
    ) -> Dict[str, Any]:
        """
        Refund a captured payment.

        Returns:
            Provider refund data

        Raises:
            httpx.HTTPError: If the provider is unavailable or rejects the request
        """
        start_time = time.time()
        status = "success"
        try:
            response = await self.http_client.post(
                f"{PAYMENT_PROVIDER_URL}/v1/refunds",
                json={
                    "payment_intent": payment_intent_id,
                    "amount": to_minor_units(amount)
                },
                headers=self._provider_headers(f"order-{order_id}-refund")
            )
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError:
            status = "error"
            raise
        finally:
            external_payment_duration_histogram.record(
                time.time() - start_time,
                {"operation": "refund", "status": status}
            )

    async def send_order_confirmation(self, order: Dict[str, Any]) -> None:
        """
        Ask the notification service to send an order confirmation.

        Fire and forget: failures are logged and never raised.

        Args:
            order: Serialized committed order
        """
        # HTTPXClientInstrumentor already creates spans for HTTP calls
        start_time = time.time()
        status = "success"
        status_code = None
        try:
            response = await self.http_client.post(
                f"{NOTIFICATION_SERVICE_URL}/api/notifications/order-confirmation",
                json={
                    "account_id": order["account_id"],
                    "order_id": order["id"],
                    "total": str(order["total"]),
                    "currency": order["currency"],
                    "items": [
                        {"name": item["name"], "quantity": item["quantity"], "unit_price": str(item["unit_price"])}
                        for item in order["items"]
                    ]
                }
            )
            status_code = response.status_code
            if response.status_code >= 400:
                status = "error"
                logger.warning("Notification service returned error status", extra={
                    "status_code": response.status_code,
                    "order_id": order["id"]
                })
        except Exception as e:
            status = "error"
            status_code = 0  # Connection failure
            logger.error("Failed to send order confirmation", extra={
                "order_id": order["id"],
                "error": str(e)
            })
        finally:
            external_notification_duration_histogram.record(
                time.time() - start_time,
                {
                    "status": status,
                    "status_code": str(status_code) if status_code else "0"
                }
            )
