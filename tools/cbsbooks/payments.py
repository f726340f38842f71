"""
Payment-link client.

Asks the payment-link endpoint for a hosted checkout URL for an invoice:

    POST {endpoint}  {orderId, amount, name, description}  →  {url}
"""

import logging
from decimal import Decimal

import httpx

from tools.cbsbooks.errors import PaymentLinkError
from tools.cbsbooks.models import wire_number

logger = logging.getLogger("cbs.payments")


class PaymentLinkClient:
    """Creates payment links through the configured endpoint."""

    def __init__(self, endpoint: str, timeout: float = 30.0,
                 client: httpx.AsyncClient | None = None):
        self.endpoint = endpoint
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    @staticmethod
    def from_config(config) -> "PaymentLinkClient | None":
        if not config.payments.enabled or not config.payments.endpoint:
            return None
        return PaymentLinkClient(config.payments.endpoint, timeout=config.payments.timeout)

    async def create_payment_link(self, order_id: str, amount: Decimal,
                                  name: str, description: str = "") -> str:
        """Return the checkout URL.

        Raises:
            PaymentLinkError: on transport failure, a non-2xx answer or a
                              response without ``url``.
        """
        if amount <= 0:
            raise PaymentLinkError(f"Cannot create a payment link for amount {amount}")

        payload = {
            "orderId": order_id,
            "amount": wire_number(amount),
            "name": name,
            "description": description,
        }
        try:
            resp = await self._client.post(self.endpoint, json=payload)
        except httpx.HTTPError as e:
            raise PaymentLinkError(f"Payment link endpoint unreachable: {e}") from e

        try:
            body = resp.json()
        except ValueError:
            body = {}
        if not resp.is_success:
            detail = body.get("error") if isinstance(body, dict) else ""
            raise PaymentLinkError(f"Payment link request failed (HTTP {resp.status_code}): "
                                   f"{detail or resp.text[:200]}")

        url = body.get("url") if isinstance(body, dict) else None
        if not url:
            raise PaymentLinkError("Payment link response did not include a url")

        logger.info("Payment link created for %s", order_id)
        return str(url)

    async def close(self):
        if self._owns_client:
            await self._client.aclose()
