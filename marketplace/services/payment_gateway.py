"""
Mercado Pago REST client.

Main functions:
- fetch a payment by id (the webhook only carries the id; status, amount
  and metadata are always read back from the gateway)
- create a checkout preference for an order awaiting payment
"""

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation

import httpx
from fastapi import Depends

from marketplace.database import Database, get_database
from marketplace.models.schemas import Order
from marketplace.services.platform_config import get_gateway_access_token

logger = logging.getLogger(__name__)

MP_API_BASE = "https://api.mercadopago.com"


class PaymentGatewayError(Exception):
    """Transport failure or unexpected gateway response."""
    pass


class PaymentNotFoundError(PaymentGatewayError):
    """The gateway does not know the payment id."""
    pass


@dataclass
class GatewayPayment:
    id: str
    status: str
    amount: Decimal | None = None
    metadata: dict = field(default_factory=dict)

    @property
    def approved(self) -> bool:
        return self.status == "approved"


class PaymentGatewayClient:
    """Thin Mercado Pago client authenticated with the platform access token."""

    def __init__(self, access_token: str, base_url: str = MP_API_BASE):
        """
        Args:
            access_token: Mercado Pago access token of the platform account.
            base_url: API root, overridable for sandboxes.
        """
        self.access_token = access_token
        self.base_url = base_url.rstrip("/")

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self.access_token}"}

    def get_payment(self, payment_id: str) -> GatewayPayment:
        """
        Query ``GET /v1/payments/{id}``.

        Raises:
            PaymentNotFoundError: the gateway answered 404.
            PaymentGatewayError: any other transport or response failure.
        """
        if not self.access_token:
            raise PaymentGatewayError("Mercado Pago access token not configured")

        try:
            with httpx.Client(timeout=10.0) as client:
                response = client.get(
                    f"{self.base_url}/v1/payments/{payment_id}",
                    headers=self._headers(),
                )
        except httpx.HTTPError as e:
            raise PaymentGatewayError(f"Payment lookup failed: {e}")

        if response.status_code == 404:
            raise PaymentNotFoundError(f"Payment {payment_id} not found")
        if response.status_code >= 400:
            raise PaymentGatewayError(
                f"Payment lookup returned HTTP {response.status_code}: {response.text[:200]}"
            )

        try:
            data = response.json()
        except ValueError as e:
            raise PaymentGatewayError(f"Invalid payment response: {e}")

        amount = data.get("transaction_amount")
        try:
            amount = Decimal(str(amount)) if amount is not None else None
        except InvalidOperation:
            amount = None

        metadata = data.get("metadata")
        return GatewayPayment(
            id=str(data.get("id", payment_id)),
            status=data.get("status") or "",
            amount=amount,
            metadata=metadata if isinstance(metadata, dict) else {},
        )

    def create_preference(self, order: Order, notification_url: str, back_url: str) -> str:
        """
        Create a checkout preference for ``order`` and return its ``init_point``.

        Items are taken from the order snapshot; the service fee and delivery
        fee are added as separate lines so the charged amount equals the
        order total.

        Raises:
            PaymentGatewayError: creation failed.
        """
        if not self.access_token:
            raise PaymentGatewayError("Mercado Pago access token not configured")

        items = [
            {
                "id": item.product_id,
                "title": item.name,
                "quantity": item.quantity,
                "unit_price": float(item.unit_price),
                "currency_id": "ARS",
            }
            for item in order.items
        ]
        if order.service_fee > 0:
            items.append({
                "id": "service_fee",
                "title": "Tarifa de servicio",
                "quantity": 1,
                "unit_price": float(order.service_fee),
                "currency_id": "ARS",
            })
        if order.delivery_fee > 0:
            items.append({
                "id": "delivery_fee",
                "title": "Costo de envío",
                "quantity": 1,
                "unit_price": float(order.delivery_fee),
                "currency_id": "ARS",
            })

        body = {
            "items": items,
            "external_reference": order.id,
            "notification_url": notification_url,
            "back_urls": {
                "success": back_url,
                "failure": back_url,
                "pending": back_url,
            },
            "auto_return": "approved",
            "metadata": {
                "order_id": order.id,
                "buyer_id": order.buyer_id,
                "store_id": order.store_id,
                "store_owner_id": order.store_owner_id,
            },
        }

        try:
            with httpx.Client(timeout=10.0) as client:
                response = client.post(
                    f"{self.base_url}/checkout/preferences",
                    headers=self._headers(),
                    json=body,
                )
                response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise PaymentGatewayError(f"Preference creation failed: {e}")
        except ValueError as e:
            raise PaymentGatewayError(f"Invalid preference response: {e}")

        init_point = data.get("init_point")
        if not init_point:
            raise PaymentGatewayError("Preference response has no init_point")

        logger.info("Checkout preference %s created for order %s", data.get("id"), order.id)
        return init_point


def get_payment_gateway(db: Database = Depends(get_database)) -> PaymentGatewayClient:
    """FastAPI dependency: gateway client built from the current platform settings."""
    return PaymentGatewayClient(get_gateway_access_token(db) or "")
