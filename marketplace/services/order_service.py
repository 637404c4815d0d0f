"""
Order service: authoritative pricing and order creation.

The client cart is never trusted for money. Every line is re-priced from
the store catalog; the service fee and delivery fee come from the platform
configuration; the resulting order is persisted in ``pending_confirmation``
and the store owner is notified.
"""

import json
import logging
import os
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal

from marketplace.database import Database
from marketplace.models.schemas import (
    CENT,
    LineItem,
    Order,
    OrderStatus,
    PaymentMethod,
    PaymentStatus,
    PayoutStatus,
    Store,
    to_money,
)
from marketplace.services.notification_service import NotificationDispatcher
from marketplace.services.platform_config import get_delivery_fee, get_service_fee_percent

logger = logging.getLogger(__name__)


class IncompleteInputError(Exception):
    """Buyer, store or items missing from the request."""
    pass


class InvalidOrderError(Exception):
    """The order cannot be priced (invalid quantity, price or subtotal)."""
    pass


class StoreNotFoundError(Exception):
    """The store does not exist or is not accepting orders."""
    pass


class OrderNotFoundError(Exception):
    pass


@dataclass
class CartLine:
    """One validated cart entry as submitted by the buyer."""
    product_id: str
    quantity: int
    client_price: Decimal | None = None
    client_name: str | None = None


@dataclass
class Pricing:
    subtotal: Decimal
    service_fee: Decimal
    delivery_fee: Decimal
    total: Decimal


def compute_pricing(
    items: list[LineItem], service_fee_percent: Decimal, delivery_fee: Decimal
) -> Pricing:
    """
    Price a list of verified line items.

    service_fee = subtotal * percent / 100, rounded half-up to cents;
    total = subtotal + service_fee + delivery_fee.

    Raises:
        InvalidOrderError: the subtotal is not a finite non-negative amount.
    """
    subtotal = sum((item.line_total for item in items), Decimal("0"))
    if not subtotal.is_finite() or subtotal < 0:
        raise InvalidOrderError(f"Subtotal inválido: {subtotal}")
    subtotal = subtotal.quantize(CENT, rounding=ROUND_HALF_UP)

    service_fee = (subtotal * service_fee_percent / Decimal("100")).quantize(
        CENT, rounding=ROUND_HALF_UP
    )
    delivery_fee = to_money(delivery_fee)
    return Pricing(
        subtotal=subtotal,
        service_fee=service_fee,
        delivery_fee=delivery_fee,
        total=subtotal + service_fee + delivery_fee,
    )


def fetch_order(db: Database, order_id: str) -> Order:
    """
    Load an order by id.

    Raises:
        OrderNotFoundError: no such order.
    """
    conn = db.connect()
    try:
        row = conn.execute("SELECT * FROM orders WHERE id = ?", (order_id,)).fetchone()
    finally:
        conn.close()
    if not row:
        raise OrderNotFoundError(f"Pedido {order_id} no encontrado")
    return Order.from_row(row)


def fetch_store(db: Database, store_id: str) -> Store | None:
    conn = db.connect()
    try:
        row = conn.execute("SELECT * FROM stores WHERE id = ?", (store_id,)).fetchone()
    finally:
        conn.close()
    return Store.from_row(row) if row else None


class OrderService:
    """Order creation: price re-computation, persistence, store notification."""

    def __init__(
        self,
        db: Database,
        notifier: NotificationDispatcher | None = None,
        strict_prices: bool | None = None,
    ):
        self.db = db
        self.notifier = notifier or NotificationDispatcher(db)
        if strict_prices is None:
            strict_prices = os.getenv("STRICT_PRICE_CHECK", "0") == "1"
        self.strict_prices = strict_prices

    def _catalog_prices(self, store_id: str, product_ids: list[str]) -> dict[str, dict]:
        """Current catalog entries of the store for the given products."""
        if not product_ids:
            return {}
        placeholders = ",".join("?" for _ in product_ids)
        conn = self.db.connect()
        try:
            rows = conn.execute(
                f"""SELECT id, name, price FROM products
                    WHERE store_id = ? AND active = 1 AND id IN ({placeholders})""",
                [store_id] + product_ids,
            ).fetchall()
            return {row["id"]: dict(row) for row in rows}
        finally:
            conn.close()

    def verify_items(self, store_id: str, lines: list[CartLine]) -> list[LineItem]:
        """
        Replace client prices with catalog prices.

        A product missing from the catalog keeps the client price and is
        flagged as unverified, unless strict price checking is enabled.

        Raises:
            InvalidOrderError: bad quantity, or an unusable fallback price.
        """
        catalog = self._catalog_prices(store_id, list({line.product_id for line in lines}))
        verified: list[LineItem] = []

        for line in lines:
            if line.quantity < 1:
                raise InvalidOrderError(f"Cantidad inválida para {line.product_id}: {line.quantity}")

            entry = catalog.get(line.product_id)
            if entry:
                price = to_money(entry["price"])
                if (
                    line.client_price is not None
                    and line.client_price.is_finite()
                    and to_money(line.client_price) != price
                ):
                    logger.warning(
                        "Client price differs from catalog (store=%s, product=%s, client=%s, catalog=%s)",
                        store_id, line.product_id, line.client_price, price,
                    )
                verified.append(LineItem(
                    product_id=line.product_id,
                    name=entry["name"],
                    unit_price=price,
                    quantity=line.quantity,
                ))
                continue

            if self.strict_prices:
                raise InvalidOrderError(f"Producto {line.product_id} no encontrado en el catálogo")

            price = line.client_price
            if price is not None and price.is_finite():
                price = to_money(price)
            if price is None or not price.is_finite() or price <= 0:
                raise InvalidOrderError(
                    f"Precio inválido para el producto {line.product_id}: {price}"
                )
            logger.warning(
                "Product missing from catalog, using client price (store=%s, product=%s, price=%s)",
                store_id, line.product_id, price,
            )
            verified.append(LineItem(
                product_id=line.product_id,
                name=line.client_name or "Producto sin nombre",
                unit_price=price,
                quantity=line.quantity,
                price_verified=False,
            ))

        return verified

    def create_order(
        self,
        buyer_id: str,
        store_id: str,
        items: list[CartLine],
        shipping_info: dict | None = None,
        customer_name: str | None = None,
        customer_phone: str | None = None,
        customer_coords: dict | None = None,
        payment_method: str = "mercadopago",
    ) -> Order:
        """
        Create an order:
        1. Validate the request shape
        2. Load the store
        3. Re-price every line from the catalog
        4. Compute subtotal, service fee, delivery fee and total
        5. Persist the order in pending_confirmation
        6. Notify the store owner (best effort)

        Raises:
            IncompleteInputError: buyer, store or items missing, or an
                unsupported payment method.
            StoreNotFoundError: unknown or inactive store.
            InvalidOrderError: the order cannot be priced.
        """
        # 1. Required fields
        if not buyer_id or not store_id or not items:
            raise IncompleteInputError("Datos incompletos")
        method = PaymentMethod.normalize(payment_method)
        if method is None:
            raise IncompleteInputError(f"Método de pago no soportado: {payment_method}")

        # 2. Store
        store = fetch_store(self.db, store_id)
        if not store or store.active != 1:
            raise StoreNotFoundError(f"Tienda {store_id} no encontrada")

        # 3-4. Authoritative pricing
        line_items = self.verify_items(store_id, items)
        pricing = compute_pricing(
            line_items,
            get_service_fee_percent(self.db),
            get_delivery_fee(self.db),
        )
        price_verified = all(item.price_verified for item in line_items)

        # 5. Persist
        order_id = uuid.uuid4().hex
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        shipping_info = shipping_info or {}
        customer_name = customer_name or shipping_info.get("name")

        conn = self.db.connect()
        try:
            conn.execute(
                """INSERT INTO orders
                   (id, buyer_id, store_id, store_owner_id, customer_name,
                    customer_phone, shipping_info, customer_coords, items,
                    subtotal, service_fee, delivery_fee, total, price_verified,
                    status, payment_status, payment_method, ready_for_pickup,
                    store_payout_status, delivery_payout_status,
                    created_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?, ?)""",
                (
                    order_id, buyer_id, store_id, store.owner_id, customer_name,
                    customer_phone, json.dumps(shipping_info, ensure_ascii=False),
                    json.dumps(customer_coords) if customer_coords else None,
                    json.dumps([i.to_dict() for i in line_items], ensure_ascii=False),
                    str(pricing.subtotal), str(pricing.service_fee),
                    str(pricing.delivery_fee), str(pricing.total),
                    1 if price_verified else 0,
                    OrderStatus.PENDING_CONFIRMATION, PaymentStatus.UNPAID,
                    method, PayoutStatus.PENDING, PayoutStatus.PENDING,
                    now, now,
                ),
            )
            conn.commit()
        finally:
            conn.close()

        logger.info(
            "Order created: id=%s, store=%s, buyer=%s, total=%s, price_verified=%s",
            order_id, store_id, buyer_id, pricing.total, price_verified,
        )

        # 6. Notify the store owner
        if store.owner_id:
            self.notifier.notify(
                store.owner_id,
                "🔔 Nueva Solicitud",
                f"Tienes un pedido nuevo de {customer_name or 'un cliente'} "
                f"(${pricing.total:.2f}). Revisa el stock.",
                "order_request",
                order_id=order_id,
                link="/orders",
            )

        return Order(
            id=order_id,
            buyer_id=buyer_id,
            store_id=store_id,
            store_owner_id=store.owner_id,
            items=line_items,
            subtotal=pricing.subtotal,
            service_fee=pricing.service_fee,
            delivery_fee=pricing.delivery_fee,
            total=pricing.total,
            customer_name=customer_name,
            customer_phone=customer_phone,
            shipping_info=shipping_info,
            customer_coords=customer_coords,
            price_verified=price_verified,
            payment_method=method,
            created_at=now,
            updated_at=now,
        )
