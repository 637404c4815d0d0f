"""Shared test configuration: test mode, a throwaway database and seed helpers."""

import json
import os
import uuid
from datetime import datetime
from decimal import Decimal

# Must be set before any marketplace module is imported.
os.environ["TESTING"] = "1"
os.environ["JWT_SECRET"] = "test-secret-key-for-marketplace"
os.environ.pop("PUSH_GATEWAY_URL", None)
os.environ.pop("MP_WEBHOOK_SECRET", None)
os.environ.pop("MP_ACCESS_TOKEN", None)
os.environ.pop("STRICT_PRICE_CHECK", None)

import pytest

from marketplace.database import Database
from marketplace.models.schemas import Actor, LineItem, OrderStatus, PaymentMethod, PaymentStatus, Role
from marketplace.services.notification_service import NotificationDispatcher
from marketplace.services.payment_gateway import GatewayPayment, PaymentNotFoundError


@pytest.fixture
def db(tmp_path):
    """Fresh schema in a temporary file for every test."""
    database = Database(str(tmp_path / "marketplace_test.db"))
    database.init_schema()
    return database


@pytest.fixture
def notifier(db):
    """Dispatcher that only writes the in-app feed (no push relay)."""
    return NotificationDispatcher(db, push_url="")


class Seeder:
    """Direct inserts for users, stores, products and orders."""

    def __init__(self, db: Database):
        self.db = db

    def _exec(self, sql: str, params: tuple) -> None:
        conn = self.db.connect()
        try:
            conn.execute(sql, params)
            conn.commit()
        finally:
            conn.close()

    def user(self, user_id: str, role: str, name: str | None = None, fcm_token=None, fcm_tokens=None) -> Actor:
        self._exec(
            "INSERT INTO users (id, name, role, fcm_token, fcm_tokens) VALUES (?, ?, ?, ?, ?)",
            (user_id, name or user_id, role, fcm_token,
             json.dumps(fcm_tokens) if fcm_tokens is not None else None),
        )
        return Actor(user_id=user_id, role=role, name=name or user_id)

    def store(self, store_id: str, owner_id: str, commission_rate="0", active: int = 1, name=None) -> str:
        self._exec(
            """INSERT INTO stores (id, owner_id, name, address, commission_rate, active)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (store_id, owner_id, name or f"Tienda {store_id}", "Calle 123", str(commission_rate), active),
        )
        return store_id

    def product(self, product_id: str, store_id: str, price, name=None, active: int = 1) -> str:
        self._exec(
            "INSERT INTO products (id, store_id, name, price, active) VALUES (?, ?, ?, ?, ?)",
            (product_id, store_id, name or f"Producto {product_id}", str(price), active),
        )
        return product_id

    def order(
        self,
        buyer_id: str,
        store_id: str,
        store_owner_id: str | None = None,
        status: str = OrderStatus.PENDING_CONFIRMATION,
        subtotal="100.00",
        service_fee="0.00",
        delivery_fee="5.00",
        courier_id: str | None = None,
        payment_status: str | None = None,
        store_payout_status: str = "pending",
        delivery_payout_status: str = "pending",
        order_id: str | None = None,
        payment_method: str = PaymentMethod.MERCADOPAGO,
    ) -> str:
        order_id = order_id or uuid.uuid4().hex
        subtotal, service_fee, delivery_fee = Decimal(subtotal), Decimal(service_fee), Decimal(delivery_fee)
        if payment_status is None:
            payment_status = (
                PaymentStatus.PAID if status in OrderStatus.SETTLED else PaymentStatus.UNPAID
            )
        items = [LineItem("p-1", "Producto", subtotal, 1).to_dict()]
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        self._exec(
            """INSERT INTO orders
               (id, buyer_id, store_id, store_owner_id, courier_id, items,
                subtotal, service_fee, delivery_fee, total, status, payment_status,
                store_payout_status, delivery_payout_status, shipping_info,
                payment_method, created_at, updated_at, delivered_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, '{}', ?, ?, ?, ?)""",
            (
                order_id, buyer_id, store_id, store_owner_id, courier_id, json.dumps(items),
                str(subtotal), str(service_fee), str(delivery_fee),
                str(subtotal + service_fee + delivery_fee), status, payment_status,
                store_payout_status, delivery_payout_status, payment_method, now, now,
                now if status == OrderStatus.DELIVERED else None,
            ),
        )
        return order_id


@pytest.fixture
def seed(db):
    return Seeder(db)


@pytest.fixture
def parties(seed):
    """A buyer, a store owner with one store, two couriers and an admin."""
    buyer = seed.user("buyer-1", Role.BUYER, "Ana")
    owner = seed.user("owner-1", Role.STORE, "Kiosco Don Luis")
    courier = seed.user("courier-1", Role.DELIVERY, "Marcos")
    rival = seed.user("courier-2", Role.DELIVERY, "Julieta")
    admin = seed.user("admin-1", Role.ADMIN, "Admin")
    seed.store("store-1", owner.user_id)
    return {"buyer": buyer, "owner": owner, "courier": courier, "rival": rival, "admin": admin}


class FakeGateway:
    """In-memory stand-in for the payment gateway client."""

    def __init__(self):
        self.payments: dict[str, GatewayPayment] = {}
        self.lookups = 0
        self.preferences: list[dict] = []

    def add(self, payment_id: str, status: str = "approved", metadata: dict | None = None, amount=None):
        self.payments[payment_id] = GatewayPayment(
            id=payment_id,
            status=status,
            amount=Decimal(str(amount)) if amount is not None else None,
            metadata=metadata or {},
        )

    def get_payment(self, payment_id: str) -> GatewayPayment:
        self.lookups += 1
        if payment_id not in self.payments:
            raise PaymentNotFoundError(payment_id)
        return self.payments[payment_id]

    def create_preference(self, order, notification_url: str, back_url: str) -> str:
        self.preferences.append({
            "order_id": order.id,
            "notification_url": notification_url,
            "back_url": back_url,
        })
        return f"https://www.mercadopago.com/checkout?pref={order.id}"


@pytest.fixture
def gateway():
    return FakeGateway()


def count_notifications(db: Database, user_id: str | None = None, kind: str | None = None) -> int:
    sql = "SELECT COUNT(*) AS n FROM notifications WHERE 1=1"
    params = []
    if user_id:
        sql += " AND user_id = ?"
        params.append(user_id)
    if kind:
        sql += " AND type = ?"
        params.append(kind)
    conn = db.connect()
    try:
        return conn.execute(sql, params).fetchone()["n"]
    finally:
        conn.close()


@pytest.fixture
def notifications(db):
    """Counter over the in-app notification feed."""
    return lambda user_id=None, kind=None: count_notifications(db, user_id, kind)


@pytest.fixture
def client(db, gateway, notifier):
    """TestClient bound to the test database, fake gateway and feed-only notifier."""
    from fastapi.testclient import TestClient

    from marketplace.main import app
    from marketplace.services.notification_service import get_notifier
    from marketplace.services.payment_gateway import get_payment_gateway

    app.state.db = db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    app.dependency_overrides[get_notifier] = lambda: notifier
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def auth():
    """Authorization header for an actor."""
    from marketplace.services.auth import create_token

    def _headers(actor: Actor) -> dict:
        return {"Authorization": f"Bearer {create_token(actor.user_id, actor.role, actor.name)}"}
    return _headers
