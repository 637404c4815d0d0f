"""Order creation and authoritative pricing tests."""

from decimal import Decimal

import pytest

from marketplace.models.schemas import LineItem, OrderStatus, PaymentMethod, PaymentStatus, PayoutStatus
from marketplace.services.order_service import (
    CartLine,
    IncompleteInputError,
    InvalidOrderError,
    OrderNotFoundError,
    OrderService,
    StoreNotFoundError,
    compute_pricing,
    fetch_order,
)
from marketplace.services.platform_config import update_fees


@pytest.fixture
def svc(db, notifier):
    return OrderService(db, notifier, strict_prices=False)


@pytest.fixture
def catalog(seed, parties):
    seed.product("prod-a", "store-1", "100.00", name="Alfajor")
    seed.product("prod-b", "store-1", "35.50", name="Gaseosa")
    return parties


# ── compute_pricing ───────────────────────────────────────


class TestComputePricing:

    def test_example_total(self):
        items = [LineItem("a", "A", Decimal("100"), 2)]
        pricing = compute_pricing(items, Decimal("5"), Decimal("2000"))
        assert pricing.subtotal == Decimal("200.00")
        assert pricing.service_fee == Decimal("10.00")
        assert pricing.delivery_fee == Decimal("2000.00")
        assert pricing.total == Decimal("2210.00")

    def test_service_fee_rounds_half_up(self):
        items = [LineItem("a", "A", Decimal("0.10"), 1)]
        pricing = compute_pricing(items, Decimal("5"), Decimal("0"))
        # 0.10 * 5% = 0.005 -> 0.01
        assert pricing.service_fee == Decimal("0.01")

    def test_zero_fee(self):
        items = [LineItem("a", "A", Decimal("12.34"), 3)]
        pricing = compute_pricing(items, Decimal("0"), Decimal("5"))
        assert pricing.service_fee == Decimal("0.00")
        assert pricing.total == Decimal("42.02")

    def test_total_is_sum_of_parts(self):
        items = [LineItem("a", "A", Decimal("19.99"), 3), LineItem("b", "B", Decimal("7.25"), 2)]
        p = compute_pricing(items, Decimal("7.5"), Decimal("350"))
        assert p.total == p.subtotal + p.service_fee + p.delivery_fee

    def test_negative_subtotal_rejected(self):
        items = [LineItem("a", "A", Decimal("-1"), 1)]
        with pytest.raises(InvalidOrderError):
            compute_pricing(items, Decimal("0"), Decimal("0"))


# ── create_order ──────────────────────────────────────────


class TestCreateOrder:

    def test_example_scenario(self, db, svc, seed, parties):
        seed.product("prod-x", "store-1", "100")
        update_fees(db, service_fee_percent=Decimal("5"), delivery_fee=Decimal("2000"))

        order = svc.create_order(
            "buyer-1", "store-1",
            [CartLine("prod-x", 2, Decimal("100"))],
            shipping_info={"address": "Av. Siempre Viva 742"},
            customer_name="Ana",
            customer_phone="+54 11 5555",
        )

        stored = fetch_order(db, order.id)
        assert stored.subtotal == Decimal("200.00")
        assert stored.service_fee == Decimal("10.00")
        assert stored.delivery_fee == Decimal("2000.00")
        assert stored.total == Decimal("2210.00")
        assert stored.status == OrderStatus.PENDING_CONFIRMATION
        assert stored.payment_status == PaymentStatus.UNPAID
        assert stored.store_payout_status == PayoutStatus.PENDING
        assert stored.delivery_payout_status == PayoutStatus.PENDING
        assert stored.store_owner_id == "owner-1"
        assert stored.courier_id is None

    def test_catalog_price_overrides_client_price(self, db, svc, catalog):
        order = svc.create_order(
            "buyer-1", "store-1",
            [CartLine("prod-a", 1, Decimal("0.01"), "Alfajor barato")],
        )
        stored = fetch_order(db, order.id)
        assert stored.items[0].unit_price == Decimal("100.00")
        assert stored.items[0].name == "Alfajor"
        assert stored.subtotal == Decimal("100.00")
        assert stored.price_verified is True

    def test_default_fees(self, db, svc, catalog):
        order = svc.create_order("buyer-1", "store-1", [CartLine("prod-b", 2)])
        assert order.subtotal == Decimal("71.00")
        assert order.service_fee == Decimal("0.00")
        assert order.delivery_fee == Decimal("5.00")
        assert order.total == Decimal("76.00")

    def test_fallback_price_flags_order(self, db, svc, catalog):
        order = svc.create_order(
            "buyer-1", "store-1",
            [CartLine("prod-a", 1), CartLine("ghost", 2, Decimal("10"), "Promo")],
        )
        stored = fetch_order(db, order.id)
        assert stored.price_verified is False
        ghost = [i for i in stored.items if i.product_id == "ghost"][0]
        assert ghost.price_verified is False
        assert ghost.unit_price == Decimal("10.00")
        assert ghost.name == "Promo"
        assert stored.subtotal == Decimal("120.00")

    def test_strict_mode_rejects_unknown_product(self, db, notifier, catalog):
        strict = OrderService(db, notifier, strict_prices=True)
        with pytest.raises(InvalidOrderError):
            strict.create_order("buyer-1", "store-1", [CartLine("ghost", 1, Decimal("10"))])

    def test_strict_mode_from_env(self, db, notifier, monkeypatch):
        monkeypatch.setenv("STRICT_PRICE_CHECK", "1")
        assert OrderService(db, notifier).strict_prices is True

    def test_inactive_product_is_not_in_catalog(self, db, svc, seed, parties):
        seed.product("old", "store-1", "50", active=0)
        order = svc.create_order("buyer-1", "store-1", [CartLine("old", 1, Decimal("20"))])
        assert order.items[0].unit_price == Decimal("20.00")
        assert order.price_verified is False

    @pytest.mark.parametrize("price", [
        None, Decimal("0"), Decimal("-5"), Decimal("NaN"), Decimal("Infinity"),
        Decimal("0.001"), Decimal("0.004"),
    ])
    def test_unusable_fallback_price(self, svc, catalog, price):
        with pytest.raises(InvalidOrderError):
            svc.create_order("buyer-1", "store-1", [CartLine("ghost", 1, price)])

    @pytest.mark.parametrize("method,stored", [
        (None, PaymentMethod.MERCADOPAGO),
        ("Tarjeta", PaymentMethod.MERCADOPAGO),
        ("Efectivo", PaymentMethod.CASH),
        ("cash", PaymentMethod.CASH),
    ])
    def test_payment_method_normalized(self, db, svc, catalog, method, stored):
        order = svc.create_order("buyer-1", "store-1", [CartLine("prod-a", 1)], payment_method=method)
        assert order.payment_method == stored
        assert fetch_order(db, order.id).payment_method == stored

    def test_unsupported_payment_method(self, svc, catalog):
        with pytest.raises(IncompleteInputError):
            svc.create_order("buyer-1", "store-1", [CartLine("prod-a", 1)], payment_method="bitcoin")

    def test_zero_quantity_rejected(self, svc, catalog):
        with pytest.raises(InvalidOrderError):
            svc.create_order("buyer-1", "store-1", [CartLine("prod-a", 0)])

    @pytest.mark.parametrize("buyer,store,items", [
        ("", "store-1", [CartLine("prod-a", 1)]),
        ("buyer-1", "", [CartLine("prod-a", 1)]),
        ("buyer-1", "store-1", []),
    ])
    def test_incomplete_input(self, svc, catalog, buyer, store, items):
        with pytest.raises(IncompleteInputError):
            svc.create_order(buyer, store, items)

    def test_unknown_store(self, svc, parties):
        with pytest.raises(StoreNotFoundError):
            svc.create_order("buyer-1", "nope", [CartLine("prod-a", 1, Decimal("5"))])

    def test_inactive_store(self, svc, seed, parties):
        seed.store("closed", "owner-1", active=0)
        with pytest.raises(StoreNotFoundError):
            svc.create_order("buyer-1", "closed", [CartLine("prod-a", 1, Decimal("5"))])

    def test_store_owner_notified(self, svc, catalog, notifications):
        svc.create_order("buyer-1", "store-1", [CartLine("prod-a", 1)])
        assert notifications("owner-1", "order_request") == 1

    def test_notification_failure_does_not_fail_creation(self, db, catalog):
        class BrokenNotifier:
            def notify(self, *args, **kwargs):
                return False

        order = OrderService(db, BrokenNotifier(), strict_prices=False).create_order(
            "buyer-1", "store-1", [CartLine("prod-a", 1)]
        )
        assert fetch_order(db, order.id).total == Decimal("105.00")

    def test_order_ids_unique(self, svc, catalog):
        ids = {svc.create_order("buyer-1", "store-1", [CartLine("prod-a", 1)]).id for _ in range(5)}
        assert len(ids) == 5


class TestFetchOrder:

    def test_unknown_order(self, db):
        with pytest.raises(OrderNotFoundError):
            fetch_order(db, "missing")
