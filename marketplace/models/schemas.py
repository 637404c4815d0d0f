"""
Data models shared by the services.
Dataclasses keep the layer light; rows are converted with ``from_row``.
"""

import json
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    """Normalise a stored or computed amount to a 2-decimal Decimal."""
    if value is None:
        return Decimal("0.00")
    return Decimal(str(value)).quantize(CENT, rounding=ROUND_HALF_UP)


def format_money(value: Decimal) -> str:
    return f"{to_money(value):.2f}"


class OrderStatus:
    PENDING_CONFIRMATION = "pending_confirmation"
    PENDING_PAYMENT = "pending_payment"
    IN_PREPARATION = "in_preparation"
    IN_DELIVERY = "in_delivery"
    DELIVERED = "delivered"
    REJECTED = "rejected"
    CANCELLED = "cancelled"

    ALL = (
        PENDING_CONFIRMATION,
        PENDING_PAYMENT,
        IN_PREPARATION,
        IN_DELIVERY,
        DELIVERED,
        REJECTED,
        CANCELLED,
    )
    # Statuses in which payment has been settled.
    SETTLED = (IN_PREPARATION, IN_DELIVERY, DELIVERED)
    TERMINAL = (DELIVERED, REJECTED, CANCELLED)


# Labels shown to buyers, stores and couriers.
STATUS_TEXT = {
    OrderStatus.PENDING_CONFIRMATION: "Pendiente de Confirmación",
    OrderStatus.PENDING_PAYMENT: "Pendiente de Pago",
    OrderStatus.IN_PREPARATION: "En preparación",
    OrderStatus.IN_DELIVERY: "En reparto",
    OrderStatus.DELIVERED: "Entregado",
    OrderStatus.REJECTED: "Rechazado",
    OrderStatus.CANCELLED: "Cancelado",
}


class PaymentStatus:
    UNPAID = "unpaid"
    PAID = "paid"


class PaymentMethod:
    MERCADOPAGO = "mercadopago"
    CASH = "cash"

    ALL = (MERCADOPAGO, CASH)
    # Labels sent by the storefront checkout dialog.
    LABELS = {"tarjeta": MERCADOPAGO, "efectivo": CASH}

    @classmethod
    def normalize(cls, value: str | None) -> str | None:
        """Canonical method for a request value, None if unsupported."""
        key = (value or cls.MERCADOPAGO).strip().lower()
        if key in cls.ALL:
            return key
        return cls.LABELS.get(key)


class PayoutStatus:
    PENDING = "pending"
    PAID = "paid"


class WithdrawalStatus:
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class Role:
    BUYER = "buyer"
    STORE = "store"
    DELIVERY = "delivery"
    ADMIN = "admin"

    ALL = (BUYER, STORE, DELIVERY, ADMIN)
    PAYEES = (STORE, DELIVERY)


@dataclass(frozen=True)
class Actor:
    """Identity of the caller, decoded from the request token."""
    user_id: str
    role: str
    name: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


@dataclass
class LineItem:
    product_id: str
    name: str
    unit_price: Decimal
    quantity: int
    price_verified: bool = True

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity

    def to_dict(self) -> dict:
        return {
            "productId": self.product_id,
            "name": self.name,
            "unitPrice": float(self.unit_price),
            "quantity": self.quantity,
            "priceVerified": self.price_verified,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LineItem":
        return cls(
            product_id=data["productId"],
            name=data["name"],
            unit_price=to_money(data["unitPrice"]),
            quantity=int(data["quantity"]),
            price_verified=bool(data.get("priceVerified", True)),
        )


@dataclass
class Store:
    id: str
    name: str
    owner_id: Optional[str] = None
    address: Optional[str] = None
    commission_rate: Decimal = Decimal("0")
    active: int = 1

    @classmethod
    def from_row(cls, row) -> "Store":
        return cls(
            id=row["id"],
            name=row["name"],
            owner_id=row["owner_id"],
            address=row["address"],
            commission_rate=Decimal(str(row["commission_rate"] or 0)),
            active=row["active"],
        )


@dataclass
class Order:
    id: str
    buyer_id: str
    store_id: str
    items: list[LineItem]
    subtotal: Decimal
    service_fee: Decimal
    delivery_fee: Decimal
    total: Decimal
    status: str = OrderStatus.PENDING_CONFIRMATION
    payment_status: str = PaymentStatus.UNPAID
    store_owner_id: Optional[str] = None
    courier_id: Optional[str] = None
    courier_name: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    shipping_info: dict = field(default_factory=dict)
    customer_coords: Optional[dict] = None
    price_verified: bool = True
    payment_method: str = "mercadopago"
    gateway_payment_id: Optional[str] = None
    ready_for_pickup: bool = False
    store_payout_status: str = PayoutStatus.PENDING
    delivery_payout_status: str = PayoutStatus.PENDING
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    paid_at: Optional[str] = None
    taken_at: Optional[str] = None
    delivered_at: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "Order":
        return cls(
            id=row["id"],
            buyer_id=row["buyer_id"],
            store_id=row["store_id"],
            items=[LineItem.from_dict(i) for i in json.loads(row["items"])],
            subtotal=to_money(row["subtotal"]),
            service_fee=to_money(row["service_fee"]),
            delivery_fee=to_money(row["delivery_fee"]),
            total=to_money(row["total"]),
            status=row["status"],
            payment_status=row["payment_status"],
            store_owner_id=row["store_owner_id"],
            courier_id=row["courier_id"],
            courier_name=row["courier_name"],
            customer_name=row["customer_name"],
            customer_phone=row["customer_phone"],
            shipping_info=json.loads(row["shipping_info"] or "{}"),
            customer_coords=json.loads(row["customer_coords"]) if row["customer_coords"] else None,
            price_verified=bool(row["price_verified"]),
            payment_method=row["payment_method"],
            gateway_payment_id=row["gateway_payment_id"],
            ready_for_pickup=bool(row["ready_for_pickup"]),
            store_payout_status=row["store_payout_status"],
            delivery_payout_status=row["delivery_payout_status"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            paid_at=row["paid_at"],
            taken_at=row["taken_at"],
            delivered_at=row["delivered_at"],
        )

    def to_dict(self) -> dict:
        """Public representation used by the order endpoints."""
        return {
            "id": self.id,
            "buyerId": self.buyer_id,
            "storeId": self.store_id,
            "courierId": self.courier_id,
            "courierName": self.courier_name,
            "customerName": self.customer_name,
            "customerPhoneNumber": self.customer_phone,
            "shippingInfo": self.shipping_info,
            "customerCoords": self.customer_coords,
            "items": [i.to_dict() for i in self.items],
            "subtotal": format_money(self.subtotal),
            "serviceFee": format_money(self.service_fee),
            "deliveryFee": format_money(self.delivery_fee),
            "total": format_money(self.total),
            "priceVerified": self.price_verified,
            "status": self.status,
            "statusText": STATUS_TEXT.get(self.status, self.status),
            "paymentStatus": self.payment_status,
            "paymentMethod": self.payment_method,
            "readyForPickup": self.ready_for_pickup,
            "storePayoutStatus": self.store_payout_status,
            "deliveryPayoutStatus": self.delivery_payout_status,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "paidAt": self.paid_at,
            "takenAt": self.taken_at,
            "deliveredAt": self.delivered_at,
        }


@dataclass
class Withdrawal:
    id: str
    requester_id: str
    role: str
    amount: Decimal
    destination_account: str
    status: str = WithdrawalStatus.PENDING
    requester_name: Optional[str] = None
    rejection_reason: Optional[str] = None
    processed_by: Optional[str] = None
    created_at: Optional[str] = None
    processed_at: Optional[str] = None

    @classmethod
    def from_row(cls, row) -> "Withdrawal":
        return cls(
            id=row["id"],
            requester_id=row["requester_id"],
            role=row["role"],
            amount=to_money(row["amount"]),
            destination_account=row["destination_account"],
            status=row["status"],
            requester_name=row["requester_name"],
            rejection_reason=row["rejection_reason"],
            processed_by=row["processed_by"],
            created_at=row["created_at"],
            processed_at=row["processed_at"],
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "requesterId": self.requester_id,
            "requesterName": self.requester_name,
            "role": self.role,
            "amount": format_money(self.amount),
            "destinationAccount": self.destination_account,
            "status": self.status,
            "rejectionReason": self.rejection_reason,
            "processedBy": self.processed_by,
            "createdAt": self.created_at,
            "processedAt": self.processed_at,
        }


@dataclass
class Balance:
    """Derived wallet position of a store owner or courier."""
    role: str
    credits: Decimal
    committed: Decimal
    available: Decimal
    order_count: int = 0
    commission_rate: Optional[Decimal] = None

    def to_dict(self) -> dict:
        data = {
            "role": self.role,
            "credits": format_money(self.credits),
            "committed": format_money(self.committed),
            "available": format_money(self.available),
            "orderCount": self.order_count,
        }
        if self.commission_rate is not None:
            data["commissionRate"] = float(self.commission_rate)
        return data
