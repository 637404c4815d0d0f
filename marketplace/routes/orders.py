"""
Order routes: creation, detail, courier feed, status transitions, claim
and checkout.
"""

import logging
import os
from decimal import Decimal

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from marketplace.database import Database, get_database
from marketplace.models.schemas import STATUS_TEXT, Actor, Order, OrderStatus, PaymentMethod, Role
from marketplace.services.auth import get_current_actor
from marketplace.services.notification_service import NotificationDispatcher, get_notifier
from marketplace.services.order_service import (
    CartLine,
    IncompleteInputError,
    InvalidOrderError,
    OrderNotFoundError,
    OrderService,
    StoreNotFoundError,
)
from marketplace.services.order_state import (
    AlreadyClaimedError,
    InvalidTransitionError,
    OrderAccessError,
    OrderStateMachine,
)
from marketplace.services.payment_gateway import (
    PaymentGatewayClient,
    PaymentGatewayError,
    get_payment_gateway,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/v1/orders")


def _fail(status_code: int, msg: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"code": -1, "msg": msg})


def _status_payload(order: Order) -> dict:
    return {
        "code": 1,
        "orderId": order.id,
        "status": order.status,
        "statusText": STATUS_TEXT.get(order.status, order.status),
    }


def _transition_error(e: InvalidTransitionError) -> JSONResponse:
    return _fail(403 if e.forbidden else 409, str(e))


# ── Creation ──────────────────────────────────────────────


class CartItemRequest(BaseModel):
    productId: str
    quantity: int = 1
    clientPrice: Decimal | None = None
    name: str | None = None


class CreateOrderRequest(BaseModel):
    buyerId: str = ""
    storeId: str = ""
    items: list[CartItemRequest] = []
    shippingInfo: dict = {}
    customerName: str | None = None
    customerPhoneNumber: str | None = None
    customerCoords: dict | None = None
    paymentMethod: str | None = None


@router.post("")
async def create_order(
    body: CreateOrderRequest,
    actor: Actor = Depends(get_current_actor),
    db: Database = Depends(get_database),
    notifier: NotificationDispatcher = Depends(get_notifier),
):
    """
    Create an order from the buyer's cart.

    Prices are recomputed on the server; the response carries the
    authoritative total.
    """
    if body.buyerId and body.buyerId != actor.user_id and not actor.is_admin:
        return _fail(403, "No puedes crear pedidos en nombre de otro usuario")

    lines = [
        CartLine(
            product_id=item.productId,
            quantity=item.quantity,
            client_price=item.clientPrice,
            client_name=item.name,
        )
        for item in body.items
    ]

    try:
        order = OrderService(db, notifier).create_order(
            buyer_id=body.buyerId,
            store_id=body.storeId,
            items=lines,
            shipping_info=body.shippingInfo,
            customer_name=body.customerName,
            customer_phone=body.customerPhoneNumber,
            customer_coords=body.customerCoords,
            payment_method=body.paymentMethod,
        )
    except IncompleteInputError as e:
        return _fail(400, str(e))
    except StoreNotFoundError as e:
        return _fail(404, str(e))
    except InvalidOrderError as e:
        logger.warning("Order rejected (buyer=%s, store=%s): %s", body.buyerId, body.storeId, e)
        return _fail(400, "No se pudo procesar el pedido")

    return JSONResponse(content={
        "code": 1,
        "orderId": order.id,
        "total": f"{order.total:.2f}",
        "priceVerified": order.price_verified,
        "message": "Solicitud enviada a la tienda",
    })


# ── Courier feed ──────────────────────────────────────────


@router.get("/available")
async def available_orders(
    actor: Actor = Depends(get_current_actor),
    db: Database = Depends(get_database),
):
    """Orders waiting for a courier."""
    if actor.role not in (Role.DELIVERY, Role.ADMIN):
        return _fail(403, "Solo repartidores pueden ver pedidos disponibles")

    orders = OrderStateMachine(db).available_orders()
    return JSONResponse(content={
        "code": 1,
        "count": len(orders),
        "orders": [o.to_dict() for o in orders],
    })


# ── Detail & transitions ──────────────────────────────────


@router.get("/{order_id}")
async def get_order(
    order_id: str,
    actor: Actor = Depends(get_current_actor),
    db: Database = Depends(get_database),
):
    try:
        order = OrderStateMachine(db).get_order_for(order_id, actor)
    except OrderNotFoundError as e:
        return _fail(404, str(e))
    except OrderAccessError as e:
        return _fail(403, str(e))
    return JSONResponse(content={"code": 1, "order": order.to_dict()})


class StatusUpdateRequest(BaseModel):
    newStatus: str


@router.post("/{order_id}/status")
async def update_status(
    order_id: str,
    body: StatusUpdateRequest,
    actor: Actor = Depends(get_current_actor),
    db: Database = Depends(get_database),
    notifier: NotificationDispatcher = Depends(get_notifier),
):
    """Store confirm/reject, buyer cancel, courier pickup and delivery."""
    try:
        order = OrderStateMachine(db, notifier).update_status(order_id, actor, body.newStatus)
    except OrderNotFoundError as e:
        return _fail(404, str(e))
    except InvalidTransitionError as e:
        return _transition_error(e)
    except AlreadyClaimedError as e:
        return _fail(409, str(e))
    return JSONResponse(content=_status_payload(order))


@router.post("/{order_id}/claim")
async def claim_order(
    order_id: str,
    actor: Actor = Depends(get_current_actor),
    db: Database = Depends(get_database),
    notifier: NotificationDispatcher = Depends(get_notifier),
):
    """Exclusive courier assignment; losers receive 409."""
    try:
        order = OrderStateMachine(db, notifier).claim_order(order_id, actor)
    except OrderNotFoundError as e:
        return _fail(404, str(e))
    except InvalidTransitionError as e:
        return _transition_error(e)
    except AlreadyClaimedError as e:
        return _fail(409, str(e))
    payload = _status_payload(order)
    payload["courierId"] = order.courier_id
    return JSONResponse(content=payload)


# ── Checkout ──────────────────────────────────────────────


@router.post("/{order_id}/checkout")
async def checkout(
    order_id: str,
    actor: Actor = Depends(get_current_actor),
    db: Database = Depends(get_database),
    gateway: PaymentGatewayClient = Depends(get_payment_gateway),
):
    """
    Create a gateway checkout for a confirmed order.

    Only the buyer may pay, and only once the store confirmed stock.
    """
    try:
        order = OrderStateMachine(db).get_order_for(order_id, actor)
    except OrderNotFoundError as e:
        return _fail(404, str(e))
    except OrderAccessError as e:
        return _fail(403, str(e))

    if order.buyer_id != actor.user_id:
        return _fail(403, "Solo el comprador puede pagar este pedido")
    if order.payment_method == PaymentMethod.CASH:
        return _fail(409, "El pedido se paga en efectivo al recibirlo")
    if order.status != OrderStatus.PENDING_PAYMENT:
        return _fail(
            409,
            f"El pedido no está pendiente de pago ({STATUS_TEXT.get(order.status, order.status)})",
        )

    base_url = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/")
    try:
        init_point = gateway.create_preference(
            order,
            notification_url=f"{base_url}/v1/webhooks/mercadopago",
            back_url=f"{base_url}/orders/{order.id}",
        )
    except PaymentGatewayError as e:
        logger.error("Checkout failed for order %s: %s", order.id, e)
        return _fail(502, "No se pudo iniciar el pago, intenta nuevamente")

    return JSONResponse(content={"code": 1, "orderId": order.id, "initPoint": init_point})
