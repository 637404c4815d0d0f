"""
Order state machine: the lifecycle table and the permission-gated
transition function.

pending_confirmation -> pending_payment -> in_preparation -> in_delivery -> delivered
pending_confirmation -> rejected | cancelled

Every transition is a conditional write on the expected current status, so
a request built from stale client state fails instead of overwriting a
newer status. The courier claim additionally requires ``courier_id IS NULL``.
"""

import logging
from datetime import datetime

from marketplace.database import Database
from marketplace.models.schemas import (
    STATUS_TEXT,
    Actor,
    Order,
    OrderStatus,
    Role,
)
from marketplace.services.notification_service import NotificationDispatcher
from marketplace.services.order_service import fetch_order

logger = logging.getLogger(__name__)

# Only the payment settlement handler may move an order out of pending_payment.
SETTLEMENT_ACTOR = "settlement"

# (from, to) -> role that may trigger it
TRANSITIONS = {
    (OrderStatus.PENDING_CONFIRMATION, OrderStatus.PENDING_PAYMENT): Role.STORE,
    (OrderStatus.PENDING_CONFIRMATION, OrderStatus.REJECTED): Role.STORE,
    (OrderStatus.PENDING_CONFIRMATION, OrderStatus.CANCELLED): Role.BUYER,
    (OrderStatus.PENDING_PAYMENT, OrderStatus.IN_PREPARATION): SETTLEMENT_ACTOR,
    (OrderStatus.IN_PREPARATION, OrderStatus.IN_DELIVERY): Role.DELIVERY,
    (OrderStatus.IN_DELIVERY, OrderStatus.DELIVERED): Role.DELIVERY,
}

ORDER_NOT_AVAILABLE = "pedido ya no disponible"


class InvalidTransitionError(Exception):
    """
    Illegal transition: wrong current status or unauthorised actor.

    ``forbidden`` distinguishes permission failures from state conflicts.
    """

    def __init__(self, message: str, forbidden: bool = False):
        super().__init__(message)
        self.forbidden = forbidden


class AlreadyClaimedError(Exception):
    """Another courier won the claim race."""

    def __init__(self, message: str = ORDER_NOT_AVAILABLE):
        super().__init__(message)


class OrderAccessError(Exception):
    """The caller is not a party to the order."""
    pass


def allowed_transitions(status: str) -> dict[str, str]:
    """Next statuses reachable from ``status`` and the role that may trigger each."""
    return {to: role for (frm, to), role in TRANSITIONS.items() if frm == status}


def _label(status: str) -> str:
    return STATUS_TEXT.get(status, status)


class OrderStateMachine:
    """Status transitions for store owners, buyers and couriers."""

    def __init__(self, db: Database, notifier: NotificationDispatcher | None = None):
        self.db = db
        self.notifier = notifier or NotificationDispatcher(db)

    def _store_owner(self, store_id: str) -> str | None:
        conn = self.db.connect()
        try:
            row = conn.execute(
                "SELECT owner_id FROM stores WHERE id = ?", (store_id,)
            ).fetchone()
            return row["owner_id"] if row else None
        finally:
            conn.close()

    def _authorize(self, order: Order, actor: Actor, required_role: str) -> None:
        """Role and ownership check, evaluated against fresh data on every call."""
        if actor.role != required_role:
            raise InvalidTransitionError(
                f"El rol '{actor.role}' no puede realizar esta transición "
                f"(requiere '{required_role}')",
                forbidden=True,
            )

        if required_role == Role.STORE:
            if self._store_owner(order.store_id) != actor.user_id:
                raise InvalidTransitionError(
                    "Solo el dueño de la tienda de este pedido puede cambiar su estado",
                    forbidden=True,
                )
        elif required_role == Role.BUYER:
            if order.buyer_id != actor.user_id:
                raise InvalidTransitionError(
                    "Solo el comprador de este pedido puede cancelarlo", forbidden=True
                )
        elif required_role == Role.DELIVERY:
            if order.courier_id != actor.user_id:
                raise InvalidTransitionError(
                    "Solo el repartidor asignado puede actualizar este pedido",
                    forbidden=True,
                )

    def check_transition(self, order: Order, actor: Actor, new_status: str) -> None:
        """
        Validate a transition without writing.

        Raises:
            InvalidTransitionError: unknown status, pair not in the table,
                settlement-only transition, or actor not authorised.
        """
        if new_status not in OrderStatus.ALL:
            raise InvalidTransitionError(f"Estado desconocido: {new_status}")

        required = TRANSITIONS.get((order.status, new_status))
        if required is None:
            raise InvalidTransitionError(
                f"Transición no permitida: {_label(order.status)} → {_label(new_status)}"
            )
        if required == SETTLEMENT_ACTOR:
            raise InvalidTransitionError(
                "El pedido pasa a preparación solo al confirmarse el pago",
                forbidden=True,
            )
        self._authorize(order, actor, required)

    def update_status(self, order_id: str, actor: Actor, new_status: str) -> Order:
        """
        Apply a status change requested by ``actor``.

        ``in_delivery`` is delegated to ``claim_order``.

        Raises:
            OrderNotFoundError: unknown order.
            InvalidTransitionError: see ``check_transition``; also raised when
                the order changed status between read and write.
            AlreadyClaimedError: lost courier claim race.
        """
        if new_status == OrderStatus.IN_DELIVERY:
            return self.claim_order(order_id, actor)

        order = fetch_order(self.db, order_id)
        self.check_transition(order, actor, new_status)

        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        sets = "status = ?, updated_at = ?"
        params: list = [new_status, now]
        guard = "id = ? AND status = ?"
        guard_params: list = [order_id, order.status]

        if new_status == OrderStatus.DELIVERED:
            sets += ", delivered_at = ?"
            params.append(now)
            guard += " AND courier_id = ?"
            guard_params.append(actor.user_id)

        conn = self.db.connect()
        try:
            cursor = conn.execute(
                f"UPDATE orders SET {sets} WHERE {guard}", params + guard_params
            )
            conn.commit()
            updated = cursor.rowcount
        finally:
            conn.close()

        if updated == 0:
            current = fetch_order(self.db, order_id)
            logger.warning(
                "Stale transition rejected: order=%s, expected=%s, current=%s, requested=%s",
                order_id, order.status, current.status, new_status,
            )
            raise InvalidTransitionError(
                f"El pedido ya no está en estado {_label(order.status)} "
                f"(estado actual: {_label(current.status)})"
            )

        logger.info(
            "Order %s: %s -> %s by %s (%s)",
            order_id, order.status, new_status, actor.user_id, actor.role,
        )
        self._notify_transition(order, new_status)
        return fetch_order(self.db, order_id)

    def claim_order(self, order_id: str, courier: Actor) -> Order:
        """
        Exclusive courier assignment: in_preparation -> in_delivery.

        The write only succeeds while ``courier_id`` is unset, so of any
        number of concurrent claims exactly one wins.

        Raises:
            OrderNotFoundError: unknown order.
            InvalidTransitionError: caller is not a courier, or the order is
                not ready for pickup yet.
            AlreadyClaimedError: another courier holds the order.
        """
        if courier.role != Role.DELIVERY:
            raise InvalidTransitionError(
                "Solo un repartidor puede tomar un pedido", forbidden=True
            )

        order = fetch_order(self.db, order_id)
        if order.courier_id or order.status in (OrderStatus.IN_DELIVERY, OrderStatus.DELIVERED):
            raise AlreadyClaimedError()
        if order.status != OrderStatus.IN_PREPARATION:
            raise InvalidTransitionError(
                f"Transición no permitida: {_label(order.status)} → "
                f"{_label(OrderStatus.IN_DELIVERY)}"
            )

        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        conn = self.db.connect()
        try:
            cursor = conn.execute(
                """UPDATE orders
                   SET courier_id = ?, courier_name = ?, status = ?,
                       taken_at = ?, updated_at = ?
                   WHERE id = ? AND status = ? AND courier_id IS NULL""",
                (
                    courier.user_id, courier.name, OrderStatus.IN_DELIVERY,
                    now, now, order_id, OrderStatus.IN_PREPARATION,
                ),
            )
            conn.commit()
            won = cursor.rowcount == 1
        finally:
            conn.close()

        if not won:
            logger.info("Claim race lost: order=%s, courier=%s", order_id, courier.user_id)
            raise AlreadyClaimedError()

        logger.info("Order %s claimed by courier %s", order_id, courier.user_id)
        self.notifier.notify(
            order.buyer_id,
            "Pedido en camino 🛵",
            "Un repartidor tomó tu pedido y va a retirarlo a la tienda.",
            "order_in_delivery",
            order_id=order_id,
            link=f"/orders/{order_id}",
        )
        return fetch_order(self.db, order_id)

    def _notify_transition(self, order: Order, new_status: str) -> None:
        if new_status == OrderStatus.PENDING_PAYMENT:
            self.notifier.notify(
                order.buyer_id,
                "¡Tu pedido fue confirmado!",
                "La tienda confirmó la disponibilidad. Realiza el pago para continuar.",
                "order_confirmed",
                order_id=order.id,
                link=f"/orders/{order.id}",
            )
        elif new_status == OrderStatus.REJECTED:
            self.notifier.notify(
                order.buyer_id,
                "Pedido rechazado",
                "La tienda no tiene stock para tu pedido.",
                "order_rejected",
                order_id=order.id,
                link=f"/orders/{order.id}",
            )
        elif new_status == OrderStatus.CANCELLED:
            self.notifier.notify(
                order.store_owner_id,
                "Pedido cancelado",
                f"El cliente canceló el pedido #{order.id[:6]}.",
                "order_cancelled",
                order_id=order.id,
                link="/orders",
            )
        elif new_status == OrderStatus.DELIVERED:
            self.notifier.notify(
                order.buyer_id,
                "Pedido entregado ✅",
                "¡Gracias por tu compra!",
                "order_delivered",
                order_id=order.id,
                link=f"/orders/{order.id}",
            )

    def available_orders(self) -> list[Order]:
        """Orders ready for pickup with no courier, oldest first."""
        conn = self.db.connect()
        try:
            rows = conn.execute(
                """SELECT * FROM orders
                   WHERE status = ? AND courier_id IS NULL
                   ORDER BY created_at ASC""",
                (OrderStatus.IN_PREPARATION,),
            ).fetchall()
        finally:
            conn.close()
        return [Order.from_row(row) for row in rows]

    def get_order_for(self, order_id: str, actor: Actor) -> Order:
        """
        Read an order on behalf of ``actor``.

        Raises:
            OrderNotFoundError: unknown order.
            OrderAccessError: the caller is not a party to the order.
        """
        order = fetch_order(self.db, order_id)
        if actor.is_admin or actor.user_id in (order.buyer_id, order.courier_id):
            return order
        if actor.role == Role.STORE and self._store_owner(order.store_id) == actor.user_id:
            return order
        if (
            actor.role == Role.DELIVERY
            and order.status == OrderStatus.IN_PREPARATION
            and not order.courier_id
        ):
            return order
        raise OrderAccessError("No tienes acceso a este pedido")
