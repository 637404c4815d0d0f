"""
Payment settlement: turns a gateway payment notification into an order
state change, exactly once.

Flow:
1. Ignore anything that is not a payment event
2. Read the payment back from the gateway (never trust the notification body)
3. Only ``approved`` payments settle
4. Locate the order from the payment metadata and check it is payable
5. Conditional write pending_payment/unpaid -> in_preparation/paid
6. The winner of that write notifies the store owner and the buyer

Redeliveries of an already settled payment are acknowledged as duplicates
without side effects. Admins can also confirm a payment by hand (cash
orders); that path shares steps 5 and 6.
"""

import logging
from dataclasses import dataclass
from datetime import datetime

from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from marketplace.database import Database
from marketplace.models.schemas import Actor, Order, OrderStatus, PaymentStatus
from marketplace.services.notification_service import NotificationDispatcher
from marketplace.services.order_service import OrderNotFoundError, fetch_order
from marketplace.services.order_state import OrderAccessError
from marketplace.services.payment_gateway import PaymentGatewayClient, PaymentNotFoundError

logger = logging.getLogger(__name__)


class MalformedWebhookError(Exception):
    """The approved payment does not identify an order."""
    pass


class SettlementStatus:
    IGNORED_NOT_PAYMENT = "ignored_not_payment"
    PAYMENT_NOT_FOUND = "payment_not_found"
    NOT_APPROVED = "received_but_not_approved"
    SUCCESS = "success"
    ORDER_NOT_FOUND = "ignored_order_not_found"
    ORDER_NOT_PAYABLE = "ignored_order_not_payable"
    METADATA_MISMATCH = "ignored_metadata_mismatch"


@dataclass
class SettlementResult:
    status: str
    order_id: str | None = None
    duplicate: bool = False

    def to_dict(self) -> dict:
        data = {"status": self.status}
        if self.order_id:
            data["orderId"] = self.order_id
        if self.duplicate:
            data["duplicate"] = True
        return data


class PaymentMetadata(BaseModel):
    """Metadata attached to the checkout preference and echoed by the gateway."""

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    order_id: str
    buyer_id: str | None = None
    store_id: str | None = None
    store_owner_id: str | None = None

    @field_validator("order_id")
    @classmethod
    def order_id_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("order_id is empty")
        return v


def _metadata_matches(meta: PaymentMetadata, order: Order) -> bool:
    """Parties present in the metadata must be the order's parties."""
    pairs = (
        (meta.buyer_id, order.buyer_id),
        (meta.store_id, order.store_id),
        (meta.store_owner_id, order.store_owner_id),
    )
    return all(expected is None or expected == actual for expected, actual in pairs)


class PaymentSettlementHandler:
    """Idempotent handler for Mercado Pago payment notifications."""

    def __init__(
        self,
        db: Database,
        gateway: PaymentGatewayClient | None = None,
        notifier: NotificationDispatcher | None = None,
    ):
        self.db = db
        self.gateway = gateway
        self.notifier = notifier or NotificationDispatcher(db)

    def handle_payment_event(self, payment_id: str | None, event_type: str | None) -> SettlementResult:
        """
        Process one webhook delivery.

        Args:
            payment_id: Gateway payment id from the query string or body.
            event_type: Notification type/topic; only ``payment`` is handled.

        Returns:
            SettlementResult with one of the ``SettlementStatus`` tags.

        Raises:
            MalformedWebhookError: approved payment without a usable order id.
            PaymentGatewayError: gateway transport failure (the caller answers
                5xx so the gateway retries).
        """
        # 1. Event filter
        if not payment_id or event_type != "payment":
            logger.info("Webhook ignored: type=%s, id=%s", event_type, payment_id)
            return SettlementResult(SettlementStatus.IGNORED_NOT_PAYMENT)

        # 2. Authoritative payment state
        try:
            payment = self.gateway.get_payment(str(payment_id))
        except PaymentNotFoundError:
            logger.warning("Webhook for unknown payment %s acknowledged", payment_id)
            return SettlementResult(SettlementStatus.PAYMENT_NOT_FOUND)

        # 3. Only approved payments settle
        if not payment.approved:
            logger.info("Payment %s received with status %s, nothing to do", payment_id, payment.status)
            return SettlementResult(SettlementStatus.NOT_APPROVED)

        # 4. Order lookup and checks
        try:
            meta = PaymentMetadata.model_validate(payment.metadata)
        except ValidationError as e:
            logger.error("Approved payment %s has invalid metadata: %s", payment_id, e)
            raise MalformedWebhookError("Metadata del pago sin order_id")

        try:
            order = fetch_order(self.db, meta.order_id)
        except OrderNotFoundError:
            logger.warning("Approved payment %s references unknown order %s", payment_id, meta.order_id)
            return SettlementResult(SettlementStatus.ORDER_NOT_FOUND, meta.order_id)

        if not _metadata_matches(meta, order):
            logger.error(
                "Payment %s metadata does not match order %s (buyer=%s/%s, store=%s/%s)",
                payment_id, order.id, meta.buyer_id, order.buyer_id, meta.store_id, order.store_id,
            )
            return SettlementResult(SettlementStatus.METADATA_MISMATCH, order.id)

        if order.payment_status == PaymentStatus.PAID and order.status in OrderStatus.SETTLED:
            logger.info("Duplicate webhook for order %s (payment %s)", order.id, payment_id)
            return SettlementResult(SettlementStatus.SUCCESS, order.id, duplicate=True)

        if order.status != OrderStatus.PENDING_PAYMENT:
            logger.warning(
                "Approved payment %s for order %s in status %s, not payable",
                payment_id, order.id, order.status,
            )
            return SettlementResult(SettlementStatus.ORDER_NOT_PAYABLE, order.id)

        if payment.amount is not None and payment.amount != order.total:
            logger.warning(
                "Payment %s amount %s differs from order %s total %s",
                payment_id, payment.amount, order.id, order.total,
            )

        # 5-6. Conditional write and notifications
        return self._settle(order, payment.id)

    def confirm_payment(self, order_id: str, actor: Actor) -> SettlementResult:
        """
        Settle an order without a gateway payment (cash collected, or a
        payment confirmed outside the webhook).

        Runs the same conditional write as the webhook, so a concurrent
        webhook and a manual confirmation still settle the order once.

        Raises:
            OrderAccessError: the caller is not an admin.
            OrderNotFoundError: unknown order.
        """
        if not actor.is_admin:
            raise OrderAccessError("Solo un administrador puede confirmar pagos")

        order = fetch_order(self.db, order_id)
        if order.payment_status == PaymentStatus.PAID and order.status in OrderStatus.SETTLED:
            logger.info("Manual confirmation for already paid order %s", order.id)
            return SettlementResult(SettlementStatus.SUCCESS, order.id, duplicate=True)
        if order.status != OrderStatus.PENDING_PAYMENT:
            logger.warning(
                "Manual confirmation refused for order %s in status %s", order.id, order.status,
            )
            return SettlementResult(SettlementStatus.ORDER_NOT_PAYABLE, order.id)

        logger.info("Payment for order %s confirmed manually by %s", order.id, actor.user_id)
        return self._settle(order, None)

    def _settle(self, order: Order, gateway_payment_id: str | None) -> SettlementResult:
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        conn = self.db.connect()
        try:
            cursor = conn.execute(
                """UPDATE orders
                   SET payment_status = ?, status = ?, ready_for_pickup = 0,
                       gateway_payment_id = ?, paid_at = ?, updated_at = ?
                   WHERE id = ? AND status = ? AND payment_status = ?""",
                (
                    PaymentStatus.PAID, OrderStatus.IN_PREPARATION,
                    gateway_payment_id, now, now,
                    order.id, OrderStatus.PENDING_PAYMENT, PaymentStatus.UNPAID,
                ),
            )
            conn.commit()
            won = cursor.rowcount == 1
        finally:
            conn.close()

        if not won:
            logger.info("Order %s settled concurrently, payment %s is a duplicate", order.id, gateway_payment_id)
            return SettlementResult(SettlementStatus.SUCCESS, order.id, duplicate=True)

        logger.info("Order %s paid (payment %s), moved to in_preparation", order.id, gateway_payment_id)

        # Only the winner of the write notifies (best effort)
        self.notifier.notify(
            order.store_owner_id,
            "¡Pago Confirmado! 💰",
            f"El pedido #{order.id[:6]} ya fue pagado. ¡Comienza a prepararlo!",
            "payment_confirmed",
            order_id=order.id,
            link="/orders",
        )
        self.notifier.notify(
            order.buyer_id,
            "Pago Recibido ✅",
            "Tu pago fue acreditado. La tienda ya está preparando tu pedido.",
            "payment_received",
            order_id=order.id,
            link=f"/orders/{order.id}",
        )
        return SettlementResult(SettlementStatus.SUCCESS, order.id)
