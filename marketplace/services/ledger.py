"""
Payout ledger: what the platform owes store owners and couriers, and the
withdrawal requests drawn against it.

Balances are never stored. They are derived on every read from delivered
orders whose payout is still pending, minus every withdrawal that has not
been rejected:

    store credit   = subtotal * (1 - commission_rate / 100)
    courier credit = delivery_fee
    available      = max(0, credits - committed withdrawals)

Withdrawal creation re-derives the balance inside a ``BEGIN IMMEDIATE``
transaction so two concurrent requests cannot both spend the same credit.
"""

import logging
import sqlite3
import uuid
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from cryptography.fernet import InvalidToken

from marketplace.database import Database
from marketplace.models.schemas import (
    CENT,
    Actor,
    Balance,
    Order,
    OrderStatus,
    PayoutStatus,
    Role,
    Withdrawal,
    WithdrawalStatus,
    format_money,
    to_money,
)
from marketplace.services.notification_service import NotificationDispatcher
from marketplace.services.order_service import IncompleteInputError, StoreNotFoundError
from marketplace.services.platform_config import decrypt, encrypt, mask

logger = logging.getLogger(__name__)

MIN_DESTINATION_LENGTH = 5
ZERO = Decimal("0.00")


class InsufficientBalanceError(Exception):
    """Requested amount exceeds the available balance."""
    pass


class WithdrawalNotFoundError(Exception):
    pass


class WithdrawalStateError(Exception):
    """The withdrawal was already approved or rejected."""
    pass


class NotAPayeeError(Exception):
    """Only store owners and couriers hold a wallet."""
    pass


class InvalidAmountError(Exception):
    """Amount, commission rate or payout kind out of range."""
    pass


# ── Pure balance functions ────────────────────────────────


def store_credit(order: Order, commission_rate: Decimal) -> Decimal:
    """Store share of one order: subtotal minus the platform commission, never negative."""
    share = to_money(order.subtotal * (Decimal("1") - Decimal(str(commission_rate)) / Decimal("100")))
    return max(ZERO, share)


def store_credits(orders: list[Order], commission_rate: Decimal) -> Decimal:
    """Sum of store credits over delivered orders not yet paid out to the store."""
    return sum(
        (
            store_credit(o, commission_rate)
            for o in orders
            if o.status == OrderStatus.DELIVERED and o.store_payout_status != PayoutStatus.PAID
        ),
        ZERO,
    )


def courier_credits(orders: list[Order], courier_id: str) -> Decimal:
    """Sum of delivery fees over delivered orders of the courier not yet paid out."""
    return sum(
        (
            to_money(o.delivery_fee)
            for o in orders
            if o.status == OrderStatus.DELIVERED
            and o.courier_id == courier_id
            and o.delivery_payout_status != PayoutStatus.PAID
        ),
        ZERO,
    )


def committed_withdrawals(withdrawals: list[Withdrawal]) -> Decimal:
    """Pending and approved withdrawals both reduce the balance."""
    return sum(
        (to_money(w.amount) for w in withdrawals if w.status != WithdrawalStatus.REJECTED),
        ZERO,
    )


def available_balance(credits: Decimal, withdrawals: list[Withdrawal]) -> Decimal:
    return max(ZERO, to_money(credits) - committed_withdrawals(withdrawals))


def _parse_amount(value) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidAmountError(f"Monto inválido: {value}")
    if not amount.is_finite():
        raise InvalidAmountError(f"Monto inválido: {value}")
    amount = to_money(amount)
    if amount <= 0:
        raise InvalidAmountError(f"Monto inválido: {value}")
    return amount


def _mask_destination(ciphertext: str) -> str:
    try:
        return mask(decrypt(ciphertext))
    except InvalidToken:
        logger.warning("Cannot decrypt withdrawal destination, returning fully masked value")
        return "****"


class PayoutLedger:
    """Wallet balances, withdrawal requests and admin payout actions."""

    def __init__(self, db: Database, notifier: NotificationDispatcher | None = None):
        self.db = db
        self.notifier = notifier or NotificationDispatcher(db)

    # ── Balance derivation ────────────────────────────────

    def _derive_balance(self, conn: sqlite3.Connection, actor: Actor) -> Balance:
        if actor.role == Role.STORE:
            stores = conn.execute(
                "SELECT id, commission_rate FROM stores WHERE owner_id = ?",
                (actor.user_id,),
            ).fetchall()
            credits = ZERO
            order_count = 0
            for store in stores:
                rate = Decimal(str(store["commission_rate"] or 0))
                orders = [
                    Order.from_row(r)
                    for r in conn.execute(
                        """SELECT * FROM orders
                           WHERE store_id = ? AND status = ? AND store_payout_status != ?""",
                        (store["id"], OrderStatus.DELIVERED, PayoutStatus.PAID),
                    ).fetchall()
                ]
                credits += store_credits(orders, rate)
                order_count += len(orders)
            commission_rate = (
                Decimal(str(stores[0]["commission_rate"] or 0)) if len(stores) == 1 else None
            )
        elif actor.role == Role.DELIVERY:
            orders = [
                Order.from_row(r)
                for r in conn.execute(
                    """SELECT * FROM orders
                       WHERE courier_id = ? AND status = ? AND delivery_payout_status != ?""",
                    (actor.user_id, OrderStatus.DELIVERED, PayoutStatus.PAID),
                ).fetchall()
            ]
            credits = courier_credits(orders, actor.user_id)
            order_count = len(orders)
            commission_rate = None
        else:
            raise NotAPayeeError("Solo tiendas y repartidores tienen billetera")

        withdrawals = [
            Withdrawal.from_row(r)
            for r in conn.execute(
                "SELECT * FROM withdrawals WHERE requester_id = ?", (actor.user_id,)
            ).fetchall()
        ]
        committed = committed_withdrawals(withdrawals)
        return Balance(
            role=actor.role,
            credits=credits,
            committed=committed,
            available=available_balance(credits, withdrawals),
            order_count=order_count,
            commission_rate=commission_rate,
        )

    def balance_for(self, actor: Actor) -> Balance:
        """
        Current wallet of a store owner or courier.

        Raises:
            NotAPayeeError: the actor is a buyer or admin.
        """
        conn = self.db.connect()
        try:
            return self._derive_balance(conn, actor)
        finally:
            conn.close()

    # ── Withdrawals ───────────────────────────────────────

    def request_withdrawal(self, actor: Actor, amount, destination_account: str) -> Withdrawal:
        """
        Create a pending withdrawal against the available balance.

        Raises:
            InvalidAmountError: amount not a positive number.
            IncompleteInputError: destination account too short.
            NotAPayeeError: the actor holds no wallet.
            InsufficientBalanceError: amount exceeds the available balance.
        """
        amount = _parse_amount(amount)
        destination_account = (destination_account or "").strip()
        if len(destination_account) < MIN_DESTINATION_LENGTH:
            raise IncompleteInputError("Ingresa un CBU/CVU o alias válido")

        withdrawal_id = uuid.uuid4().hex
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")

        with self.db.transaction() as conn:
            balance = self._derive_balance(conn, actor)
            if amount > balance.available:
                logger.info(
                    "Withdrawal refused: user=%s, amount=%s, available=%s",
                    actor.user_id, amount, balance.available,
                )
                raise InsufficientBalanceError(
                    f"Saldo insuficiente: disponible ${format_money(balance.available)}"
                )
            conn.execute(
                """INSERT INTO withdrawals
                   (id, requester_id, requester_name, role, amount,
                    destination_account, status, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    withdrawal_id, actor.user_id, actor.name, actor.role, str(amount),
                    encrypt(destination_account), WithdrawalStatus.PENDING, now,
                ),
            )

        logger.info(
            "Withdrawal requested: id=%s, user=%s, role=%s, amount=%s",
            withdrawal_id, actor.user_id, actor.role, amount,
        )
        return Withdrawal(
            id=withdrawal_id,
            requester_id=actor.user_id,
            requester_name=actor.name,
            role=actor.role,
            amount=amount,
            destination_account=mask(destination_account),
            created_at=now,
        )

    def list_withdrawals(
        self, requester_id: str | None = None, status: str | None = None
    ) -> list[Withdrawal]:
        """Withdrawals newest first; destination accounts are masked."""
        sql = "SELECT * FROM withdrawals WHERE 1=1"
        params: list = []
        if requester_id:
            sql += " AND requester_id = ?"
            params.append(requester_id)
        if status:
            sql += " AND status = ?"
            params.append(status)
        sql += " ORDER BY created_at DESC"

        conn = self.db.connect()
        try:
            rows = conn.execute(sql, params).fetchall()
        finally:
            conn.close()

        result = []
        for row in rows:
            w = Withdrawal.from_row(row)
            w.destination_account = _mask_destination(w.destination_account)
            result.append(w)
        return result

    def _get_withdrawal(self, withdrawal_id: str) -> Withdrawal:
        conn = self.db.connect()
        try:
            row = conn.execute(
                "SELECT * FROM withdrawals WHERE id = ?", (withdrawal_id,)
            ).fetchone()
        finally:
            conn.close()
        if not row:
            raise WithdrawalNotFoundError(f"Solicitud {withdrawal_id} no encontrada")
        return Withdrawal.from_row(row)

    def _decide(
        self, withdrawal_id: str, admin: Actor, new_status: str, reason: str | None
    ) -> Withdrawal:
        withdrawal = self._get_withdrawal(withdrawal_id)
        if withdrawal.status != WithdrawalStatus.PENDING:
            raise WithdrawalStateError(f"La solicitud ya fue procesada ({withdrawal.status})")

        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        conn = self.db.connect()
        try:
            cursor = conn.execute(
                """UPDATE withdrawals
                   SET status = ?, rejection_reason = ?, processed_by = ?, processed_at = ?
                   WHERE id = ? AND status = ?""",
                (new_status, reason, admin.user_id, now, withdrawal_id, WithdrawalStatus.PENDING),
            )
            conn.commit()
            updated = cursor.rowcount
        finally:
            conn.close()

        if updated == 0:
            raise WithdrawalStateError("La solicitud ya fue procesada")

        logger.info(
            "Withdrawal %s %s by admin %s (amount=%s, requester=%s)",
            withdrawal_id, new_status, admin.user_id, withdrawal.amount, withdrawal.requester_id,
        )

        if new_status == WithdrawalStatus.APPROVED:
            self.notifier.notify(
                withdrawal.requester_id,
                "Retiro aprobado ✅",
                f"Tu retiro de ${format_money(withdrawal.amount)} fue aprobado y transferido.",
                "withdrawal_approved",
                link="/wallet",
            )
        else:
            self.notifier.notify(
                withdrawal.requester_id,
                "Retiro rechazado",
                f"Tu retiro de ${format_money(withdrawal.amount)} fue rechazado. "
                f"Motivo: {reason or 'sin especificar'}",
                "withdrawal_rejected",
                link="/wallet",
            )

        withdrawal = self._get_withdrawal(withdrawal_id)
        withdrawal.destination_account = _mask_destination(withdrawal.destination_account)
        return withdrawal

    def approve_withdrawal(self, withdrawal_id: str, admin: Actor) -> Withdrawal:
        """
        Mark a pending request as transferred.

        The balance is not re-checked and no order payout flag changes: the
        amount was already committed when the request was created.

        Raises:
            WithdrawalNotFoundError / WithdrawalStateError
        """
        return self._decide(withdrawal_id, admin, WithdrawalStatus.APPROVED, None)

    def reject_withdrawal(self, withdrawal_id: str, admin: Actor, reason: str | None = None) -> Withdrawal:
        """Reject a pending request; its amount returns to the available balance."""
        return self._decide(withdrawal_id, admin, WithdrawalStatus.REJECTED, reason or None)

    # ── Admin finance ─────────────────────────────────────

    def outstanding_debts(self) -> dict:
        """
        What the platform owes, grouped by store and by courier, plus the
        total of pending withdrawal requests.
        """
        conn = self.db.connect()
        try:
            store_rows = conn.execute(
                """SELECT o.*, s.name AS store_name, s.commission_rate AS store_commission
                   FROM orders o JOIN stores s ON o.store_id = s.id
                   WHERE o.status = ? AND o.store_payout_status != ?
                   ORDER BY o.delivered_at ASC""",
                (OrderStatus.DELIVERED, PayoutStatus.PAID),
            ).fetchall()
            courier_rows = conn.execute(
                """SELECT * FROM orders
                   WHERE status = ? AND courier_id IS NOT NULL AND delivery_payout_status != ?
                   ORDER BY delivered_at ASC""",
                (OrderStatus.DELIVERED, PayoutStatus.PAID),
            ).fetchall()
            pending = conn.execute(
                "SELECT amount FROM withdrawals WHERE status = ?",
                (WithdrawalStatus.PENDING,),
            ).fetchall()
        finally:
            conn.close()

        stores: dict[str, dict] = {}
        for row in store_rows:
            order = Order.from_row(row)
            rate = Decimal(str(row["store_commission"] or 0))
            entry = stores.setdefault(order.store_id, {
                "storeId": order.store_id,
                "name": row["store_name"],
                "ownerId": order.store_owner_id,
                "commissionRate": float(rate),
                "orderCount": 0,
                "totalOwed": ZERO,
                "orderIds": [],
            })
            entry["orderCount"] += 1
            entry["totalOwed"] += store_credit(order, rate)
            entry["orderIds"].append(order.id)

        couriers: dict[str, dict] = {}
        for row in courier_rows:
            order = Order.from_row(row)
            entry = couriers.setdefault(order.courier_id, {
                "courierId": order.courier_id,
                "name": order.courier_name or "Repartidor",
                "orderCount": 0,
                "totalOwed": ZERO,
                "orderIds": [],
            })
            entry["orderCount"] += 1
            entry["totalOwed"] += to_money(order.delivery_fee)
            entry["orderIds"].append(order.id)

        for entry in list(stores.values()) + list(couriers.values()):
            entry["totalOwed"] = format_money(entry["totalOwed"])

        pending_total = sum((to_money(r["amount"]) for r in pending), ZERO)
        return {
            "stores": list(stores.values()),
            "couriers": list(couriers.values()),
            "pendingWithdrawals": {
                "count": len(pending),
                "total": format_money(pending_total),
            },
        }

    def mark_orders_paid_out(self, kind: str, order_ids: list[str], admin: Actor) -> int:
        """
        Manual bulk payout: flag the store or courier share of delivered
        orders as paid, in one transaction.

        Returns:
            Number of orders updated. Orders that are not delivered or are
            already paid out are skipped.
        """
        columns = {
            Role.STORE: ("store_payout_status", "store_payout_at"),
            Role.DELIVERY: ("delivery_payout_status", "delivery_payout_at"),
        }
        if kind not in columns:
            raise InvalidAmountError(f"Tipo de pago inválido: {kind}")
        ids = [i for i in dict.fromkeys(order_ids or []) if i]
        if not ids:
            raise IncompleteInputError("No hay pedidos seleccionados")

        status_col, at_col = columns[kind]
        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        placeholders = ",".join("?" for _ in ids)

        with self.db.transaction() as conn:
            cursor = conn.execute(
                f"""UPDATE orders
                    SET {status_col} = ?, {at_col} = ?, updated_at = ?
                    WHERE id IN ({placeholders}) AND status = ? AND {status_col} != ?""",
                [PayoutStatus.PAID, now, now] + ids + [OrderStatus.DELIVERED, PayoutStatus.PAID],
            )
            updated = cursor.rowcount

        logger.info(
            "Bulk payout by admin %s: kind=%s, requested=%d, updated=%d",
            admin.user_id, kind, len(ids), updated,
        )
        return updated

    def set_commission_rate(self, store_id: str, rate) -> Decimal:
        """
        Change the platform commission of a store (percentage 0-100).

        Raises:
            InvalidAmountError: rate out of range.
            StoreNotFoundError: unknown store.
        """
        try:
            rate = Decimal(str(rate))
        except (InvalidOperation, ValueError):
            raise InvalidAmountError(f"Comisión inválida: {rate}")
        if not rate.is_finite() or rate < 0 or rate > 100:
            raise InvalidAmountError("La comisión debe estar entre 0 y 100")
        rate = rate.quantize(CENT, rounding=ROUND_HALF_UP)

        now = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        conn = self.db.connect()
        try:
            cursor = conn.execute(
                "UPDATE stores SET commission_rate = ?, updated_at = ? WHERE id = ?",
                (str(rate), now, store_id),
            )
            conn.commit()
            updated = cursor.rowcount
        finally:
            conn.close()

        if updated == 0:
            raise StoreNotFoundError(f"Tienda {store_id} no encontrada")
        logger.info("Commission of store %s set to %s%%", store_id, rate)
        return rate
