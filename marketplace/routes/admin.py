"""
Admin routes: manual payment confirmation, withdrawal review, finance
overview, manual payouts, store commissions and platform settings.
"""

from decimal import Decimal

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from marketplace.database import Database, get_database
from marketplace.models.schemas import Actor, WithdrawalStatus
from marketplace.services.auth import require_admin
from marketplace.services.ledger import (
    InvalidAmountError,
    PayoutLedger,
    WithdrawalNotFoundError,
    WithdrawalStateError,
)
from marketplace.services.notification_service import NotificationDispatcher, get_notifier
from marketplace.services.order_service import (
    IncompleteInputError,
    OrderNotFoundError,
    StoreNotFoundError,
)
from marketplace.services.platform_config import (
    PlatformConfigError,
    get_fee_settings,
    get_gateway_status,
    save_gateway_credentials,
    update_fees,
)
from marketplace.services.settlement_service import PaymentSettlementHandler, SettlementStatus

router = APIRouter(prefix="/v1/admin")


def _fail(status_code: int, msg: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"code": -1, "msg": msg})


# ── Orders ────────────────────────────────────────────────


@router.post("/orders/{order_id}/confirm-payment")
async def confirm_payment(
    order_id: str,
    admin: Actor = Depends(require_admin),
    db: Database = Depends(get_database),
    notifier: NotificationDispatcher = Depends(get_notifier),
):
    """Settle a cash order (or an out-of-band payment) by hand."""
    try:
        result = PaymentSettlementHandler(db, notifier=notifier).confirm_payment(order_id, admin)
    except OrderNotFoundError as e:
        return _fail(404, str(e))
    if result.status != SettlementStatus.SUCCESS:
        return _fail(409, "El pedido no está pendiente de pago")
    return JSONResponse(content={"code": 1, **result.to_dict()})


# ── Withdrawals ───────────────────────────────────────────


@router.get("/withdrawals")
async def list_withdrawals(
    status: str | None = Query(None),
    admin: Actor = Depends(require_admin),
    db: Database = Depends(get_database),
):
    withdrawals = PayoutLedger(db).list_withdrawals(status=status or None)
    return JSONResponse(content={
        "code": 1,
        "withdrawals": [w.to_dict() for w in withdrawals],
    })


class WithdrawalDecisionRequest(BaseModel):
    decision: str
    reason: str | None = None


@router.post("/withdrawals/{withdrawal_id}/decision")
async def decide_withdrawal(
    withdrawal_id: str,
    body: WithdrawalDecisionRequest,
    admin: Actor = Depends(require_admin),
    db: Database = Depends(get_database),
    notifier: NotificationDispatcher = Depends(get_notifier),
):
    """Approve (transfer done) or reject (amount returns to the balance)."""
    ledger = PayoutLedger(db, notifier)
    try:
        if body.decision == "approve":
            withdrawal = ledger.approve_withdrawal(withdrawal_id, admin)
        elif body.decision == "reject":
            withdrawal = ledger.reject_withdrawal(withdrawal_id, admin, body.reason)
        else:
            return _fail(400, "La decisión debe ser 'approve' o 'reject'")
    except WithdrawalNotFoundError as e:
        return _fail(404, str(e))
    except WithdrawalStateError as e:
        return _fail(409, str(e))

    msg = "Retiro aprobado" if withdrawal.status == WithdrawalStatus.APPROVED else "Retiro rechazado"
    return JSONResponse(content={"code": 1, "msg": msg, "withdrawal": withdrawal.to_dict()})


# ── Finance ───────────────────────────────────────────────


@router.get("/finance")
async def finance_overview(
    admin: Actor = Depends(require_admin),
    db: Database = Depends(get_database),
):
    """Outstanding amounts owed to stores and couriers."""
    return JSONResponse(content={"code": 1, **PayoutLedger(db).outstanding_debts()})


class PayoutRequest(BaseModel):
    kind: str
    orderIds: list[str] = []


@router.post("/payouts")
async def mark_payouts(
    body: PayoutRequest,
    admin: Actor = Depends(require_admin),
    db: Database = Depends(get_database),
):
    """Bulk-mark the store or courier share of delivered orders as paid."""
    try:
        updated = PayoutLedger(db).mark_orders_paid_out(body.kind, body.orderIds, admin)
    except (InvalidAmountError, IncompleteInputError) as e:
        return _fail(400, str(e))
    return JSONResponse(content={"code": 1, "updated": updated})


class CommissionRequest(BaseModel):
    commissionRate: Decimal


@router.put("/stores/{store_id}/commission")
async def set_commission(
    store_id: str,
    body: CommissionRequest,
    admin: Actor = Depends(require_admin),
    db: Database = Depends(get_database),
):
    try:
        rate = PayoutLedger(db).set_commission_rate(store_id, body.commissionRate)
    except InvalidAmountError as e:
        return _fail(400, str(e))
    except StoreNotFoundError as e:
        return _fail(404, str(e))
    return JSONResponse(content={"code": 1, "storeId": store_id, "commissionRate": float(rate)})


# ── Settings ──────────────────────────────────────────────


class SettingsRequest(BaseModel):
    serviceFeePercent: Decimal | None = None
    deliveryFee: Decimal | None = None
    accessToken: str | None = None
    webhookSecret: str | None = None


@router.get("/settings")
async def get_settings(
    admin: Actor = Depends(require_admin),
    db: Database = Depends(get_database),
):
    return JSONResponse(content={
        "code": 1,
        "fees": get_fee_settings(db),
        "gateway": get_gateway_status(db),
    })


@router.put("/settings")
async def put_settings(
    body: SettingsRequest,
    admin: Actor = Depends(require_admin),
    db: Database = Depends(get_database),
):
    """Update fees and gateway secrets; omitted fields are left unchanged."""
    try:
        fees = update_fees(
            db,
            service_fee_percent=body.serviceFeePercent,
            delivery_fee=body.deliveryFee,
        )
    except PlatformConfigError as e:
        return _fail(400, str(e))

    gateway = save_gateway_credentials(db, body.accessToken, body.webhookSecret)
    return JSONResponse(content={"code": 1, "fees": fees, "gateway": gateway})
