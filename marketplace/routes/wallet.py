"""
Wallet routes for store owners and couriers: balance, withdrawal history
and withdrawal requests.
"""

from decimal import Decimal

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from marketplace.database import Database, get_database
from marketplace.models.schemas import Actor
from marketplace.services.auth import get_current_actor
from marketplace.services.ledger import (
    InsufficientBalanceError,
    InvalidAmountError,
    NotAPayeeError,
    PayoutLedger,
)
from marketplace.services.notification_service import NotificationDispatcher, get_notifier
from marketplace.services.order_service import IncompleteInputError

router = APIRouter(prefix="/v1/wallet")


class WithdrawalRequest(BaseModel):
    amount: Decimal | None = None
    destinationAccount: str = ""


@router.get("")
async def get_wallet(
    actor: Actor = Depends(get_current_actor),
    db: Database = Depends(get_database),
):
    """Available balance, derived from delivered orders and withdrawals."""
    try:
        balance = PayoutLedger(db).balance_for(actor)
    except NotAPayeeError as e:
        return JSONResponse(status_code=403, content={"code": -1, "msg": str(e)})
    return JSONResponse(content={"code": 1, "balance": balance.to_dict()})


@router.get("/withdrawals")
async def my_withdrawals(
    actor: Actor = Depends(get_current_actor),
    db: Database = Depends(get_database),
):
    withdrawals = PayoutLedger(db).list_withdrawals(requester_id=actor.user_id)
    return JSONResponse(content={
        "code": 1,
        "withdrawals": [w.to_dict() for w in withdrawals],
    })


@router.post("/withdrawals")
async def request_withdrawal(
    body: WithdrawalRequest,
    actor: Actor = Depends(get_current_actor),
    db: Database = Depends(get_database),
    notifier: NotificationDispatcher = Depends(get_notifier),
):
    """Create a pending withdrawal; the amount is committed immediately."""
    try:
        withdrawal = PayoutLedger(db, notifier).request_withdrawal(
            actor, body.amount, body.destinationAccount
        )
    except NotAPayeeError as e:
        return JSONResponse(status_code=403, content={"code": -1, "msg": str(e)})
    except (InvalidAmountError, IncompleteInputError, InsufficientBalanceError) as e:
        return JSONResponse(status_code=400, content={"code": -1, "msg": str(e)})

    return JSONResponse(content={
        "code": 1,
        "msg": "Solicitud de retiro enviada",
        "withdrawal": withdrawal.to_dict(),
    })
