"""
Payment webhook: POST /v1/webhooks/mercadopago

Always answers 200 with a status tag so the gateway stops retrying, except
for malformed payments (400), a bad signature (401) and unexpected
failures (500, the gateway retries).
"""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from marketplace.database import Database, get_database
from marketplace.services.notification_service import NotificationDispatcher, get_notifier
from marketplace.services.payment_gateway import (
    PaymentGatewayClient,
    PaymentGatewayError,
    get_payment_gateway,
)
from marketplace.services.platform_config import get_webhook_secret
from marketplace.services.settlement_service import (
    MalformedWebhookError,
    PaymentSettlementHandler,
)
from marketplace.services.webhook_signature import verify_signature

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/v1/webhooks/mercadopago")
async def mercadopago_webhook(
    request: Request,
    db: Database = Depends(get_database),
    gateway: PaymentGatewayClient = Depends(get_payment_gateway),
    notifier: NotificationDispatcher = Depends(get_notifier),
):
    """
    Flow: extract payment id and type → verify signature (if configured)
    → settle through PaymentSettlementHandler → status tag
    """
    query = request.query_params
    try:
        body = await request.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}
    data = body.get("data") if isinstance(body.get("data"), dict) else {}

    # 1. Payment id and event type (query string first, body as fallback)
    payment_id = query.get("data.id") or query.get("id") or data.get("id")
    payment_id = str(payment_id) if payment_id else None
    event_type = body.get("type") or query.get("type") or query.get("topic")

    # 2. Signature
    secret = get_webhook_secret(db)
    if secret:
        signed_id = (
            query.get("data.id")
            or (str(data["id"]) if data.get("id") else None)
            or query.get("id")
        )
        if not verify_signature(
            secret,
            request.headers.get("x-signature"),
            request.headers.get("x-request-id"),
            signed_id,
        ):
            logger.warning("Webhook signature mismatch (payment=%s)", payment_id)
            return JSONResponse(status_code=401, content={"status": "invalid_signature"})

    # 3. Settlement
    handler = PaymentSettlementHandler(db, gateway, notifier)
    try:
        result = handler.handle_payment_event(payment_id, event_type)
    except MalformedWebhookError as e:
        return JSONResponse(status_code=400, content={"status": "error", "msg": str(e)})
    except PaymentGatewayError as e:
        logger.error("Webhook processing failed for payment %s: %s", payment_id, e)
        return JSONResponse(status_code=500, content={"status": "error", "msg": "gateway error"})
    except Exception as e:
        logger.exception("Unexpected webhook failure for payment %s: %s", payment_id, e)
        return JSONResponse(status_code=500, content={"status": "error", "msg": "internal error"})

    return JSONResponse(content=result.to_dict())
