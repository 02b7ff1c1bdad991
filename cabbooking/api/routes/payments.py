"""
Payment gateway webhook
=======================

POST /api/v1/payments/webhook -- gateway-to-server event delivery

The signature covers the raw request bytes, so it is checked before the
body is parsed.  A bad signature is a 400 (the gateway retries, which is
what we want).  Once the signature is good the delivery is always
acknowledged with 200, even when processing fails, because a retry cannot
fix a processing error and un-acked events are redelivered indefinitely.
"""

import logging

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.ext.asyncio import AsyncSession

from cabbooking.api.dependencies import get_db, get_reconciler
from cabbooking.api.schemas import WebhookAck
from cabbooking.services.payments import InvalidWebhookSignature, PaymentReconciler

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post(
    "/webhook",
    response_model=WebhookAck,
    summary="Receive payment gateway events",
    responses={400: {"description": "Missing or invalid signature"}},
)
async def payment_webhook(
    request: Request,
    x_razorpay_signature: str | None = Header(None),
    reconciler: PaymentReconciler = Depends(get_reconciler),
    db: AsyncSession = Depends(get_db),
):
    raw_body = await request.body()
    try:
        outcome = await reconciler.handle_webhook(raw_body, x_razorpay_signature)
        logger.info("Webhook processed: %s", outcome)
    except InvalidWebhookSignature:
        raise
    except Exception:
        logger.exception("Webhook processing failed; acknowledging anyway")
        await db.rollback()
    return WebhookAck()
