# FILE: storecredit/api/webhooks.py
"""Stripe webhook endpoint."""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from storecredit.api.deps import get_reconciler
from storecredit.core.errors import SignatureError, TransientStoreError
from storecredit.core.logging_config import STRIPE_LOGGER
from storecredit.services.payment_reconciler import PaymentWebhookReconciler

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])

logger = logging.getLogger("storecredit.webhooks")
stripe_logger = logging.getLogger(STRIPE_LOGGER)


@router.post("/stripe")
async def stripe_webhook(
        request: Request,
        background_tasks: BackgroundTasks,
        reconciler: PaymentWebhookReconciler = Depends(get_reconciler),
):
    """
    Verify and apply a Stripe event.

    400 on a bad signature (nothing is touched), 503 when the store is
    unavailable so Stripe redelivers, otherwise 200 with any processing
    error echoed back.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")
    try:
        event = reconciler.gateway.verify_event(payload, sig_header)
    except SignatureError as exc:
        raise HTTPException(status_code=400, detail=str(exc))

    try:
        outcome = await reconciler.handle_event(event)
    except TransientStoreError as exc:
        stripe_logger.error(f"Store unavailable handling {event.get('type')} {event.get('id')}: {exc}")
        return JSONResponse(status_code=503, content={"received": False, "error": str(exc)})
    except Exception as exc:
        stripe_logger.error(f"Webhook processing failed for {event.get('type')} {event.get('id')}", exc_info=exc)
        return {"received": True, "error": str(exc)}

    background_tasks.add_task(reconciler.run_deferred, outcome)
    return outcome.response()
