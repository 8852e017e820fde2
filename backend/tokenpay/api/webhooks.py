"""Stripe webhook routes"""
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from tokenpay.core.logging import webhook_logger
from tokenpay.core.metrics import webhook_verification_failures_counter
from tokenpay.db.session import get_db
from tokenpay.services.stripe_service import WebhookVerificationError
from tokenpay.services.webhook_service import process_stripe_webhook

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


@router.post("/stripe")
async def stripe_webhook(request: Request, db: Session = Depends(get_db)):
    """Handle Stripe webhook events

    Note: This route must be excluded from any global JSON parsing middleware
    to ensure the request body remains as raw bytes for signature verification.

    Answers 400 when the delivery cannot be authenticated, 500 when the
    handler hit an infrastructure fault worth retrying, and 200 otherwise
    (including ignored events, replays and permanent handler failures).
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    if not sig_header:
        webhook_verification_failures_counter.inc()
        webhook_logger.error("Rejected webhook delivery without stripe-signature header")
        raise HTTPException(400, "Missing stripe-signature header")

    try:
        result = process_stripe_webhook(payload, sig_header, db)
    except WebhookVerificationError as e:
        webhook_verification_failures_counter.inc()
        webhook_logger.error(f"Rejected webhook delivery: {e}")
        raise HTTPException(400, str(e))

    status_code = 500 if result.should_retry else 200
    return JSONResponse(status_code=status_code, content=result.to_wire())
