"""Payment initiation routes"""
import logging
import stripe
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from tokenpay.db.session import get_db
from tokenpay.schemas.payments import PurchaseIntent
from tokenpay.services.payment_service import initiate_payment
from tokenpay.services.stripe_service import HandlerContext

router = APIRouter(prefix="/api/payments", tags=["payments"])
logger = logging.getLogger(__name__)


@router.post("/checkout")
def create_checkout_route(intent: PurchaseIntent, db: Session = Depends(get_db)):
    """Create a PENDING payment transaction and its Stripe checkout session"""
    try:
        result = initiate_payment(HandlerContext(db=db, gateway=stripe), intent)
    except Exception as e:
        logger.error(f"Error creating checkout session for user {intent.user_id}: {e}", exc_info=True)
        raise HTTPException(500, "Failed to create checkout session")

    content = result.model_dump(by_alias=True)
    if not result.success:
        return JSONResponse(status_code=400, content=content)
    return content
