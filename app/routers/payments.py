from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel, Field

from app.deps import get_current_user
from app.models.user import User
from app.services import stripe_payments

router = APIRouter()


class PaymentIntentRequest(BaseModel):
    amount_usd: float = Field(..., ge=stripe_payments.MIN_AMOUNT_USD, le=stripe_payments.MAX_AMOUNT_USD)
    currency: str = "usd"


class VerifyPaymentRequest(BaseModel):
    payment_intent_id: str = Field(..., min_length=3)


@router.post("/stripe/payment-intent")
async def stripe_payment_intent(body: PaymentIntentRequest, user: User = Depends(get_current_user)):
    """Create a Stripe PaymentIntent; the frontend confirms it with `client_secret`."""
    return await stripe_payments.create_payment_intent(user, body.amount_usd, body.currency.lower())


@router.post("/stripe/webhook")
async def stripe_webhook(request: Request, stripe_signature: str | None = Header(None, alias="Stripe-Signature")):
    """Stripe webhook: payment_intent.succeeded and invoice.payment_succeeded grant credits (idempotent)."""
    payload = await request.body()
    return await stripe_payments.handle_webhook(payload, stripe_signature)


@router.post("/stripe/verify")
async def stripe_verify(body: VerifyPaymentRequest, user: User = Depends(get_current_user)):
    return await stripe_payments.verify_payment(user, body.payment_intent_id)
