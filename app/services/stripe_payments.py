"""Stripe payment intents and webhook: idempotent credit grants keyed by the Stripe object id."""

import asyncio
from typing import Any

import stripe
from beanie import PydanticObjectId
from bson.errors import InvalidId
from pymongo.errors import DuplicateKeyError

from app.core.audit import log_event
from app.core.config import get_settings
from app.core.exceptions import BadRequestError, ForbiddenError, NotFoundError, ServiceUnavailableError
from app.core.logging import get_logger
from app.models.payment import Payment
from app.models.user import PaymentHistoryEntry, User
from app.services import credits as credits_service
from app.services.credits import CreditOwner
from app.services.pricing import purchase_credits
from app.services.users import find_user_by_identifier

log = get_logger(__name__)

MIN_AMOUNT_USD = 1
MAX_AMOUNT_USD = 10000


def _get_stripe():
    settings = get_settings()
    if not settings.stripe_secret_key:
        raise ServiceUnavailableError("Stripe not configured")
    stripe.api_key = settings.stripe_secret_key
    return stripe


def grant_key(stripe_object_id: str) -> str:
    return f"stripe_{stripe_object_id}"


async def create_payment_intent(user: User, amount_usd: float, currency: str = "usd") -> dict[str, Any]:
    client = _get_stripe()
    if amount_usd < MIN_AMOUNT_USD or amount_usd > MAX_AMOUNT_USD:
        raise BadRequestError(f"Amount must be between {MIN_AMOUNT_USD} and {MAX_AMOUNT_USD} USD")
    credits = purchase_credits(amount_usd)
    intent = await asyncio.to_thread(
        client.PaymentIntent.create,
        amount=round(amount_usd * 100),
        currency=currency,
        metadata={
            "user_id": str(user.id),
            "wallet_address": user.wallet_address or "",
            "credits": str(credits),
        },
        automatic_payment_methods={"enabled": True, "allow_redirects": "never"},
    )
    log.info("stripe_intent_created", payment_intent_id=intent.id, amount_usd=amount_usd, credits=credits)
    return {"client_secret": intent.client_secret, "payment_intent_id": intent.id, "credits": credits}


def construct_event(payload: bytes, signature: str | None) -> dict[str, Any]:
    settings = get_settings()
    client = _get_stripe()
    if not settings.stripe_webhook_secret:
        raise ServiceUnavailableError("Stripe webhook secret not configured")
    try:
        event = client.Webhook.construct_event(payload, signature or "", settings.stripe_webhook_secret)
    except (ValueError, stripe.SignatureVerificationError) as e:
        log.warning("stripe_webhook_rejected", error=str(e))
        raise BadRequestError("Invalid webhook signature") from e
    return event.to_dict()


async def _resolve_user(metadata: dict[str, Any]) -> User | None:
    user_id = metadata.get("user_id")
    if user_id:
        try:
            user = await User.get(PydanticObjectId(user_id))
        except (InvalidId, TypeError):
            user = await find_user_by_identifier(user_id=user_id)
        if user:
            return user
    wallet = metadata.get("wallet_address")
    if wallet:
        return await find_user_by_identifier(wallet_address=wallet)
    return None


async def _record_payment(payment: Payment) -> None:
    try:
        await payment.insert()
    except DuplicateKeyError:
        log.debug("payment_record_exists", payment_id=payment.payment_id)


async def credit_payment(
    user: User,
    payment_id: str,
    payment_type: str,
    amount_usd: float,
    credits: float,
    metadata: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Grant the credits of one external payment; safe to call from both webhook and verify."""
    history = PaymentHistoryEntry(type=payment_type, payment_id=payment_id, amount_usd=amount_usd, credits=credits)
    txn, applied = await credits_service.grant(
        CreditOwner.for_user(user),
        credits,
        "purchase" if payment_type == "stripe" else payment_type,
        grant_key(payment_id),
        reference_type=payment_type,
        reference_id=payment_id,
        metadata=metadata,
        payment_history=history.model_dump(),
    )
    await _record_payment(
        Payment(
            user_id=user.id,
            payment_id=payment_id,
            type=payment_type,
            amount_usd=amount_usd,
            credits=credits,
            transaction_id=str(txn.id),
            metadata=metadata or {},
        )
    )
    if applied:
        log.info("payment_credited", payment_id=payment_id, type=payment_type, credits=credits)
        await log_event(str(user.id), "payment_credited", "payment", payment_id, {"credits": credits, "amount_usd": amount_usd})
    balance = await credits_service.get_balance(CreditOwner.for_user(user))
    return {"already_processed": not applied, "credits_added": credits if applied else 0.0, "credits": balance}


def _metadata_credits(metadata: dict[str, Any], key: str) -> float:
    try:
        return float(metadata.get(key) or 0)
    except (TypeError, ValueError):
        return 0.0


async def handle_webhook(payload: bytes, signature: str | None) -> dict[str, Any]:
    event = construct_event(payload, signature)
    event_type = event.get("type")
    obj = (event.get("data") or {}).get("object") or {}
    log.info("stripe_webhook_received", event_id=event.get("id"), type=event_type)

    if event_type == "payment_intent.succeeded":
        metadata = obj.get("metadata") or {}
        credits = _metadata_credits(metadata, "credits")
        user = await _resolve_user(metadata)
        if not credits or not user:
            log.warning("stripe_webhook_unmatched", payment_intent_id=obj.get("id"))
            return {"received": True, "handled": False}
        result = await credit_payment(
            user, obj["id"], "stripe", (obj.get("amount") or 0) / 100, credits, {"event_id": event.get("id")}
        )
        return {"received": True, "handled": True, **result}

    if event_type == "invoice.payment_succeeded":
        subscription_id = obj.get("subscription")
        if not subscription_id:
            return {"received": True, "handled": False}
        client = _get_stripe()
        subscription = (await asyncio.to_thread(client.Subscription.retrieve, subscription_id)).to_dict()
        metadata = subscription.get("metadata") or {}
        credits = _metadata_credits(metadata, "monthly_credits")
        user = await _resolve_user(metadata)
        if not credits or not user:
            log.warning("stripe_webhook_unmatched", invoice_id=obj.get("id"), subscription_id=subscription_id)
            return {"received": True, "handled": False}
        result = await credit_payment(
            user,
            obj["id"],
            "subscription",
            (obj.get("amount_paid") or 0) / 100,
            credits,
            {"event_id": event.get("id"), "subscription_id": subscription_id},
        )
        return {"received": True, "handled": True, **result}

    return {"received": True, "handled": False}


async def verify_payment(user: User, payment_intent_id: str) -> dict[str, Any]:
    """Client-side confirmation path; grants the same credits the webhook would, at most once."""
    client = _get_stripe()
    try:
        intent = (await asyncio.to_thread(client.PaymentIntent.retrieve, payment_intent_id)).to_dict()
    except stripe.InvalidRequestError as e:
        raise NotFoundError("Payment intent not found") from e
    if intent.get("status") != "succeeded":
        raise BadRequestError("Payment not completed", details={"status": intent.get("status")})
    metadata = intent.get("metadata") or {}
    if metadata.get("user_id") != str(user.id):
        log.warning("stripe_verify_wrong_owner", payment_intent_id=payment_intent_id, user_id=str(user.id))
        raise ForbiddenError("Payment belongs to a different account")
    credits = _metadata_credits(metadata, "credits")
    if credits <= 0:
        raise BadRequestError("Payment carries no credits")
    return await credit_payment(user, intent["id"], "stripe", (intent.get("amount") or 0) / 100, credits)
