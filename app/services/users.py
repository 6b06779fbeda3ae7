from datetime import datetime
from typing import Any

from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from app.core.audit import log_event
from app.core.config import get_settings
from app.core.exceptions import UnauthorizedError
from app.core.logging import get_logger
from app.models.user import User
from app.services import credits as credits_service
from app.services.credits import CreditOwner

log = get_logger(__name__)


def normalize_wallet_address(address: str | None) -> str | None:
    """EVM addresses are case-insensitive; other chains keep their encoding."""
    if not address:
        return None
    address = address.strip()
    return address.lower() if address.startswith("0x") else address


def normalize_email(email: str | None) -> str | None:
    if not email:
        return None
    return email.strip().lower() or None


async def find_user_by_identifier(
    wallet_address: str | None = None,
    user_id: str | None = None,
    email: str | None = None,
) -> User | None:
    """Look a user up by wallet, then user_id, then email."""
    wallet_address = normalize_wallet_address(wallet_address)
    email = normalize_email(email)
    if wallet_address:
        user = await User.find_one(User.wallet_address == wallet_address)
        if user:
            return user
    if user_id:
        user = await User.find_one(User.user_id == user_id)
        if user:
            return user
    if email:
        return await User.find_one(User.email == email)
    return None


async def get_or_create_user(identity: dict[str, Any]) -> User:
    wallet_address = normalize_wallet_address(identity.get("wallet_address"))
    email = normalize_email(identity.get("email"))
    user_id = identity.get("user_id")
    if not (wallet_address or user_id or email):
        raise UnauthorizedError("Session carries no identity")

    user = await find_user_by_identifier(wallet_address, user_id, email)
    if user:
        return user

    user = User(wallet_address=wallet_address, email=email, last_login_at=datetime.utcnow())
    if user_id:
        user.user_id = user_id
    try:
        await user.insert()
    except DuplicateKeyError:
        # concurrent first request for the same identity
        user = await find_user_by_identifier(wallet_address, user_id, email)
        if user is None:
            raise
        return user

    log.info("user_created", user_id=user.user_id, has_wallet=bool(wallet_address), has_email=bool(email))
    await log_event(str(user.id), "user_created", "user", str(user.id), {"email": email, "wallet": wallet_address})
    if email and not wallet_address:
        await grant_signup_credits(user)
        user = await User.get(user.id) or user
    return user


async def grant_signup_credits(user: User) -> bool:
    amount = get_settings().free_signup_credits
    if amount <= 0:
        return False
    _, applied = await credits_service.grant(
        CreditOwner.for_user(user),
        amount,
        "signup_bonus",
        f"signup_{user.id}",
        reference_type="user",
        reference_id=user.user_id,
    )
    return applied


async def user_from_session(payload: dict[str, Any]) -> User:
    user = await get_or_create_user(payload)
    if payload.get("session_version", 0) != user.session_version:
        raise UnauthorizedError("Session invalidated")
    return user


async def logout(user: User) -> int:
    """Invalidate every outstanding session token of this user."""
    doc = await User.get_motor_collection().find_one_and_update(
        {"_id": user.id},
        {"$inc": {"session_version": 1}, "$set": {"updated_at": datetime.utcnow()}},
        projection={"session_version": 1},
        return_document=ReturnDocument.AFTER,
    )
    version = doc["session_version"] if doc else user.session_version + 1
    log.info("user_logout", user_id=user.user_id, session_version=version)
    return version


def profile(user: User) -> dict[str, Any]:
    return {
        "id": str(user.id),
        "user_id": user.user_id,
        "wallet_address": user.wallet_address,
        "email": user.email,
        "credits": round(user.credits, 2),
        "total_credits_earned": round(user.total_credits_earned, 2),
        "total_credits_spent": round(user.total_credits_spent, 2),
        "created_at": user.created_at,
        "last_login_at": user.last_login_at,
    }
