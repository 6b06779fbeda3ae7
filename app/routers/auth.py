from fastapi import APIRouter, Depends, Response

from app.deps import SESSION_COOKIE_NAME, get_current_user
from app.models.user import User
from app.services import users as user_service

router = APIRouter()


@router.get("/me")
async def auth_me(user: User = Depends(get_current_user)):
    """Return current user with balance. Requires session cookie or bearer token."""
    return user_service.profile(user)


@router.post("/logout")
async def auth_logout(response: Response, user: User = Depends(get_current_user)):
    """Invalidate every session token of this user and clear the cookie."""
    await user_service.logout(user)
    response.delete_cookie(SESSION_COOKIE_NAME, path="/")
    return {"ok": True}
