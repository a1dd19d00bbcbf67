# trilled/api/auth.py
import logging
from datetime import datetime, timezone
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from fastapi.responses import RedirectResponse
from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from trilled.auth.auth import (
    AuthService, create_tokens, consume_auth_code, get_current_active_user, token_claims
)
from trilled.auth.cookies import CookieHandlers
from trilled.core.config import settings
from trilled.db.database import get_db
from trilled.models.models import User, RefreshToken, AuthCodePurpose
from trilled.schemas.schemas import (
    UserLogin, TokenResponse, RefreshTokenRequest, UserResponse, SetPasswordRequest
)

router = APIRouter(prefix="/auth", tags=["auth"])
logger = logging.getLogger(__name__)


def set_session_cookie(request: Request, response: Response, access_token: str) -> None:
    CookieHandlers(request, response).set(settings.SESSION_COOKIE_NAME, access_token)


def safe_redirect_path(path: Optional[str]) -> str:
    """Only same-site relative paths are followed after sign-in."""
    if not path or not path.startswith("/") or path.startswith("//"):
        return "/"
    return path


def app_url(path: str, params: Optional[dict] = None) -> str:
    url = f"{settings.APP_URL.rstrip('/')}{path}"
    if params:
        url += f"?{urlencode(params)}"
    return url


@router.post("/login", response_model=TokenResponse)
async def login(
    login_data: UserLogin,
    request: Request,
    response: Response,
    db: AsyncSession = Depends(get_db)
):
    """Login user and return access/refresh tokens; the access token is also set as the session cookie."""
    result = await db.execute(
        select(User).where(
            func.lower(User.email) == login_data.email.lower(),
            User.deleted_at.is_(None)
        )
    )
    user = result.scalars().first()

    if not user or not AuthService.verify_password(login_data.password, user.hashed_password):
        raise HTTPException(status_code=401, detail="Invalid credentials")

    if not user.is_active:
        raise HTTPException(status_code=400, detail="User account is disabled")

    access_token, refresh_token = await create_tokens(user, db)
    set_session_cookie(request, response, access_token)
    logger.info(f"✅ User logged in: {user.email}")

    return TokenResponse(access_token=access_token, refresh_token=refresh_token)


@router.post("/refresh", response_model=TokenResponse)
async def refresh_token(
    refresh_request: RefreshTokenRequest,
    db: AsyncSession = Depends(get_db)
):
    """Exchange a refresh token for a new pair; the old refresh token is revoked."""
    result = await db.execute(
        select(RefreshToken).where(RefreshToken.token == refresh_request.refresh_token)
    )
    token_record = result.scalars().first()

    if not token_record:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid refresh token")

    if token_record.expires_at < datetime.now(timezone.utc):
        await db.delete(token_record)
        await db.commit()
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Refresh token expired")

    result = await db.execute(
        select(User).where(
            User.id == token_record.user_id,
            User.is_active.is_(True),
            User.deleted_at.is_(None)
        )
    )
    user = result.scalars().first()
    if not user:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found or inactive")

    await db.delete(token_record)
    access_token = AuthService.create_access_token(data=token_claims(user))
    new_refresh_token = await AuthService.create_refresh_token(user.id, db)

    return TokenResponse(access_token=access_token, refresh_token=new_refresh_token)


@router.post("/logout")
async def logout(
    refresh_request: RefreshTokenRequest,
    request: Request,
    response: Response,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db)
):
    result = await db.execute(
        select(RefreshToken).where(
            RefreshToken.token == refresh_request.refresh_token,
            RefreshToken.user_id == current_user.id
        )
    )
    token_record = result.scalars().first()
    if token_record:
        await db.delete(token_record)
        await db.commit()

    CookieHandlers(request, response).remove(settings.SESSION_COOKIE_NAME)
    return {"message": "Successfully logged out"}


@router.get("/me", response_model=UserResponse)
async def get_user_info(current_user: User = Depends(get_current_active_user)):
    return current_user


@router.post("/set-password")
async def set_password(
    password_data: SetPasswordRequest,
    current_user: User = Depends(get_current_active_user),
    db: AsyncSession = Depends(get_db)
):
    """Set the password of the signed-in user, typically right after an invite or signup link."""
    current_user.hashed_password = AuthService.get_password_hash(password_data.password)
    if current_user.email_verified_at is None:
        current_user.email_verified_at = datetime.now(timezone.utc)
    await db.commit()
    logger.info(f"🔑 Password set for {current_user.email}")
    return {"message": "Password updated successfully"}


@router.get("/callback")
async def auth_callback(
    request: Request,
    code: Optional[str] = None,
    type: Optional[str] = None,
    redirectTo: Optional[str] = None,
    db: AsyncSession = Depends(get_db)
):
    """Exchange a one-time code from an email link for a session, then continue in the app."""
    access_token = None
    if code:
        try:
            auth_code = await consume_auth_code(db, code)
        except ValueError as e:
            logger.warning(f"⚠️  Rejected auth code: {e}")
            return RedirectResponse(app_url("/login", {"error": str(e)}), status_code=303)

        user = await db.get(User, auth_code.user_id)
        if user is None or user.deleted_at is not None:
            return RedirectResponse(app_url("/login", {"error": "User not found"}), status_code=303)

        if user.email_verified_at is None:
            user.email_verified_at = datetime.now(timezone.utc)
        access_token, _ = await create_tokens(user, db)

        # Invited users choose their password the same way new signups do
        if auth_code.purpose in (AuthCodePurpose.SIGNUP.value, AuthCodePurpose.INVITE.value):
            type = "signup"

    target = "/set-password" if type == "signup" else safe_redirect_path(redirectTo)
    response = RedirectResponse(app_url(target), status_code=303)
    if access_token:
        set_session_cookie(request, response, access_token)
    return response


@router.get("/initial-verify")
async def initial_verify(token: Optional[str] = None, type: Optional[str] = None):
    params = {}
    if token:
        params["token"] = token
    if type:
        params["type"] = type
    return RedirectResponse(app_url("/auth/verify", params), status_code=303)
