# trilled/auth/auth.py
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple
from uuid import UUID
import hashlib
import secrets
import logging

from jose import JWTError, jwt
from passlib.context import CryptContext
from fastapi import Depends, HTTPException, status, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select

from trilled.auth.cookies import CookieHandlers
from trilled.core.config import settings
from trilled.db.database import get_db
from trilled.models.models import User, RefreshToken, AuthCode, UserRole
from trilled.schemas.schemas import TokenPayload

logger = logging.getLogger(__name__)

# Password hashing
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# Bearer is optional so the session cookie can be used instead
security = HTTPBearer(auto_error=False)

STAFF_ROLES = (UserRole.SUPER_ADMIN.value, UserRole.ADMIN.value, UserRole.AGENT.value)
ADMIN_ROLES = (UserRole.SUPER_ADMIN.value, UserRole.ADMIN.value)

# Roles each staff role may hand out, with the refusal shown for each action
ASSIGNABLE_ROLES = {
    UserRole.SUPER_ADMIN.value: {
        "create": ({"admin", "agent", "lead", "customer"}, "Cannot create super_admin users"),
        "update": ({"admin", "agent", "lead", "customer"}, "Cannot create super_admin users"),
    },
    UserRole.ADMIN.value: {
        "create": ({"agent", "lead", "customer"}, "Admins can only create agents, leads, and customers"),
        "update": ({"agent", "lead", "customer"}, "Admins can only update users to agent, lead, or customer roles"),
    },
    UserRole.AGENT.value: {
        "create": ({"lead", "customer"}, "Agents can only create leads and customers"),
        "update": ({"lead", "customer"}, "Agents can only update users to lead or customer roles"),
    },
}


class AuthService:
    @staticmethod
    def verify_password(plain_password: str, hashed_password: Optional[str]) -> bool:
        """Verify a password against a hash. Users without a password never match."""
        if not hashed_password:
            return False
        return pwd_context.verify(plain_password, hashed_password)

    @staticmethod
    def get_password_hash(password: str) -> str:
        return pwd_context.hash(password)

    @staticmethod
    def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
        to_encode = data.copy()
        if expires_delta:
            expire = datetime.now(timezone.utc) + expires_delta
        else:
            expire = datetime.now(timezone.utc) + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

        to_encode.update({"exp": expire})
        return jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)

    @staticmethod
    async def create_refresh_token(user_id, db: AsyncSession) -> str:
        """Create a refresh token and store it in the database."""
        token = secrets.token_urlsafe(32)
        expires_at = datetime.now(timezone.utc) + timedelta(days=settings.REFRESH_TOKEN_EXPIRE_DAYS)

        db.add(RefreshToken(token=token, user_id=user_id, expires_at=expires_at))
        await db.commit()

        return token

    @staticmethod
    def decode_token(token: str) -> TokenPayload:
        try:
            payload = jwt.decode(
                token,
                settings.JWT_SECRET_KEY,
                algorithms=[settings.JWT_ALGORITHM]
            )
            return TokenPayload(**payload)
        except JWTError:
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Could not validate credentials",
                headers={"WWW-Authenticate": "Bearer"},
            )


def get_password_hash(password: str) -> str:
    return AuthService.get_password_hash(password)


def token_claims(user: User) -> dict:
    return {
        "sub": str(user.id),
        "organization_id": str(user.organization_id) if user.organization_id else None,
        "email": user.email,
        "role": user.role
    }


async def create_tokens(user: User, db: AsyncSession) -> Tuple[str, str]:
    """Issue an access/refresh token pair for a user."""
    access_token = AuthService.create_access_token(data=token_claims(user))
    refresh_token = await AuthService.create_refresh_token(user.id, db)
    return access_token, refresh_token


def _hash_code(code: str) -> str:
    return hashlib.sha256(code.encode("utf-8")).hexdigest()


async def create_auth_code(db: AsyncSession, user_id, purpose: str) -> str:
    """Create a one-time code and return it in plain form; only the hash is persisted."""
    code = secrets.token_urlsafe(32)
    db.add(AuthCode(
        user_id=user_id,
        code_hash=_hash_code(code),
        purpose=purpose,
        expires_at=datetime.now(timezone.utc) + timedelta(hours=settings.AUTH_CODE_EXPIRE_HOURS)
    ))
    await db.commit()
    return code


async def consume_auth_code(db: AsyncSession, code: str) -> AuthCode:
    """Mark a one-time code as used. Raises ValueError for unknown, used or expired codes."""
    result = await db.execute(
        select(AuthCode).where(AuthCode.code_hash == _hash_code(code))
    )
    auth_code = result.scalar_one_or_none()

    if auth_code is None:
        raise ValueError("Invalid code")
    if auth_code.used_at is not None:
        raise ValueError("Code already used")
    if auth_code.expires_at < datetime.now(timezone.utc):
        raise ValueError("Code expired")

    auth_code.used_at = datetime.now(timezone.utc)
    await db.commit()
    return auth_code


def _extract_token(request: Request, credentials: Optional[HTTPAuthorizationCredentials]) -> Optional[str]:
    if credentials and credentials.credentials:
        return credentials.credentials
    return CookieHandlers(request).get(settings.SESSION_COOKIE_NAME)


async def _load_user(db: AsyncSession, token: str) -> Optional[User]:
    token_data = AuthService.decode_token(token)
    try:
        user_id = UUID(token_data.sub)
    except ValueError:
        return None

    result = await db.execute(
        select(User).where(User.id == user_id, User.deleted_at.is_(None))
    )
    return result.scalar_one_or_none()


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db)
) -> User:
    """Get current user from the bearer token or the session cookie."""
    token = _extract_token(request, credentials)
    if not token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    user = await _load_user(db, token)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="User not found",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return user


async def get_optional_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: AsyncSession = Depends(get_db)
) -> Optional[User]:
    """Like get_current_user, but anonymous callers get None instead of a 401."""
    token = _extract_token(request, credentials)
    if not token:
        return None
    try:
        return await _load_user(db, token)
    except HTTPException:
        return None


async def get_current_active_user(
    current_user: User = Depends(get_current_user)
) -> User:
    if not current_user.is_active:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Inactive user"
        )
    return current_user


def require_roles(*roles: str):
    """Dependency factory rejecting callers whose role is not listed."""
    async def role_checker(current_user: User = Depends(get_current_active_user)) -> User:
        if current_user.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Forbidden - Insufficient permissions"
            )
        return current_user
    return role_checker


require_admin_user = require_roles(*ADMIN_ROLES)
require_staff_user = require_roles(*STAFF_ROLES)


def check_role_assignment(actor_role: str, target_role: str, action: str = "create") -> None:
    """Raise 403 when actor_role may not create or update a user into target_role."""
    rules = ASSIGNABLE_ROLES.get(actor_role)
    if rules is None:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Forbidden - Insufficient permissions"
        )

    allowed, message = rules[action]
    if target_role not in allowed:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=message)


def check_same_organization(actor: User, organization_id, detail: str) -> None:
    """Non-super-admins may only act on records inside their own organization."""
    if actor.role == UserRole.SUPER_ADMIN.value or organization_id is None:
        return
    if str(organization_id) != str(actor.organization_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


async def require_staff_or_research_callback(
    request: Request,
    current_user: Optional[User] = Depends(get_optional_user)
) -> Optional[User]:
    """Staff session, or the research workflow calling back with the shared secret (returns None)."""
    secret = settings.RESEARCH_CALLBACK_SECRET
    provided = request.headers.get("X-Research-Key")
    if secret and provided and secrets.compare_digest(provided, secret):
        logger.debug(f"Research callback accepted for {request.url.path}")
        return None

    if current_user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required"
        )
    if current_user.role not in STAFF_ROLES:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Forbidden - Insufficient permissions"
        )
    return current_user
