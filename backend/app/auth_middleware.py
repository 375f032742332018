"""
JWT Authentication Middleware.

Resolves the caller from a signed JWT carrying the user id (``sub``) and
role. Token issuance belongs to the account service; create_access_token
exists for tests and tooling.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Header, HTTPException, Depends, Request
from jose import JWTError, jwt

from app.models.user import UserRole

logger = logging.getLogger("app.auth")

# JWT Configuration
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = 60 * 24 * 7  # 7 days


@dataclass(frozen=True)
class CurrentUser:
    id: str
    role: UserRole = UserRole.CUSTOMER
    name: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role.is_admin


def _get_secret_key() -> str:
    """Lazy-load the secret key to support testing."""
    from app.config import get_settings
    return get_settings().SECRET_KEY


def create_access_token(
    user_id: str,
    role: UserRole = UserRole.CUSTOMER,
    name: Optional[str] = None,
    expires_delta: Optional[timedelta] = None,
) -> str:
    """
    Create a signed JWT for a user.

    Args:
        user_id: The user's UUID.
        role: CUSTOMER, ADMIN or SUPER_ADMIN.
        name: Display name used in notification text.
        expires_delta: Optional custom expiration time.

    Returns:
        A signed JWT string.
    """
    to_encode = {"sub": user_id, "role": UserRole(role).value}
    if name:
        to_encode["name"] = name

    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode["exp"] = expire

    encoded_jwt = jwt.encode(to_encode, _get_secret_key(), algorithm=ALGORITHM)
    return encoded_jwt


async def get_current_user(
    request: Request,
    authorization: Optional[str] = Header(None, alias="Authorization")
) -> CurrentUser:
    """
    FastAPI dependency that extracts and validates the caller from a JWT.
    Supports both 'Authorization: Bearer' header and 'auth_token' cookie.
    """
    credentials_exception = HTTPException(
        status_code=401,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    token = None

    # 1. Try Authorization Header
    if authorization and authorization.startswith("Bearer "):
        token = authorization[7:]

    # 2. Try HttpOnly Cookie (Fallback)
    if not token:
        token = request.cookies.get("auth_token")

    if not token:
        raise credentials_exception

    try:
        payload = jwt.decode(token, _get_secret_key(), algorithms=[ALGORITHM])
        user_id: str = payload.get("sub")

        if user_id is None:
            raise credentials_exception

        role = UserRole(payload.get("role", UserRole.CUSTOMER.value))
    except (JWTError, ValueError):
        raise credentials_exception

    logger.debug(f"🔑 Authenticated user {user_id} ({role.value})")
    return CurrentUser(id=user_id, role=role, name=payload.get("name"))


async def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    """Dependency for the administrative routes."""
    if not user.is_admin:
        logger.warning(f"🛑 Non-admin {user.id} attempted an admin operation")
        raise HTTPException(status_code=403, detail="Admin access required")
    return user
