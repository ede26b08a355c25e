from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt
from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel

from config import settings
from schemas import UserRole

security = HTTPBearer(auto_error=False)


class CurrentUser(BaseModel):
    id: int
    phone: str
    role: UserRole


def create_access_token(user_id: int, phone: str, role: UserRole, expires_hours: Optional[int] = None) -> str:
    """Issue a signed bearer token for a logged-in user"""
    now = datetime.now(timezone.utc)
    claims = {
        "userId": user_id,
        "phone": phone,
        "role": int(role),
        "iat": now,
        "exp": now + timedelta(hours=expires_hours or settings.JWT_EXPIRES_HOURS),
    }
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_access_token(token: str) -> CurrentUser:
    try:
        claims = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.ExpiredSignatureError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token expired"
        )
    except jwt.InvalidTokenError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials"
        )

    try:
        return CurrentUser(id=claims["userId"], phone=claims["phone"], role=UserRole(claims["role"]))
    except (KeyError, ValueError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication credentials"
        )


def get_current_user(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> Optional[CurrentUser]:
    """Get current user from token (optional for public endpoints)"""
    if not credentials:
        return None
    return decode_access_token(credentials.credentials)


def require_auth(credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)) -> CurrentUser:
    """Require authentication"""
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Access token required"
        )
    return decode_access_token(credentials.credentials)


def require_role(allowed_roles: list[UserRole]):
    """Require specific role(s)"""
    def role_checker(user: CurrentUser = Depends(require_auth)) -> CurrentUser:
        if user.role not in allowed_roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Access denied. Required roles: {[role.label for role in allowed_roles]}"
            )
        return user
    return role_checker


def require_admin(x_admin_key: Optional[str] = Header(default=None)) -> None:
    """Admin actions are keyed by a shared secret, not a user role"""
    if not settings.ADMIN_API_KEY:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin API is disabled"
        )
    if x_admin_key != settings.ADMIN_API_KEY:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin key"
        )


# Role-specific dependencies
require_farmer = require_role([UserRole.FARMER])
require_supply_chain_roles = require_role([
    UserRole.FARMER,
    UserRole.DISTRIBUTOR,
    UserRole.RETAILER,
])
