"""
Authentication and authorization utilities for the storefront.

Validates JWT session tokens issued by the external identity service. Guest
checkout is allowed, so some routes accept an absent token.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from .config import Settings
from .schemas import Actor

logger = logging.getLogger(__name__)

ACCESS_TOKEN_EXPIRE_MINUTES = 30

# Security schemes for JWT bearer tokens
security = HTTPBearer()
optional_security = HTTPBearer(auto_error=False)


class CurrentUser(Actor):
    """Current authenticated user information."""
    id: str
    email: str
    role: str
    token: str


def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def create_access_token(
    data: dict, settings: Settings, expires_delta: Optional[timedelta] = None
) -> str:
    """
    Create a JWT access token, as the identity service does.

    Args:
        data: Claims to encode (sub, email, role)
        settings: Provides the signing key and algorithm
        expires_delta: Optional custom expiration time delta

    Returns:
        Encoded JWT token string
    """
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str, settings: Settings) -> CurrentUser:
    """
    Decode and validate a bearer token.

    Raises:
        HTTPException: 401 if the token is invalid, expired or missing claims
    """
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError as e:
        logger.error(f"JWT validation error: {e}")
        raise credentials_exception

    user_id = payload.get("sub")
    email = payload.get("email")
    role = payload.get("role")
    if user_id is None or email is None or role is None:
        raise credentials_exception
    return CurrentUser(id=str(user_id), email=email, role=role, token=token)


def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    settings: Settings = Depends(get_settings),
) -> CurrentUser:
    """
    FastAPI dependency to get the current authenticated user from JWT token.

    Raises:
        HTTPException: 401 if token is invalid
    """
    return decode_token(credentials.credentials, settings)


def get_optional_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(optional_security),
    settings: Settings = Depends(get_settings),
) -> Optional[CurrentUser]:
    """Like get_current_user, but None for anonymous (guest) callers. A bad token is still a 401."""
    if credentials is None:
        return None
    return decode_token(credentials.credentials, settings)


def require_admin(current_user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    """
    FastAPI dependency to require admin role.

    Raises:
        HTTPException: 403 if user is not an admin
    """
    if current_user.role != "admin":
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin privileges required"
        )
    return current_user
