"""
API dependencies for FastAPI dependency injection.

Provides common dependencies like database sessions and authentication.
"""
from typing import Optional

from fastapi import Depends
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from jwt.exceptions import InvalidTokenError
from sqlalchemy.orm import Session

from carwash.api.middleware.error_handler import ForbiddenException, UnauthorizedException
from carwash.lib.db import get_db as get_db_session
from carwash.lib.jwt import get_user_from_token
from carwash.models.users import User


# Re-export get_db for convenience
get_db = get_db_session


# HTTP Bearer token security scheme; missing header is turned into our 401 below
security = HTTPBearer(auto_error=False)


def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db),
) -> User:
    """
    Dependency to get current authenticated user from JWT token.

    Args:
        credentials: Bearer token from Authorization header
        db: Database session

    Returns:
        Authenticated, active user

    Raises:
        UnauthorizedException: 401 if token missing/invalid or user not found
    """
    if credentials is None:
        raise UnauthorizedException("Missing bearer token")

    try:
        user_id, _role = get_user_from_token(credentials.credentials)
    except InvalidTokenError as e:
        raise UnauthorizedException(f"Could not validate credentials: {e}")

    user = db.get(User, user_id)
    if user is None or not user.is_active:
        raise UnauthorizedException("User not found")

    return user


def require_staff(user: User = Depends(get_current_user)) -> User:
    """Admin, superadmin, manager or dispatcher."""
    if not user.is_staff:
        raise ForbiddenException("Staff role required")
    return user
