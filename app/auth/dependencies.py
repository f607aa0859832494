"""
Authentication Dependencies
FastAPI dependencies for bearer-token authentication and role checks
"""
import logging
from typing import List

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.auth.jwt_tokens import verify_token
from app.models.user import User, UserRole

logger = logging.getLogger(__name__)

security = HTTPBearer()


async def get_current_user(
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> User:
    """
    Extract and validate the user from the bearer token

    Returns:
        User built from the token claims (no database lookup)

    Raises:
        HTTPException: If the token is invalid or lacks required claims
    """
    if not credentials:
        raise HTTPException(status_code=401, detail="No Authorization header provided")

    claims = verify_token(credentials.credentials)

    user_id = claims.get("sub") or claims.get("user_id")
    if not user_id:
        logger.error("Token missing user identifier (sub)")
        raise HTTPException(status_code=401, detail="Token missing user identifier (sub)")

    try:
        role = UserRole(str(claims.get("role", "")).upper())
    except ValueError:
        logger.warning(f"Token for user {user_id} carries unknown role: {claims.get('role')}")
        raise HTTPException(status_code=401, detail="Token carries an unknown role")

    user = User(
        id=str(user_id),
        email=claims.get("email", ""),
        name=claims.get("name"),
        role=role,
    )
    logger.debug(f"Authenticated user {user.id} with role {user.role.value}")
    return user


def require_roles(required_roles: List[UserRole]):
    """
    Dependency factory to require specific roles

    Args:
        required_roles: List of roles that are allowed access

    Returns:
        Dependency function that validates user roles
    """
    async def role_checker(current_user: User = Depends(get_current_user)) -> User:
        if current_user.role not in required_roles:
            raise HTTPException(
                status_code=403,
                detail=f"Insufficient permissions. Required roles: {[role.value for role in required_roles]}"
            )
        return current_user

    return role_checker


def is_staff(user: User) -> bool:
    return user.role in (UserRole.ADMIN, UserRole.COACH)
