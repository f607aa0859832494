"""
JWT Token Validation

Tokens are issued by the platform's auth provider and signed with the shared
JWT_SECRET. This service only verifies them and reads the user claims.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from fastapi import HTTPException
from jose import ExpiredSignatureError, JWTError, jwt

from app.config import settings

logger = logging.getLogger(__name__)


def verify_token(token: str) -> Dict[str, Any]:
    """
    Verify a bearer token and return its claims

    Raises:
        HTTPException: 401 if the token is invalid or expired
    """
    try:
        claims = jwt.decode(
            token,
            settings.jwt_secret,
            algorithms=[settings.jwt_algorithm],
            options={"verify_aud": False},
        )
    except ExpiredSignatureError:
        logger.warning("Rejected expired token")
        raise HTTPException(status_code=401, detail="Token has expired")
    except JWTError as e:
        logger.warning(f"Rejected invalid token: {e}")
        raise HTTPException(status_code=401, detail="Invalid authentication token")
    return claims


def create_token(
    user_id: str,
    email: str,
    role: str,
    name: Optional[str] = None,
    expires_in: timedelta = timedelta(hours=1),
) -> str:
    """Sign a token with the shared secret (used by tooling and tests)"""
    now = datetime.now(timezone.utc)
    claims = {
        "sub": user_id,
        "email": email,
        "role": role,
        "iat": now,
        "exp": now + expires_in,
    }
    if name:
        claims["name"] = name
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)
