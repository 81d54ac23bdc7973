import logging
from typing import Optional, Dict, Any

import jwt

from app.core.config import settings

logger = logging.getLogger(__name__)


def decode_access_token(token: str) -> Optional[Dict[str, Any]]:
    """
    Decode a JWT access token issued by the auth service.
    
    Returns the claims, or None if the token is invalid or expired.
    """
    try:
        return jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM]
        )
    except jwt.PyJWTError as e:
        logger.debug(f"Rejected access token: {e}")
        return None


def create_access_token(user_id: str, role: str = "user") -> str:
    """Issue a token for a principal (used by tooling and tests)."""
    return jwt.encode(
        {"sub": user_id, "role": role},
        settings.JWT_SECRET_KEY,
        algorithm=settings.JWT_ALGORITHM
    )
