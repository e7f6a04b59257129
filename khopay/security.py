"""
JWT utilities for staff authentication.

Tokens are issued by the POS auth service; this service only verifies them.
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from .config import settings


def create_jwt(
    data: Dict[str, Any],
    secret: Optional[str] = None,
    minutes: int = 60,
    algorithm: Optional[str] = None,
) -> str:
    """
    Create a JWT token with the given claims.

    Args:
        data: Claims to encode (e.g. {"sub": "staff-1", "role": "cashier"})
        secret: Signing secret (defaults to JWT_SECRET_KEY)
        minutes: Token expiry in minutes
        algorithm: JWT algorithm (defaults to JWT_ALGORITHM)
    """
    secret = secret or settings.JWT_SECRET_KEY.get_secret_value()
    algorithm = algorithm or settings.JWT_ALGORITHM
    to_encode = data.copy()
    to_encode["exp"] = datetime.now(timezone.utc) + timedelta(minutes=minutes)
    return jwt.encode(to_encode, secret, algorithm=algorithm)


def decode_jwt(token: str) -> Optional[Dict[str, Any]]:
    """Decode and verify a JWT. Returns None when the token is invalid or expired."""
    try:
        return jwt.decode(
            token,
            settings.JWT_SECRET_KEY.get_secret_value(),
            algorithms=[settings.JWT_ALGORITHM],
        )
    except JWTError:
        return None
