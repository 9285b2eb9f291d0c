"""Verification of backend-as-a-service session tokens."""

from typing import Optional

from jose import JWTError, jwt

from app.config import get_settings

settings = get_settings()


def decode_access_token(token: str) -> Optional[dict]:
    """Return the JWT claims, or None when the token is invalid, expired or for another audience."""
    try:
        return jwt.decode(
            token,
            settings.SUPABASE_JWT_SECRET,
            algorithms=[settings.ALGORITHM],
            audience=settings.SUPABASE_JWT_AUDIENCE,
        )
    except JWTError:
        return None
