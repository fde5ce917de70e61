from typing import Optional

from jose import jwt, JWTError

from ..config import get_settings
from ..models.auth import TokenPayload


def decode_token(token: str) -> Optional[TokenPayload]:
    """Decode and validate a JWT access token issued by the identity provider."""
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
        if payload.get("type", "access") != "access":
            return None
        return TokenPayload(
            sub=payload["sub"],
            email=payload["email"],
            role=payload["role"],
            exp=payload["exp"],
        )
    except (JWTError, KeyError, ValueError):
        return None
