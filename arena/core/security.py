"""
Wallet identity tokens.

The auth layer upstream verifies wallet ownership and issues a short-lived
JWT whose subject is the lowercase wallet address. This module only encodes
(for tests and internal tooling) and verifies those tokens.
"""

import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt
from pydantic import BaseModel

from .config import get_settings


class TokenData(BaseModel):
    """JWT token payload"""

    sub: str  # wallet address
    exp: datetime
    iat: datetime
    jti: Optional[str] = None


def create_access_token(wallet_address: str, expires_delta: Optional[timedelta] = None) -> str:
    settings = get_settings()

    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.jwt_access_token_expire_minutes)

    now = datetime.now(timezone.utc)
    payload = {
        "sub": wallet_address.lower(),
        "exp": now + expires_delta,
        "iat": now,
        "type": "access",
        "jti": secrets.token_urlsafe(16),
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def verify_token(token: str) -> TokenData:
    """
    Verify and decode a wallet identity token.

    Raises:
        JWTError: If token is invalid, expired or of the wrong type
    """
    settings = get_settings()

    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.ExpiredSignatureError as e:
        raise JWTError("Token has expired") from e
    except jwt.JWTClaimsError as e:
        raise JWTError(f"Invalid token claims: {e}") from e

    if payload.get("type") != "access":
        raise JWTError("Invalid token type")
    if not payload.get("sub"):
        raise JWTError("Token has no subject")

    return TokenData(
        sub=payload["sub"],
        exp=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        iat=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
        jti=payload.get("jti"),
    )
