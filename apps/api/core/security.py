"""
Security utilities for bearer authentication on mobile-client reads.

Tokens are HS256 JWTs minted by the account service. Claims used here:
- ``sub``: user id
- ``athlete_id``: Strava athlete id linked to the user
- ``tier``: subscription tier (free / trial / pro)

SECURITY REQUIREMENTS:
- SECRET_KEY must be set via environment variable in production
- SECRET_KEY must be at least 32 characters
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from core.config import settings

ACCESS_TOKEN_EXPIRE_MINUTES = 30 * 24 * 60  # 30 days
DEFAULT_TIER = "free"


@dataclass(frozen=True)
class Principal:
    user_id: str
    athlete_id: int
    tier: str = DEFAULT_TIER


def _secret_key() -> str:
    secret = settings.SECRET_KEY
    if len(secret) < 32:
        raise ValueError(
            "SECRET_KEY must be at least 32 characters. "
            "Generate with: python -c \"import secrets; print(secrets.token_urlsafe(32))\""
        )
    return secret


def create_access_token(data: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """Create a JWT access token."""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, _secret_key(), algorithm=settings.JWT_ALGORITHM)


def decode_access_token(token: str) -> Optional[Dict[str, Any]]:
    """Decode and validate a JWT token."""
    try:
        return jwt.decode(token, _secret_key(), algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        return None


def principal_from_claims(payload: Dict[str, Any]) -> Optional[Principal]:
    """Build the caller identity from token claims, or None if incomplete."""
    user_id = payload.get("sub")
    athlete_id = payload.get("athlete_id")
    if not user_id or athlete_id in (None, ""):
        return None
    try:
        athlete_id = int(athlete_id)
    except (TypeError, ValueError):
        return None
    tier = str(payload.get("tier") or DEFAULT_TIER).lower()
    return Principal(user_id=str(user_id), athlete_id=athlete_id, tier=tier)
