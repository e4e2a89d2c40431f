"""
Authentication dependencies.

Provides FastAPI dependencies for:
- the mobile caller (bearer JWT)
- operator endpoints (shared ops key)
"""
import hmac
from typing import Optional

from fastapi import Depends, Header
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from core.config import settings
from core.exceptions import ForbiddenError, ServiceUnavailableError, UnauthorizedError
from core.security import Principal, decode_access_token, principal_from_claims

# Use auto_error=False to handle missing credentials manually and return 401 (not 403)
security = HTTPBearer(auto_error=False)


def get_current_principal(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
) -> Principal:
    """
    Identify the caller from the JWT.

    Raises UnauthorizedError if the token is missing, invalid or lacks an athlete.
    """
    if not credentials:
        raise UnauthorizedError("Not authenticated")

    payload = decode_access_token(credentials.credentials)
    if not payload:
        raise UnauthorizedError("Invalid authentication credentials")

    principal = principal_from_claims(payload)
    if principal is None:
        raise UnauthorizedError("Invalid token payload")
    return principal


def require_ops_key(x_ops_key: Optional[str] = Header(None, alias="X-Ops-Key")) -> None:
    """Guard for operator endpoints."""
    if not settings.OPS_API_KEY:
        raise ServiceUnavailableError("ops endpoints disabled: OPS_API_KEY not configured")
    if not x_ops_key or not hmac.compare_digest(x_ops_key, settings.OPS_API_KEY):
        raise ForbiddenError("Invalid ops key")
