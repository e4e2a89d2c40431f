"""
Custom exception classes and error handling.

Provides consistent, machine-readable error responses for the mobile client.
Provider error text is never passed through verbatim; callers get an
``error`` code and a short ``reason``.
"""
import time
from fastapi import HTTPException, status
from typing import Optional, Dict, Any


class APIException(HTTPException):
    """Base API exception with consistent structure."""

    def __init__(
        self,
        status_code: int,
        detail: str,
        error_code: Optional[str] = None,
        headers: Optional[Dict[str, Any]] = None,
        extra: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(status_code=status_code, detail=detail, headers=headers)
        self.error_code = error_code
        self.extra = extra or {}

    def to_body(self) -> Dict[str, Any]:
        body = {"error": self.error_code or "ERROR", "reason": self.detail}
        body.update(self.extra)
        return body


class NotFoundError(APIException):
    """Resource not found."""

    def __init__(self, resource: str, identifier: str):
        super().__init__(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"{resource} not found: {identifier}",
            error_code="NOT_FOUND"
        )


class UnauthorizedError(APIException):
    """Authentication required."""

    def __init__(self, detail: str = "Authentication required"):
        super().__init__(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=detail,
            error_code="UNAUTHORIZED",
            headers={"WWW-Authenticate": "Bearer"}
        )


class ForbiddenError(APIException):
    """Access denied."""

    def __init__(self, detail: str = "Access denied"):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=detail,
            error_code="FORBIDDEN"
        )


class RateLimitExceededError(APIException):
    """Tier or provider budget exhausted. Retryable after ``reset_at`` (epoch ms)."""

    def __init__(self, reason: str, reset_at_ms: int, limit: Optional[int] = None, remaining: int = 0):
        retry_after = max(1, int((reset_at_ms / 1000.0) - time.time()))
        headers = {
            "Retry-After": str(retry_after),
            "X-RateLimit-Remaining": str(remaining),
            "X-RateLimit-Reset": str(reset_at_ms),
        }
        if limit is not None:
            headers["X-RateLimit-Limit"] = str(limit)
        super().__init__(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail=reason,
            error_code="RATE_LIMIT_EXCEEDED",
            headers=headers,
            extra={"reset_at": reset_at_ms},
        )


class ProviderUnavailableAPIError(APIException):
    """Upstream provider failed or is unreachable."""

    def __init__(self, reason: str = "provider_unavailable"):
        super().__init__(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail=reason,
            error_code="PROVIDER_UNAVAILABLE"
        )


class ProviderAuthorizationError(APIException):
    """Athlete has revoked access or holds no provider credentials."""

    def __init__(self, reason: str = "credentials_invalid"):
        super().__init__(
            status_code=status.HTTP_409_CONFLICT,
            detail=reason,
            error_code="PROVIDER_NOT_CONNECTED"
        )


class ServiceUnavailableError(APIException):
    """A dependency this request cannot proceed without is down."""

    def __init__(self, reason: str):
        super().__init__(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=reason,
            error_code="SERVICE_UNAVAILABLE"
        )
