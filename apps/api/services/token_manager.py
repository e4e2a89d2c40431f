"""
Token Manager

Owns provider OAuth credentials per athlete. Every provider call asks for a
token through ``get_valid_access_token``, which refreshes the access token
when it expires within the safety buffer (5 minutes by default) and persists
the new pair before returning it.

Refresh failures are typed:
- CredentialsRevokedError: the provider rejected the refresh token. Terminal;
  the caller should run the deauthorization path.
- TokenRefreshTransientError: network error, 429 or 5xx. Safe to retry later.
"""
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional

import requests

from services.persistence import ActivityRepository
from services.token_encryption import TokenEncryption

logger = logging.getLogger(__name__)


class CredentialsError(RuntimeError):
    def __init__(self, message: str, *, athlete_id: Optional[int] = None):
        super().__init__(message)
        self.athlete_id = athlete_id


class CredentialsNotFoundError(CredentialsError):
    """No stored credentials for the athlete."""


class CredentialsRevokedError(CredentialsError):
    """Refresh token rejected by the provider (revoked or invalid)."""


class TokenRefreshTransientError(CredentialsError):
    """Refresh failed for a reason that may clear up on retry."""


@dataclass
class AthleteCredential:
    athlete_id: int
    access_token: str
    refresh_token: Optional[str]
    expires_at: Optional[datetime]
    scopes: List[str] = field(default_factory=list)


class TokenManager:
    def __init__(
        self,
        repository: ActivityRepository,
        encryption: TokenEncryption,
        client_id: Optional[str],
        client_secret: Optional[str],
        token_url: str = "https://www.strava.com/oauth/token",
        buffer_s: int = 300,
        timeout_s: float = 30,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.repository = repository
        self.encryption = encryption
        self.client_id = client_id
        self.client_secret = client_secret
        self.token_url = token_url
        self.buffer_s = max(300, int(buffer_s))
        self.timeout_s = timeout_s
        self.session = session or requests.Session()
        self.clock = clock

    def get_credentials(self, athlete_id: int) -> AthleteCredential:
        record = self.repository.get_credentials(athlete_id)
        if record is None or not record.access_token:
            raise CredentialsNotFoundError(f"No credentials for athlete {athlete_id}", athlete_id=athlete_id)
        access_token = self.encryption.decrypt(record.access_token)
        if not access_token:
            raise CredentialsRevokedError(f"Stored access token unreadable for athlete {athlete_id}", athlete_id=athlete_id)
        return AthleteCredential(
            athlete_id=record.athlete_id,
            access_token=access_token,
            refresh_token=self.encryption.decrypt(record.refresh_token),
            expires_at=record.expires_at,
            scopes=list(record.scopes),
        )

    def needs_refresh(self, credential: AthleteCredential) -> bool:
        if credential.expires_at is None:
            return True
        return credential.expires_at.timestamp() - self.clock() < self.buffer_s

    def get_valid_access_token(self, athlete_id: int) -> str:
        credential = self.get_credentials(athlete_id)
        if self.needs_refresh(credential):
            credential = self.refresh(credential)
        return credential.access_token

    def refresh(self, credential: AthleteCredential) -> AthleteCredential:
        """Exchange the refresh token for a new pair and persist it."""
        athlete_id = credential.athlete_id
        if not credential.refresh_token:
            raise CredentialsRevokedError(f"No refresh token for athlete {athlete_id}", athlete_id=athlete_id)

        data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "grant_type": "refresh_token",
            "refresh_token": credential.refresh_token,
        }
        try:
            r = self.session.post(self.token_url, data=data, timeout=self.timeout_s)
        except requests.exceptions.RequestException as e:
            raise TokenRefreshTransientError(f"Token refresh failed for athlete {athlete_id}: {e}", athlete_id=athlete_id) from e

        if r.status_code in (400, 401, 403):
            logger.warning(f"Token refresh rejected ({r.status_code}) for athlete {athlete_id}")
            raise CredentialsRevokedError(f"Refresh token rejected for athlete {athlete_id}", athlete_id=athlete_id)
        if r.status_code >= 400:
            raise TokenRefreshTransientError(
                f"Token endpoint returned {r.status_code} for athlete {athlete_id}", athlete_id=athlete_id
            )

        try:
            token = r.json()
            access_token = token["access_token"]
            expires_at = datetime.fromtimestamp(int(token["expires_at"]), tz=timezone.utc)
        except (ValueError, KeyError, TypeError) as e:
            raise TokenRefreshTransientError(
                f"Malformed token response for athlete {athlete_id}: {e}", athlete_id=athlete_id
            ) from e

        refresh_token = token.get("refresh_token") or credential.refresh_token
        self.repository.save_credentials(
            athlete_id,
            self.encryption.encrypt(access_token),
            self.encryption.encrypt(refresh_token),
            expires_at,
            credential.scopes or None,
        )
        logger.info(f"Token refresh successful for athlete {athlete_id}")
        return AthleteCredential(
            athlete_id=athlete_id,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
            scopes=credential.scopes,
        )
