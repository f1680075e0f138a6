import logging
import requests
from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import urlencode

from mailsync.config import settings
from mailsync.core.locks import KeyedLock
from mailsync.db.store import ConnectionStore, ConnectionState

logger = logging.getLogger(__name__)

AUTHORIZATION_URL = "/auth/authorize"
TOKEN_URL = "/auth/token"
REFRESH_URL = "/auth/refresh"
ACCOUNT_URL = "/account"

SCOPE = "Mail.Read Mail.ReadWrite Mail.Send Mail.Drafts Mail.All"


def _client_auth():
    return (settings.AURINKO_CLIENT_ID, settings.AURINKO_CLIENT_SECRET)


def get_authorization_url() -> str:
    params = {
        "clientId": settings.AURINKO_CLIENT_ID,
        "serviceType": settings.AURINKO_SERVICE_TYPE,
        "scopes": SCOPE,
        "responseType": "code",
        "returnUrl": settings.AURINKO_RETURN_URL,
    }
    return f"{settings.AURINKO_API_URL}{AUTHORIZATION_URL}?{urlencode(params)}"


def exchange_code_for_token(code: str) -> dict:
    """Returns ``{accountId, accessToken, refreshToken?, expiresIn?}``."""
    response = requests.post(
        f"{settings.AURINKO_API_URL}{TOKEN_URL}/{code}",
        auth=_client_auth(),
        timeout=settings.REQUEST_TIMEOUT_SECONDS,
    )
    response.raise_for_status()
    return response.json()


def get_account_details(access_token: str) -> dict:
    response = requests.get(
        f"{settings.AURINKO_API_URL}{ACCOUNT_URL}",
        headers={"Authorization": f"Bearer {access_token}"},
        timeout=settings.REQUEST_TIMEOUT_SECONDS,
    )
    response.raise_for_status()
    return response.json()


def expiry_from_lifetime(expires_in: Optional[int], now: Optional[datetime] = None) -> datetime:
    now = now or datetime.now(timezone.utc)
    return now + timedelta(seconds=expires_in or settings.DEFAULT_TOKEN_LIFETIME_SECONDS)


class TokenManager:
    """Owns the access / refresh token lifecycle of each connection.

    Refreshes are single-flight per connection: concurrent callers that all see
    an expiring token queue on the same lock, and whoever gets in after the
    first refresh finds a valid token and skips the provider call. Without this
    the provider may rotate the refresh token under the second caller.
    """

    def __init__(self, store: ConnectionStore, margin_seconds: Optional[int] = None, now=None):
        self.store = store
        self.margin = timedelta(
            seconds=settings.TOKEN_EXPIRY_MARGIN_SECONDS if margin_seconds is None else margin_seconds
        )
        self._now = now or (lambda: datetime.now(timezone.utc))
        self._refresh_locks = KeyedLock()

    def is_token_valid(self, connection: ConnectionState) -> bool:
        if not connection.is_authenticated:
            return False
        # Providers that do not report expiry are trusted until they answer 401
        if connection.token_expires_at is None:
            return True
        return connection.token_expires_at > self._now() + self.margin

    def needs_reauth(self, connection_id: str) -> bool:
        connection = self.store.get(connection_id)
        return connection is None or not connection.is_authenticated

    def refresh(self, connection_id: str) -> bool:
        connection = self.store.get(connection_id)
        if connection is None:
            logger.error("[Token] Connection not found for refresh: %s", connection_id)
            return False

        if not connection.refresh_token:
            logger.error("[Token] No refresh token available for connection %s", connection_id)
            return False

        logger.info("[Token] Refreshing access token for connection %s", connection_id)
        try:
            response = requests.post(
                f"{settings.AURINKO_API_URL}{REFRESH_URL}",
                json={"refreshToken": connection.refresh_token},
                auth=_client_auth(),
                timeout=settings.REQUEST_TIMEOUT_SECONDS,
            )
        except requests.RequestException as e:
            logger.warning("[Token] Refresh call failed for connection %s: %s", connection_id, e)
            return False

        if response.status_code in (400, 401):
            logger.error(
                "[Token] Refresh token rejected (%s) for connection %s, marking for re-authorization",
                response.status_code,
                connection_id,
            )
            self.store.clear_credentials(connection_id)
            return False

        if not response.ok:
            logger.warning(
                "[Token] Refresh returned %s for connection %s: %s",
                response.status_code,
                connection_id,
                response.text,
            )
            return False

        token_data = response.json()
        access_token = token_data.get("accessToken")
        if not access_token:
            logger.error("[Token] No access token in refresh response for connection %s", connection_id)
            return False

        self.store.update_tokens(
            connection_id,
            access_token=access_token,
            refresh_token=token_data.get("refreshToken") or connection.refresh_token,
            expires_at=expiry_from_lifetime(token_data.get("expiresIn"), self._now()),
        )
        logger.info("[Token] Token refreshed for connection %s", connection_id)
        return True

    def get_valid_token(self, connection_id: str) -> Optional[str]:
        connection = self.store.get(connection_id)
        if connection is None:
            return None
        if self.is_token_valid(connection):
            return connection.access_token

        with self._refresh_locks.hold(connection_id):
            # Another caller may have refreshed while we waited
            connection = self.store.get(connection_id)
            if connection is None:
                return None
            if not self.is_token_valid(connection):
                if not self.refresh(connection_id):
                    return None
                connection = self.store.get(connection_id)

        return connection.access_token if connection and connection.is_authenticated else None
