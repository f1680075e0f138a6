import logging
from typing import Optional

import requests

from mailsync.config import settings
from mailsync.api.email.errors import ProviderError, TokenExpiredError

logger = logging.getLogger(__name__)

SYNC_URL = "/email/sync"
SYNC_UPDATED_URL = "/email/sync/updated"
MESSAGES_URL = "/email/messages"
SUBSCRIPTIONS_URL = "/subscriptions"


def _headers(access_token: str):
    return {
        "Authorization": f"Bearer {access_token}",
        "Accept": "application/json",
        "Content-Type": "application/json"
    }


def _request(method: str, path: str, access_token: str, **kwargs) -> dict:
    """Issue one provider call; 401 becomes TokenExpiredError, anything else non-2xx a ProviderError."""
    url = f"{settings.AURINKO_API_URL}{path}"
    try:
        response = requests.request(
            method,
            url,
            headers=_headers(access_token),
            timeout=settings.REQUEST_TIMEOUT_SECONDS,
            **kwargs
        )
    except requests.Timeout as e:
        raise ProviderError(f"{method} {path} timed out") from e
    except requests.RequestException as e:
        raise ProviderError(f"{method} {path} failed: {e}") from e

    if response.status_code == 401:
        raise TokenExpiredError(f"{method} {path} rejected the access token")

    if not response.ok:
        logger.error("[Provider] %s %s -> %s: %s", method, path, response.status_code, response.text)
        raise ProviderError(
            f"{method} {path} returned {response.status_code}",
            status_code=response.status_code,
            body=response.text,
        )

    if not response.content:
        return {}
    return response.json()


# -------------------------------
# Full sync (readiness)
# -------------------------------
def start_full_sync(access_token: str, days_within: int) -> dict:
    """Ask the provider to materialise the last ``days_within`` days.

    Returns ``{"ready": bool, "syncUpdatedToken": str, "syncDeletedToken": str}``;
    the caller polls until ``ready`` is true.
    """
    return _request(
        "POST",
        SYNC_URL,
        access_token,
        params={"daysWithin": days_within, "bodyType": "html"},
        json={},
    )


# -------------------------------
# Delta pages
# -------------------------------
def fetch_updated(access_token: str, delta_token: Optional[str] = None, page_token: Optional[str] = None) -> dict:
    """Fetch one page of changed messages.

    Exactly one of ``delta_token`` (start a pass from a bookmark) or
    ``page_token`` (continue a pass) must be given.
    """
    if bool(delta_token) == bool(page_token):
        raise ValueError("fetch_updated needs exactly one of delta_token or page_token")

    params = {"deltaToken": delta_token} if delta_token else {"pageToken": page_token}
    data = _request("GET", SYNC_UPDATED_URL, access_token, params=params)
    return {
        "records": data.get("records") or [],
        "nextPageToken": data.get("nextPageToken"),
        "nextDeltaToken": data.get("nextDeltaToken"),
    }


# -------------------------------
# Send
# -------------------------------
def send_message(access_token: str, message: dict) -> str:
    """Post a composed message and return the provider message id."""
    data = _request("POST", MESSAGES_URL, access_token, params={"returnIds": "true"}, json=message)
    message_id = data.get("id")
    if not message_id:
        raise ProviderError("Provider accepted the message without returning an id", body=str(data))
    return message_id


# -------------------------------
# Webhook subscriptions
# -------------------------------
def create_subscription(access_token: str, notification_url: str) -> dict:
    return _request(
        "POST",
        SUBSCRIPTIONS_URL,
        access_token,
        json={"resource": "/email/messages", "notificationUrl": notification_url},
    )
