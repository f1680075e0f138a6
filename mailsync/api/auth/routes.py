import logging

import requests
from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException

from mailsync.core.security import get_current_user
from mailsync.db.models.user import User
from mailsync.api.auth.services import (
    exchange_code_for_token,
    expiry_from_lifetime,
    get_account_details,
    get_authorization_url,
)
from mailsync.api.email.errors import SyncError
from mailsync.api.email.sync import DeltaSyncEngine
from mailsync.api.email.sync_actions import get_sync_engine, perform_initial_sync

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/aurinko/url")
def aurinko_authorization_url(current_user: User = Depends(get_current_user)):
    return {"url": get_authorization_url()}


def _background_initial_sync(user_id: int, connection_id: str, engine: DeltaSyncEngine):
    try:
        result = perform_initial_sync(user_id, connection_id, engine=engine)
        logger.info("[Auth] Initial sync result for connection %s: %s", connection_id, result)
    except SyncError as e:
        logger.error("[Auth] Initial sync failed for connection %s: %s", connection_id, e.code)


@router.get("/aurinko/callback")
def aurinko_callback(
    background_tasks: BackgroundTasks,
    status: str,
    code: str = "",
    current_user: User = Depends(get_current_user),
    engine: DeltaSyncEngine = Depends(get_sync_engine),
):
    if status != "success" or not code:
        raise HTTPException(status_code=400, detail="Account connection failed")

    # Step 1: Exchange code for token
    try:
        token_data = exchange_code_for_token(code)
        account = get_account_details(token_data["accessToken"])
    except (requests.RequestException, KeyError) as e:
        logger.error("[Auth] Aurinko token exchange failed: %s", e)
        raise HTTPException(status_code=400, detail="Failed to fetch token")

    # Step 2: Create or re-arm the connection
    connection = engine.store.upsert_from_oauth(
        connection_id=str(token_data["accountId"]),
        user_id=current_user.id,
        access_token=token_data["accessToken"],
        refresh_token=token_data.get("refreshToken"),
        expires_at=expiry_from_lifetime(token_data.get("expiresIn")),
        email_address=account.get("email", ""),
        name=account.get("name"),
    )

    # Step 3: First pass runs after the response is sent
    background_tasks.add_task(_background_initial_sync, current_user.id, connection.id, engine)

    return {"connection_id": connection.id, "email_address": connection.email_address}
