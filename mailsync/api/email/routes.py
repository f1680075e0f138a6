import hashlib
import hmac
import logging

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Request
from fastapi.responses import PlainTextResponse

from mailsync.config import settings
from mailsync.core.security import get_current_user
from mailsync.db.models.user import User
from mailsync.api.email.errors import (
    AccountNotFoundError,
    FailedToSyncError,
    ProviderError,
    SyncError,
    TokenExpiredError,
)
from mailsync.api.email.schemas import (
    ConnectionStatus,
    EmailRequest,
    InitialSyncResponse,
    SendEmailResponse,
    SyncRequest,
    SyncResponse,
)
from mailsync.api.email.services import send_email
from mailsync.api.email.sync import DeltaSyncEngine
from mailsync.api.email.sync_actions import (
    get_sync_engine,
    perform_incremental_sync,
    perform_initial_sync,
)

logger = logging.getLogger(__name__)

router = APIRouter()


def _http_error(error: SyncError) -> HTTPException:
    if isinstance(error, AccountNotFoundError):
        return HTTPException(status_code=404, detail={"error": error.code})
    if isinstance(error, TokenExpiredError):
        return HTTPException(status_code=401, detail={"error": error.code})
    if isinstance(error, (FailedToSyncError, ProviderError)):
        return HTTPException(status_code=502, detail={"error": error.code, "message": str(error)})
    return HTTPException(status_code=500, detail={"error": error.code})


def _owned_connection(engine: DeltaSyncEngine, user: User, connection_id: str):
    connection = engine.store.get_for_user(user.id, connection_id)
    if connection is None:
        raise _http_error(AccountNotFoundError())
    return connection


# -------------------------------
# Initial sync (account connection flow)
# -------------------------------
@router.post("/initial-sync", response_model=InitialSyncResponse)
def initial_sync_route(
    request: SyncRequest,
    current_user: User = Depends(get_current_user),
    engine: DeltaSyncEngine = Depends(get_sync_engine),
):
    try:
        return perform_initial_sync(current_user.id, request.connection_id, engine=engine)
    except SyncError as e:
        raise _http_error(e)


# -------------------------------
# Incremental sync (manual refresh)
# -------------------------------
@router.post("/sync", response_model=SyncResponse)
def incremental_sync_route(
    request: SyncRequest,
    current_user: User = Depends(get_current_user),
    engine: DeltaSyncEngine = Depends(get_sync_engine),
):
    _owned_connection(engine, current_user, request.connection_id)
    try:
        perform_incremental_sync(request.connection_id, engine=engine)
    except SyncError as e:
        raise _http_error(e)
    return {"success": True}


@router.get("/connections/{connection_id}/status", response_model=ConnectionStatus)
def connection_status_route(
    connection_id: str,
    current_user: User = Depends(get_current_user),
    engine: DeltaSyncEngine = Depends(get_sync_engine),
):
    connection = _owned_connection(engine, current_user, connection_id)
    return ConnectionStatus(
        connection_id=connection.id,
        email_address=connection.email_address,
        needs_reauth=engine.token_manager.needs_reauth(connection.id),
        has_delta_token=bool(connection.next_delta_token),
        last_synced_at=connection.last_synced_at,
        last_sync_failed_count=connection.last_sync_failed_count,
    )


# -------------------------------
# Send Email
# -------------------------------
@router.post("/send", response_model=SendEmailResponse)
def send_email_route(
    request: EmailRequest,
    current_user: User = Depends(get_current_user),
    engine: DeltaSyncEngine = Depends(get_sync_engine),
):
    connection = _owned_connection(engine, current_user, request.connection_id)
    try:
        message_id = send_email(engine.token_manager, connection, request, client=engine.client)
    except SyncError as e:
        raise _http_error(e)
    return {"id": message_id}


# -------------------------------
# Provider webhook
# -------------------------------
def verify_signature(secret: str, timestamp: str, body: bytes, signature: str) -> bool:
    message = f"v0:{timestamp}:".encode() + body
    expected = hmac.new(secret.encode(), message, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature or "")


def _background_incremental_sync(connection_id: str, engine: DeltaSyncEngine):
    try:
        perform_incremental_sync(connection_id, engine=engine)
    except TokenExpiredError:
        logger.warning("[Webhook] Connection %s requires re-authorization", connection_id)
    except SyncError as e:
        logger.error("[Webhook] Sync failed for connection %s, retrying next interval: %s", connection_id, e)


@router.post("/webhook")
async def webhook_route(
    request: Request,
    background_tasks: BackgroundTasks,
    engine: DeltaSyncEngine = Depends(get_sync_engine),
):
    validation_token = request.query_params.get("validationToken")
    if validation_token:
        return PlainTextResponse(validation_token)

    body = await request.body()
    if settings.AURINKO_SIGNING_SECRET:
        timestamp = request.headers.get("X-Aurinko-Request-Timestamp", "")
        signature = request.headers.get("X-Aurinko-Signature", "")
        if not verify_signature(settings.AURINKO_SIGNING_SECRET, timestamp, body, signature):
            raise HTTPException(status_code=401, detail="Invalid signature")

    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid JSON body")
    account_id = payload.get("accountId") if isinstance(payload, dict) else None
    if account_id is None:
        raise HTTPException(status_code=400, detail="Missing accountId")

    logger.info("[Webhook] Change notification for connection %s", account_id)
    background_tasks.add_task(_background_incremental_sync, str(account_id), engine)
    return {"status": "accepted"}
