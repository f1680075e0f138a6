import logging
from typing import Optional

from mailsync.config import settings
from mailsync.api.auth.services import TokenManager
from mailsync.api.email.errors import (
    AccountNotFoundError,
    FailedToSyncError,
    ProviderError,
    TokenExpiredError,
)
from mailsync.api.email.reconcile import Reconciler
from mailsync.api.email.sync import DeltaSyncEngine
from mailsync.db.session import SessionLocal
from mailsync.db.store import ConnectionStore

logger = logging.getLogger(__name__)

_engine: Optional[DeltaSyncEngine] = None


def build_sync_engine(session_factory=SessionLocal, **kwargs) -> DeltaSyncEngine:
    store = ConnectionStore(session_factory)
    return DeltaSyncEngine(
        store=store,
        token_manager=TokenManager(store),
        reconciler=Reconciler(session_factory),
        **kwargs
    )


def get_sync_engine() -> DeltaSyncEngine:
    """Process-wide engine; the per-connection locks only work if every caller shares it."""
    global _engine
    if _engine is None:
        _engine = build_sync_engine()
    return _engine


def _subscribe_to_webhooks(engine: DeltaSyncEngine, connection_id: str) -> None:
    if not settings.WEBHOOK_BASE_URL:
        return
    notification_url = settings.WEBHOOK_BASE_URL.rstrip("/") + "/email/webhook"
    try:
        token = engine.token_manager.get_valid_token(connection_id)
        if token:
            engine.client.create_subscription(token, notification_url)
            logger.info("[Sync] Subscribed connection %s to %s", connection_id, notification_url)
    except (ProviderError, TokenExpiredError) as e:
        logger.warning("[Sync] Webhook subscription failed for connection %s: %s", connection_id, e)


def perform_initial_sync(user_id: int, connection_id: str, engine: Optional[DeltaSyncEngine] = None) -> dict:
    engine = engine or get_sync_engine()

    if engine.store.get_for_user(user_id, connection_id) is None:
        raise AccountNotFoundError(f"Connection {connection_id} not found for user {user_id}")

    _subscribe_to_webhooks(engine, connection_id)

    try:
        outcome = engine.initial_sync(connection_id)
    except ProviderError as e:
        logger.error("[Sync] Initial sync failed for connection %s: %s", connection_id, e)
        raise FailedToSyncError(str(e)) from e

    logger.info("[Sync] Initial sync complete for connection %s: %s", connection_id, outcome.delta_token)
    return {"success": True, "delta_token": outcome.delta_token}


def perform_incremental_sync(connection_id: str, engine: Optional[DeltaSyncEngine] = None) -> None:
    engine = engine or get_sync_engine()

    connection = engine.store.get(connection_id)
    if connection is None:
        raise AccountNotFoundError(f"Connection {connection_id} not found")
    if not connection.is_authenticated and not connection.refresh_token:
        raise TokenExpiredError(f"Connection {connection_id} needs re-authorization")

    # No cursor yet falls through to a full initial pass
    engine.sync(connection_id)
