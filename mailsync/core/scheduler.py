# mailsync/core/scheduler.py

import logging

from apscheduler.schedulers.background import BackgroundScheduler

from mailsync.config import settings
from mailsync.api.email.errors import SyncError, TokenExpiredError
from mailsync.api.email.sync_actions import get_sync_engine, perform_incremental_sync

logger = logging.getLogger(__name__)

# Initialize the scheduler
scheduler = BackgroundScheduler()


# ---------------------------
# Periodic incremental sync
# ---------------------------

def sync_all_connections(engine=None) -> dict:
    engine = engine or get_sync_engine()
    summary = {"synced": 0, "needs_reauth": 0, "failed": 0}

    for connection in engine.store.list_syncable():
        try:
            perform_incremental_sync(connection.id, engine=engine)
            summary["synced"] += 1
        except TokenExpiredError:
            summary["needs_reauth"] += 1
            logger.warning("[Scheduler] Connection %s requires re-authorization", connection.id)
        except SyncError as e:
            # Transient: the cursor did not move, the next tick re-fetches
            summary["failed"] += 1
            logger.error("[Scheduler] Sync failed for connection %s: %s", connection.id, e)

    logger.info("[Scheduler] Incremental sync tick: %s", summary)
    return summary


# ---------------------------
# Start Scheduler
# ---------------------------

def start_scheduler():
    scheduler.add_job(
        sync_all_connections,
        "interval",
        minutes=settings.SYNC_INTERVAL_MINUTES,
        id="incremental_sync",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )
    scheduler.start()
    logger.info("[Scheduler] Background Scheduler started...")


def stop_scheduler():
    if scheduler.running:
        scheduler.shutdown(wait=False)
