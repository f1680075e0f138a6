"""Delta sync engine.

One pass for one connection runs strictly in sequence:

    NoCursor -> Polling -> Paginating -> Reconciling -> CursorCommitted
    HasCursor ->           Paginating -> Reconciling -> CursorCommitted

A provider 401 at any point clears the access token and aborts the pass with
``TokenExpiredError``; the cursor is only ever written once, after
reconciliation, so an aborted pass leaves it where it was.
"""
import logging
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from mailsync.config import settings
from mailsync.api.auth.services import TokenManager
from mailsync.api.email import provider
from mailsync.api.email.errors import FailedToSyncError, ProviderError, TokenExpiredError
from mailsync.api.email.reconcile import Reconciler
from mailsync.core.locks import KeyedLock
from mailsync.db.store import ConnectionStore

logger = logging.getLogger(__name__)


@dataclass
class SyncOutcome:
    delta_token: str
    emails_fetched: int = 0
    pages: int = 0
    failed: Dict[str, str] = field(default_factory=dict)


class DeltaSyncEngine:
    def __init__(
        self,
        store: ConnectionStore,
        token_manager: TokenManager,
        reconciler: Reconciler,
        client=provider,
        days_within: Optional[int] = None,
        poll_interval: Optional[float] = None,
        poll_timeout: Optional[float] = None,
        sleep=time.sleep,
        clock=time.monotonic,
    ):
        self.store = store
        self.token_manager = token_manager
        self.reconciler = reconciler
        self.client = client
        self.days_within = days_within or settings.SYNC_DAYS_WITHIN
        self.poll_interval = settings.FULL_SYNC_POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
        self.poll_timeout = settings.FULL_SYNC_POLL_TIMEOUT_SECONDS if poll_timeout is None else poll_timeout
        self._sleep = sleep
        self._clock = clock
        self.pass_locks = KeyedLock()

    # -------------------------------
    # Entry
    # -------------------------------
    def sync(self, connection_id: str) -> SyncOutcome:
        """Initial pass when the connection has no cursor yet, incremental otherwise."""
        with self.pass_locks.hold(connection_id):
            connection = self.store.get(connection_id)
            if connection is None:
                raise FailedToSyncError(f"Connection {connection_id} not found")
            if connection.next_delta_token:
                return self._incremental(connection_id, connection.next_delta_token)
            return self._initial(connection_id)

    def initial_sync(self, connection_id: str) -> SyncOutcome:
        with self.pass_locks.hold(connection_id):
            return self._initial(connection_id)

    def incremental_sync(self, connection_id: str) -> SyncOutcome:
        with self.pass_locks.hold(connection_id):
            # Read the cursor under the lock so a pass that just finished is seen
            connection = self.store.get(connection_id)
            if connection is None:
                raise FailedToSyncError(f"Connection {connection_id} not found")
            if not connection.next_delta_token:
                raise FailedToSyncError(f"Connection {connection_id} has no delta token; run an initial sync first")
            return self._incremental(connection_id, connection.next_delta_token)

    # -------------------------------
    # Passes
    # -------------------------------
    def _initial(self, connection_id: str) -> SyncOutcome:
        logger.info("[Sync] Initial sync for connection %s (last %d days)", connection_id, self.days_within)
        with self._clear_token_on_expiry(connection_id):
            ready = self._wait_until_ready(connection_id)
            start_token = ready.get("syncUpdatedToken")
            if not start_token:
                raise FailedToSyncError(f"Provider returned no syncUpdatedToken for connection {connection_id}")
            records, cursor, pages = self._drain(connection_id, start_token)
        return self._reconcile_and_commit(connection_id, records, cursor, pages)

    def _incremental(self, connection_id: str, delta_token: str) -> SyncOutcome:
        logger.info("[Sync] Incremental sync for connection %s", connection_id)
        with self._clear_token_on_expiry(connection_id):
            records, cursor, pages = self._drain(connection_id, delta_token)
        return self._reconcile_and_commit(connection_id, records, cursor, pages)

    def _wait_until_ready(self, connection_id: str) -> dict:
        deadline = self._clock() + self.poll_timeout
        attempt = 1
        response = self.client.start_full_sync(self._token(connection_id), self.days_within)
        while not response.get("ready"):
            if self._clock() >= deadline:
                raise FailedToSyncError(
                    f"Full sync for connection {connection_id} not ready after {self.poll_timeout:.0f}s"
                )
            logger.info("[Sync] Full sync not ready for connection %s (attempt %d), waiting", connection_id, attempt)
            self._sleep(self.poll_interval)
            attempt += 1
            response = self.client.start_full_sync(self._token(connection_id), self.days_within)
        return response

    def _drain(self, connection_id: str, delta_token: str):
        """Follow ``nextPageToken`` to exhaustion.

        Returns ``(records, cursor, pages)`` where ``cursor`` is the last
        non-empty ``nextDeltaToken`` seen, falling back to the starting bookmark.
        """
        response = self.client.fetch_updated(self._token(connection_id), delta_token=delta_token)
        records: List[dict] = list(response.get("records") or [])
        cursor = response.get("nextDeltaToken") or delta_token
        pages = 1

        while response.get("nextPageToken"):
            response = self.client.fetch_updated(self._token(connection_id), page_token=response["nextPageToken"])
            records.extend(response.get("records") or [])
            if response.get("nextDeltaToken"):
                cursor = response["nextDeltaToken"]
            pages += 1

        logger.info("[Sync] Connection %s: %d records over %d pages", connection_id, len(records), pages)
        return records, cursor, pages

    def _reconcile_and_commit(self, connection_id: str, records: List[dict], cursor: str, pages: int) -> SyncOutcome:
        start_time = time.time()
        result = self.reconciler.reconcile(records, connection_id)
        if result.failed:
            logger.warning(
                "[Sync] Connection %s: %d records skipped, they will only come back while inside the provider's delta window",
                connection_id, result.failed_count,
            )

        self.store.commit_delta_token(connection_id, cursor, failed_count=result.failed_count)
        logger.info(
            "[Sync] Connection %s committed cursor after %d records in %.2f seconds",
            connection_id, len(records), time.time() - start_time,
        )
        return SyncOutcome(delta_token=cursor, emails_fetched=len(records), pages=pages, failed=result.failed)

    # -------------------------------
    # Tokens
    # -------------------------------
    def _token(self, connection_id: str) -> str:
        token = self.token_manager.get_valid_token(connection_id)
        if token is not None:
            return token

        connection = self.store.get(connection_id)
        # A rejected refresh token has already been cleared by the token manager
        if connection is None or not connection.refresh_token:
            raise TokenExpiredError(f"No valid access token for connection {connection_id}")
        # The refresh token is still there, so the refresh call itself failed transiently
        raise ProviderError(f"Token refresh failed for connection {connection_id}")

    @contextmanager
    def _clear_token_on_expiry(self, connection_id: str):
        try:
            yield
        except TokenExpiredError:
            logger.warning("[Sync] Token expired for connection %s, clearing access token", connection_id)
            self.store.clear_access_token(connection_id)
            raise
