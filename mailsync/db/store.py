"""Repository over the ``connections`` table.

The token manager and the delta sync engine only talk to the database through
this class, so neither is tied to a particular session setup. Every method
opens its own short session and returns detached ``ConnectionState`` values.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Optional

from mailsync.db.models.connection import Connection
from mailsync.db.session import SessionLocal

logger = logging.getLogger(__name__)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None or value.tzinfo.utcoffset(value) is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class ConnectionState:
    id: str
    user_id: int
    access_token: str
    refresh_token: Optional[str]
    token_expires_at: Optional[datetime]
    next_delta_token: Optional[str]
    email_address: str
    name: Optional[str] = None
    last_synced_at: Optional[datetime] = None
    last_sync_failed_count: int = 0

    @property
    def is_authenticated(self) -> bool:
        return bool(self.access_token and self.access_token.strip())

    @classmethod
    def from_row(cls, row: Connection) -> "ConnectionState":
        return cls(
            id=row.id,
            user_id=row.user_id,
            access_token=row.access_token or "",
            refresh_token=row.refresh_token or None,
            token_expires_at=as_utc(row.token_expires_at),
            next_delta_token=row.next_delta_token,
            email_address=row.email_address,
            name=row.name,
            last_synced_at=as_utc(row.last_synced_at),
            last_sync_failed_count=row.last_sync_failed_count or 0,
        )


class ConnectionStore:
    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    def get(self, connection_id: str) -> Optional[ConnectionState]:
        db = self.session_factory()
        try:
            row = db.get(Connection, connection_id)
            return ConnectionState.from_row(row) if row else None
        finally:
            db.close()

    def get_for_user(self, user_id: int, connection_id: str) -> Optional[ConnectionState]:
        db = self.session_factory()
        try:
            row = db.query(Connection).filter_by(id=connection_id, user_id=user_id).first()
            return ConnectionState.from_row(row) if row else None
        finally:
            db.close()

    def list_syncable(self) -> List[ConnectionState]:
        """Connections that finished an initial sync and still hold credentials."""
        db = self.session_factory()
        try:
            rows = (
                db.query(Connection)
                .filter(Connection.next_delta_token.isnot(None))
                .filter(Connection.access_token != "")
                .all()
            )
            return [ConnectionState.from_row(row) for row in rows]
        finally:
            db.close()

    def _update(self, connection_id: str, **values) -> None:
        db = self.session_factory()
        try:
            row = db.get(Connection, connection_id)
            if row is None:
                logger.warning("[Store] Connection %s vanished before update", connection_id)
                return
            for key, value in values.items():
                setattr(row, key, value)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def update_tokens(self, connection_id: str, access_token: str, refresh_token: Optional[str], expires_at: Optional[datetime]) -> None:
        self._update(
            connection_id,
            access_token=access_token,
            refresh_token=refresh_token,
            token_expires_at=expires_at,
        )

    def clear_access_token(self, connection_id: str) -> None:
        self._update(connection_id, access_token="")

    def clear_credentials(self, connection_id: str) -> None:
        self._update(connection_id, access_token="", refresh_token=None, token_expires_at=None)

    def commit_delta_token(self, connection_id: str, delta_token: str, failed_count: int = 0) -> None:
        self._update(
            connection_id,
            next_delta_token=delta_token,
            last_synced_at=datetime.now(timezone.utc),
            last_sync_failed_count=failed_count,
        )

    def upsert_from_oauth(
        self,
        connection_id: str,
        user_id: int,
        access_token: str,
        refresh_token: Optional[str],
        expires_at: Optional[datetime],
        email_address: str,
        name: Optional[str] = None,
    ) -> ConnectionState:
        """Create the connection on first link, or re-arm its credentials on re-authorization.

        The delta cursor is left untouched so a re-linked mailbox resumes incrementally.
        """
        db = self.session_factory()
        try:
            row = db.get(Connection, connection_id)
            if row is None:
                row = Connection(
                    id=connection_id,
                    user_id=user_id,
                    email_address=email_address,
                    name=name,
                    provider="Aurinko",
                    refresh_token=refresh_token,
                )
                db.add(row)
            elif refresh_token:
                row.refresh_token = refresh_token

            row.access_token = access_token
            row.token_expires_at = expires_at
            db.commit()
            db.refresh(row)
            return ConnectionState.from_row(row)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
