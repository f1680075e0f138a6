from sqlalchemy import Column, String, DateTime, ForeignKey, Integer
from sqlalchemy.orm import relationship
from datetime import datetime, timezone
from mailsync.db.session import Base

class Connection(Base):
    """One mailbox linked to a user at the provider.

    An empty ``access_token`` means the connection is unauthenticated and
    must be re-authorized before it is used for sync calls.
    """
    __tablename__ = "connections"

    id = Column(String, primary_key=True)  # Aurinko account id
    user_id = Column(Integer, ForeignKey("users.id"), index=True, nullable=False)

    access_token = Column(String, nullable=False, default="")
    refresh_token = Column(String, nullable=True)
    token_expires_at = Column(DateTime(timezone=True), nullable=True)

    # Delta cursor, null until the first pass commits
    next_delta_token = Column(String, nullable=True)

    provider = Column(String, default="Aurinko")
    email_address = Column(String, nullable=False)
    name = Column(String, nullable=True)

    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    last_sync_failed_count = Column(Integer, default=0)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    user = relationship("User", back_populates="connections")
