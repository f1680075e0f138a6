from sqlalchemy import Column, String, ForeignKey, DateTime, Boolean, JSON
from sqlalchemy.orm import relationship
from mailsync.db.session import Base

class EmailThread(Base):
    __tablename__ = "threads"

    id = Column(String, primary_key=True)  # provider thread id
    connection_id = Column(String, ForeignKey("connections.id"), index=True, nullable=False)

    subject = Column(String)
    last_message_date = Column(DateTime(timezone=True))
    participant_ids = Column(JSON, default=list)

    # Tab filters, OR-merged from every message reconciled into the thread
    inbox_status = Column(Boolean, default=False, index=True)
    sent_status = Column(Boolean, default=False, index=True)
    draft_status = Column(Boolean, default=False, index=True)

    emails = relationship("Email", back_populates="thread")
