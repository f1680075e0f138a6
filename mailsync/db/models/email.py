from sqlalchemy import (
    Column, String, Integer, Boolean, DateTime, ForeignKey, Text, JSON
)
from sqlalchemy.orm import relationship

from mailsync.db.session import Base

class Email(Base):
    __tablename__ = "emails"

    id = Column(String, primary_key=True)  # Aurinko message id
    thread_id = Column(String, ForeignKey("threads.id"), index=True, nullable=False)
    connection_id = Column(String, ForeignKey("connections.id"), index=True, nullable=False)

    created_time = Column(DateTime(timezone=True))
    last_modified_time = Column(DateTime(timezone=True))
    sent_at = Column(DateTime(timezone=True))
    received_at = Column(DateTime(timezone=True))
    internet_message_id = Column(String, nullable=True)

    subject = Column(String)
    sys_labels = Column(JSON, default=list)
    keywords = Column(JSON, default=list)
    sys_classifications = Column(JSON, default=list)
    sensitivity = Column(String, default="normal")
    meeting_message_method = Column(String, nullable=True)
    email_label = Column(String, default="inbox", index=True)

    from_id = Column(Integer, ForeignKey("email_addresses.id"), nullable=True)

    has_attachments = Column(Boolean, default=False)
    body = Column(Text, nullable=True)
    body_plain = Column(Text, nullable=True)
    body_snippet = Column(Text, nullable=True)

    in_reply_to = Column(String, nullable=True)
    references = Column(Text, nullable=True)
    thread_index = Column(String, nullable=True)
    internet_headers = Column(JSON, default=list)
    native_properties = Column(JSON, default=dict)
    folder_id = Column(String, nullable=True)
    omitted = Column(JSON, default=list)

    thread = relationship("EmailThread", back_populates="emails")
    from_address = relationship("EmailAddress", foreign_keys=[from_id])
    recipients = relationship("EmailRecipient", cascade="all, delete-orphan")
    attachments = relationship("EmailAttachment", cascade="all, delete-orphan")


class EmailRecipient(Base):
    __tablename__ = "email_recipients"

    email_id = Column(String, ForeignKey("emails.id"), primary_key=True)
    address_id = Column(Integer, ForeignKey("email_addresses.id"), primary_key=True)
    kind = Column(String, primary_key=True)  # to / cc / bcc / reply_to

    address = relationship("EmailAddress")
