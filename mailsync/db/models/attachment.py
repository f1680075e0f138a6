from sqlalchemy import Column, String, Integer, Boolean, ForeignKey, Text
from mailsync.db.session import Base

class EmailAttachment(Base):
    __tablename__ = "email_attachments"

    id = Column(String, primary_key=True)  # provider attachment id
    email_id = Column(String, ForeignKey("emails.id"), index=True, nullable=False)

    name = Column(String)
    mime_type = Column(String)
    size = Column(Integer)
    inline = Column(Boolean, default=False)
    content_id = Column(String, nullable=True)
    content = Column(Text, nullable=True)  # base64, only when the provider ships it
    content_location = Column(String, nullable=True)
