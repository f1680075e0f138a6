from mailsync.db.models.user import User
from mailsync.db.models.connection import Connection
from mailsync.db.models.email_address import EmailAddress
from mailsync.db.models.email_thread import EmailThread
from mailsync.db.models.email import Email, EmailRecipient
from mailsync.db.models.attachment import EmailAttachment

__all__ = [
    "User",
    "Connection",
    "EmailAddress",
    "EmailThread",
    "Email",
    "EmailRecipient",
    "EmailAttachment",
]
