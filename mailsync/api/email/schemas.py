from typing import List, Optional
from datetime import datetime
from pydantic import BaseModel


class SyncRequest(BaseModel):
    connection_id: str


class InitialSyncResponse(BaseModel):
    success: bool
    delta_token: str


class SyncResponse(BaseModel):
    success: bool = True


class ConnectionStatus(BaseModel):
    connection_id: str
    email_address: str
    needs_reauth: bool
    has_delta_token: bool
    last_synced_at: Optional[datetime] = None
    last_sync_failed_count: int = 0


class EmailAddressSchema(BaseModel):
    address: str
    name: Optional[str] = None


class AttachmentSchema(BaseModel):
    name: str
    content_type: str
    content_bytes: str  # base64 string


class EmailRequest(BaseModel):
    connection_id: str
    to: List[EmailAddressSchema]
    subject: str
    body: str
    cc: List[EmailAddressSchema] = []
    bcc: List[EmailAddressSchema] = []
    reply_to: Optional[EmailAddressSchema] = None
    in_reply_to: Optional[str] = None
    references: Optional[str] = None
    thread_id: Optional[str] = None
    attachments: Optional[List[AttachmentSchema]] = []


class SendEmailResponse(BaseModel):
    id: str
