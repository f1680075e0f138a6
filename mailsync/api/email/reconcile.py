import logging
import traceback
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from bs4 import BeautifulSoup
from dateutil import parser
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from mailsync.db.models.attachment import EmailAttachment
from mailsync.db.models.email import Email, EmailRecipient
from mailsync.db.models.email_address import EmailAddress
from mailsync.db.models.email_thread import EmailThread
from mailsync.db.session import SessionLocal
from mailsync.db.store import as_utc

logger = logging.getLogger(__name__)

RECIPIENT_FIELDS = (("to", "to"), ("cc", "cc"), ("bcc", "bcc"), ("replyTo", "reply_to"))


@dataclass
class ReconcileResult:
    stored: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)  # provider id -> error

    @property
    def failed_count(self) -> int:
        return len(self.failed)


# -------------------------------
# Payload helpers
# -------------------------------
def normalize_address(address: str) -> str:
    return address.strip().lower()


def parse_time(value: Optional[str]) -> Optional[datetime]:
    return as_utc(parser.isoparse(value)) if value else None


def derive_email_label(sys_labels: Iterable[str]) -> str:
    labels = set(sys_labels or [])
    if "inbox" in labels or "important" in labels:
        return "inbox"
    if "sent" in labels:
        return "sent"
    if "draft" in labels:
        return "draft"
    return "inbox"


def extract_body_plain(body: Optional[str]) -> Optional[str]:
    if not body:
        return None
    return BeautifulSoup(body, "html.parser").get_text()


def _participants(message: dict) -> List[dict]:
    participants = []
    if message.get("from"):
        participants.append(message["from"])
    for payload_key, _ in RECIPIENT_FIELDS:
        participants.extend(message.get(payload_key) or [])
    return participants


class Reconciler:
    """Upserts provider messages with their threads, addresses and attachments.

    Each message runs in its own transaction: a malformed record is rolled
    back, logged and reported in ``ReconcileResult.failed`` while the rest of
    the batch carries on.
    """

    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    def reconcile(self, messages: List[dict], connection_id: str) -> ReconcileResult:
        result = ReconcileResult()
        if not messages:
            return result

        db = self.session_factory()
        try:
            for index, message in enumerate(messages):
                message_id = message.get("id") if isinstance(message, dict) else None
                try:
                    self._upsert_with_retry(db, message, connection_id)
                    result.stored.append(message_id)
                except Exception as e:
                    db.rollback()
                    # Records without an id are keyed by position so each one is counted
                    failure_key = message_id or f"UNKNOWN[{index}]"
                    result.failed[failure_key] = str(e)
                    logger.error("[Reconcile] Failed to store email %s: %s", failure_key, e)
                    logger.debug(traceback.format_exc())
        finally:
            db.close()

        logger.info(
            "[Reconcile] Connection %s: %d stored, %d failed",
            connection_id, len(result.stored), result.failed_count,
        )
        return result

    def _upsert_with_retry(self, db: Session, message: dict, connection_id: str) -> None:
        # A concurrent pass may insert the same row between our select and insert;
        # the unique key turns that into an IntegrityError and the retry updates in place.
        try:
            self.upsert_email(db, message, connection_id)
            db.commit()
        except IntegrityError:
            db.rollback()
            self.upsert_email(db, message, connection_id)
            db.commit()

    # -------------------------------
    # Rows
    # -------------------------------
    def upsert_address(self, db: Session, connection_id: str, payload: dict) -> EmailAddress:
        raw_address = payload.get("address") if payload else None
        if not raw_address:
            raise ValueError("Address payload without an address")
        address = normalize_address(raw_address)

        row = db.query(EmailAddress).filter_by(connection_id=connection_id, address=address).first()
        if row is None:
            row = EmailAddress(connection_id=connection_id, address=address)
            db.add(row)
        if payload.get("name"):
            row.name = payload["name"]
        if payload.get("raw"):
            row.raw = payload["raw"]
        db.flush()
        return row

    def upsert_thread(self, db: Session, message: dict, connection_id: str, label: str,
                      last_message_date: Optional[datetime], participant_ids: List[int]) -> EmailThread:
        thread_id = message["threadId"]
        thread = db.get(EmailThread, thread_id)
        if thread is None:
            thread = EmailThread(
                id=thread_id,
                connection_id=connection_id,
                subject=message.get("subject", "(No Subject)"),
                last_message_date=last_message_date,
                participant_ids=[],
                inbox_status=False,
                sent_status=False,
                draft_status=False,
            )
            db.add(thread)
        elif thread.connection_id != connection_id:
            raise ValueError(f"Thread {thread_id} belongs to another connection")

        # Merge, never overwrite: out-of-order delivery must not regress the thread
        thread.inbox_status = bool(thread.inbox_status) or label == "inbox"
        thread.sent_status = bool(thread.sent_status) or label == "sent"
        thread.draft_status = bool(thread.draft_status) or label == "draft"

        current = as_utc(thread.last_message_date)
        if last_message_date and (current is None or last_message_date > current):
            thread.last_message_date = last_message_date
            if message.get("subject"):
                thread.subject = message["subject"]

        merged = list(thread.participant_ids or [])
        merged.extend(pid for pid in participant_ids if pid not in merged)
        thread.participant_ids = merged
        db.flush()
        return thread

    def upsert_email(self, db: Session, message: dict, connection_id: str) -> Email:
        email_id = message["id"]
        sent_at = parse_time(message.get("sentAt"))
        received_at = parse_time(message.get("receivedAt"))
        label = derive_email_label(message.get("sysLabels"))

        from_address = self.upsert_address(db, connection_id, message["from"]) if message.get("from") else None

        recipients = []
        seen = set()
        for payload_key, kind in RECIPIENT_FIELDS:
            for payload in message.get(payload_key) or []:
                address = self.upsert_address(db, connection_id, payload)
                if (address.id, kind) not in seen:
                    seen.add((address.id, kind))
                    recipients.append((address.id, kind))

        participant_ids = [from_address.id] if from_address else []
        participant_ids.extend(aid for aid, _ in recipients if aid not in participant_ids)

        self.upsert_thread(db, message, connection_id, label, sent_at or received_at, participant_ids)

        email = db.get(Email, email_id)
        if email is None:
            email = Email(id=email_id)
            db.add(email)
        elif email.connection_id != connection_id:
            raise ValueError(f"Email {email_id} belongs to another connection")

        # Provider is the source of truth: every field is overwritten
        email.thread_id = message["threadId"]
        email.connection_id = connection_id
        email.created_time = parse_time(message.get("createdTime"))
        email.last_modified_time = parse_time(message.get("lastModifiedTime"))
        email.sent_at = sent_at
        email.received_at = received_at
        email.internet_message_id = message.get("internetMessageId")
        email.subject = message.get("subject", "(No Subject)")
        email.sys_labels = list(message.get("sysLabels") or [])
        email.keywords = list(message.get("keywords") or [])
        email.sys_classifications = list(message.get("sysClassifications") or [])
        email.sensitivity = message.get("sensitivity", "normal")
        email.meeting_message_method = message.get("meetingMessageMethod")
        email.email_label = label
        email.from_id = from_address.id if from_address else None
        email.has_attachments = bool(message.get("hasAttachments", False))
        email.body = message.get("body")
        email.body_plain = extract_body_plain(message.get("body"))
        email.body_snippet = message.get("bodySnippet")
        email.in_reply_to = message.get("inReplyTo")
        email.references = message.get("references")
        email.thread_index = message.get("threadIndex")
        email.internet_headers = list(message.get("internetHeaders") or [])
        email.native_properties = dict(message.get("nativeProperties") or {})
        email.folder_id = message.get("folderId")
        email.omitted = list(message.get("omitted") or [])
        db.flush()

        db.query(EmailRecipient).filter_by(email_id=email_id).delete(synchronize_session="fetch")
        for address_id, kind in recipients:
            db.add(EmailRecipient(email_id=email_id, address_id=address_id, kind=kind))

        attachments = message.get("attachments")
        if attachments is not None and "attachments" not in (message.get("omitted") or []):
            # Full attachment list: rows the provider no longer reports are dropped
            listed = [payload["id"] for payload in attachments]
            db.query(EmailAttachment).filter(
                EmailAttachment.email_id == email_id,
                EmailAttachment.id.notin_(listed),
            ).delete(synchronize_session="fetch")

        for payload in attachments or []:
            self.upsert_attachment(db, email_id, payload)

        db.flush()
        return email

    def upsert_attachment(self, db: Session, email_id: str, payload: dict) -> EmailAttachment:
        attachment = db.get(EmailAttachment, payload["id"])
        if attachment is None:
            attachment = EmailAttachment(id=payload["id"], email_id=email_id)
            db.add(attachment)
        attachment.email_id = email_id
        attachment.name = payload.get("name")
        attachment.mime_type = payload.get("mimeType")
        attachment.size = payload.get("size")
        attachment.inline = bool(payload.get("inline", False))
        attachment.content_id = payload.get("contentId")
        attachment.content = payload.get("content")
        attachment.content_location = payload.get("contentLocation")
        return attachment
