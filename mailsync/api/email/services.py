import logging

from mailsync.api.auth.services import TokenManager
from mailsync.api.email import provider
from mailsync.api.email.errors import TokenExpiredError
from mailsync.api.email.schemas import EmailRequest
from mailsync.db.store import ConnectionState

logger = logging.getLogger(__name__)


def build_message_payload(connection: ConnectionState, request: EmailRequest) -> dict:
    def addresses(items):
        return [{"name": item.name or "", "address": item.address} for item in items]

    payload = {
        "from": {"name": connection.name or "", "address": connection.email_address},
        "subject": request.subject,
        "body": request.body,
        "inReplyTo": request.in_reply_to,
        "references": request.references,
        "threadId": request.thread_id,
        "to": addresses(request.to),
        "cc": addresses(request.cc),
        "bcc": addresses(request.bcc),
        "replyTo": addresses([request.reply_to]) if request.reply_to else [],
    }

    if request.attachments:
        payload["attachments"] = [
            {
                "name": att.name,
                "contentType": att.content_type,
                "content": att.content_bytes
            }
            for att in request.attachments
        ]
    return payload


def send_email(token_manager: TokenManager, connection: ConnectionState, request: EmailRequest, client=provider) -> str:
    access_token = token_manager.get_valid_token(connection.id)
    if not access_token:
        raise TokenExpiredError(f"Connection {connection.id} needs re-authorization")

    try:
        message_id = client.send_message(access_token, build_message_payload(connection, request))
    except TokenExpiredError:
        token_manager.store.clear_access_token(connection.id)
        raise

    logger.info("[Send] Connection %s sent message %s", connection.id, message_id)
    return message_id
