import os

os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["SCHEDULER_ENABLED"] = "false"

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from mailsync.db.session import Base
from mailsync.db.models import Connection, User
from mailsync.db.store import ConnectionStore
from mailsync.api.auth.services import TokenManager
from mailsync.api.email.errors import TokenExpiredError
from mailsync.api.email.reconcile import Reconciler
from mailsync.api.email.sync import DeltaSyncEngine


class FakeProvider:
    """Scripted stand-in for the provider module.

    ``full_sync`` is a list of readiness responses returned in order (the last
    one repeats). ``pages`` maps ``("delta", token)`` / ``("page", token)`` to a
    page dict or an exception instance to raise.
    """

    def __init__(self, full_sync=None, pages=None):
        self.full_sync = list(full_sync or [])
        self.pages = dict(pages or {})
        self.calls = []
        self.sent = []
        self.subscriptions = []

    def start_full_sync(self, access_token, days_within):
        self.calls.append(("start_full_sync", access_token, days_within))
        if len(self.full_sync) > 1:
            return self.full_sync.pop(0)
        return self.full_sync[0]

    def fetch_updated(self, access_token, delta_token=None, page_token=None):
        key = ("delta", delta_token) if delta_token else ("page", page_token)
        self.calls.append(("fetch_updated",) + key)
        result = self.pages[key]
        if isinstance(result, Exception):
            raise result
        return result

    def send_message(self, access_token, message):
        self.sent.append((access_token, message))
        return "sent-message-id"

    def create_subscription(self, access_token, notification_url):
        self.subscriptions.append(notification_url)
        return {"id": 1}


def make_message(message_id, thread_id="thread-1", sent_at="2024-05-01T10:00:00Z", labels=("inbox",), **overrides):
    message = {
        "id": message_id,
        "threadId": thread_id,
        "createdTime": sent_at,
        "lastModifiedTime": sent_at,
        "sentAt": sent_at,
        "receivedAt": sent_at,
        "internetMessageId": f"<{message_id}@example.com>",
        "subject": f"Subject {message_id}",
        "sysLabels": list(labels),
        "keywords": [],
        "sysClassifications": [],
        "sensitivity": "normal",
        "from": {"name": "Alice", "address": "alice@example.com", "raw": "Alice <alice@example.com>"},
        "to": [{"name": "Bob", "address": "bob@example.com"}],
        "cc": [],
        "bcc": [],
        "replyTo": [],
        "hasAttachments": False,
        "body": "<p>Hello <b>there</b></p>",
        "bodySnippet": "Hello there",
        "internetHeaders": [],
        "nativeProperties": {},
        "omitted": [],
    }
    message.update(overrides)
    return message


@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'mailsync.db'}",
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(bind=engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)
    yield factory
    engine.dispose()


@pytest.fixture
def user(session_factory):
    db = session_factory()
    try:
        row = User(id=1, email="owner@example.com", name="Owner")
        db.add(row)
        db.commit()
        return row
    finally:
        db.close()


@pytest.fixture
def make_connection(session_factory, user):
    def _make(connection_id="acc-1", access_token="token-1", refresh_token="refresh-1",
              expires_at=None, delta_token=None, user_id=None):
        db = session_factory()
        try:
            db.add(Connection(
                id=connection_id,
                user_id=user_id or user.id,
                access_token=access_token,
                refresh_token=refresh_token,
                token_expires_at=expires_at,
                next_delta_token=delta_token,
                email_address="owner@example.com",
                name="Owner",
            ))
            db.commit()
        finally:
            db.close()
        return connection_id
    return _make


@pytest.fixture
def store(session_factory):
    return ConnectionStore(session_factory)


@pytest.fixture
def reconciler(session_factory):
    return Reconciler(session_factory)


@pytest.fixture
def fake_provider():
    return FakeProvider()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def sync_engine(store, reconciler, fake_provider, sleeps):
    return DeltaSyncEngine(
        store=store,
        token_manager=TokenManager(store),
        reconciler=reconciler,
        client=fake_provider,
        days_within=3,
        poll_interval=1.0,
        poll_timeout=120.0,
        sleep=sleeps.append,
    )


def expired():
    return TokenExpiredError("401 from provider")
