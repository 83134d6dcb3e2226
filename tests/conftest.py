"""
Pytest configuration for the speech-therapy backend suite.

Shared fixtures build an application around an in-memory ``mongomock``
database and replace the process-scoped side-effect channels (real-time
broadcaster, push sender, SMTP sender) with recording fakes, so tests can
assert on what would have been delivered without any network access.
"""
import itertools
import os
import tempfile

# must be set before config.settings is first imported
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["UPLOAD_DIR"] = tempfile.mkdtemp(prefix="uploads-")
os.environ["EMAIL_RETRY_DELAY"] = "0"

import mongomock  # noqa: E402
import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from accounts import UserService  # noqa: E402
from children import ChildService  # noqa: E402
from database import ensure_indexes  # noqa: E402
from errors import DeliveryError  # noqa: E402
from main import create_app  # noqa: E402
from schemas import ChildCreate  # noqa: E402
from security import generate_token  # noqa: E402

PASSWORD = "secret123"


class RecordingBroadcaster:
    """Stands in for the WebSocket broadcaster and keeps every published event."""

    def __init__(self):
        self.events = []

    def publish_many(self, user_ids, event, data):
        for user_id in {str(u) for u in user_ids if u}:
            self.events.append((user_id, event, data))

    def events_for(self, user_id, event=None):
        return [e for e in self.events if e[0] == str(user_id) and (event is None or e[1] == event)]


class FakePushSender:
    def __init__(self):
        self.sent = []

    def send_to_tokens(self, tokens, title, body, data=None):
        self.sent.append({"tokens": list(tokens), "title": title, "body": body, "data": data})
        return {"successCount": len(tokens), "failureCount": 0}


class FakeEmailSender:
    """Records outgoing mail; set ``fail`` to simulate an SMTP outage."""

    def __init__(self):
        self.outbox = []
        self.fail = False

    def send(self, to_email, subject, html_body):
        if self.fail:
            raise DeliveryError("Failed to send email after 3 attempts: connection refused")
        self.outbox.append({"to": to_email, "subject": subject, "html": html_body})


@pytest.fixture
def db():
    database = mongomock.MongoClient()["speech_therapy_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def broadcaster():
    return RecordingBroadcaster()


@pytest.fixture
def push_sender():
    return FakePushSender()


@pytest.fixture
def email_sender():
    return FakeEmailSender()


@pytest.fixture
def app(db, broadcaster, push_sender, email_sender):
    return create_app(database=db, broadcaster=broadcaster, push_sender=push_sender, email_sender=email_sender)


@pytest.fixture
def client(app):
    return TestClient(app)


@pytest.fixture
def make_user(db):
    """Factory creating users of any role straight through the account service."""
    counter = itertools.count(1)

    def _make(role="parent", name=None, **fields):
        n = next(counter)
        return UserService(db).create_user(
            name or f"{role.title()} {n}",
            fields.pop("email", f"{role}{n}@example.com"),
            PASSWORD,
            role,
            **fields,
        )

    return _make


@pytest.fixture
def make_child(db):
    def _make(parent, name="Ali", age=4, gender="male", assigned_specialist=None):
        payload = ChildCreate(name=name, age=age, gender=gender)
        child = ChildService(db).create(parent["_id"], payload, assigned_specialist=assigned_specialist)
        if assigned_specialist is not None:
            db["user"].update_one({"_id": assigned_specialist}, {"$addToSet": {"assignedChildren": child["_id"]}})
            db["user"].update_one({"_id": parent["_id"]}, {"$set": {"linkedSpecialist": assigned_specialist}})
            db["user"].update_one({"_id": assigned_specialist}, {"$addToSet": {"linkedParents": parent["_id"]}})
        return child

    return _make


def auth(user):
    return {"Authorization": f"Bearer {generate_token(user['_id'])}"}


@pytest.fixture
def headers():
    return auth
