import os
import tempfile

# must be set before spinwheel.config is imported
_TMP_DIR = tempfile.mkdtemp(prefix="spinwheel-tests-")
os.environ["DATABASE_URL"] = "sqlite:///" + os.path.join(_TMP_DIR, "test.db")
os.environ["JWT_SECRET"] = "test-secret"
os.environ["ADMIN_PASSWORD"] = "letmein"
os.environ["ADMIN_PASSWORD_HASH"] = ""

import pytest
from fastapi.testclient import TestClient

from spinwheel import admin
from spinwheel.db import Base, SessionLocal, engine
from spinwheel.main import app
from spinwheel.models import Prize, SpinCode, User


class RecordingPublisher:
    """Stands in for EventHub in engine tests."""

    def __init__(self):
        self.events = []
        self.kpi_calls = 0

    def publish(self, scope, event, payload=None):
        self.events.append((scope, event, payload))

    def broadcast_kpis(self, db=None):
        self.kpi_calls += 1

    def names(self):
        return [name for _, name, _ in self.events]


class SequenceRandom:
    """``random()`` returns the given values in turn."""

    def __init__(self, *values):
        self._values = list(values)

    def random(self):
        return self._values.pop(0)


@pytest.fixture(autouse=True)
def reset_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    admin._failed.clear()
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


@pytest.fixture
def admin_token(client):
    r = client.post("/api/admin/login", json={"password": "letmein"})
    assert r.status_code == 200, r.text
    return r.json()["token"]


@pytest.fixture
def admin_headers(admin_token):
    return {"Authorization": f"Bearer {admin_token}"}


def make_user(db, username, **kwargs):
    user = User(username=username, **kwargs)
    db.add(user); db.commit(); db.refresh(user)
    return user


def make_code(db, code, **kwargs):
    row = SpinCode(code=code, **kwargs)
    db.add(row); db.commit(); db.refresh(row)
    return row


def make_prize(db, name, probability, order, **kwargs):
    p = Prize(name=name, probability=probability, order=order, **kwargs)
    db.add(p); db.commit(); db.refresh(p)
    return p
