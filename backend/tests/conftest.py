import os
import tempfile
import itertools

# Settings are read at import time: point the app at a throwaway SQLite file first
_db_dir = tempfile.mkdtemp(prefix="beacon-tests-")
os.environ["DATABASE_URL"] = "sqlite:///" + os.path.join(_db_dir, "test.db")
os.environ["ENV"] = "test"
os.environ["SCHEDULER_ENABLED"] = "0"
os.environ["BROADCAST_THROTTLE_SECONDS"] = "0"
os.environ["EMAIL_BATCH_DELAY_SECONDS"] = "0"
os.environ.setdefault("SECRET_KEY", "test-secret")

import fakeredis
import pytest
from fastapi.testclient import TestClient

from beacon.api.deps import get_broadcast_engine, get_submit_throttle
from beacon.core.cache import RedisCache
from beacon.core.security import get_password_hash
from beacon.db.session import SessionLocal, engine as db_engine
from beacon.main import app
from beacon.models import Base
from beacon.models.push_token import PushToken
from beacon.models.user import User
from beacon.schemas.broadcast import BroadcastRequest
from beacon.services.broadcast_engine import BroadcastEngine
from beacon.services.push_transport import PushResult

PASSWORD = "testpass"
_PASSWORD_HASH = get_password_hash(PASSWORD)
_seq = itertools.count(1)


class FakeEmailTransport:
    def __init__(self):
        self.sent: list[dict] = []
        self.fail_for: set[str] = set()

    async def send_html(self, to, subject, html, *, unsubscribe_url=None):
        if to in self.fail_for:
            raise ConnectionError(f"mailbox unavailable: {to}")
        self.sent.append({"to": to, "subject": subject, "html": html, "unsubscribe_url": unsubscribe_url})


class FakePushTransport:
    """Per-token results by default; ``batch_counts_only`` mimics a gateway that reports counts."""

    def __init__(self):
        self.calls: list[list[str]] = []
        self.rejected: set[str] = set()
        self.explode_on_call: set[int] = set()
        self.batch_counts_only = False

    async def send_multicast(self, tokens, notification, data):
        call_no = len(self.calls)
        self.calls.append(list(tokens))
        if call_no in self.explode_on_call:
            raise RuntimeError("gateway timeout")
        results = {t: ("invalid registration" if t in self.rejected else None) for t in tokens}
        ok = sum(1 for e in results.values() if e is None)
        if self.batch_counts_only:
            return PushResult(ok, len(tokens) - ok)
        return PushResult(ok, len(tokens) - ok, results)


@pytest.fixture(autouse=True)
def fresh_db():
    Base.metadata.drop_all(bind=db_engine)
    Base.metadata.create_all(bind=db_engine)
    yield


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def make_user():
    def _make(email=None, role="user", is_active=True, email_verified=True, email_subscribed=True, tokens=()):
        email = email or f"user{next(_seq)}@example.com"
        session = SessionLocal()
        try:
            u = User(
                email=email.lower(),
                full_name=email.split("@")[0],
                hashed_password=_PASSWORD_HASH,
                role=role,
                is_active=is_active,
                email_verified=email_verified,
                email_subscribed=email_subscribed,
            )
            session.add(u)
            session.flush()
            for t in tokens:
                session.add(PushToken(token=t, user_id=u.id))
            session.commit()
            session.refresh(u)
            return u
        finally:
            session.close()
    return _make


@pytest.fixture
def admin(make_user):
    return make_user(email="admin@example.com", role="admin")


@pytest.fixture
def email_transport():
    return FakeEmailTransport()


@pytest.fixture
def push_transport():
    return FakePushTransport()


@pytest.fixture
def engine(email_transport, push_transport):
    return BroadcastEngine(
        SessionLocal,
        email_transport,
        push_transport,
        push_batch_size=2,
        email_batch_size=2,
        email_batch_delay=0,
    )


@pytest.fixture
def redis_server():
    return fakeredis.FakeServer()


def redis_cache(server, ttl_seconds=0):
    return RedisCache(fakeredis.FakeAsyncRedis(server=server, decode_responses=True), prefix="test:", ttl_seconds=ttl_seconds)


@pytest.fixture
def client(engine, redis_server):
    app.dependency_overrides[get_broadcast_engine] = lambda: engine
    app.dependency_overrides[get_submit_throttle] = lambda: redis_cache(redis_server)
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def login(client):
    def _login(email: str) -> dict:
        r = client.post("/auth/login-json", json={"email": email, "password": PASSWORD})
        assert r.status_code == 200, r.text
        return {"Authorization": f"Bearer {r.json()['access_token']}"}
    return _login


@pytest.fixture
def admin_headers(admin, login):
    return login(admin.email)


def payload(**fields):
    """Build a validated submission the way the HTTP layer does."""
    data = {"target": "ALL", "title": "Maintenance", "message": "Downtime at 10pm"}
    data.update(fields)
    return BroadcastRequest.model_validate(data).root


async def submit_and_drain(engine, submission, admin_id=None, now=None):
    result = await engine.submit(submission, admin_id, now=now)
    await engine.jobs.drain()
    return result
