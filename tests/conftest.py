import os

# settings are read at import time; make the suite independent of any local .env
os.environ.setdefault("secret_key", "test_secret")
os.environ.setdefault("access_token_expire_minutes", "120")
os.environ["database_url"] = "sqlite://"
os.environ["store_retry_base_delay"] = "0"
os.environ["notification_retry_attempts"] = "2"

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import Session, SQLModel, create_engine

from toolcrib.db import configure_engine, get_session
from toolcrib.deps import get_image_store, get_notifier
from toolcrib.main import app
from toolcrib.models import Category, Company, User
from toolcrib.schemas import UserRole
from toolcrib.services.images import LocalImageStore


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sent = []

    def send(self, kind, payload):
        if self.fail:
            raise RuntimeError("relay down")
        self.sent.append((kind, payload))

    def kinds(self):
        return [kind.value for kind, _ in self.sent]


@pytest.fixture
def engine():
    engine = configure_engine(
        create_engine(
            "sqlite://",
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    )
    SQLModel.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    with Session(engine) as s:
        yield s


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def image_store(tmp_path):
    return LocalImageStore(root=tmp_path / "images", base_url="/images")


@pytest.fixture
def client(engine, notifier, image_store):
    def override_get_session():
        with Session(engine) as s:
            yield s

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_notifier] = lambda: notifier
    app.dependency_overrides[get_image_store] = lambda: image_store

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()


@pytest.fixture
def signup(client):
    def _signup(username, role="technician", company="Acme Plumbing", password="pw123"):
        r = client.post(
            "/auth/register",
            json={"username": username, "password": password, "role": role, "company_name": company},
        )
        assert r.status_code == 200, r.text
        r = client.post("/auth/login", data={"username": username, "password": password})
        return {"Authorization": f"Bearer {r.json()['access_token']}"}

    return _signup


@pytest.fixture
def admin(signup):
    return signup("boss", role="admin")


@pytest.fixture
def tech(signup, admin):
    return signup("tony")


@pytest.fixture
def category(client, admin):
    r = client.post("/categories", json={"name": "Tools"}, headers=admin)
    assert r.status_code == 200, r.text
    return r.json()["id"]


@pytest.fixture
def truck(client, admin):
    r = client.post("/trucks", json={"name": "Van 1", "identifier": "TRK-001"}, headers=admin)
    assert r.status_code == 200, r.text
    return r.json()


@pytest.fixture
def add_item(client, admin, category):
    def _add(name="Drill", headers=None, **fields):
        body = {"name": name, "category_id": category, **fields}
        r = client.post("/items", json=body, headers=headers or admin)
        assert r.status_code == 200, r.text
        return r.json()

    return _add


# ---------- service-level fixtures (no HTTP) ----------
# keep these away from `client` in the same test: both share one in-memory connection

@pytest.fixture
def company(session):
    c = Company(name="Acme Plumbing", admin_email="ops@acme.test")
    session.add(c)
    session.commit()
    session.refresh(c)
    return c


@pytest.fixture
def boss(session, company):
    u = User(username="boss", password_hash="x", role=UserRole.admin, company_id=company.id)
    session.add(u)
    session.commit()
    session.refresh(u)
    return u


@pytest.fixture
def tony(session, company):
    u = User(username="tony", password_hash="x", role=UserRole.technician, company_id=company.id)
    session.add(u)
    session.commit()
    session.refresh(u)
    return u


@pytest.fixture
def tools(session, company):
    c = Category(name="Tools", company_id=company.id)
    session.add(c)
    session.commit()
    session.refresh(c)
    return c
