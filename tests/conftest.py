import os

# ✅ 先设环境变量，再 import app（settings 只读一次）
os.environ.setdefault("secret_key", "test_secret")
os.environ.setdefault("refresh_secret_key", "test_refresh_secret")
os.environ.setdefault("database_url", "sqlite://")
os.environ.setdefault("seed_default_roles", "false")
os.environ.setdefault("log_level", "WARNING")

import httpx
import pytest
from fastapi.testclient import TestClient
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine, select

from ftth_inventory.db import get_session
from ftth_inventory.main import app
from ftth_inventory.models import Role, User
from ftth_inventory.permissions import seed_default_roles
from ftth_inventory.routers.artacom import get_artacom_client
from ftth_inventory.security import hash_password
from ftth_inventory.services.artacom import ArtacomClient

USERS = {
    "admin": ("admin@ftth.local", "admin123", "ADMIN"),
    "gudang": ("gudang@ftth.local", "gudang123", "GUDANG"),
    "teknisi": ("teknisi@ftth.local", "teknisi123", "TEKNISI"),
}


class FakeArtacom:
    """In-process stand-in for the partner API, served through httpx.MockTransport."""

    def __init__(self):
        self.inventory: list[dict] | dict = []
        self.histories: list[dict] = []
        self.inventory_down = False
        self.history_down = False
        self.token_requests = 0
        self.token_html = False

    def handle(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/auth/token":
            self.token_requests += 1
            if self.token_html:
                return httpx.Response(200, text="<html>login page</html>", headers={"Content-Type": "text/html"})
            return httpx.Response(200, json={"access_token": "partner-token", "expires_in": 3600})
        if request.headers.get("Authorization") != "Bearer partner-token":
            return httpx.Response(401, json={"detail": "unauthorized"})
        if request.url.path == "/api/inventory/inventory":
            if self.inventory_down:
                return httpx.Response(503, json={"detail": "maintenance"})
            return httpx.Response(200, json={"data": self.inventory})
        if request.url.path == "/api/inventory/history/all":
            if self.history_down:
                return httpx.Response(503, json={"detail": "maintenance"})
            return httpx.Response(200, json={"data": self.histories})
        return httpx.Response(404)


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    SQLModel.metadata.create_all(engine)

    with Session(engine) as session:
        seed_default_roles(session)
        roles = {r.name: r.id for r in session.exec(select(Role)).all()}
        for email, password, role in USERS.values():
            session.add(User(email=email, name=email.split("@")[0].title(), password_hash=hash_password(password), role_id=roles[role]))
        session.commit()

    yield engine
    engine.dispose()


@pytest.fixture
def partner():
    return FakeArtacom()


@pytest.fixture
def client(engine, partner):
    def override_get_session():
        with Session(engine) as session:
            yield session

    partner_client = ArtacomClient("http://artacom.test", "sync", "secret", transport=httpx.MockTransport(partner.handle))

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_artacom_client] = lambda: partner_client

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()
    partner_client.close()


def login(client, who: str) -> str:
    email, password, _ = USERS[who]
    r = client.post("/api/auth/login", json={"email": email, "password": password})
    assert r.status_code == 200, r.text
    return r.json()["accessToken"]


@pytest.fixture
def admin_h(client):
    return {"Authorization": f"Bearer {login(client, 'admin')}"}


@pytest.fixture
def gudang_h(client):
    return {"Authorization": f"Bearer {login(client, 'gudang')}"}


@pytest.fixture
def teknisi_h(client):
    return {"Authorization": f"Bearer {login(client, 'teknisi')}"}


def user_id(engine, who: str) -> int:
    with Session(engine) as session:
        return session.exec(select(User.id).where(User.email == USERS[who][0])).one()


def role_id(engine, name: str) -> int:
    with Session(engine) as session:
        return session.exec(select(Role.id).where(Role.name == name)).one()
