import os

# the app must not try to reach a real server or start the scheduler
os.environ.pop("DATABASE_URL", None)
os.environ["ENABLE_SCHEDULER"] = "false"
os.environ.setdefault("SECRET_KEY", "test-secret")

import mongomock
import pytest
from fastapi.testclient import TestClient

import main
from database import create_document, ensure_indexes, get_db
from errors import DeliveryFailed
from mailer import get_mailer


class FakeMailer:
    def __init__(self):
        self.sent = []
        self.fail = False

    def _deliver(self, kind, doc, client):
        if self.fail:
            raise DeliveryFailed("Email could not be sent: connection refused")
        self.sent.append((kind, doc["number"], client["email"]))

    def send_invoice(self, invoice, client):
        self._deliver("invoice", invoice, client)

    def send_quote(self, quote, client):
        self._deliver("quote", quote, client)


@pytest.fixture
def db():
    database = mongomock.MongoClient()["erp_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def mailer():
    return FakeMailer()


@pytest.fixture
def client(db, mailer):
    main.app.dependency_overrides[get_db] = lambda: db
    main.app.dependency_overrides[get_mailer] = lambda: mailer
    yield TestClient(main.app, raise_server_exceptions=False)
    main.app.dependency_overrides.clear()


def register(client, email="owner@example.com", password="secret123", name="Owner"):
    res = client.post("/auth/register", json={"name": name, "email": email, "password": password})
    assert res.status_code == 201, res.text
    res = client.post("/auth/login", json={"email": email, "password": password})
    assert res.status_code == 200, res.text
    return {"Authorization": f"Bearer {res.json()['data']['access_token']}"}


@pytest.fixture
def auth(client):
    return register(client)


@pytest.fixture
def owner_id(client, auth):
    return client.get("/auth/me", headers=auth).json()["data"]["id"]


@pytest.fixture
def acme(client, auth):
    res = client.post("/clients", json={"name": "Acme Corp", "email": "billing@acme.example.com"}, headers=auth)
    assert res.status_code == 201, res.text
    return res.json()["data"]


def line(name="Widget", quantity=1, price=100.0, **extra):
    return {"item_name": name, "quantity": quantity, "price": price, **extra}


def make_client(db, owner_id, name="Acme Corp", email="billing@acme.example.com"):
    return create_document(db, "client", {
        "name": name, "email": email, "status": "active", "removed": False, "created_by": owner_id,
    })
