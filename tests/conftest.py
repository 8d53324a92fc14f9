import itertools

import mongomock
import pytest
from fastapi.testclient import TestClient

import database
from database import COL_PRODUCT, COL_USER, utcnow
from notifier import DeliveryError, get_notifier
from security import create_access_token, token_claims

_seq = itertools.count(1)


class RecordingNotifier:
    def __init__(self, fail=False):
        self.fail = fail
        self.sent = []

    def send_email_code(self, to, code):
        if self.fail:
            raise DeliveryError("smtp down")
        self.sent.append(("email", to, code))

    def send_sms_code(self, phone, code):
        if self.fail:
            raise DeliveryError("no gateway")
        self.sent.append(("sms", phone, code))

    @property
    def last_code(self):
        return self.sent[-1][2]


@pytest.fixture
def db():
    handle = mongomock.MongoClient()["edustore_test"]
    database.ensure_indexes(handle)
    return handle


@pytest.fixture
def notifier():
    return RecordingNotifier()


def add_product(db, product_id="p1", price=10.0, title="Algebra Notes", category="math"):
    now = utcnow()
    db[COL_PRODUCT].insert_one({
        "_id": product_id,
        "title": title,
        "category": category,
        "price": price,
        "file_url": f"/files/{product_id}.pdf",
        "in_stock": True,
        "created_at": now,
        "updated_at": now,
    })
    return product_id


def add_user(db, role="USER", email=None):
    now = utcnow()
    doc = {
        "email": email or f"{role.lower()}{next(_seq)}@example.com",
        "first_name": "",
        "last_name": "",
        "role": role,
        "is_email_verified": True,
        "created_at": now,
        "updated_at": now,
    }
    doc["_id"] = db[COL_USER].insert_one(doc).inserted_id
    return doc


def principal(user):
    return {"id": str(user["_id"]), "role": user["role"], "email": user.get("email"), "phone": user.get("phone")}


def bearer(user):
    return {"Authorization": f"Bearer {create_access_token(token_claims(user))}"}


@pytest.fixture
def client(monkeypatch, notifier):
    monkeypatch.setattr(database, "MongoClient", mongomock.MongoClient)
    from main import app

    app.dependency_overrides[get_notifier] = lambda: notifier
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


@pytest.fixture
def app_db(client):
    return client.app.state.db
