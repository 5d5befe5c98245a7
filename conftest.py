import json
import os

# main reads its settings at import time
os.environ["APP_ENV"] = "test"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["CHAPA_SECRET_KEY"] = "CHASECK_TEST-unit"
os.environ["CHAPA_WEBHOOK_SECRET"] = ""
os.environ["CLOUDINARY_CLOUD_NAME"] = ""
os.environ["CLOUDINARY_API_KEY"] = ""
os.environ["CLOUDINARY_API_SECRET"] = ""
os.environ.pop("DATABASE_URL", None)

import httpx  # noqa: E402
import mongomock  # noqa: E402
import pytest  # noqa: E402
from bson import ObjectId  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

import database  # noqa: E402
import main  # noqa: E402
from payments import ChapaClient, PaymentGateway  # noqa: E402
from schemas import GarageProfile, User  # noqa: E402
from storage import LocalBlobStore  # noqa: E402

PASSWORD = "Passw0rdX"


class FakeChapa:
    """Stands in for the Chapa API behind an httpx.MockTransport."""

    def __init__(self):
        self.initialized = []
        self.verified = []
        self.verify_status = "success"
        self.error = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.error is not None:
            raise self.error
        path = request.url.path
        if path.endswith("/transaction/initialize"):
            body = json.loads(request.content)
            self.initialized.append(body)
            return httpx.Response(200, json={
                "status": "success",
                "message": "Hosted Link",
                "data": {"checkout_url": f"https://checkout.chapa.co/checkout/payment/{body['tx_ref']}"},
            })
        if "/transaction/verify/" in path:
            tx_ref = path.rsplit("/", 1)[-1]
            self.verified.append(tx_ref)
            return httpx.Response(200, json={
                "status": "success",
                "message": "Payment details",
                "data": {"status": self.verify_status, "tx_ref": tx_ref, "amount": "500.00"},
            })
        return httpx.Response(404, json={"message": "Not found"})

    def gateway(self, settings) -> PaymentGateway:
        client = httpx.Client(transport=httpx.MockTransport(self.handler))
        return PaymentGateway(settings, ChapaClient(settings, client=client))


@pytest.fixture
def mongo(monkeypatch):
    db = mongomock.MongoClient(tz_aware=True)["garage_test"]
    monkeypatch.setattr(main, "db", db)
    monkeypatch.setattr(database, "db", db)
    return db


@pytest.fixture
def chapa(monkeypatch):
    fake = FakeChapa()
    monkeypatch.setattr(main, "gateway", fake.gateway(main.settings))
    return fake


@pytest.fixture
def blobs(monkeypatch, tmp_path):
    store = LocalBlobStore(str(tmp_path / "uploads"))
    monkeypatch.setattr(main, "blob_store", store)
    return store


@pytest.fixture
def client(mongo, chapa, blobs):
    return TestClient(main.app)


def profile_data(**overrides):
    data = dict(
        business_name="Abebe Auto Service",
        business_reg_number=f"REG-{ObjectId()}",
        address="Bole Road, Addis Ababa",
        city="Addis Ababa",
        business_phone="+251911000000",
        business_email="shop@example.com",
        description="Full service garage for all makes and models",
        license_number="LIC-2024-001",
    )
    data.update(overrides)
    return data


def make_profile(**overrides) -> GarageProfile:
    return GarageProfile(**profile_data(**overrides))


def insert_user(db, role="customer", email=None, name="Test User", garage_info=None):
    user = User(
        name=name,
        email=email or f"{ObjectId()}@example.com",
        phone="+251911111111",
        password_hash=main.pwd_context.hash(PASSWORD),
        role=role,
        garage_info=garage_info,
    ).model_dump()
    user["_id"] = db["user"].insert_one(user).inserted_id
    return user


def insert_owner(db, **profile_overrides):
    return insert_user(db, role="garage_owner", name="Abebe Kebede", garage_info=make_profile(**profile_overrides))


def auth(user) -> dict:
    return {"Authorization": f"Bearer {main.token_for(user)}"}
