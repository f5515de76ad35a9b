import mongomock
import pytest

import database

database.db = mongomock.MongoClient()["marketplace_test"]

from fastapi.testclient import TestClient  # noqa: E402

import auth  # noqa: E402
import location  # noqa: E402
import main  # noqa: E402
import sms  # noqa: E402
from schemas import Product, Store, User  # noqa: E402

db = database.db

STORE_MAP_LINK = "https://maps.google.com/?q=12.9716,77.5946"


@pytest.fixture(autouse=True)
def clean_db():
    database.ensure_indexes(db)
    yield
    for name in db.list_collection_names():
        db.drop_collection(name)


@pytest.fixture(autouse=True)
def offline(monkeypatch):
    monkeypatch.setattr(sms, "send_phone_otp", lambda phone, otp: True)
    monkeypatch.setattr(location, "geocode_address", lambda address: None)


@pytest.fixture
def client():
    return TestClient(main.app)


def auth_headers(user_id) -> dict:
    return {"Authorization": f"Bearer {auth.create_access_token({'sub': str(user_id)})}"}


_phone_seq = iter(range(9000000000, 9999999999))


@pytest.fixture
def make_user():
    def _make(role="User", name=None, **fields):
        doc = User(
            phone=f"+91{next(_phone_seq)}",
            name=name or f"{role} Person",
            role=role,
            is_phone_verified=True,
            is_profile_complete=True,
        ).model_dump()
        doc.update(fields)
        database.create_document("user", doc)
        return doc, auth_headers(doc["_id"])
    return _make


@pytest.fixture
def make_store(make_user):
    def _make(merchant=None, **fields):
        if merchant is None:
            merchant, _ = make_user("Merchant")
        doc = Store(
            merchant_id=merchant["_id"],
            store_name=fields.pop("store_name", "Threads and Co"),
            address=fields.pop("address", "12 MG Road, Bengaluru"),
            map_link=fields.pop("map_link", STORE_MAP_LINK),
            contact={"phone": "9876543210"},
            working_days={"monday": True},
        ).model_dump()
        doc.update(fields)
        database.create_document("store", doc)
        return doc
    return _make


@pytest.fixture
def make_product():
    def _make(store, **fields):
        price = fields.pop("price", 499.0)
        doc = Product(
            merchant_id=store["merchant_id"],
            store_id=store["_id"],
            name=fields.pop("name", "Linen Shirt"),
            description=fields.pop("description", "Breathable linen shirt"),
            category=fields.pop("category", "Men"),
            subcategory=fields.pop("subcategory", "Shirts"),
            images=["https://cdn.example.com/shirt.jpg"],
            price=price,
            original_price=price,
            available_quantity=fields.pop("available_quantity", 10),
        ).model_dump()
        doc.update(fields)
        database.create_document("product", doc)
        return doc
    return _make


@pytest.fixture
def merchant(make_user, make_store):
    user, headers = make_user("Merchant", name="Meera Merchant")
    store = make_store(user)
    return user, headers, store


@pytest.fixture
def customer(make_user):
    return make_user("User", name="Chetan Customer")


@pytest.fixture
def place_order(client):
    def _place(headers, items, payment_method="COD", address="221B Baker Street, Bengaluru"):
        resp = client.post("/api/v1/order", headers=headers, json={
            "order_items": [{"product": str(p["_id"]), "quantity": q} for p, q in items],
            "shipping_address": address,
            "payment_method": payment_method,
        })
        assert resp.status_code == 201, resp.json()
        return resp.json()
    return _place
