"""Pytest fixtures for the storefront tests."""

import cloudinary.uploader
import mongomock
import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

from auth import token_for
from database import create_document, get_db


@pytest.fixture
def db():
    """An in-memory Mongo database."""
    return mongomock.MongoClient()["store_test"]


@pytest.fixture
def uploads(monkeypatch):
    """Replace the Cloudinary uploader; records (payload, folder) per call."""
    calls = []

    def fake_upload(payload, folder=None, **kwargs):
        calls.append((payload, folder))
        return {"secure_url": f"https://res.cloudinary.com/demo/{folder}/img{len(calls)}.png"}

    monkeypatch.setattr(cloudinary.uploader, "upload", fake_upload)
    return calls


@pytest.fixture
def client(db, uploads):
    from main import app

    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_user(db):
    def _make(name="Jane Doe", email="jane@gymstore.com", role="CUSTOMER"):
        user_id = create_document(db, "user", {
            "name": name,
            "email": email,
            "password_hash": "not-a-real-hash",
            "role": role,
            "is_active": True,
        })
        user = db["user"].find_one({"_id": ObjectId(user_id)})
        user["headers"] = {"Authorization": f"Bearer {token_for(user)}"}
        user["id"] = user_id
        return user

    return _make


@pytest.fixture
def customer(make_user):
    return make_user()


@pytest.fixture
def admin(make_user):
    return make_user(name="Store Admin", email="admin@gymstore.com", role="ADMIN")


@pytest.fixture
def make_product(db):
    def _make(name="Whey Protein", price=500, stock=10, category="Supplement", variants=()):
        product_id = create_document(db, "product", {
            "name": name,
            "category": category,
            "brand": "MuscleMax",
            "price": price,
            "stock": stock,
            "images": [],
            "rating": 0,
            "review_count": 0,
            "is_active": True,
        })
        variant_ids = [
            create_document(db, "productvariant", {"product_id": product_id, **v})
            for v in variants
        ]
        return product_id, variant_ids

    return _make


@pytest.fixture
def make_address(db):
    def _make(user_id):
        return create_document(db, "address", {
            "user_id": user_id,
            "full_name": "Jane Doe",
            "phone": "0300-1234567",
            "street": "12 Canal Road",
            "city": "Lahore",
            "state": "Punjab",
            "zip_code": "54000",
            "country": "Pakistan",
        })

    return _make


@pytest.fixture
def stock_of(db):
    def _stock(collection_name, id_str):
        return db[collection_name].find_one({"_id": ObjectId(id_str)})["stock"]

    return _stock
