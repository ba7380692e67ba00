from datetime import datetime, timezone

import mongomock
from bson import ObjectId
import pytest
from fastapi.testclient import TestClient

import database
import main


SHIPPING = {
    "firstName": "Asha",
    "lastName": "Rao",
    "email": "asha@gemstore.in",
    "phone": "+919812345678",
    "address": "12 MG Road",
    "city": "Jaipur",
    "state": "Rajasthan",
    "pincode": "302001",
}


@pytest.fixture
def mongo(monkeypatch):
    test_db = mongomock.MongoClient()["gemstore_test"]
    database.ensure_indexes(test_db)
    monkeypatch.setattr(database, "db", test_db)
    monkeypatch.setattr(main, "db", test_db)
    return test_db


@pytest.fixture
def client(mongo):
    return TestClient(main.app)


@pytest.fixture
def admin_headers():
    return {"X-Admin-Key": main.ADMIN_KEY}


def insert_gem(db, **overrides):
    now = datetime.now(timezone.utc)
    gem = {
        "name": "Ruby",
        "description": "Burmese pigeon blood ruby",
        "category": "precious",
        "price": 1000.0,
        "discount": 0,
        "discount_type": "percentage",
        "size_weight": 2.5,
        "size_unit": "carat",
        "images": ["ruby.jpg"],
        "uploaded_images": [],
        "all_images": ["ruby.jpg"],
        "stock": 5,
        "availability": True,
        "certification": "GIA",
        "origin": "Myanmar",
        "whom_to_use": ["Leo"],
        "benefits": ["confidence"],
        "created_at": now,
        "updated_at": now,
    }
    gem.update(overrides)
    return str(db["gem"].insert_one(gem).inserted_id)


def register(client, email="asha@gemstore.in", name="Asha Rao", password="secret123"):
    resp = client.post("/auth/register", json={"name": name, "email": email, "password": password})
    assert resp.status_code == 201, resp.text
    return {"Authorization": f"Bearer {resp.json()['token']}"}


def order_body(*lines, payment_method="cod"):
    return {
        "items": [{"gemId": gem_id, "quantity": qty, "price": price} for gem_id, qty, price in lines],
        "shippingAddress": dict(SHIPPING),
        "paymentMethod": payment_method,
    }


def gem_stock(db, gem_id):
    return db["gem"].find_one({"_id": ObjectId(gem_id)})["stock"]
