from datetime import datetime, timedelta, timezone

import mongomock
import pytest
from fastapi.testclient import TestClient

from database import get_db
from errors import ErrorChannel
from main import app

BASE_TIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


@pytest.fixture
def db():
    return mongomock.MongoClient()["tijuana_shop_test"]


@pytest.fixture
def errors():
    return ErrorChannel()


@pytest.fixture
def published(errors):
    """Events seen on the error channel, as (event, payload) pairs."""
    seen = []
    for event in ("permission-error", "store-error"):
        errors.subscribe(event, lambda payload, event=event: seen.append((event, payload)))
    return seen


@pytest.fixture
def make_user(db):
    def _make(user_id, **overrides):
        doc = {
            "_id": user_id,
            "name": user_id.title(),
            "email": f"{user_id}@example.com",
            "profile_picture": f"https://img.example.com/{user_id}.png",
            "location": "Tijuana",
            "role": "user",
            "rating": None,
            "rating_count": 0,
            "favorites": [],
            "created_at": BASE_TIME,
        }
        doc.update(overrides)
        db["user"].insert_one(doc)
        return user_id
    return _make


@pytest.fixture
def make_product(db):
    counter = {"n": 0}

    def _make(seller_id="seller", **overrides):
        counter["n"] += 1
        doc = {
            "title": f"Producto {counter['n']}",
            "description": "En buen estado",
            "price": 100.0,
            "category": "otros",
            "condition": "Usado",
            "location": "Zona Río",
            "seller_id": seller_id,
            "images": ["https://img.example.com/p.png"],
            "created_at": BASE_TIME + timedelta(minutes=counter["n"]),
        }
        doc.update(overrides)
        return str(db["product"].insert_one(doc).inserted_id)
    return _make


@pytest.fixture
def client(db):
    app.dependency_overrides[get_db] = lambda: db
    yield TestClient(app)
    app.dependency_overrides.clear()
