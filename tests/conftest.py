"""
Shared fixtures: an in-memory Mongo (mongomock) with the production indexes,
a small catalog for one seller, and helpers to walk orders through their
lifecycle.
"""
from datetime import datetime, timedelta

import mongomock
import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

import database
from auth import get_current_user
from database import ensure_indexes
from models import OrderStatus, UserRole
from services import order_service

SELLER_ID = "seller-1"
OTHER_SELLER_ID = "seller-2"
CUSTOMER_ID = "customer-1"
OTHER_CUSTOMER_ID = "customer-2"
ADMIN_ID = "admin-1"


@pytest.fixture
def db():
    client = mongomock.MongoClient()
    database_ = client["pharmacy_test"]
    ensure_indexes(database_)
    return database_


@pytest.fixture
def add_medicine(db):
    """Factory: insert a Medicine document and return its id as a string."""
    def _add(name="Paracetamol 500mg", seller_id=SELLER_ID, selling_price=10.0, stock=50, **extra):
        doc = {
            "name": name,
            "seller_id": seller_id,
            "selling_price": selling_price,
            "buying_price": round(selling_price * 0.6, 2),
            "stock": stock,
            "expiration_date": datetime.utcnow() + timedelta(days=365),
        }
        doc.update(extra)
        return str(db.Medicine.insert_one(doc).inserted_id)
    return _add


@pytest.fixture
def med_a(add_medicine):
    return add_medicine(name="Amoxicillin 250mg", selling_price=10.0)


@pytest.fixture
def med_b(add_medicine):
    return add_medicine(name="Vitamin C 1000mg", selling_price=5.0)


@pytest.fixture
def place_order(db, med_a, med_b):
    def _place(customer_id=CUSTOMER_ID, items=None):
        items = items or [
            {"medicine_id": med_a, "quantity": 2},
            {"medicine_id": med_b, "quantity": 1},
        ]
        return order_service.create_order(db, customer_id, SELLER_ID, "12 Bogyoke Rd, Yangon", items)
    return _place


@pytest.fixture
def placed_order(place_order):
    return place_order()


def advance(db, order, until: OrderStatus, seller_id=SELLER_ID):
    """Step an order forward one status at a time until it reaches ``until``."""
    while order.status is not until:
        nxt = order_service.next_status(order.status)
        order = order_service.update_order_status(db, order.id, seller_id, UserRole.SELLER, nxt)
    return order


@pytest.fixture
def delivered_order(db, placed_order):
    return advance(db, placed_order, OrderStatus.DELIVERED)


# ============================================================
# HTTP
# ============================================================

@pytest.fixture
def client(db, monkeypatch):
    from main import app

    monkeypatch.setattr(database, "db", db)
    with_user = {"user": None}

    def fake_current_user():
        if with_user["user"] is None:
            raise HTTPException(status_code=401, detail="Not authenticated")
        return with_user["user"]

    app.dependency_overrides[get_current_user] = fake_current_user
    test_client = TestClient(app)
    test_client.with_user = with_user
    yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def login(client):
    def _login(user_id, role: UserRole):
        client.with_user["user"] = {"id": user_id, "username": user_id, "role": role}
        return client
    return _login
