"""
Shared fixtures: an in-memory MongoDB (mongomock) wired into the app through
dependency overrides, and helpers that create accounts through the API.
"""
import os

# must be set before the application modules read their settings
os.environ["BCRYPT_ROUNDS"] = "4"
os.environ["JWT_SECRET"] = "test-secret"
os.environ["DATABASE_URL"] = ""
os.environ["DATABASE_NAME"] = ""

import mongomock
import pytest
from fastapi.testclient import TestClient

import auth
import main
from database import ensure_indexes, get_db, update_document

KITCHEN = {"street": "12 MG Road", "city": "Pune", "state": "MH", "pincode": "411001"}
HOME = {"street": "4 Lake View", "city": "Pune", "state": "MH", "pincode": "411002"}


@pytest.fixture
def mongo():
    database = mongomock.MongoClient()["tiffin_test"]
    ensure_indexes(database)
    return database


@pytest.fixture
def client(mongo):
    main.app.dependency_overrides[get_db] = lambda: mongo
    yield TestClient(main.app)
    main.app.dependency_overrides.clear()


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def register_customer(client):
    counter = {"n": 0}

    def _register(email=None, phone=None, password="secret123", name="Asha Rao"):
        counter["n"] += 1
        n = counter["n"]
        body = {
            "name": name,
            "email": email or f"customer{n}@example.com",
            "phone": phone or f"98765{n:05d}",
            "password": password,
        }
        response = client.post("/api/auth/register/user", json=body)
        assert response.status_code == 201, response.text
        data = response.json()
        return data["token"], data["user"]

    return _register


@pytest.fixture
def register_vendor(client, mongo):
    counter = {"n": 0}

    def _register(approved=True, email=None, password="secret123"):
        counter["n"] += 1
        n = counter["n"]
        body = {
            "name": "Meena Kitchen",
            "email": email or f"vendor{n}@example.com",
            "phone": f"91234{n:05d}",
            "password": password,
            "business_name": f"Meena's Tiffins {n}",
            "kitchen_address": KITCHEN,
        }
        response = client.post("/api/auth/register/vendor", json=body)
        assert response.status_code == 201, response.text
        data = response.json()
        if approved:
            update_document(mongo, "vendor", data["vendor"]["id"], {
                "is_verified": True,
                "verification_status": "approved",
                "service_areas": [{"pincode": HOME["pincode"], "delivery_charge": 20}],
            })
        return data["token"], data["vendor"]

    return _register


@pytest.fixture
def admin_account(mongo):
    def _create(email="admin@example.com", password="adminpass", role="admin", phone="9000000001"):
        return auth.create_admin(mongo, name="Site Admin", email=email, phone=phone,
                                 password=password, role=role)

    return _create


@pytest.fixture
def admin_token(client, admin_account):
    admin_account()
    response = client.post("/api/auth/login", json={
        "email": "admin@example.com", "password": "adminpass", "user_type": "admin",
    })
    assert response.status_code == 200, response.text
    return response.json()["token"]


@pytest.fixture
def vendor_with_menu(client, register_vendor):
    """An approved vendor with two menu items: thali (100) and paratha (50)."""
    token, vendor = register_vendor()
    items = {}
    for name, price, category in (("Veg Thali", 100, "lunch"), ("Aloo Paratha", 50, "breakfast")):
        response = client.post("/api/vendor/menu", headers=bearer(token),
                               json={"name": name, "price": price, "category": category})
        assert response.status_code == 201, response.text
        items[name] = response.json()["id"]
    return token, vendor, items


@pytest.fixture
def place_order(client, vendor_with_menu, register_customer):
    def _place(customer_token=None, taxes=10, payment_method="cash"):
        vendor_token, vendor, items = vendor_with_menu
        if customer_token is None:
            customer_token, _ = register_customer()
        response = client.post("/api/orders", headers=bearer(customer_token), json={
            "vendor_id": vendor["id"],
            "items": [
                {"menu_item_id": items["Veg Thali"], "quantity": 2},
                {"menu_item_id": items["Aloo Paratha"], "quantity": 1},
            ],
            "delivery_address": HOME,
            "scheduled_date": "2026-10-20T12:00:00",
            "scheduled_time": "12:30",
            "payment_method": payment_method,
            "taxes": taxes,
        })
        assert response.status_code == 201, response.text
        return customer_token, vendor_token, response.json()

    return _place
