"""Pytest fixtures for the store backend tests."""

from datetime import timedelta

import httpx
import pytest
from mongomock_motor import AsyncMongoMockClient

from auth import admin_token, customer_token
from database import COUPONS, ORDERS, create_document, utcnow
from shiprocket import ShiprocketClient, TokenCache


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeShiprocket:
    """Stands in for the Shiprocket REST API behind httpx.MockTransport."""

    def __init__(self):
        self.calls = []
        self.logins = 0
        self.pickup_addresses = [{"pickup_location": "Warehouse-1", "pin_code": 560001}]
        self.create_status = 200
        self.create_body = {
            "order_id": 9001,
            "shipment_id": 7001,
            "status": "NEW",
            "status_code": 1,
            "awb_code": "AWB123456",
            "courier_name": "Delhivery",
        }
        self.track_body = {}
        self.rates = [{"courier_name": "Delhivery", "rate": 72.5}, {"courier_name": "Xpressbees", "rate": 64.0}]

    def paths(self, suffix):
        return [c for c in self.calls if c.url.path.endswith(suffix)]

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.calls.append(request)
        path = request.url.path
        if path.endswith("/auth/login"):
            self.logins += 1
            return httpx.Response(200, json={"token": f"token-{self.logins}"})
        if path.endswith("/settings/company/pickup"):
            return httpx.Response(200, json={"data": {"shipping_address": self.pickup_addresses}})
        if path.endswith("/orders/create/adhoc"):
            return httpx.Response(self.create_status, json=self.create_body)
        if path.endswith("/courier/assign/awb"):
            return httpx.Response(200, json={
                "awb_assign_status": 1,
                "response": {"data": {"awb_code": "AWB-ASSIGNED", "courier_name": "Ecom Express"}},
            })
        if "/courier/track/shipment/" in path:
            return httpx.Response(200, json=self.track_body)
        if path.endswith("/orders/cancel"):
            return httpx.Response(200, json={"status_code": 200, "message": "Order cancelled"})
        if path.endswith("/courier/serviceability/"):
            return httpx.Response(200, json={"status": 200, "data": {"available_courier_companies": self.rates}})
        return httpx.Response(404, json={"message": "Not found"})


@pytest.fixture
def db():
    return AsyncMongoMockClient()["store_test"]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def carrier():
    return FakeShiprocket()


@pytest.fixture
def gateway(carrier, clock):
    return ShiprocketClient(
        email="ops@example.com",
        password="secret",
        base_url="https://shiprocket.test/v1/external",
        token_cache=TokenCache(ttl=8 * 3600, refresh_margin=10 * 60, clock=clock),
        http=httpx.AsyncClient(transport=httpx.MockTransport(carrier.handle)),
    )


@pytest.fixture
async def api(db, gateway):
    from database import get_db
    from main import app
    from shiprocket import get_shipping_gateway

    app.dependency_overrides[get_db] = lambda: db
    app.dependency_overrides[get_shipping_gateway] = lambda: gateway
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture
def admin_headers():
    return {"Authorization": f"Bearer {admin_token('64b000000000000000000001', 'admin')}"}


@pytest.fixture
def customer_id():
    return "64c000000000000000000001"


@pytest.fixture
def customer_headers(customer_id):
    return {"Authorization": f"Bearer {customer_token(customer_id)}"}


def order_payload(**overrides):
    payload = {
        "customer_details": {
            "first_name": "Asha",
            "last_name": "Rao",
            "email": "Asha@Example.com",
            "phone": "+91 98765-43210",
        },
        "shipping_address": {
            "address_line1": "12 MG Road",
            "city": "Bengaluru",
            "state": "Karnataka",
            "pincode": 560001,
        },
        "items": [
            {"product_id": "p-1", "title": "Ragi Malt", "quantity": 2, "price_per_unit": 100},
        ],
        "subtotal": 200,
        "total_amount": 200,
        "payment_method": "Cash on Delivery",
    }
    payload.update(overrides)
    return payload


async def insert_coupon(db, **overrides):
    data = {
        "code": "SAVE10",
        "discount_type": "percentage",
        "discount_value": 10,
        "minimum_order_value": 500,
        "expiry_date": utcnow() + timedelta(days=30),
        "is_active": True,
        "usage_limit": 100,
        "used_count": 0,
    }
    data.update(overrides)
    return await create_document(db, COUPONS, data)


async def insert_order(db, **overrides):
    data = {
        "customer_id": "64c000000000000000000001",
        "customer_details": {
            "first_name": "Asha", "last_name": "Rao", "name": "Asha Rao",
            "email": "asha@example.com", "phone": "9876543210",
        },
        "shipping_address": {
            "address_line1": "12 MG Road", "city": "Bengaluru", "state": "Karnataka",
            "pincode": 560001, "country": "India",
        },
        "items": [{
            "product_id": "p-1", "title": "Ragi Malt", "sku": "", "quantity": 2, "price_per_unit": 100.0,
            "length": 10, "breadth": 10, "height": 10, "weight": 0.5,
        }],
        "subtotal": 200.0,
        "discount_amount": 0.0,
        "total_amount": 200.0,
        "coupon_code": None,
        "coupon_id": None,
        "payment_method": "Cash on Delivery",
        "payment_status": "Pending",
        "order_status": "Confirmed",
        "tracking": None,
    }
    data.update(overrides)
    return await create_document(db, ORDERS, data)
