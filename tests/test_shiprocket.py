"""Tests for the Shiprocket gateway adapter."""

import json

import httpx
import pytest
from bson import ObjectId

from errors import ShipmentCreationError, UpstreamError
from schemas import PackageDimensions
from shiprocket import (
    ShiprocketClient,
    TokenCache,
    TrackingSnapshot,
    WebhookPayload,
    build_order_payload,
    carrier_payment_method,
    extract_error_message,
    package_dimensions,
)


def stored_order(**overrides):
    order = {
        "_id": ObjectId("650000000000000000000001"),
        "customer_details": {"first_name": "Asha", "last_name": "Rao", "email": "asha@example.com", "phone": "+91-98765 43210"},
        "shipping_address": {"address_line1": "12 MG Road", "city": "Bengaluru", "state": "Karnataka", "pincode": "560001"},
        "items": [
            {"product_id": "p-1", "title": "Ragi Malt", "quantity": 2, "price_per_unit": 100.0,
             "length": 12, "breadth": 8, "height": 6, "weight": 0.4},
            {"product_id": "p-2", "title": "Millet Soup", "sku": "SOUP-1", "quantity": 1, "price_per_unit": 150.0},
        ],
        "subtotal": 350.0,
        "discount_amount": 35.0,
        "payment_method": "Cash on Delivery",
    }
    order.update(overrides)
    return order


class TestTokenCache:
    def test_empty_cache(self, clock):
        cache = TokenCache(ttl=3600, refresh_margin=600, clock=clock)
        assert cache.get() is None

    def test_token_reused_until_refresh_margin(self, clock):
        cache = TokenCache(ttl=3600, refresh_margin=600, clock=clock)
        cache.store("abc")
        clock.advance(2999)
        assert cache.get() == "abc"
        clock.advance(1)
        assert cache.get() is None

    def test_clear(self, clock):
        cache = TokenCache(ttl=3600, refresh_margin=600, clock=clock)
        cache.store("abc")
        cache.clear()
        assert cache.get() is None


class TestAuthentication:
    async def test_token_is_cached(self, gateway, carrier):
        assert await gateway.authenticate() == "token-1"
        assert await gateway.authenticate() == "token-1"
        assert carrier.logins == 1

    async def test_refreshes_near_expiry(self, gateway, carrier, clock):
        await gateway.authenticate()
        clock.advance(8 * 3600 - 5 * 60)
        assert await gateway.authenticate() == "token-2"
        assert carrier.logins == 2

    async def test_auth_failure(self, clock):
        def handler(request):
            return httpx.Response(403, json={"message": "Invalid email and password combination"})

        client = ShiprocketClient("ops@example.com", "wrong", base_url="https://shiprocket.test",
                                  token_cache=TokenCache(3600, 600, clock),
                                  http=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        with pytest.raises(UpstreamError, match="Invalid email and password combination"):
            await client.authenticate()

    async def test_missing_credentials(self, clock):
        client = ShiprocketClient("", "", http=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: None)))
        with pytest.raises(UpstreamError, match="not configured"):
            await client.authenticate()

    async def test_unauthorized_response_clears_token(self, gateway, carrier):
        carrier.create_status = 401
        carrier.create_body = {"message": "Token has expired"}
        with pytest.raises(ShipmentCreationError):
            await gateway.create_order(stored_order())
        assert gateway.token_cache.get() is None


class TestPickupLocation:
    async def test_configured_location_skips_lookup(self, gateway, carrier):
        gateway.pickup_location = "Primary"
        assert await gateway.get_pickup_location() == "Primary"
        assert carrier.paths("/settings/company/pickup") == []

    async def test_first_account_location(self, gateway, carrier):
        carrier.pickup_addresses = [{"pickup_location": "Home"}, {"pickup_location": "Other"}]
        assert await gateway.get_pickup_location() == "Home"

    async def test_no_locations_fails_loudly(self, gateway, carrier):
        carrier.pickup_addresses = []
        with pytest.raises(UpstreamError, match="No pickup locations"):
            await gateway.get_pickup_location()


class TestPayload:
    def test_fields(self):
        payload = build_order_payload(stored_order(), "Warehouse-1")
        assert payload["order_id"] == "650000000000000000000001"
        assert payload["pickup_location"] == "Warehouse-1"
        assert payload["billing_phone"] == "9876543210"
        assert payload["billing_pincode"] == 560001
        assert payload["payment_method"] == "COD"
        assert payload["sub_total"] == 350.0
        assert payload["total_discount"] == 35.0
        assert payload["billing_country"] == "India"
        assert payload["order_items"][0] == {
            "name": "Ragi Malt", "sku": "p-1", "units": 2, "selling_price": 100.0, "discount": 0, "tax": 0,
        }
        assert payload["order_items"][1]["sku"] == "SOUP-1"

    def test_order_date_format(self):
        payload = build_order_payload(stored_order(), "W")
        assert len(payload["order_date"]) == 16
        assert payload["order_date"][10] == " "

    def test_invalid_pincode(self):
        order = stored_order(shipping_address={"pincode": "ABC"})
        with pytest.raises(ShipmentCreationError, match="Invalid pincode"):
            build_order_payload(order, "W")

    @pytest.mark.parametrize("method, expected", [
        ("Cash on Delivery", "COD"),
        ("COD", "COD"),
        ("Prepaid", "Prepaid"),
        ("Online Payment", "Prepaid"),
        ("something else", "Prepaid"),
    ])
    def test_payment_method_mapping(self, method, expected):
        assert carrier_payment_method(method) == expected

    def test_dimensions_from_items_with_fallback(self):
        package = package_dimensions(stored_order()["items"])
        # Second item has no attributes and falls back to 10x10x10, 0.5 kg
        assert package == {"length": 12.0, "breadth": 10.0, "height": 10.0, "weight": 1.3}

    def test_explicit_dimensions_win(self):
        override = PackageDimensions(length=30, weight=2)
        package = package_dimensions(stored_order()["items"], override)
        assert package["length"] == 30.0
        assert package["weight"] == 2.0
        assert package["breadth"] == 10.0

    def test_no_items_uses_fallback(self):
        assert package_dimensions([]) == {"length": 10.0, "breadth": 10.0, "height": 10.0, "weight": 0.5}


class TestCreateOrder:
    async def test_success(self, gateway, carrier):
        result = await gateway.create_order(stored_order())
        assert result.shipment_id == "7001"
        assert result.order_id == "9001"
        assert result.awb_code == "AWB123456"
        assert result.courier_name == "Delhivery"
        sent = carrier.paths("/orders/create/adhoc")[0]
        assert sent.headers["Authorization"] == "Bearer token-1"

    async def test_http_error_message_surfaced(self, gateway, carrier):
        carrier.create_status = 422
        carrier.create_body = {"message": "Oops! Invalid Pickup location"}
        with pytest.raises(ShipmentCreationError, match="Invalid Pickup location"):
            await gateway.create_order(stored_order())

    async def test_logical_rejection_inside_http_200(self, gateway, carrier):
        carrier.create_body = {"status_code": 422, "errors": {"billing_phone": ["The billing phone must be 10 digits."]}}
        with pytest.raises(ShipmentCreationError) as exc_info:
            await gateway.create_order(stored_order())
        assert exc_info.value.message == "billing_phone: The billing phone must be 10 digits."

    async def test_missing_shipment_id(self, gateway, carrier):
        carrier.create_body = {"status_code": 1}
        with pytest.raises(ShipmentCreationError, match="shipment id"):
            await gateway.create_order(stored_order())

    async def test_auto_assigns_awb(self, gateway, carrier):
        gateway.auto_assign_awb = True
        carrier.create_body = {"order_id": 1, "shipment_id": 2, "awb_code": "", "courier_name": ""}
        result = await gateway.create_order(stored_order())
        assert result.awb_code == "AWB-ASSIGNED"
        assert result.courier_name == "Ecom Express"

    async def test_network_failure(self, clock):
        def handler(request):
            raise httpx.ConnectError("boom")

        client = ShiprocketClient("a@b.c", "pw", base_url="https://shiprocket.test",
                                  token_cache=TokenCache(3600, 600, clock),
                                  http=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
        with pytest.raises(UpstreamError, match="unreachable"):
            await client.authenticate()


class TestTracking:
    TRACKING = {
        "track_status": 1,
        "shipment_track": [{"current_status": "IN TRANSIT", "awb_code": "AWB1", "courier_name": "Delhivery"}],
        "shipment_track_activities": [{"date": "2024-01-02 10:00:00", "activity": "Picked up"}],
        "track_url": "https://shiprocket.co/tracking/AWB1",
        "etd": "2024-01-05",
    }

    @pytest.mark.parametrize("envelope", [
        lambda td: {"7001": {"tracking_data": td}},
        lambda td: {"tracking_data": td},
        lambda td: [{"7001": {"tracking_data": td}}],
        lambda td: td,
    ])
    def test_envelope_shapes(self, envelope):
        snapshot = TrackingSnapshot.from_response("7001", envelope(self.TRACKING))
        assert snapshot.current_status == "IN TRANSIT"
        assert snapshot.awb_code == "AWB1"
        assert snapshot.etd == "2024-01-05"
        assert len(snapshot.activities) == 1

    def test_error_envelope(self):
        snapshot = TrackingSnapshot.from_response("7001", {"tracking_data": {"track_status": 0, "error": "No activities found"}})
        assert snapshot.current_status is None
        assert snapshot.error == "No activities found"

    async def test_track_shipment(self, gateway, carrier):
        carrier.track_body = {"7001": {"tracking_data": self.TRACKING}}
        snapshot = await gateway.track_shipment("7001")
        assert snapshot.track_url.endswith("AWB1")


class TestMisc:
    async def test_cheapest_rate(self, gateway):
        assert await gateway.get_shipping_rate(110001, 0.5, cod=True) == 64.0

    async def test_rate_without_couriers(self, gateway, carrier):
        carrier.rates = []
        with pytest.raises(UpstreamError):
            await gateway.get_shipping_rate(110001, 0.5, cod=False)

    async def test_cancel_sends_integer_ids(self, gateway, carrier):
        await gateway.cancel_orders(["9001"])
        request = carrier.paths("/orders/cancel")[0]
        assert json.loads(request.content) == {"ids": [9001]}

    def test_error_message_fallbacks(self):
        assert extract_error_message({"message": "Bad"}, "x") == "Bad"
        assert extract_error_message({"errors": "plain"}, "x") == "plain"
        assert extract_error_message({}, "default") == "default"
        assert extract_error_message(None, "default") == "default"

    def test_webhook_payload_coerces_awb(self):
        payload = WebhookPayload.model_validate({"awb": 12345, "current_status": "Delivered", "scans": None})
        assert payload.awb == "12345"
        assert payload.scans == []
        assert payload.status_text == "Delivered"

    def test_webhook_payload_requires_awb(self):
        with pytest.raises(ValueError):
            WebhookPayload.model_validate({"current_status": "Delivered"})
