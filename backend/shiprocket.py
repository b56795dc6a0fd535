"""Shiprocket gateway: credential cache, order payloads and response envelopes."""

from __future__ import annotations
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, field_validator

from config import settings
from database import utcnow
from errors import ShipmentCreationError, UpstreamError
from schemas import PackageDimensions, PaymentMethod, normalize_phone

logger = logging.getLogger(__name__)

FALLBACK_DIMENSIONS = {"length": 10.0, "breadth": 10.0, "height": 10.0, "weight": 0.5}
# Logical rejections the carrier reports inside an HTTP 200 body
REJECTION_CODES = {400, 422}


class TokenCache:
    """Bearer token with an expiry, refreshed a safety margin before it lapses."""

    def __init__(self, ttl: float, refresh_margin: float, clock: Callable[[], float] = time.time):
        self.ttl = ttl
        self.refresh_margin = refresh_margin
        self.clock = clock
        self.token: Optional[str] = None
        self.expires_at: float = 0.0

    def get(self) -> Optional[str]:
        if self.token and self.expires_at - self.refresh_margin > self.clock():
            return self.token
        return None

    def store(self, token: str) -> None:
        self.token = token
        self.expires_at = self.clock() + self.ttl

    def clear(self) -> None:
        self.token = None
        self.expires_at = 0.0


# Response envelopes

@dataclass
class ShipmentResult:
    shipment_id: str
    order_id: Optional[str] = None
    awb_code: Optional[str] = None
    courier_name: Optional[str] = None
    status: Optional[str] = None
    raw: dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> "ShipmentResult":
        shipment_id = data.get("shipment_id")
        if not shipment_id:
            raise ShipmentCreationError(extract_error_message(data, "Shiprocket did not return a shipment id"), data)
        return cls(
            shipment_id=str(shipment_id),
            order_id=_opt_str(data.get("order_id")),
            awb_code=_opt_str(data.get("awb_code")),
            courier_name=_opt_str(data.get("courier_name")),
            status=_opt_str(data.get("status")),
            raw=data,
        )

    def as_tracking(self) -> dict[str, Any]:
        return {
            "shipment_id": self.shipment_id,
            "order_id": self.order_id,
            "awb_code": self.awb_code,
            "courier_name": self.courier_name,
            "status": self.status,
            "history": [],
        }


@dataclass
class TrackingSnapshot:
    shipment_id: str
    current_status: Optional[str] = None
    awb_code: Optional[str] = None
    courier_name: Optional[str] = None
    etd: Optional[str] = None
    track_url: Optional[str] = None
    activities: list[dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None

    @classmethod
    def from_response(cls, shipment_id: str, data: Any) -> "TrackingSnapshot":
        # Seen shapes: {"<id>": {"tracking_data": {...}}}, {"tracking_data": {...}},
        # a list wrapping either, or the tracking data itself
        if isinstance(data, list):
            data = data[0] if data else {}
        if not isinstance(data, dict):
            return cls(shipment_id=shipment_id, error="Unexpected tracking response")
        data = data.get(str(shipment_id), data)
        td = data.get("tracking_data", data) if isinstance(data, dict) else {}
        if not isinstance(td, dict):
            td = {}

        tracks = td.get("shipment_track") or []
        first = tracks[0] if tracks and isinstance(tracks[0], dict) else {}
        return cls(
            shipment_id=str(shipment_id),
            current_status=_opt_str(first.get("current_status") or td.get("current_status")),
            awb_code=_opt_str(first.get("awb_code")),
            courier_name=_opt_str(first.get("courier_name")),
            etd=_opt_str(td.get("etd") or first.get("edd")),
            track_url=_opt_str(td.get("track_url")),
            activities=list(td.get("shipment_track_activities") or []),
            error=_opt_str(td.get("error")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "shipment_id": self.shipment_id,
            "current_status": self.current_status,
            "awb_code": self.awb_code,
            "courier_name": self.courier_name,
            "etd": self.etd,
            "track_url": self.track_url,
            "activities": self.activities,
            "error": self.error,
        }


class WebhookPayload(BaseModel):
    """Status push sent by Shiprocket for an AWB."""

    model_config = ConfigDict(extra="allow")

    awb: str
    current_status: Optional[str] = None
    shipment_status: Optional[str] = None
    courier_name: Optional[str] = None
    sr_order_id: Optional[str] = None
    current_timestamp: Optional[str] = None
    etd: Optional[str] = None
    scans: list[dict[str, Any]] = Field(default_factory=list)

    @field_validator("awb", "sr_order_id", mode="before")
    @classmethod
    def _stringify(cls, v):
        if v is None:
            return v
        return str(v).strip()

    @field_validator("awb")
    @classmethod
    def _require_awb(cls, v: str) -> str:
        if not v:
            raise ValueError("awb is required")
        return v

    @field_validator("scans", mode="before")
    @classmethod
    def _scans(cls, v):
        return v or []

    @property
    def status_text(self) -> str:
        return (self.current_status or self.shipment_status or "").strip()


# Payload helpers

def _opt_str(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def carrier_payment_method(method: Any) -> str:
    try:
        return "COD" if PaymentMethod(method) == PaymentMethod.COD else "Prepaid"
    except ValueError:
        return "Prepaid"


def _item_value(item: dict[str, Any], name: str) -> float:
    value = item.get(name)
    try:
        value = float(value)
    except (TypeError, ValueError):
        return FALLBACK_DIMENSIONS[name]
    return value if value > 0 else FALLBACK_DIMENSIONS[name]


def package_dimensions(items: list[dict[str, Any]], override: Optional[PackageDimensions] = None) -> dict[str, float]:
    """Package size for the whole order.

    Each value comes from the explicit override when given, else from the
    items (largest side, summed weight), else from the fixed fallback.
    """
    override = override or PackageDimensions()
    package = {}
    for side in ("length", "breadth", "height"):
        explicit = getattr(override, side)
        if explicit:
            package[side] = float(explicit)
        elif items:
            package[side] = max(_item_value(item, side) for item in items)
        else:
            package[side] = FALLBACK_DIMENSIONS[side]
    if override.weight:
        package["weight"] = float(override.weight)
    elif items:
        package["weight"] = round(sum(_item_value(i, "weight") * int(i.get("quantity") or 1) for i in items), 3)
    else:
        package["weight"] = FALLBACK_DIMENSIONS["weight"]
    return package


def build_order_payload(
    order: dict[str, Any],
    pickup_location: str,
    dimensions: Optional[PackageDimensions] = None,
    now: Optional[datetime] = None,
) -> dict[str, Any]:
    customer = order.get("customer_details") or {}
    address = order.get("shipping_address") or {}
    items = order.get("items") or []

    try:
        pincode = int(str(address.get("pincode")).strip())
    except (TypeError, ValueError):
        raise ShipmentCreationError(f"Invalid pincode: {address.get('pincode')!r}")

    payload = {
        "order_id": str(order["_id"]),
        "order_date": (now or utcnow()).strftime("%Y-%m-%d %H:%M"),
        "pickup_location": pickup_location,
        "billing_customer_name": customer.get("first_name") or "Customer",
        "billing_last_name": customer.get("last_name") or "",
        "billing_address": address.get("address_line1") or "Address",
        "billing_address_2": address.get("address_line2") or "",
        "billing_city": address.get("city") or "City",
        "billing_pincode": pincode,
        "billing_state": address.get("state") or "State",
        "billing_country": address.get("country") or "India",
        "billing_email": customer.get("email") or "",
        "billing_phone": normalize_phone(customer.get("phone") or address.get("phone")),
        "shipping_is_billing": True,
        "order_items": [
            {
                "name": item.get("title"),
                "sku": item.get("sku") or str(item.get("product_id") or "SKU-DEF"),
                "units": int(item.get("quantity") or 1),
                "selling_price": float(item.get("price_per_unit") or 0),
                "discount": 0,
                "tax": 0,
            }
            for item in items
        ],
        "payment_method": carrier_payment_method(order.get("payment_method")),
        "sub_total": float(order.get("subtotal") or 0),
        "total_discount": float(order.get("discount_amount") or 0),
    }
    payload.update(package_dimensions(items, dimensions))
    return payload


def extract_error_message(data: Any, default: str) -> str:
    if not isinstance(data, dict):
        return default
    if data.get("message"):
        return str(data["message"])
    errors = data.get("errors")
    if isinstance(errors, dict) and errors:
        parts = []
        for key, value in errors.items():
            if isinstance(value, list):
                value = ", ".join(str(v) for v in value)
            parts.append(f"{key}: {value}")
        return "; ".join(parts)
    if errors:
        return str(errors)
    return default


class ShiprocketClient:
    def __init__(
        self,
        email: str,
        password: str,
        base_url: str = "https://apiv2.shiprocket.in/v1/external",
        pickup_location: Optional[str] = None,
        pickup_postcode: Optional[int] = None,
        auto_assign_awb: bool = False,
        token_cache: Optional[TokenCache] = None,
        http: Optional[httpx.AsyncClient] = None,
    ):
        self.email = email
        self.password = password
        self.base_url = base_url.rstrip("/")
        self.pickup_location = pickup_location
        self.pickup_postcode = pickup_postcode
        self.auto_assign_awb = auto_assign_awb
        self.token_cache = token_cache or TokenCache(ttl=8 * 3600, refresh_margin=10 * 60)
        self.http = http or httpx.AsyncClient(timeout=30.0)

    async def aclose(self) -> None:
        await self.http.aclose()

    async def _send(self, method: str, path: str, token: Optional[str] = None, **kwargs) -> tuple[int, Any]:
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            response = await self.http.request(method, f"{self.base_url}{path}", headers=headers, **kwargs)
        except httpx.HTTPError as exc:
            logger.error("Shiprocket %s %s failed: %s", method, path, exc)
            raise UpstreamError("shiprocket", f"Shiprocket unreachable: {exc}")
        try:
            data = response.json()
        except ValueError:
            data = {"message": response.text}
        if response.status_code == 401 and token:
            self.token_cache.clear()
        return response.status_code, data

    async def _call(self, method: str, path: str, **kwargs) -> tuple[int, Any]:
        token = await self.authenticate()
        return await self._send(method, path, token=token, **kwargs)

    async def authenticate(self) -> str:
        token = self.token_cache.get()
        if token:
            return token
        if not (self.email and self.password):
            raise UpstreamError("shiprocket", "Shiprocket credentials are not configured")

        logger.info("Authenticating with Shiprocket")
        status, data = await self._send("POST", "/auth/login", json={"email": self.email, "password": self.password})
        if not 200 <= status < 300 or not isinstance(data, dict) or not data.get("token"):
            logger.error("Shiprocket auth failed (%s): %s", status, data)
            raise UpstreamError("shiprocket", extract_error_message(data, "Shiprocket auth failed"), data)
        self.token_cache.store(data["token"])
        return data["token"]

    async def list_pickup_locations(self) -> list[dict[str, Any]]:
        status, data = await self._call("GET", "/settings/company/pickup")
        if not 200 <= status < 300:
            raise UpstreamError("shiprocket", extract_error_message(data, "Could not fetch pickup locations"), data)
        addresses = ((data or {}).get("data") or {}).get("shipping_address") or []
        return [a for a in addresses if isinstance(a, dict)]

    async def get_pickup_location(self) -> str:
        if self.pickup_location:
            return self.pickup_location
        addresses = await self.list_pickup_locations()
        for address in addresses:
            name = address.get("pickup_location") or address.get("pickup_location_nickname")
            if name:
                logger.info("Auto-selected pickup location %s", name)
                self.pickup_location = name
                return name
        # No silent default, an unknown pickup name misroutes the shipment
        raise UpstreamError("shiprocket", "No pickup locations are configured in the Shiprocket account")

    async def create_order(self, order: dict[str, Any], dimensions: Optional[PackageDimensions] = None) -> ShipmentResult:
        pickup_location = await self.get_pickup_location()
        payload = build_order_payload(order, pickup_location, dimensions)
        logger.info("Creating Shiprocket order for %s", payload["order_id"])

        status, data = await self._call("POST", "/orders/create/adhoc", json=payload)
        body = data if isinstance(data, dict) else {}
        if not 200 <= status < 300 or body.get("status_code") in REJECTION_CODES:
            logger.error("Shiprocket rejected order %s (%s): %s", payload["order_id"], status, data)
            raise ShipmentCreationError(extract_error_message(body, "Shiprocket API Error"), body)

        result = ShipmentResult.from_response(body)
        if not result.awb_code and self.auto_assign_awb:
            assigned = await self.assign_awb(result.shipment_id)
            if assigned:
                result.awb_code = assigned.get("awb_code") or result.awb_code
                result.courier_name = assigned.get("courier_name") or result.courier_name
        return result

    async def assign_awb(self, shipment_id: str) -> Optional[dict[str, Any]]:
        """Ask the carrier to allot an AWB; a failure here leaves the shipment unassigned."""
        status, data = await self._call("POST", "/courier/assign/awb", json={"shipment_id": shipment_id})
        body = data if isinstance(data, dict) else {}
        if not 200 <= status < 300 or body.get("awb_assign_status") != 1:
            logger.warning("AWB assignment failed for shipment %s: %s", shipment_id, data)
            return None
        return ((body.get("response") or {}).get("data")) or {}

    async def track_shipment(self, shipment_id: str) -> TrackingSnapshot:
        status, data = await self._call("GET", f"/courier/track/shipment/{shipment_id}")
        if not 200 <= status < 300:
            raise UpstreamError("shiprocket", extract_error_message(data, "Tracking fetch failed"), data)
        return TrackingSnapshot.from_response(shipment_id, data)

    async def cancel_orders(self, carrier_order_ids: list[str]) -> None:
        ids = [int(i) for i in carrier_order_ids]
        status, data = await self._call("POST", "/orders/cancel", json={"ids": ids})
        if not 200 <= status < 300:
            raise UpstreamError("shiprocket", extract_error_message(data, "Shiprocket cancellation failed"), data)
        logger.info("Cancelled Shiprocket orders %s", ids)

    async def get_shipping_rate(self, delivery_postcode: int, weight: float, cod: bool) -> float:
        pickup_postcode = self.pickup_postcode
        if pickup_postcode is None:
            addresses = await self.list_pickup_locations()
            pickup_postcode = next((a.get("pin_code") for a in addresses if a.get("pin_code")), None)
            if pickup_postcode is None:
                raise UpstreamError("shiprocket", "No pickup postcode available for rate lookup")
        params = {
            "pickup_postcode": pickup_postcode,
            "delivery_postcode": delivery_postcode,
            "weight": weight,
            "cod": 1 if cod else 0,
        }
        status, data = await self._call("GET", "/courier/serviceability/", params=params)
        if not 200 <= status < 300:
            raise UpstreamError("shiprocket", extract_error_message(data, "Serviceability lookup failed"), data)
        couriers = (((data or {}).get("data") or {}).get("available_courier_companies")) or []
        rates = [float(c["rate"]) for c in couriers if isinstance(c, dict) and c.get("rate") is not None]
        if not rates:
            raise UpstreamError("shiprocket", "No courier serves this pincode")
        return min(rates)


_gateway: Optional[ShiprocketClient] = None


def get_shipping_gateway() -> ShiprocketClient:
    global _gateway
    if _gateway is None:
        _gateway = ShiprocketClient(
            email=settings.SHIPROCKET_EMAIL,
            password=settings.SHIPROCKET_PASSWORD,
            base_url=settings.SHIPROCKET_BASE_URL,
            pickup_location=settings.SHIPROCKET_PICKUP_LOCATION,
            pickup_postcode=settings.SHIPROCKET_PICKUP_POSTCODE,
            auto_assign_awb=settings.SHIPROCKET_AUTO_ASSIGN_AWB,
            token_cache=TokenCache(
                ttl=settings.SHIPROCKET_TOKEN_TTL_HOURS * 3600,
                refresh_margin=settings.SHIPROCKET_TOKEN_REFRESH_MARGIN_MINUTES * 60,
            ),
        )
    return _gateway


async def close_shipping_gateway() -> None:
    global _gateway
    if _gateway is not None:
        await _gateway.aclose()
        _gateway = None
