from __future__ import annotations
import hashlib
import hmac
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

import httpx
from fastapi import APIRouter, Depends
from motor.motor_asyncio import AsyncIOMotorDatabase

from config import settings
from database import ORDERS, PAYMENTS, create_document, get_db, to_object_id, utcnow
from errors import NotFoundError, UpstreamError, ValidationError
from schemas import PaymentStatus, PaymentVerification, RazorpayOrderRequest

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payment", tags=["payment"])


def expected_signature(order_id: str, payment_id: str, secret: str) -> str:
    body = f"{order_id}|{payment_id}".encode()
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(order_id: str, payment_id: str, signature: str, secret: str) -> bool:
    # compare_digest only accepts ASCII str, bytes take any input
    return hmac.compare_digest(expected_signature(order_id, payment_id, secret).encode(), signature.encode())


@dataclass
class RazorpayOrder:
    id: str
    amount: int
    currency: str
    receipt: Optional[str]
    status: Optional[str]
    raw: dict[str, Any]

    @classmethod
    def from_response(cls, data: dict[str, Any]) -> "RazorpayOrder":
        return cls(
            id=data["id"],
            amount=int(data.get("amount", 0)),
            currency=data.get("currency", "INR"),
            receipt=data.get("receipt"),
            status=data.get("status"),
            raw=data,
        )


class RazorpayClient:
    def __init__(self, key_id: str, key_secret: str, base_url: str = "https://api.razorpay.com/v1",
                 http: Optional[httpx.AsyncClient] = None):
        self.key_id = key_id
        self.key_secret = key_secret
        self.base_url = base_url.rstrip("/")
        self.http = http or httpx.AsyncClient(timeout=30.0)

    async def create_order(self, amount_paise: int, receipt: str, currency: str = "INR") -> RazorpayOrder:
        if not (self.key_id and self.key_secret):
            raise UpstreamError("razorpay", "Razorpay keys are not configured")
        try:
            response = await self.http.post(
                f"{self.base_url}/orders",
                auth=(self.key_id, self.key_secret),
                json={"amount": amount_paise, "currency": currency, "receipt": receipt},
            )
        except httpx.HTTPError as exc:
            logger.error("Razorpay order creation failed: %s", exc)
            raise UpstreamError("razorpay", "Order creation failed")
        try:
            data = response.json()
        except ValueError:
            data = {}
        if response.status_code >= 400 or "id" not in data:
            # Razorpay errors look like {"error": {"code": ..., "description": ...}}
            description = (data.get("error") or {}).get("description") if isinstance(data, dict) else None
            logger.error("Razorpay rejected order (%s): %s", response.status_code, data)
            raise UpstreamError("razorpay", description or "Order creation failed", data)
        return RazorpayOrder.from_response(data)

    async def aclose(self) -> None:
        await self.http.aclose()


_razorpay: Optional[RazorpayClient] = None


def get_razorpay() -> RazorpayClient:
    global _razorpay
    if _razorpay is None:
        _razorpay = RazorpayClient(settings.RAZORPAY_KEY_ID, settings.RAZORPAY_KEY_SECRET, settings.RAZORPAY_BASE_URL)
    return _razorpay


async def close_razorpay() -> None:
    global _razorpay
    if _razorpay is not None:
        await _razorpay.aclose()
        _razorpay = None


@router.post("/order")
async def create_payment_order(
    payload: RazorpayOrderRequest,
    db: AsyncIOMotorDatabase = Depends(get_db),
    razorpay: RazorpayClient = Depends(get_razorpay),
):
    amount_paise = int(round(payload.amount * 100))
    order = await razorpay.create_order(amount_paise, receipt=f"receipt_{int(time.time() * 1000)}")
    await create_document(db, PAYMENTS, {
        "user_id": payload.user_id,
        "amount": payload.amount,
        "razorpay_order_id": order.id,
        "razorpay_payment_id": None,
        "status": "created",
    })
    return order.raw


@router.post("/verify")
async def verify_payment(payload: PaymentVerification, db: AsyncIOMotorDatabase = Depends(get_db)):
    if not settings.RAZORPAY_KEY_SECRET:
        # Never verify against an empty key
        raise UpstreamError("razorpay", "Razorpay keys are not configured")
    valid = verify_signature(
        payload.razorpay_order_id, payload.razorpay_payment_id, payload.razorpay_signature,
        settings.RAZORPAY_KEY_SECRET,
    )
    now = utcnow()
    if not valid:
        await db[PAYMENTS].update_one(
            {"razorpay_order_id": payload.razorpay_order_id},
            {"$set": {"status": "failed", "updated_at": now}},
        )
        logger.warning("Signature mismatch for Razorpay order %s", payload.razorpay_order_id)
        raise ValidationError("Payment verification failed")

    await db[PAYMENTS].update_one(
        {"razorpay_order_id": payload.razorpay_order_id},
        {"$set": {"razorpay_payment_id": payload.razorpay_payment_id, "status": "paid", "updated_at": now}},
    )
    if payload.order_id:
        result = await db[ORDERS].update_one(
            {"_id": to_object_id(payload.order_id, "Order")},
            {"$set": {
                "payment_status": PaymentStatus.PAID.value,
                "transaction_id": payload.razorpay_payment_id,
                "updated_at": now,
            }},
        )
        if result.matched_count == 0:
            raise NotFoundError("Order", payload.order_id)
    return {"success": True, "status": "success", "message": "Payment verified successfully"}
