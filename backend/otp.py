from __future__ import annotations
import logging
from typing import Any, Optional

import httpx
from fastapi import APIRouter, Depends
from motor.motor_asyncio import AsyncIOMotorDatabase

from auth import customer_token, public_user
from config import settings
from database import CUSTOMERS, create_document, get_db
from errors import AuthError, UpstreamError
from schemas import OtpSend, OtpVerify, normalize_phone

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/customers/otp", tags=["customers"])


class Msg91Client:
    """MSG91 v5 OTP API. Both calls answer {"type": "success"|"error", "message": ...}."""

    def __init__(self, auth_key: str, template_id: str, base_url: str = "https://control.msg91.com/api/v5",
                 country_code: str = "91", http: Optional[httpx.AsyncClient] = None):
        self.auth_key = auth_key
        self.template_id = template_id
        self.base_url = base_url.rstrip("/")
        self.country_code = country_code
        self.http = http or httpx.AsyncClient(timeout=30.0)

    def mobile(self, phone: str) -> str:
        return self.country_code + normalize_phone(phone)

    async def _get_json(self, method: str, path: str, params: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self.http.request(method, f"{self.base_url}{path}", params=params)
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error("MSG91 %s failed: %s", path, exc)
            raise UpstreamError("msg91", "SMS provider unavailable")
        return data if isinstance(data, dict) else {}

    async def send_otp(self, phone: str) -> None:
        mobile = self.mobile(phone)
        logger.info("Sending OTP to %s", mobile)
        data = await self._get_json("POST", "/otp", {
            "template_id": self.template_id,
            "mobile": mobile,
            "authkey": self.auth_key,
            "realTimeResponse": 1,
        })
        if data.get("type") == "error":
            logger.error("MSG91 rejected OTP send: %s", data)
            raise UpstreamError("msg91", data.get("message") or "Failed to send OTP", data)

    async def verify_otp(self, phone: str, otp: str) -> bool:
        data = await self._get_json("GET", "/otp/verify", {
            "mobile": self.mobile(phone),
            "otp": otp,
            "authkey": self.auth_key,
        })
        return data.get("type") == "success"

    async def aclose(self) -> None:
        await self.http.aclose()


_msg91: Optional[Msg91Client] = None


def get_msg91() -> Msg91Client:
    global _msg91
    if _msg91 is None:
        _msg91 = Msg91Client(
            settings.MSG91_AUTH_KEY, settings.MSG91_TEMPLATE_ID, settings.MSG91_BASE_URL, settings.COUNTRY_CODE,
        )
    return _msg91


async def close_msg91() -> None:
    global _msg91
    if _msg91 is not None:
        await _msg91.aclose()
        _msg91 = None


@router.post("/send")
async def send_otp(payload: OtpSend, msg91: Msg91Client = Depends(get_msg91)):
    await msg91.send_otp(payload.phone)
    return {"success": True, "message": "OTP sent successfully"}


@router.post("/verify")
async def verify_otp(payload: OtpVerify, db: AsyncIOMotorDatabase = Depends(get_db), msg91: Msg91Client = Depends(get_msg91)):
    if not await msg91.verify_otp(payload.phone, payload.otp):
        raise AuthError("Invalid OTP")

    phone = normalize_phone(payload.phone)
    customer = await db[CUSTOMERS].find_one({"phone": phone})
    if customer is None:
        created = await create_document(db, CUSTOMERS, {"phone": phone, "name": f"User {phone[-4:]}", "is_verified": True})
        customer_id = created["id"]
        profile = created
    else:
        customer_id = str(customer["_id"])
        profile = public_user(customer)
    return {**profile, "token": customer_token(customer_id)}
