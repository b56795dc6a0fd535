from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Optional

from fastapi import APIRouter, Depends
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from auth import require_admin
from database import COUPONS, as_naive_utc, create_document, get_db, get_documents, serialize, to_object_id, utcnow
from errors import ConflictError, CouponError, CouponNotFoundError, NotFoundError, ValidationError
from schemas import CouponApply, CouponCreate, CouponUpdate, DiscountType, dump

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/coupons", tags=["coupons"])


def normalize_code(code: str) -> str:
    return code.strip().upper()


def to_decimal(value: Any) -> Decimal:
    return Decimal(str(value))


def round_currency(value: Decimal) -> Decimal:
    """Whole currency units, halves rounded up."""
    return value.quantize(Decimal("1"), rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class CouponDecision:
    coupon_id: str
    code: str
    discount_type: str
    discount_value: Decimal
    minimum_order_value: Decimal
    subtotal: Decimal
    discount: Decimal

    @property
    def final_amount(self) -> Decimal:
        return max(self.subtotal - self.discount, Decimal(0))

    @property
    def display_discount(self) -> Decimal:
        return round_currency(self.discount)

    @property
    def display_final_amount(self) -> Decimal:
        return round_currency(max(self.subtotal - self.display_discount, Decimal(0)))


def evaluate_coupon(coupon: dict[str, Any], subtotal: Any, now: Optional[datetime] = None) -> CouponDecision:
    """Check a stored coupon against a cart subtotal and compute the discount.

    Raises CouponError with the rejection reason. Nothing is written; usage is
    only counted once the order that redeems the coupon has been stored.
    """
    now = as_naive_utc(now or utcnow())
    subtotal = to_decimal(subtotal)

    expiry = coupon.get("expiry_date")
    if expiry is None or as_naive_utc(expiry) < now:
        raise CouponError("Coupon expired")
    if not coupon.get("is_active", True):
        raise CouponError("Coupon is disabled")
    if coupon.get("used_count", 0) >= coupon.get("usage_limit", 1000):
        raise CouponError("Coupon usage limit reached")

    minimum = to_decimal(coupon.get("minimum_order_value", 0))
    if subtotal < minimum:
        raise CouponError(f"Minimum order value is ₹{minimum.normalize():f}")

    value = to_decimal(coupon["discount_value"])
    if coupon["discount_type"] == DiscountType.PERCENTAGE.value:
        discount = value / 100 * subtotal
    else:
        discount = value

    return CouponDecision(
        coupon_id=str(coupon["_id"]),
        code=coupon["code"],
        discount_type=coupon["discount_type"],
        discount_value=value,
        minimum_order_value=minimum,
        subtotal=subtotal,
        discount=discount,
    )


async def find_coupon(db: AsyncIOMotorDatabase, code: str) -> dict[str, Any]:
    coupon = await db[COUPONS].find_one({"code": normalize_code(code)})
    if coupon is None:
        raise CouponNotFoundError(code)
    return coupon


async def validate_coupon(db: AsyncIOMotorDatabase, code: str, subtotal: Any, now: Optional[datetime] = None) -> CouponDecision:
    coupon = await find_coupon(db, code)
    return evaluate_coupon(coupon, subtotal, now)


async def record_coupon_use(db: AsyncIOMotorDatabase, coupon_id: str) -> None:
    # Never decremented, a cancelled order keeps its slot
    await db[COUPONS].update_one(
        {"_id": to_object_id(coupon_id, "Coupon")},
        {"$inc": {"used_count": 1}, "$set": {"updated_at": utcnow()}},
    )


@router.post("", status_code=201, dependencies=[Depends(require_admin)])
async def create_coupon(payload: CouponCreate, db: AsyncIOMotorDatabase = Depends(get_db)):
    if await db[COUPONS].find_one({"code": payload.code}):
        raise ConflictError("Coupon code already exists")
    data = dump(payload)
    data["expiry_date"] = as_naive_utc(payload.expiry_date)
    data["used_count"] = 0
    try:
        coupon = await create_document(db, COUPONS, data)
    except DuplicateKeyError:
        raise ConflictError("Coupon code already exists")
    logger.info("Coupon %s created", coupon["code"])
    return {"success": True, "message": "Coupon created successfully!", "coupon": coupon}


@router.get("", dependencies=[Depends(require_admin)])
async def list_coupons(db: AsyncIOMotorDatabase = Depends(get_db)):
    coupons = await get_documents(db, COUPONS, limit=500)
    return {"success": True, "count": len(coupons), "coupons": coupons}


@router.put("/{coupon_id}", dependencies=[Depends(require_admin)])
async def update_coupon(coupon_id: str, payload: CouponUpdate, db: AsyncIOMotorDatabase = Depends(get_db)):
    changes = dump(payload, exclude_unset=True)
    if not changes:
        raise ValidationError("No updatable fields supplied")
    if changes.get("expiry_date") is not None:
        changes["expiry_date"] = as_naive_utc(changes["expiry_date"])
    changes["updated_at"] = utcnow()

    current = await db[COUPONS].find_one({"_id": to_object_id(coupon_id, "Coupon")})
    if current is None:
        raise NotFoundError("Coupon", coupon_id)
    merged_type = changes.get("discount_type", current["discount_type"])
    merged_value = changes.get("discount_value", current["discount_value"])
    if merged_type == DiscountType.PERCENTAGE.value and merged_value > 100:
        raise ValidationError("Percentage discount cannot exceed 100")

    coupon = await db[COUPONS].find_one_and_update(
        {"_id": current["_id"]},
        {"$set": changes},
        return_document=ReturnDocument.AFTER,
    )
    return {"success": True, "message": "Coupon updated successfully", "coupon": serialize(coupon)}


@router.delete("/{coupon_id}", dependencies=[Depends(require_admin)])
async def delete_coupon(coupon_id: str, db: AsyncIOMotorDatabase = Depends(get_db)):
    result = await db[COUPONS].delete_one({"_id": to_object_id(coupon_id, "Coupon")})
    if result.deleted_count == 0:
        raise NotFoundError("Coupon", coupon_id)
    logger.info("Coupon %s deleted", coupon_id)
    return {"success": True, "message": "Coupon deleted"}


@router.post("/apply")
async def apply_coupon(payload: CouponApply, db: AsyncIOMotorDatabase = Depends(get_db)):
    decision = await validate_coupon(db, payload.code, payload.cart_total)
    return {
        "success": True,
        "message": "Coupon applied successfully",
        "id": decision.coupon_id,
        "code": decision.code,
        "discount_type": decision.discount_type,
        "discount_value": float(decision.discount_value),
        "minimum_order_value": float(decision.minimum_order_value),
        "discount_amount": int(decision.display_discount),
        "final_amount": int(decision.display_final_amount),
    }
