"""
Database Schemas

Pydantic models for the MongoDB collections and the request bodies that
write to them. Collections: orders, coupons, customers, users, payments.
"""

from __future__ import annotations
import re
from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator


class OrderStatus(str, Enum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    CONFIRMED = "Confirmed"
    PACKED = "Packed"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"
    RETURNED = "Returned"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.RETURNED, OrderStatus.CANCELLED})


class PaymentMethod(str, Enum):
    COD = "Cash on Delivery"
    ONLINE = "Online Payment"
    PREPAID = "Prepaid"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str) and value.strip().upper() == "COD":
            return cls.COD
        return None


class PaymentStatus(str, Enum):
    PENDING = "Pending"
    PAID = "Paid"
    FAILED = "Failed"
    REFUNDED = "Refunded"


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


# Orders

class CustomerDetails(BaseModel):
    first_name: str = Field(..., min_length=1)
    last_name: str = ""
    email: EmailStr
    phone: str = Field(..., min_length=10)

    @field_validator("first_name", "last_name")
    @classmethod
    def _strip(cls, v: str) -> str:
        return v.strip()

    @field_validator("email")
    @classmethod
    def _lower(cls, v: str) -> str:
        return v.lower()

    @field_validator("phone")
    @classmethod
    def _phone(cls, v: str) -> str:
        return ten_digit_phone(v)

    @property
    def name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


class ShippingAddress(BaseModel):
    name: Optional[str] = None
    phone: Optional[str] = None
    address_line1: str = Field(..., min_length=1)
    address_line2: Optional[str] = None
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    # Stored as an integer, the carrier rejects string pincodes
    pincode: int = Field(..., ge=100000, le=999999)
    country: str = "India"


class OrderItem(BaseModel):
    product_id: str
    title: str
    variant_label: Optional[str] = None
    flavor_name: Optional[str] = None
    image: Optional[str] = None
    sku: str = ""
    quantity: int = Field(..., ge=1)
    price_per_unit: float = Field(..., ge=0)
    length: float = Field(10, gt=0)
    breadth: float = Field(10, gt=0)
    height: float = Field(10, gt=0)
    weight: float = Field(0.5, gt=0)

    @property
    def line_total(self) -> float:
        return self.quantity * self.price_per_unit


class AdditionalInfo(BaseModel):
    notes: Optional[str] = None
    order_source: str = "web"
    ip_address: Optional[str] = None


class OrderCreate(BaseModel):
    customer_id: Optional[str] = None
    customer_details: CustomerDetails
    shipping_address: ShippingAddress
    additional_info: AdditionalInfo = Field(default_factory=AdditionalInfo)
    items: list[OrderItem] = Field(..., min_length=1)
    subtotal: float = Field(..., ge=0)
    discount_amount: float = Field(0, ge=0)
    total_amount: float = Field(..., ge=0)
    coupon_code: Optional[str] = None
    payment_method: PaymentMethod = PaymentMethod.COD


class OrderUpdate(BaseModel):
    """Fields an admin may change on an existing order."""

    model_config = ConfigDict(extra="forbid")

    order_status: Optional[OrderStatus] = None
    payment_status: Optional[PaymentStatus] = None
    transaction_id: Optional[str] = None
    shipping_address: Optional[ShippingAddress] = None
    additional_info: Optional[AdditionalInfo] = None


class BulkDelete(BaseModel):
    ids: list[str] = Field(..., min_length=1)


class PackageDimensions(BaseModel):
    length: Optional[float] = Field(None, gt=0)
    breadth: Optional[float] = Field(None, gt=0)
    height: Optional[float] = Field(None, gt=0)
    weight: Optional[float] = Field(None, gt=0)


class ShippingRateQuery(BaseModel):
    delivery_postcode: int = Field(..., ge=100000, le=999999)
    weight: float = Field(0.5, gt=0)
    cod: bool = False


# Coupons

class CouponCreate(BaseModel):
    code: str = Field(..., min_length=1)
    discount_type: DiscountType
    discount_value: float = Field(..., gt=0)
    minimum_order_value: float = Field(0, ge=0)
    expiry_date: datetime
    is_active: bool = True
    usage_limit: int = Field(1000, ge=1)

    @field_validator("code")
    @classmethod
    def _normalize_code(cls, v: str) -> str:
        return v.strip().upper()

    @model_validator(mode="after")
    def _check_percentage(self):
        if self.discount_type == DiscountType.PERCENTAGE and self.discount_value > 100:
            raise ValueError("Percentage discount cannot exceed 100")
        return self


class CouponUpdate(BaseModel):
    """used_count is deliberately absent, it only ever moves through order creation."""

    model_config = ConfigDict(extra="forbid")

    discount_type: Optional[DiscountType] = None
    discount_value: Optional[float] = Field(None, gt=0)
    minimum_order_value: Optional[float] = Field(None, ge=0)
    expiry_date: Optional[datetime] = None
    is_active: Optional[bool] = None
    usage_limit: Optional[int] = Field(None, ge=1)


class CouponApply(BaseModel):
    code: str = Field(..., min_length=1)
    cart_total: float = Field(..., ge=0)


# Payments

class RazorpayOrderRequest(BaseModel):
    amount: float = Field(..., gt=0, description="Amount in rupees")
    user_id: Optional[str] = None


class PaymentVerification(BaseModel):
    razorpay_order_id: str = Field(..., min_length=1)
    razorpay_payment_id: str = Field(..., min_length=1)
    razorpay_signature: str = Field(..., min_length=1)
    order_id: Optional[str] = Field(None, description="Local order to mark as paid")


# Auth

class LoginRequest(BaseModel):
    identifier: str = Field(..., description="Email or username")
    password: str


class UserCreate(BaseModel):
    username: str = Field(..., min_length=3)
    email: EmailStr
    password: str = Field(..., min_length=6)
    role: Literal["admin", "user"] = "user"


class CustomerRegister(BaseModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone: Optional[str] = None

    @field_validator("phone")
    @classmethod
    def _phone(cls, v: Optional[str]) -> Optional[str]:
        if v is None or not v.strip():
            return None
        return ten_digit_phone(v)


class CustomerLogin(BaseModel):
    email: EmailStr
    password: str


class OtpSend(BaseModel):
    phone: str = Field(..., min_length=10)


class OtpVerify(BaseModel):
    phone: str = Field(..., min_length=10)
    otp: str = Field(..., min_length=4)


def normalize_phone(raw: Any) -> str:
    """Last ten digits of a phone number, punctuation and country code dropped."""
    return re.sub(r"\D", "", str(raw or ""))[-10:]


def ten_digit_phone(raw: Any) -> str:
    digits = normalize_phone(raw)
    if len(digits) != 10:
        raise ValueError("Phone number must have 10 digits")
    return digits


def _plain(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_plain(v) for v in value]
    return value


def dump(model: BaseModel, **kwargs: Any) -> dict[str, Any]:
    """Mongo-ready dict: enums as their values, datetimes left as datetimes."""
    return _plain(model.model_dump(**kwargs))
