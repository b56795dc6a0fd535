from __future__ import annotations
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    DATABASE_URL: str = "mongodb://localhost:27017"
    DATABASE_NAME: str = "arogya_store"
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: list[str] = ["http://localhost:3000"]

    # Auth
    JWT_SECRET: str = "change-me"
    CUSTOMER_JWT_SECRET: str = "change-me-too"
    ADMIN_TOKEN_TTL_HOURS: int = 24
    CUSTOMER_TOKEN_TTL_DAYS: int = 7
    ADMIN_EMAIL: Optional[str] = None
    ADMIN_PASSWORD: Optional[str] = None

    # Shiprocket
    SHIPROCKET_BASE_URL: str = "https://apiv2.shiprocket.in/v1/external"
    SHIPROCKET_EMAIL: str = ""
    SHIPROCKET_PASSWORD: str = ""
    SHIPROCKET_PICKUP_LOCATION: Optional[str] = None
    SHIPROCKET_TOKEN_TTL_HOURS: float = 8
    SHIPROCKET_TOKEN_REFRESH_MARGIN_MINUTES: float = 10
    SHIPROCKET_WEBHOOK_TOKEN: Optional[str] = None
    SHIPROCKET_AUTO_ASSIGN_AWB: bool = False
    SHIPROCKET_FALLBACK_RATE: float = 50
    SHIPROCKET_PICKUP_POSTCODE: Optional[int] = None

    # Shipping policy: False auto-confirms pending orders on dispatch
    REQUIRE_CONFIRMED_BEFORE_SHIPPING: bool = False

    # Razorpay
    RAZORPAY_BASE_URL: str = "https://api.razorpay.com/v1"
    RAZORPAY_KEY_ID: str = ""
    RAZORPAY_KEY_SECRET: str = ""

    # MSG91
    MSG91_BASE_URL: str = "https://control.msg91.com/api/v5"
    MSG91_AUTH_KEY: str = ""
    MSG91_TEMPLATE_ID: str = ""
    COUNTRY_CODE: str = "91"


settings = Settings()
