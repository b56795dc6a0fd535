from __future__ import annotations
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from bson import ObjectId
from bson.errors import InvalidId
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError

from config import settings
from errors import NotFoundError, PersistenceError

logger = logging.getLogger(__name__)

ORDERS = "orders"
COUPONS = "coupons"
CUSTOMERS = "customers"
USERS = "users"
PAYMENTS = "payments"

_client: Optional[AsyncIOMotorClient] = None
_db: Optional[AsyncIOMotorDatabase] = None


async def get_db() -> AsyncIOMotorDatabase:
    global _client, _db
    if _db is None:
        _client = AsyncIOMotorClient(settings.DATABASE_URL)
        _db = _client[settings.DATABASE_NAME]
    return _db


def utcnow() -> datetime:
    # Naive UTC, matching what Motor hands back from the database
    return datetime.now(timezone.utc).replace(tzinfo=None)


def as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def to_object_id(value: str, entity: str = "Document") -> ObjectId:
    try:
        return ObjectId(value)
    except (InvalidId, TypeError):
        raise NotFoundError(entity, value)


def serialize(doc: Optional[dict[str, Any]]) -> Optional[dict[str, Any]]:
    if doc is None:
        return None
    out = dict(doc)
    if "_id" in out:
        out["id"] = str(out.pop("_id"))
    return out


async def create_document(db: AsyncIOMotorDatabase, collection_name: str, data: dict[str, Any]) -> dict[str, Any]:
    now = utcnow()
    data_with_meta = {**data, "created_at": now, "updated_at": now}
    try:
        result = await db[collection_name].insert_one(data_with_meta)
    except DuplicateKeyError:
        raise
    except PyMongoError as exc:
        logger.exception("Insert into %s failed", collection_name)
        raise PersistenceError(str(exc)) from exc
    data_with_meta["_id"] = result.inserted_id
    return serialize(data_with_meta)


async def get_documents(
    db: AsyncIOMotorDatabase,
    collection_name: str,
    filter_dict: dict[str, Any] | None = None,
    limit: int = 100,
    skip: int = 0,
) -> list[dict[str, Any]]:
    cursor = db[collection_name].find(filter_dict or {}).sort("created_at", DESCENDING).skip(skip).limit(limit)
    docs = []
    async for d in cursor:
        docs.append(serialize(d))
    return docs


async def ensure_indexes(db: AsyncIOMotorDatabase) -> None:
    await db[ORDERS].create_index([("created_at", DESCENDING)])
    await db[ORDERS].create_index([("customer_id", ASCENDING), ("created_at", DESCENDING)])
    await db[ORDERS].create_index("tracking.awb_code")
    await db[ORDERS].create_index("order_status")
    await db[COUPONS].create_index("code", unique=True)
    await db[CUSTOMERS].create_index("email", unique=True, sparse=True)
    await db[CUSTOMERS].create_index("phone", unique=True, sparse=True)
    await db[USERS].create_index("email", unique=True, sparse=True)
    await db[USERS].create_index("username", unique=True)
    await db[PAYMENTS].create_index("razorpay_order_id")
