from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional

import bcrypt
import jwt
from fastapi import APIRouter, Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError

from config import settings
from database import CUSTOMERS, USERS, create_document, get_db, serialize, to_object_id, utcnow
from errors import AuthError, ConflictError, ForbiddenError, NotFoundError
from schemas import CustomerLogin, CustomerRegister, LoginRequest, UserCreate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["auth"])
customer_router = APIRouter(prefix="/customers", tags=["customers"])

bearer = HTTPBearer(auto_error=False)

CUSTOMER_ROLE = "customer"


@dataclass(frozen=True)
class Principal:
    id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds=10)).decode()


def check_password(password: str, hashed: Optional[str]) -> bool:
    if not hashed:
        return False
    return bcrypt.checkpw(password.encode(), hashed.encode())


def create_token(subject: str, role: str, secret: str, expires_in: timedelta) -> str:
    now = utcnow()
    claims = {"sub": subject, "role": role, "iat": now, "exp": now + expires_in}
    return jwt.encode(claims, secret, algorithm="HS256")


def decode_token(token: str, secret: str) -> Principal:
    try:
        claims = jwt.decode(token, secret, algorithms=["HS256"])
    except jwt.ExpiredSignatureError:
        raise AuthError("Token expired")
    except jwt.InvalidTokenError:
        raise AuthError("Invalid token")
    if not claims.get("sub"):
        raise AuthError("Invalid token")
    return Principal(id=claims["sub"], role=claims.get("role", "user"))


def admin_token(user_id: str, role: str) -> str:
    return create_token(
        user_id, role, settings.JWT_SECRET,
        timedelta(hours=settings.ADMIN_TOKEN_TTL_HOURS),
    )


def customer_token(customer_id: str) -> str:
    return create_token(
        customer_id, CUSTOMER_ROLE, settings.CUSTOMER_JWT_SECRET,
        timedelta(days=settings.CUSTOMER_TOKEN_TTL_DAYS),
    )


# Dependencies

async def require_staff(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer)) -> Principal:
    if credentials is None:
        raise AuthError("No token")
    return decode_token(credentials.credentials, settings.JWT_SECRET)


async def require_admin(principal: Principal = Depends(require_staff)) -> Principal:
    if not principal.is_admin:
        raise ForbiddenError("Admin access required")
    return principal


async def require_customer(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer)) -> Principal:
    if credentials is None:
        raise AuthError("No token")
    return decode_token(credentials.credentials, settings.CUSTOMER_JWT_SECRET)


async def optional_principal(credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer)) -> Optional[Principal]:
    """Customer or staff principal when a valid bearer token is present."""
    if credentials is None:
        return None
    for secret in (settings.CUSTOMER_JWT_SECRET, settings.JWT_SECRET):
        try:
            return decode_token(credentials.credentials, secret)
        except AuthError:
            continue
    raise AuthError("Invalid token")


def public_user(user: dict[str, Any]) -> dict[str, Any]:
    out = serialize(user)
    out.pop("password", None)
    return out


async def bootstrap_admin(db: AsyncIOMotorDatabase) -> None:
    if not (settings.ADMIN_EMAIL and settings.ADMIN_PASSWORD):
        return
    if await db[USERS].count_documents({}) > 0:
        return
    email = settings.ADMIN_EMAIL.strip().lower()
    await create_document(db, USERS, {
        "username": email.split("@")[0],
        "email": email,
        "password": hash_password(settings.ADMIN_PASSWORD),
        "role": "admin",
    })
    logger.info("Created bootstrap admin %s", email)


# Staff users

@router.post("/login")
async def login(payload: LoginRequest, db: AsyncIOMotorDatabase = Depends(get_db)):
    identifier = payload.identifier.strip()
    user = await db[USERS].find_one({"$or": [{"email": identifier.lower()}, {"username": identifier}]})
    if user is None or not check_password(payload.password, user.get("password")):
        raise AuthError("Invalid credentials")
    return {**public_user(user), "token": admin_token(str(user["_id"]), user.get("role", "user"))}


@router.post("/register", status_code=201)
async def register_user(
    payload: UserCreate,
    db: AsyncIOMotorDatabase = Depends(get_db),
    admin: Principal = Depends(require_admin),
):
    email = payload.email.lower()
    if await db[USERS].find_one({"$or": [{"email": email}, {"username": payload.username}]}):
        raise ConflictError("Email or username already exists")
    try:
        user = await create_document(db, USERS, {
            "username": payload.username,
            "email": email,
            "password": hash_password(payload.password),
            "role": payload.role,
        })
    except DuplicateKeyError:
        raise ConflictError("Email or username already exists")
    logger.info("Admin %s registered %s user %s", admin.id, payload.role, payload.username)
    user.pop("password", None)
    return user


@router.get("/me")
async def staff_profile(principal: Principal = Depends(require_staff), db: AsyncIOMotorDatabase = Depends(get_db)):
    user = await db[USERS].find_one({"_id": to_object_id(principal.id, "User")})
    if user is None:
        raise NotFoundError("User", principal.id)
    return public_user(user)


# Customers

@customer_router.post("/register", status_code=201)
async def register_customer(payload: CustomerRegister, db: AsyncIOMotorDatabase = Depends(get_db)):
    email = payload.email.lower()
    clauses = [{"email": email}]
    if payload.phone:
        clauses.append({"phone": payload.phone})
    if await db[CUSTOMERS].find_one({"$or": clauses}):
        raise ConflictError("Customer already exists")
    data = {"name": payload.name, "email": email, "password": hash_password(payload.password)}
    if payload.phone:
        data["phone"] = payload.phone
    try:
        customer = await create_document(db, CUSTOMERS, data)
    except DuplicateKeyError:
        raise ConflictError("Customer already exists")
    customer.pop("password")
    return {**customer, "token": customer_token(customer["id"])}


@customer_router.post("/login")
async def login_customer(payload: CustomerLogin, db: AsyncIOMotorDatabase = Depends(get_db)):
    customer = await db[CUSTOMERS].find_one({"email": payload.email.lower()})
    if customer is None or not check_password(payload.password, customer.get("password")):
        raise AuthError("Invalid credentials")
    return {**public_user(customer), "token": customer_token(str(customer["_id"]))}


@customer_router.get("/me")
async def customer_profile(principal: Principal = Depends(require_customer), db: AsyncIOMotorDatabase = Depends(get_db)):
    customer = await db[CUSTOMERS].find_one({"_id": to_object_id(principal.id, "Customer")})
    if customer is None:
        raise AuthError("Customer not found")
    return public_user(customer)
