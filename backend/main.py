from __future__ import annotations
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.errors import PyMongoError

import auth
import coupons
import orders
import otp
import payments
from config import settings
from database import ensure_indexes, get_db
from errors import PersistenceError, ShopError, UpstreamError
from shiprocket import close_shipping_gateway

logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    db = await get_db()
    try:
        await ensure_indexes(db)
        await auth.bootstrap_admin(db)
    except PyMongoError:
        logger.exception("Database setup failed at startup")
    yield
    await close_shipping_gateway()
    await payments.close_razorpay()
    await otp.close_msg91()


app = FastAPI(title="Arogya Store API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH"],
    allow_headers=["Content-Type", "Authorization"],
)


@app.exception_handler(ShopError)
async def shop_error_handler(request: Request, exc: ShopError):
    if isinstance(exc, UpstreamError):
        logger.error("%s call failed on %s: %s", exc.provider, request.url.path, exc.message)
    elif isinstance(exc, PersistenceError):
        logger.error("Persistence failure on %s: %s", request.url.path, exc.detail)
    return JSONResponse(status_code=exc.status_code, content={"success": False, "message": exc.message})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in err["loc"][1:]), "message": err["msg"]}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=400,
        content={"success": False, "message": "Required fields missing", "errors": errors},
    )


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    logger.exception("Database error on %s", request.url.path, exc_info=exc)
    return JSONResponse(status_code=500, content={"success": False, "message": "Server error"})


for module in (auth, coupons, orders, otp, payments):
    app.include_router(module.router, prefix="/api")
app.include_router(auth.customer_router, prefix="/api")
app.include_router(orders.shiprocket_router, prefix="/api")


@app.get("/")
async def root():
    return {"message": "Arogya Store API is running"}


@app.get("/test")
async def test():
    try:
        db = await get_db()
        colls = await db.list_collection_names()
        return {
            "backend": "✅ Running",
            "database": "✅ Available",
            "database_url": "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set",
            "database_name": db.name,
            "connection_status": "Connected",
            "collections": colls,
        }
    except PyMongoError as e:
        return {"backend": "✅ Running", "database": "❌ Not Available", "error": str(e)}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.getenv("PORT", 8000)))
