"""Order lifecycle: creation, admin edits, dispatch to the carrier and
reconciliation of carrier status pushes.

Status flow::

    Pending -> Confirmed -> Shipped -> Delivered
                                    -> Returned
    any non-terminal -> Cancelled

Only the webhook path refuses regressions: a late in-transit push never
moves a Delivered or Returned order back to Shipped.
"""

from __future__ import annotations
import logging
from typing import Any, Optional

from bson import ObjectId
from fastapi import APIRouter, Body, Depends, Query, Request
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument
from pymongo.errors import PyMongoError

from auth import Principal, optional_principal, require_admin, require_customer
from config import settings
from coupons import record_coupon_use, validate_coupon
from database import ORDERS, create_document, get_db, get_documents, serialize, to_object_id, utcnow
from errors import AuthError, ConflictError, CouponError, CouponNotFoundError, NotFoundError, UpstreamError, ValidationError
from schemas import BulkDelete, OrderCreate, OrderStatus, OrderUpdate, PackageDimensions, PaymentStatus, ShippingRateQuery, dump, normalize_phone
from shiprocket import ShiprocketClient, WebhookPayload, get_shipping_gateway

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])
shiprocket_router = APIRouter(prefix="/shiprocket", tags=["shiprocket"])

IN_TRANSIT_MARKERS = ("PICKED UP", "IN TRANSIT", "SHIPPED", "OUT FOR DELIVERY", "REACHED AT DESTINATION")
NO_DOWNGRADE_FROM = frozenset({OrderStatus.DELIVERED, OrderStatus.RETURNED})


def map_carrier_status(text: Optional[str], current: OrderStatus) -> Optional[OrderStatus]:
    """Internal status for a carrier status string, or None to leave the order alone."""
    status = (text or "").strip().upper().replace("_", " ")
    if not status:
        return None
    if "RTO" in status or "RETURN" in status:
        return OrderStatus.RETURNED
    if status == "DELIVERED":
        return OrderStatus.DELIVERED
    if status in ("CANCELED", "CANCELLED"):
        return OrderStatus.CANCELLED
    if any(marker in status for marker in IN_TRANSIT_MARKERS):
        if current in NO_DOWNGRADE_FROM:
            return None
        return OrderStatus.SHIPPED
    return None


class OrderService:
    def __init__(self, db: AsyncIOMotorDatabase, gateway: ShiprocketClient, require_confirmed: bool = False):
        self.db = db
        self.gateway = gateway
        self.require_confirmed = require_confirmed

    @property
    def orders(self):
        return self.db[ORDERS]

    async def get(self, order_id: str) -> dict[str, Any]:
        order = await self.orders.find_one({"_id": to_object_id(order_id, "Order")})
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    async def create(self, payload: OrderCreate, customer_id: str) -> dict[str, Any]:
        line_total = sum(item.line_total for item in payload.items)
        if abs(line_total - payload.subtotal) > 0.01:
            raise ValidationError("Subtotal does not match the order items")

        decision = None
        code = (payload.coupon_code or "").strip()
        if code:
            try:
                decision = await validate_coupon(self.db, code, payload.subtotal)
            except CouponNotFoundError:
                raise CouponError("Invalid or expired coupon")

        discount = round(float(decision.discount), 2) if decision else 0.0
        total = round(max(payload.subtotal - discount, 0.0), 2)
        if abs(total - payload.total_amount) > 0.01:
            logger.warning("Client total %s differs from computed total %s", payload.total_amount, total)

        doc = dump(payload, exclude={"customer_id", "coupon_code", "discount_amount", "total_amount"})
        doc["customer_details"]["name"] = payload.customer_details.name
        doc.update(
            customer_id=customer_id,
            discount_amount=discount,
            total_amount=total,
            coupon_code=decision.code if decision else None,
            coupon_id=decision.coupon_id if decision else None,
            order_status=OrderStatus.PENDING.value,
            # Only payment verification or an admin edit marks an order paid
            payment_status=PaymentStatus.PENDING.value,
            transaction_id=None,
            tracking=None,
        )
        order = await create_document(self.db, ORDERS, doc)

        if decision:
            try:
                await record_coupon_use(self.db, decision.coupon_id)
            except PyMongoError:
                # The order stands; the coupon count is not transactional with it
                logger.exception("Could not count use of coupon %s for order %s", decision.code, order["id"])
        logger.info("Order %s placed by customer %s", order["id"], customer_id)
        return order

    async def list_all(self, status: Optional[OrderStatus] = None, skip: int = 0, limit: int = 50) -> list[dict[str, Any]]:
        filt = {"order_status": status.value} if status else {}
        return await get_documents(self.db, ORDERS, filt, limit=limit, skip=skip)

    async def for_customer(self, customer_id: str) -> list[dict[str, Any]]:
        return await get_documents(self.db, ORDERS, {"customer_id": customer_id}, limit=200)

    async def find_by_contact(self, phone: Optional[str] = None, email: Optional[str] = None) -> list[dict[str, Any]]:
        """Match the customer snapshot stored on the order, never the live profile."""
        clauses = []
        if phone and phone.strip():
            variants = {phone.strip(), normalize_phone(phone)}
            clauses.append({"customer_details.phone": {"$in": sorted(variants)}})
        if email and email.strip():
            clauses.append({"customer_details.email": email.strip().lower()})
        if not clauses:
            raise ValidationError("Phone number or email is required")
        return await get_documents(self.db, ORDERS, {"$or": clauses}, limit=200)

    async def update(self, order_id: str, payload: OrderUpdate) -> dict[str, Any]:
        changes = dump(payload, exclude_unset=True)
        if not changes:
            raise ValidationError("No updatable fields supplied")
        changes["updated_at"] = utcnow()
        order = await self.orders.find_one_and_update(
            {"_id": to_object_id(order_id, "Order")},
            {"$set": changes},
            return_document=ReturnDocument.AFTER,
        )
        if order is None:
            raise NotFoundError("Order", order_id)
        return order

    async def delete(self, order_id: str) -> None:
        result = await self.orders.delete_one({"_id": to_object_id(order_id, "Order")})
        if result.deleted_count == 0:
            raise NotFoundError("Order", order_id)

    async def delete_many(self, order_ids: list[str]) -> int:
        invalid = [i for i in order_ids if not ObjectId.is_valid(i)]
        if invalid:
            raise ValidationError(f"Invalid order ids: {', '.join(invalid)}")
        ids = [ObjectId(i) for i in order_ids]
        result = await self.orders.delete_many({"_id": {"$in": ids}})
        return result.deleted_count

    async def ship(self, order_id: str, dimensions: Optional[PackageDimensions] = None) -> dict[str, Any]:
        order = await self.get(order_id)
        if (order.get("tracking") or {}).get("shipment_id"):
            raise ConflictError("Order already shipped")

        status = OrderStatus(order["order_status"])
        if status.is_terminal:
            raise ConflictError(f"Cannot ship an order that is {status.value}")
        if status != OrderStatus.CONFIRMED:
            if self.require_confirmed:
                raise ConflictError("Order must be confirmed before shipping")
            logger.info("Auto-confirming order %s (was %s) for dispatch", order_id, status.value)
            order["order_status"] = OrderStatus.CONFIRMED.value

        # A carrier failure propagates with the order untouched
        shipment = await self.gateway.create_order(order, dimensions)

        tracking = shipment.as_tracking()
        result = await self.orders.update_one(
            {
                "_id": order["_id"],
                "$or": [{"tracking": None}, {"tracking.shipment_id": None}],
            },
            {"$set": {
                "tracking": tracking,
                "order_status": OrderStatus.SHIPPED.value,
                "updated_at": utcnow(),
            }},
        )
        if result.matched_count == 0:
            logger.error("Order %s was shipped concurrently; carrier shipment %s is orphaned", order_id, shipment.shipment_id)
            raise ConflictError("Order already shipped")
        logger.info("Order %s shipped as %s (AWB %s)", order_id, shipment.shipment_id, shipment.awb_code)
        return tracking

    async def cancel(self, order_id: str) -> dict[str, Any]:
        order = await self.get(order_id)
        status = OrderStatus(order["order_status"])
        if status.is_terminal:
            raise ConflictError(f"Order is already {status.value}")
        carrier_order_id = (order.get("tracking") or {}).get("order_id")
        if carrier_order_id:
            await self.gateway.cancel_orders([carrier_order_id])
        updated = await self.orders.find_one_and_update(
            {"_id": order["_id"]},
            {"$set": {"order_status": OrderStatus.CANCELLED.value, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        logger.info("Order %s cancelled", order_id)
        return updated

    async def live_tracking(self, order: dict[str, Any]) -> dict[str, Any]:
        shipment_id = (order.get("tracking") or {}).get("shipment_id")
        if not shipment_id:
            raise ConflictError("Order has not been shipped yet")
        snapshot = await self.gateway.track_shipment(shipment_id)
        return snapshot.to_dict()

    async def reconcile_webhook(self, payload: WebhookPayload, attempts: int = 2) -> Optional[OrderStatus]:
        """Apply a carrier status push to the order holding its AWB.

        Safe to replay: re-applying a status is a no-op and scans are merged
        set-wise into the history.
        """
        order = await self.orders.find_one({"tracking.awb_code": payload.awb})
        if order is None:
            logger.warning("Webhook for unknown AWB %s (%s)", payload.awb, payload.status_text)
            return None

        current = OrderStatus(order["order_status"])
        text = payload.status_text
        new_status = map_carrier_status(text, current)
        refused = new_status is None and current in NO_DOWNGRADE_FROM and bool(text)

        changes: dict[str, Any] = {"updated_at": utcnow()}
        if text and not refused:
            changes["tracking.status"] = text
        if payload.courier_name:
            changes["tracking.courier_name"] = payload.courier_name
        filt: dict[str, Any] = {"_id": order["_id"]}
        if new_status and new_status != current:
            changes["order_status"] = new_status.value
            filt["order_status"] = current.value

        update: dict[str, Any] = {"$set": changes}
        if payload.scans:
            update["$addToSet"] = {"tracking.history": {"$each": payload.scans}}

        result = await self.orders.update_one(filt, update)
        if result.matched_count == 0 and attempts > 1:
            # Status moved under us; evaluate again against the fresh state
            return await self.reconcile_webhook(payload, attempts - 1)

        applied = new_status or current
        logger.info("AWB %s: carrier status %r, order %s now %s", payload.awb, text, order["_id"], applied.value)
        return applied


async def get_order_service(
    db: AsyncIOMotorDatabase = Depends(get_db),
    gateway: ShiprocketClient = Depends(get_shipping_gateway),
) -> OrderService:
    return OrderService(db, gateway, require_confirmed=settings.REQUIRE_CONFIRMED_BEFORE_SHIPPING)


def check_access(order: dict[str, Any], principal: Optional[Principal]) -> None:
    if principal is None:
        raise AuthError("No token")
    if principal.is_admin:
        return
    if principal.role != "customer" or order.get("customer_id") != principal.id:
        raise NotFoundError("Order", str(order["_id"]))


@router.post("", status_code=201)
async def create_order(
    payload: OrderCreate,
    principal: Optional[Principal] = Depends(optional_principal),
    service: OrderService = Depends(get_order_service),
):
    # Prefer the token's customer, fall back to the body for guest checkout
    customer_id = principal.id if principal and principal.role == "customer" else payload.customer_id
    if not customer_id:
        raise AuthError("Customer authentication required")
    order = await service.create(payload, customer_id)
    return {"success": True, "message": "Order placed successfully", "order_id": order["id"]}


@router.get("", dependencies=[Depends(require_admin)])
async def list_orders(
    status: Optional[OrderStatus] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(50, ge=1, le=500),
    service: OrderService = Depends(get_order_service),
):
    orders = await service.list_all(status, skip, limit)
    return {"success": True, "count": len(orders), "orders": orders}


@router.get("/mine")
async def my_orders(principal: Principal = Depends(require_customer), service: OrderService = Depends(get_order_service)):
    orders = await service.for_customer(principal.id)
    return {"success": True, "count": len(orders), "orders": orders}


@router.get("/track")
async def track_orders(
    phone: Optional[str] = Query(None),
    email: Optional[str] = Query(None),
    service: OrderService = Depends(get_order_service),
):
    orders = await service.find_by_contact(phone, email)
    if not orders:
        raise NotFoundError("Orders")
    return {"success": True, "count": len(orders), "orders": orders}


@router.post("/bulk-delete", dependencies=[Depends(require_admin)])
async def bulk_delete_orders(payload: BulkDelete, service: OrderService = Depends(get_order_service)):
    deleted = await service.delete_many(payload.ids)
    return {"success": True, "message": f"{deleted} orders deleted", "deleted": deleted}


@router.get("/{order_id}")
async def get_order(
    order_id: str,
    principal: Optional[Principal] = Depends(optional_principal),
    service: OrderService = Depends(get_order_service),
):
    order = await service.get(order_id)
    check_access(order, principal)
    return {"success": True, "order": serialize(order)}


@router.put("/{order_id}", dependencies=[Depends(require_admin)])
async def update_order(order_id: str, payload: OrderUpdate, service: OrderService = Depends(get_order_service)):
    order = await service.update(order_id, payload)
    return {"success": True, "message": "Order updated successfully", "order": serialize(order)}


@router.delete("/{order_id}", dependencies=[Depends(require_admin)])
async def delete_order(order_id: str, service: OrderService = Depends(get_order_service)):
    await service.delete(order_id)
    return {"success": True, "message": "Order deleted successfully"}


@router.post("/{order_id}/ship", dependencies=[Depends(require_admin)])
async def ship_order(
    order_id: str,
    dimensions: Optional[PackageDimensions] = Body(None),
    service: OrderService = Depends(get_order_service),
):
    tracking = await service.ship(order_id, dimensions)
    return {"success": True, "message": "Order shipped", "tracking": tracking}


@router.post("/{order_id}/cancel", dependencies=[Depends(require_admin)])
async def cancel_order(order_id: str, service: OrderService = Depends(get_order_service)):
    order = await service.cancel(order_id)
    return {"success": True, "message": "Order cancelled", "order": serialize(order)}


@router.get("/{order_id}/tracking")
async def order_tracking(
    order_id: str,
    principal: Optional[Principal] = Depends(optional_principal),
    service: OrderService = Depends(get_order_service),
):
    order = await service.get(order_id)
    check_access(order, principal)
    return {"success": True, "tracking": await service.live_tracking(order)}


@shiprocket_router.post("/webhook")
async def shiprocket_webhook(request: Request, service: OrderService = Depends(get_order_service)):
    # Always acknowledged, a non-2xx answer makes the carrier retry in a storm
    expected = settings.SHIPROCKET_WEBHOOK_TOKEN
    if expected and request.headers.get("x-api-key") != expected:
        logger.warning("Ignoring Shiprocket webhook with a bad token")
        return {"success": True}
    try:
        payload = WebhookPayload.model_validate(await request.json())
        await service.reconcile_webhook(payload)
    except ValueError as exc:
        # Bad JSON or a payload without an AWB
        logger.warning("Ignoring malformed Shiprocket webhook: %s", exc)
    except Exception:
        logger.exception("Shiprocket webhook handling failed")
    return {"success": True}


@shiprocket_router.post("/calculate-shipping")
async def calculate_shipping(payload: ShippingRateQuery, gateway: ShiprocketClient = Depends(get_shipping_gateway)):
    try:
        rate = await gateway.get_shipping_rate(payload.delivery_postcode, payload.weight, payload.cod)
    except UpstreamError as exc:
        # Checkout must not block on the rate lookup
        logger.warning("Shipping rate lookup failed, using fallback: %s", exc)
        return {"success": True, "shipping_cost": round(settings.SHIPROCKET_FALLBACK_RATE), "message": "Used fallback shipping rate"}
    return {"success": True, "shipping_cost": round(rate)}
