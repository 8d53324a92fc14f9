"""
Order lifecycle: cart -> order with line items and download entitlements.

An order document embeds its items and its entitlements, so creating one
is a single insert. Line items snapshot the catalog's title, category and
price at purchase time; later catalog edits never touch past orders.
"""

import logging
import math
import secrets
import string
import time
from datetime import timedelta

from pymongo import DESCENDING, ReturnDocument
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

import config
from database import COL_ORDER, COL_PRODUCT, id_filter, serialize_doc, to_object_id, utcnow
from errors import Conflict, Internal, NotFound, ValidationError
from schemas import ADMIN_ROLES, CartItem, Download, Order, OrderItem
from security import authorize

logger = logging.getLogger(__name__)

ORDER_STATUSES = ("PENDING", "PROCESSING", "COMPLETED", "CANCELLED")

ALLOWED_TRANSITIONS = {
    "PENDING": {"PROCESSING", "COMPLETED", "CANCELLED"},
    "PROCESSING": {"COMPLETED", "CANCELLED"},
    "COMPLETED": set(),
    "CANCELLED": set(),
}

MONEY_TOLERANCE = 0.01
ORDER_NUMBER_ATTEMPTS = 3
_ALPHABET = string.digits + string.ascii_uppercase


def _random_suffix(length: int) -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def generate_order_number() -> str:
    return f"ORD-{int(time.time() * 1000)}-{_random_suffix(5)}"


def generate_download_id() -> str:
    return f"DL-{int(time.time() * 1000)}-{_random_suffix(12)}"


def _money_equal(a: float, b: float) -> bool:
    return abs(a - b) < MONEY_TOLERANCE


def _load_products(db: Database, items: list[CartItem]) -> dict:
    products = {}
    for item in items:
        if item.id in products:
            continue
        product = db[COL_PRODUCT].find_one(id_filter(item.id))
        if product is None:
            raise ValidationError(f"Product {item.id} not found")
        products[item.id] = product
    return products


def build_items(db: Database, cart: list[CartItem]) -> list[OrderItem]:
    if not cart:
        raise ValidationError("Items are required")
    products = _load_products(db, cart)
    items = []
    for entry in cart:
        product = products[entry.id]
        items.append(
            OrderItem(
                product_id=entry.id,
                title=product.get("title", ""),
                category=product.get("category", ""),
                price=float(product.get("price", 0)),
                quantity=entry.quantity,
            )
        )
    return items


def check_totals(items: list[OrderItem], subtotal: float, tax: float, total: float) -> None:
    if subtotal is None or tax is None or total is None:
        raise ValidationError("Pricing information is required")
    if subtotal < 0 or tax < 0 or total < 0:
        raise ValidationError("Pricing values must not be negative")
    expected = sum(i.price * i.quantity for i in items)
    if not _money_equal(expected, subtotal):
        raise ValidationError("Subtotal does not match the items in the cart")
    if not _money_equal(subtotal + tax, total):
        raise ValidationError("Total must equal subtotal plus tax")


def create_order(db: Database, user_id: str, cart: list[CartItem], subtotal: float, tax: float, total: float) -> dict:
    items = build_items(db, cart)
    check_totals(items, subtotal, tax, total)

    now = utcnow()
    for _ in range(ORDER_NUMBER_ATTEMPTS):
        # fresh identifiers on every attempt; either unique key may collide
        downloads = [
            Download(
                download_id=generate_download_id(),
                product_id=item.product_id,
                user_id=user_id,
                expires_at=now + timedelta(days=config.DOWNLOAD_TTL_DAYS),
                created_at=now,
            )
            for item in items
        ]
        order = Order(
            order_number=generate_order_number(),
            user_id=user_id,
            items=items,
            downloads=downloads,
            download_ids=[d.download_id for d in downloads],
            subtotal=round(subtotal, 2),
            tax=round(tax, 2),
            total=round(total, 2),
            created_at=now,
            updated_at=now,
        )
        doc = order.model_dump()
        try:
            doc["_id"] = db[COL_ORDER].insert_one(doc).inserted_id
        except DuplicateKeyError:
            logger.warning("Order %s collided with an existing identifier, retrying", order.order_number)
            continue
        logger.info("Order created: %s for user %s", order.order_number, user_id)
        return serialize_doc(doc)
    raise Internal("Failed to create order")


def _paginate(db: Database, query: dict, page: int, limit: int) -> dict:
    if page < 1 or limit < 1 or limit > 100:
        raise ValidationError("Invalid pagination parameters")
    cursor = (
        db[COL_ORDER]
        .find(query)
        .sort("created_at", DESCENDING)
        .skip((page - 1) * limit)
        .limit(limit)
    )
    orders = [serialize_doc(o) for o in cursor]
    total = db[COL_ORDER].count_documents(query)
    return {
        "orders": orders,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": math.ceil(total / limit),
        },
    }


def list_my_orders(db: Database, user_id: str, page: int = 1, limit: int = 10) -> dict:
    return _paginate(db, {"user_id": user_id}, page, limit)


def list_orders(db: Database, status: str | None = None, page: int = 1, limit: int = 20) -> dict:
    query = {}
    if status:
        if status not in ORDER_STATUSES:
            raise ValidationError("Invalid status")
        query["status"] = status
    return _paginate(db, query, page, limit)


def get_order(db: Database, user_id: str, order_id: str) -> dict:
    oid = to_object_id(order_id)
    # same answer for "missing" and "someone else's"
    if oid is None:
        raise NotFound("Order not found")
    order = db[COL_ORDER].find_one({"_id": oid, "user_id": user_id})
    if order is None:
        raise NotFound("Order not found")
    return serialize_doc(order)


def update_status(db: Database, actor: dict, order_id: str, new_status: str) -> dict:
    """Move an order along PENDING -> PROCESSING -> COMPLETED, or to CANCELLED.

    COMPLETED and CANCELLED are terminal. Completing re-arms the expiry of
    every active entitlement from the completion time; cancelling revokes them.
    """
    authorize(actor["role"], ADMIN_ROLES)
    if new_status not in ORDER_STATUSES:
        raise ValidationError("Invalid status")
    oid = to_object_id(order_id)
    order = db[COL_ORDER].find_one({"_id": oid}) if oid else None
    if order is None:
        raise NotFound("Order not found")

    current = order.get("status", "PENDING")
    if new_status == current:
        return serialize_doc(order)
    if new_status not in ALLOWED_TRANSITIONS[current]:
        raise Conflict(f"Cannot change order status from {current} to {new_status}")

    now = utcnow()
    downloads = order.get("downloads", [])
    if new_status == "COMPLETED":
        expires_at = now + timedelta(days=config.DOWNLOAD_TTL_DAYS)
        for d in downloads:
            if d.get("status") == "ACTIVE":
                d["expires_at"] = expires_at
    elif new_status == "CANCELLED":
        for d in downloads:
            d["status"] = "REVOKED"

    updated = db[COL_ORDER].find_one_and_update(
        {"_id": oid, "status": current},
        {
            "$set": {
                "status": new_status,
                "completed_at": now if new_status == "COMPLETED" else None,
                "downloads": downloads,
                "updated_at": now,
            }
        },
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise Conflict("Order status changed concurrently, retry")
    logger.info("Order %s status updated %s -> %s", order.get("order_number"), current, new_status)
    return serialize_doc(updated)


def get_stats(db: Database, days: int = 7) -> dict:
    by_status = {s: {"count": 0, "revenue": 0.0} for s in ORDER_STATUSES}
    for row in db[COL_ORDER].aggregate([
        {"$group": {"_id": "$status", "count": {"$sum": 1}, "revenue": {"$sum": "$total"}}}
    ]):
        if row["_id"] in by_status:
            by_status[row["_id"]] = {"count": row["count"], "revenue": round(row["revenue"], 2)}

    now = utcnow()
    today = now.replace(hour=0, minute=0, second=0, microsecond=0)
    start = today - timedelta(days=days - 1)
    daily = {
        (start + timedelta(days=i)).date().isoformat(): {"orders": 0, "revenue": 0.0}
        for i in range(days)
    }
    for order in db[COL_ORDER].find({"created_at": {"$gte": start}}, {"created_at": 1, "status": 1, "total": 1}):
        bucket = daily.get(order["created_at"].date().isoformat())
        if bucket is None:
            continue
        bucket["orders"] += 1
        if order.get("status") == "COMPLETED":
            bucket["revenue"] = round(bucket["revenue"] + order.get("total", 0), 2)

    today_key = today.date().isoformat()
    return {
        "total_orders": sum(s["count"] for s in by_status.values()),
        "pending_orders": by_status["PENDING"]["count"],
        "processing_orders": by_status["PROCESSING"]["count"],
        "completed_orders": by_status["COMPLETED"]["count"],
        "cancelled_orders": by_status["CANCELLED"]["count"],
        "total_revenue": by_status["COMPLETED"]["revenue"],
        "today_orders": daily[today_key]["orders"],
        "today_revenue": daily[today_key]["revenue"],
        "daily": [{"date": k, **v} for k, v in daily.items()],
    }
