"""
Order workflow: placement, listing, cancellation and status administration.

Stock is only ever changed through conditional, per-gem atomic updates, so
concurrent checkouts against the same gem cannot drive it below zero.
"""

import logging
import math
import secrets
import time
from datetime import datetime, timezone
from typing import Dict, List, Optional

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.database import Database

from errors import AlreadyCancelled, InsufficientStock, InvalidTransition, NotFound, ValidationFailed
from schemas import Order, OrderCreate, OrderItem, OrderStatus

logger = logging.getLogger(__name__)

TRANSITIONS: Dict[OrderStatus, frozenset] = {
    OrderStatus.pending: frozenset({OrderStatus.confirmed, OrderStatus.cancelled}),
    OrderStatus.confirmed: frozenset({OrderStatus.processing, OrderStatus.cancelled}),
    OrderStatus.processing: frozenset({OrderStatus.shipped, OrderStatus.cancelled}),
    OrderStatus.shipped: frozenset({OrderStatus.delivered}),
    OrderStatus.delivered: frozenset(),
    OrderStatus.cancelled: frozenset(),
}


def check_transition(current: OrderStatus, target: OrderStatus) -> None:
    if target in TRANSITIONS[current]:
        return
    if current == OrderStatus.cancelled and target == OrderStatus.cancelled:
        raise AlreadyCancelled()
    if target == OrderStatus.cancelled:
        raise InvalidTransition("Cannot cancel order that has been shipped or delivered")
    raise InvalidTransition(f"Cannot change order status from {current.value} to {target.value}")


def generate_order_id() -> str:
    return "ORD" + str(int(time.time() * 1000)) + secrets.token_hex(4).upper()


def effective_price(gem: dict) -> float:
    """Catalog price after the gem's discount, never below zero."""
    price = float(gem.get("price", 0))
    discount = float(gem.get("discount") or 0)
    if discount > 0:
        if gem.get("discount_type", "percentage") == "percentage":
            price = price * (1 - discount / 100.0)
        else:
            price = price - discount
    return round(max(price, 0.0), 2)


def to_object_id(id_str: str) -> ObjectId:
    try:
        return ObjectId(id_str)
    except Exception:
        raise ValidationFailed("Invalid id format", errors=[{"field": "id", "message": f"{id_str} is not a valid id"}])


def paginate(page: int, limit: int, total_items: int) -> dict:
    total_pages = math.ceil(total_items / limit) if limit else 0
    return {
        "currentPage": page,
        "totalPages": total_pages,
        "totalItems": total_items,
        "hasNext": page < total_pages,
        "hasPrev": page > 1,
    }


# -------------------- Placement --------------------

def _load_gems(db: Database, gem_ids: List[str]) -> Dict[str, dict]:
    oids = [to_object_id(gid) for gid in gem_ids]
    gems = {str(g["_id"]): g for g in db["gem"].find({"_id": {"$in": oids}})}
    if len(gems) != len(set(gem_ids)):
        raise NotFound("One or more items no longer exist")
    return gems


def _release(db: Database, reserved: List[tuple]) -> None:
    for gem_oid, qty in reserved:
        db["gem"].update_one({"_id": gem_oid}, {"$inc": {"stock": qty}})


def _compensate(db: Database, order_oid: ObjectId, reserved: List[tuple]) -> None:
    _release(db, reserved)
    db["order_item"].delete_many({"order_ref": str(order_oid)})
    db["order"].delete_one({"_id": order_oid})


def place_order(db: Database, user_id: str, payload: OrderCreate, reprice: bool = False) -> dict:
    lines = payload.items
    if not lines:
        raise ValidationFailed("At least one item is required")

    gems = _load_gems(db, [line.gem_id for line in lines])

    requested: Dict[str, int] = {}
    for line in lines:
        requested[line.gem_id] = requested.get(line.gem_id, 0) + line.quantity
    for gem_id, qty in requested.items():
        gem = gems[gem_id]
        if not gem.get("availability", False) or int(gem.get("stock", 0)) < qty:
            logger.info("Rejected order for user %s: insufficient stock for %s", user_id, gem.get("name"))
            raise InsufficientStock(gem.get("name", gem_id))

    priced = []
    for line in lines:
        unit_price = effective_price(gems[line.gem_id]) if reprice else line.price
        priced.append((line, unit_price))
    total = round(sum(price * line.quantity for line, price in priced), 2)

    now = datetime.now(timezone.utc)
    order = Order(
        order_id=generate_order_id(),
        user_id=user_id,
        total=total,
        shipping_address=payload.shipping_address,
        payment_method=payload.payment_method,
        order_notes=payload.order_notes,
        created_at=now,
        updated_at=now,
    )
    order_oid = db["order"].insert_one(order.model_dump()).inserted_id

    reserved: List[tuple] = []
    try:
        db["order_item"].insert_many([
            OrderItem(order_ref=str(order_oid), gem_id=line.gem_id, quantity=line.quantity, price=price).model_dump()
            for line, price in priced
        ])
        for line in lines:
            gem_oid = ObjectId(line.gem_id)
            updated = db["gem"].find_one_and_update(
                {"_id": gem_oid, "availability": True, "stock": {"$gte": line.quantity}},
                {"$inc": {"stock": -line.quantity}, "$set": {"updated_at": now}},
                return_document=ReturnDocument.AFTER,
            )
            if updated is None:
                name = gems[line.gem_id].get("name", line.gem_id)
                logger.warning("Stock for %s changed during checkout of %s; rolling back", name, order.order_id)
                _compensate(db, order_oid, reserved)
                raise InsufficientStock(name)
            reserved.append((gem_oid, line.quantity))
        db["cart_item"].delete_many({"user_id": user_id})
    except InsufficientStock:
        raise
    except Exception:
        logger.error("Integrity incident while placing %s; compensating", order.order_id, exc_info=True)
        _compensate(db, order_oid, reserved)
        raise

    logger.info("Order %s placed by user %s, total %.2f", order.order_id, user_id, total)
    return {
        "orderId": order.order_id,
        "status": order.status,
        "total": order.total,
        "createdAt": now.isoformat(),
    }


# -------------------- Reads --------------------

def _line_json(line: dict, gem: Optional[dict], detailed: bool = False) -> dict:
    out = {
        "id": str(line["_id"]),
        "gemId": line["gem_id"],
        "quantity": line["quantity"],
        "price": line["price"],
        "gem": None,
    }
    if gem:
        out["gem"] = {
            "id": str(gem["_id"]),
            "name": gem.get("name"),
            "price": gem.get("price"),
            "images": gem.get("images", []),
        }
        if detailed:
            out["gem"]["description"] = gem.get("description")
    return out


def _lines_for(db: Database, order: dict, detailed: bool = False) -> List[dict]:
    lines = list(db["order_item"].find({"order_ref": str(order["_id"])}))
    gem_oids = [ObjectId(line["gem_id"]) for line in lines]
    gems = {str(g["_id"]): g for g in db["gem"].find({"_id": {"$in": gem_oids}})}
    return [_line_json(line, gems.get(line["gem_id"]), detailed) for line in lines]


def _iso(value):
    return value.isoformat() if isinstance(value, datetime) else value


def _order_json(order: dict, lines: List[dict], detailed: bool = False) -> dict:
    address = order.get("shipping_address", {})
    out = {
        "id": str(order["_id"]),
        "orderId": order["order_id"],
        "status": order["status"],
        "total": order["total"],
        "items": lines,
        "shippingAddress": {
            "firstName": address.get("first_name"),
            "lastName": address.get("last_name"),
            "email": address.get("email"),
            "phone": address.get("phone"),
            "address": address.get("address"),
            "city": address.get("city"),
            "state": address.get("state"),
            "pincode": address.get("pincode"),
        },
        "createdAt": _iso(order.get("created_at")),
    }
    if detailed:
        out.update({
            "paymentMethod": order.get("payment_method"),
            "orderNotes": order.get("order_notes"),
            "trackingNumber": order.get("tracking_number"),
            "updatedAt": _iso(order.get("updated_at")),
        })
    return out


def list_orders(db: Database, user_id: str, page: int = 1, limit: int = 10,
                status: Optional[OrderStatus] = None) -> dict:
    query = {"user_id": user_id}
    if status:
        query["status"] = status.value
    skip = (page - 1) * limit
    cursor = db["order"].find(query).sort([("created_at", -1), ("_id", -1)]).skip(skip).limit(limit)
    orders = [_order_json(o, _lines_for(db, o)) for o in cursor]
    total_items = db["order"].count_documents(query)
    return {"orders": orders, "pagination": paginate(page, limit, total_items)}


def _find_owned(db: Database, order_id: str, user_id: str) -> dict:
    order = db["order"].find_one({"order_id": order_id, "user_id": user_id})
    if not order:
        raise NotFound("Order not found")
    return order


def get_order(db: Database, order_id: str, user_id: str) -> dict:
    order = _find_owned(db, order_id, user_id)
    return _order_json(order, _lines_for(db, order, detailed=True), detailed=True)


# -------------------- Status changes --------------------

def _restore_stock(db: Database, order: dict) -> None:
    restored = []
    try:
        for line in db["order_item"].find({"order_ref": str(order["_id"])}):
            res = db["gem"].update_one({"_id": ObjectId(line["gem_id"])}, {"$inc": {"stock": line["quantity"]}})
            if res.matched_count == 0:
                logger.warning("Gem %s from order %s no longer exists; %s units not restored",
                               line["gem_id"], order["order_id"], line["quantity"])
            restored.append(line["gem_id"])
    except Exception:
        logger.error("Integrity incident while restoring stock for cancelled order %s; restored gems: %s",
                     order["order_id"], restored, exc_info=True)
        raise


def _set_status(db: Database, order: dict, target: OrderStatus, extra: Optional[dict] = None) -> dict:
    current = OrderStatus(order["status"])
    check_transition(current, target)
    update = {"status": target.value, "updated_at": datetime.now(timezone.utc)}
    if extra:
        update.update(extra)
    updated = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": current.value},
        {"$set": update},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        # another request changed the status first; judge against what it left behind
        fresh = db["order"].find_one({"_id": order["_id"]})
        if fresh is None:
            raise NotFound("Order not found")
        check_transition(OrderStatus(fresh["status"]), target)
        return _set_status(db, fresh, target, extra)
    if target == OrderStatus.cancelled:
        _restore_stock(db, updated)
    logger.info("Order %s moved from %s to %s", order["order_id"], current.value, target.value)
    return updated


def cancel_order(db: Database, order_id: str, user_id: str) -> dict:
    order = _find_owned(db, order_id, user_id)
    return _set_status(db, order, OrderStatus.cancelled)


def update_order_status(db: Database, order_id: str, target: OrderStatus,
                        tracking_number: Optional[str] = None) -> dict:
    order = db["order"].find_one({"order_id": order_id})
    if not order:
        raise NotFound("Order not found")
    extra = {"tracking_number": tracking_number} if tracking_number else None
    updated = _set_status(db, order, target, extra)
    return _order_json(updated, _lines_for(db, updated, detailed=True), detailed=True)
