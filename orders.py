"""
Order creation, numbering, pricing and the order-level status changes
(confirm / cancel) that are not driven by pickers or riders.
"""
import logging
from datetime import datetime
from typing import List, Optional

from fastapi import HTTPException
from pymongo import ReturnDocument

from config import DEFAULT_DELIVERY_FEE, ORDER_NUMBER_PREFIX, TAX_RATE
from database import UnitOfWork, create_document, find_by_id, utcnow
from events import notify
from lifecycle import ORDER_TRANSITIONS, can_transition, ensure_transition
from schemas import (
    Address, DeliveryStatus, Order, OrderItem, OrderStatus, PickingStatus, Pricing, Role,
    TimelineEntry, compute_totals, money,
)
from workers import release_picker, release_rider

logger = logging.getLogger(__name__)

# Fields the server owns; everything else in an order document is rewritten on save
_READ_ONLY = ("_id", "created_at", "updated_at")

PICKER_BUSY_STATUSES = frozenset({
    PickingStatus.assigned.value,
    PickingStatus.picking.value,
    PickingStatus.picked.value,
    PickingStatus.packing.value,
})


def timeline_entry(status, note: Optional[str] = None, actor=None, location=None) -> dict:
    return TimelineEntry(
        status=status.value if hasattr(status, "value") else status,
        timestamp=utcnow(),
        note=note,
        actor=str(actor) if actor else None,
        location=location,
    ).model_dump()


def recompute_pricing(order: dict) -> dict:
    order.setdefault("pricing", Pricing().model_dump())
    compute_totals(order.get("items") or [], order["pricing"])
    return order


def save_order(uow: UnitOfWork, order: dict, expected: Optional[dict] = None) -> None:
    """Persist an in-memory order.

    Pricing is always recomputed from the line items first. `expected` adds
    compare-and-set conditions on the stored document; a mismatch means another
    request got there first and yields 409.
    """
    recompute_pricing(order)
    changes = {k: v for k, v in order.items() if k not in _READ_ONLY}
    if not uow.update("order", {"_id": order["_id"], **(expected or {})}, {"$set": changes}):
        raise HTTPException(409, "Order was modified by another request, please retry")


def move_order(order: dict, target: OrderStatus, note: str, actor=None, message: Optional[str] = None) -> str:
    """Validate and apply an order status change in memory; returns the previous status."""
    previous = order["status"]
    order["status"] = ensure_transition(ORDER_TRANSITIONS, previous, target, "order", message)
    order.setdefault("timeline", []).append(timeline_entry(target, note, actor))
    return previous


def follow_in_store(order: dict, target: OrderStatus, note: str, actor=None) -> Optional[str]:
    """Advance Order.status along the picking track when the order is still on it.

    Once a rider owns the order its status tracks the delivery instead and only
    `picking.status` records in-store progress.
    """
    if not can_transition(ORDER_TRANSITIONS, order["status"], target):
        return None
    return move_order(order, target, note, actor)


def next_order_number(target, now: Optional[datetime] = None) -> str:
    year = (now or utcnow()).year
    counter = target["counter"].find_one_and_update(
        {"_id": f"order-{year}"},
        {"$inc": {"seq": 1}},
        upsert=True,
        return_document=ReturnDocument.AFTER,
    )
    return f"{ORDER_NUMBER_PREFIX}-{year}-{counter['seq']:06d}"


def get_order_or_404(target, order_id) -> dict:
    order = find_by_id(target, "order", order_id)
    if not order:
        raise HTTPException(404, "Order not found")
    return order


def owns_as_vendor(target, user, order: dict) -> bool:
    vendor = target["vendor"].find_one({"user_id": str(user["_id"])})
    return bool(vendor) and str(vendor["_id"]) == order.get("vendor")


def can_view_order(target, user, order: dict) -> bool:
    role = user.get("role")
    uid = str(user["_id"])
    if role == Role.admin.value:
        return True
    if role == Role.customer.value:
        return order.get("customer") == uid
    if role == Role.vendor.value:
        return owns_as_vendor(target, user, order)
    if role == Role.rider.value:
        rider = target["rider"].find_one({"user_id": uid})
        return bool(rider) and (order.get("delivery") or {}).get("rider") == str(rider["_id"])
    if role == Role.picker.value:
        picker = target["picker"].find_one({"user_id": uid})
        return bool(picker) and (order.get("picking") or {}).get("picker") == str(picker["_id"])
    return False


def create_order(target, publisher, customer, vendor_id: str, items: List[dict],
                 delivery_address: Optional[dict] = None, discount: float = 0) -> dict:
    if not items:
        raise HTTPException(400, "No items in order")
    vendor = find_by_id(target, "vendor", vendor_id)
    if not vendor or not vendor.get("is_active", True):
        raise HTTPException(404, "Vendor not found")

    lines = []
    for item in items:
        product = find_by_id(target, "product", item["product_id"])
        if not product or product.get("vendor") != str(vendor["_id"]):
            raise HTTPException(404, f"Product {item['product_id']} not found")
        if not product.get("active", True):
            raise HTTPException(400, f"Product {product.get('name', '')} unavailable")
        lines.append(OrderItem(
            product=str(product["_id"]),
            name=product["name"],
            price=float(product["price"]),
            quantity=int(item["quantity"]),
        ))

    delivery_fee = vendor.get("delivery_fee")
    if delivery_fee is None:
        delivery_fee = DEFAULT_DELIVERY_FEE
    subtotal = sum(line.price * line.quantity for line in lines)
    order = Order(
        order_number=next_order_number(target),
        customer=str(customer["_id"]),
        vendor=str(vendor["_id"]),
        items=lines,
        pricing=Pricing(delivery_fee=money(delivery_fee), tax=money(subtotal * TAX_RATE), discount=money(discount)),
        delivery_address=Address(**(delivery_address or {})),
        timeline=[TimelineEntry(status=OrderStatus.pending.value, timestamp=utcnow(), note="Order placed",
                                actor=str(customer["_id"]))],
    )
    new_id = create_document(target, "order", order.model_dump())
    doc = get_order_or_404(target, new_id)

    notify(publisher, vendor.get("user_id"), "new_order",
           order_id=new_id, order_number=doc["order_number"],
           message=f"New order #{doc['order_number']} received")
    logger.info("Order %s created for vendor %s", doc["order_number"], vendor_id)
    return doc


def confirm_order(target, publisher, user, order_id) -> dict:
    order = get_order_or_404(target, order_id)
    if user.get("role") != Role.admin.value and not owns_as_vendor(target, user, order):
        raise HTTPException(403, "This order does not belong to your store")
    previous = move_order(order, OrderStatus.confirmed, "Order confirmed by vendor", user["_id"],
                          message=f"Cannot confirm order with status: {order['status']}")
    with UnitOfWork(target) as uow:
        save_order(uow, order, expected={"status": previous})

    notify(publisher, order["customer"], "order_confirmed",
           order_id=str(order["_id"]), order_number=order["order_number"],
           message="Your order has been confirmed by the store")
    logger.info("Order %s confirmed", order["order_number"])
    return order


def cancel_order(target, publisher, user, order_id, reason: Optional[str] = None) -> dict:
    order = get_order_or_404(target, order_id)
    role = user.get("role")
    allowed = (
        role == Role.admin.value
        or (role == Role.customer.value and order.get("customer") == str(user["_id"]))
        or (role == Role.vendor.value and owns_as_vendor(target, user, order))
    )
    if not allowed:
        raise HTTPException(403, "You cannot cancel this order")

    delivery = target["delivery"].find_one({
        "order": str(order["_id"]),
        "status": {"$in": [DeliveryStatus.assigned.value, DeliveryStatus.accepted.value]},
    })
    previous = move_order(order, OrderStatus.cancelled, reason or "Order cancelled", user["_id"],
                          message=f"Cannot cancel order with status: {order['status']}")
    order["cancellation_reason"] = reason or "No reason provided"
    order["cancelled_by"] = str(user["_id"])
    picking = order.get("picking") or {}
    picker_to_release = picking.get("picker") if picking.get("status") in PICKER_BUSY_STATUSES else None

    with UnitOfWork(target) as uow:
        save_order(uow, order, expected={"status": previous})
        if delivery:
            uow.update("delivery", {"_id": delivery["_id"], "status": delivery["status"]}, {
                "$set": {"status": DeliveryStatus.cancelled.value},
                "$push": {"timeline": timeline_entry(DeliveryStatus.cancelled, "Order cancelled", user["_id"])},
            })
            release_rider(uow, delivery.get("rider"))
        if picker_to_release:
            release_picker(uow, picker_to_release)

    notify(publisher, order["customer"], "order_cancelled",
           order_id=str(order["_id"]), reason=order["cancellation_reason"])
    vendor = find_by_id(target, "vendor", order["vendor"])
    if vendor:
        notify(publisher, vendor.get("user_id"), "order_cancelled",
               order_id=str(order["_id"]), reason=order["cancellation_reason"])
    if delivery and delivery.get("rider"):
        rider = find_by_id(target, "rider", delivery["rider"])
        if rider:
            notify(publisher, rider.get("user_id"), "delivery_cancelled",
                   delivery_id=str(delivery["_id"]), message="The order for this delivery was cancelled")
    logger.info("Order %s cancelled by %s", order["order_number"], user["_id"])
    return order
