"""
Rider-side delivery lifecycle: accept, reject, pickup, in transit, complete,
issue reports, plus the rider's delivery lists and earnings.

Every status change moves the Delivery and its Order together inside one
unit of work, after both moves have been validated against the tables in
`lifecycle`.
"""
import logging
from datetime import timedelta
from typing import List, Optional

from fastapi import HTTPException

from database import UnitOfWork, find_by_id, get_documents, utcnow
from events import notify
from lifecycle import DELIVERY_TRANSITIONS, ensure_transition
from orders import PICKER_BUSY_STATUSES, get_order_or_404, move_order, save_order, timeline_entry
from schemas import (
    ISSUE_REPORTED, DeliveryIssue, DeliveryIssueType, DeliveryStatus, EarningsPeriod, OrderStatus,
    money,
)
from workers import release_picker, release_rider, rider_for_user

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = [
    DeliveryStatus.assigned.value,
    DeliveryStatus.accepted.value,
    DeliveryStatus.picked_up.value,
    DeliveryStatus.in_transit.value,
]


def gps_point(latitude: Optional[float], longitude: Optional[float]) -> Optional[List[float]]:
    if latitude is None or longitude is None:
        return None
    return [longitude, latitude]


def own_delivery(target, user, delivery_id) -> tuple:
    rider = rider_for_user(target, user)
    delivery = find_by_id(target, "delivery", delivery_id)
    if not delivery or delivery.get("rider") != str(rider["_id"]):
        raise HTTPException(404, "Delivery not found")
    return rider, delivery


def _vendor_user(target, vendor_id) -> Optional[str]:
    vendor = find_by_id(target, "vendor", vendor_id)
    return (vendor or {}).get("user_id")


def _move_delivery(uow: UnitOfWork, delivery: dict, target_status: DeliveryStatus, note: str, actor,
                   location=None, extra: Optional[dict] = None) -> None:
    changes = {"status": target_status.value, **(extra or {})}
    ok = uow.update(
        "delivery",
        {"_id": delivery["_id"], "status": delivery["status"]},
        {"$set": changes, "$push": {"timeline": timeline_entry(target_status, note, actor, location)}},
    )
    if not ok:
        raise HTTPException(409, "Delivery was updated by another request, please retry")


def _transition(target, user, delivery_id, target_status: DeliveryStatus, order_status: OrderStatus,
                note: str, order_note: str, message: str, location=None, extra: Optional[dict] = None,
                order_changes: Optional[dict] = None, check=None) -> tuple:
    """Shared body of the rider transitions; nothing is written unless both moves are legal."""
    rider, delivery = own_delivery(target, user, delivery_id)
    ensure_transition(DELIVERY_TRANSITIONS, delivery["status"], target_status, "delivery",
                      message.format(status=delivery["status"]))
    if check:
        check(delivery)
    order = get_order_or_404(target, delivery["order"])
    previous = move_order(order, order_status, order_note, user["_id"])
    for key, value in (order_changes or {}).items():
        order.setdefault("delivery", {})[key] = value

    with UnitOfWork(target) as uow:
        _move_delivery(uow, delivery, target_status, note, user["_id"], location, extra)
        save_order(uow, order, expected={"status": previous})
        if target_status in (DeliveryStatus.rejected, DeliveryStatus.delivered):
            earnings = None
            if target_status == DeliveryStatus.delivered:
                earnings = float((delivery.get("pricing") or {}).get("rider_earnings", 0))
            release_rider(uow, rider["_id"], earnings)
        picking = order.get("picking") or {}
        if target_status == DeliveryStatus.delivered and picking.get("status") in PICKER_BUSY_STATUSES:
            # Delivered before packing finished; the picker can no longer close it out
            release_picker(uow, picking.get("picker"))

    delivery = find_by_id(target, "delivery", delivery["_id"])
    logger.info("Delivery %s %s by rider %s", delivery["_id"], target_status.value, rider["_id"])
    return rider, delivery, order


def accept_delivery(target, publisher, user, delivery_id) -> dict:
    _, delivery, order = _transition(
        target, user, delivery_id, DeliveryStatus.accepted, OrderStatus.preparing,
        "Delivery accepted by rider", "Rider accepted delivery",
        message="Cannot accept delivery with status: {status}",
    )
    notify(publisher, delivery["customer"], "delivery_accepted",
           delivery_id=str(delivery["_id"]), order_id=str(order["_id"]),
           message="Your rider has accepted the delivery!")
    notify(publisher, _vendor_user(target, delivery["vendor"]), "delivery_accepted",
           delivery_id=str(delivery["_id"]), order_id=str(order["_id"]),
           message="Rider has accepted the delivery and is on the way")
    return delivery


def reject_delivery(target, publisher, user, delivery_id, reason: Optional[str] = None) -> dict:
    rider = rider_for_user(target, user)
    _, delivery, order = _transition(
        target, user, delivery_id, DeliveryStatus.rejected, OrderStatus.confirmed,
        f"Rejected by rider: {reason or 'No reason provided'}",
        f"Rider rejected delivery: {reason or 'No reason provided'}",
        message="Can only reject assigned deliveries",
        extra={"rider": None, "rejected_by": str(rider["_id"])},
        order_changes={"rider": None, "assigned_at": None,
                       "estimated_pickup_time": None, "estimated_delivery_time": None},
    )
    # The order goes back to `confirmed`; the store decides whether to re-dispatch
    notify(publisher, _vendor_user(target, delivery["vendor"]), "delivery_rejected",
           delivery_id=str(delivery["_id"]), order_id=str(order["_id"]), reason=reason,
           message=f"Rider rejected order #{order['order_number']}, please assign another rider")
    return delivery


def mark_picked_up(target, publisher, user, delivery_id, latitude=None, longitude=None,
                   note: Optional[str] = None, photos: Optional[List[str]] = None) -> dict:
    extra = {}
    if photos:
        extra["proof.pickup_photos"] = list(photos)
    _, delivery, order = _transition(
        target, user, delivery_id, DeliveryStatus.picked_up, OrderStatus.picked_up,
        note or "Order picked up from vendor", "Order picked up by rider",
        message="Delivery must be accepted first",
        location=gps_point(latitude, longitude), extra=extra,
    )
    notify(publisher, delivery["customer"], "order_picked_up",
           delivery_id=str(delivery["_id"]), order_id=str(order["_id"]),
           message="Your order has been picked up and is on the way!")
    notify(publisher, _vendor_user(target, delivery["vendor"]), "order_picked_up",
           delivery_id=str(delivery["_id"]), order_id=str(order["_id"]),
           message="Rider has picked up the order")
    return delivery


def mark_in_transit(target, publisher, user, delivery_id) -> dict:
    _, delivery, order = _transition(
        target, user, delivery_id, DeliveryStatus.in_transit, OrderStatus.in_transit,
        "On the way to customer", "Order is on the way",
        message="Order must be picked up first",
    )
    notify(publisher, delivery["customer"], "order_in_transit",
           delivery_id=str(delivery["_id"]), order_id=str(order["_id"]),
           message="Your order is on the way!")
    return delivery


def _require_photos(photos):
    def check(_delivery):
        if not photos:
            raise HTTPException(400, "Please upload proof of delivery photos")
    return check


def complete_delivery(target, publisher, user, delivery_id, photos: Optional[List[str]] = None,
                      latitude=None, longitude=None, signature: Optional[str] = None,
                      customer_name: Optional[str] = None, note: Optional[str] = None) -> dict:
    now = utcnow()
    location = gps_point(latitude, longitude)
    proof = {
        "proof.photos": list(photos or []),
        "proof.signature": signature,
        "proof.recipient_name": customer_name or "Customer",
        "proof.delivered_at": now,
        "proof.location": location,
        "completed_at": now,
    }
    rider, delivery, order = _transition(
        target, user, delivery_id, DeliveryStatus.delivered, OrderStatus.delivered,
        note or "Order delivered successfully", "Order delivered to customer",
        message="Delivery must be picked up or in transit",
        location=location, extra=proof, order_changes={"completed_at": now},
        check=_require_photos(photos),
    )
    notify(publisher, delivery["customer"], "order_delivered",
           delivery_id=str(delivery["_id"]), order_id=str(order["_id"]),
           message="Your order has been delivered! Enjoy!")
    notify(publisher, _vendor_user(target, delivery["vendor"]), "order_delivered",
           delivery_id=str(delivery["_id"]), order_id=str(order["_id"]),
           message="Order delivered successfully")
    rider = find_by_id(target, "rider", rider["_id"])
    return {
        "delivery": delivery,
        "earnings": delivery["pricing"]["rider_earnings"],
        "total_completed": (rider.get("stats") or {}).get("completed_deliveries", 0),
    }


def report_issue(target, publisher, user, delivery_id, issue_type: DeliveryIssueType,
                 description: str = "", photos: Optional[List[str]] = None,
                 latitude=None, longitude=None) -> dict:
    _, delivery = own_delivery(target, user, delivery_id)
    location = gps_point(latitude, longitude)
    issue = DeliveryIssue(
        type=issue_type,
        description=description or "",
        reported_at=utcnow(),
        photos=list(photos or []),
        location=location,
    ).model_dump()
    kind = issue["type"]
    with UnitOfWork(target) as uow:
        uow.update("delivery", {"_id": delivery["_id"]}, {
            "$push": {
                "issues": issue,
                "timeline": timeline_entry(ISSUE_REPORTED, f"Issue reported: {kind} - {description}",
                                           user["_id"], location),
            },
        })
    notify(publisher, _vendor_user(target, delivery["vendor"]), "delivery_issue",
           delivery_id=str(delivery["_id"]), issue_type=kind, description=description)
    logger.info("Issue reported for delivery %s: %s", delivery["_id"], kind)
    return {"issue": issue, "support_message": "Our support team will contact you shortly"}


def _with_refs(target, delivery: dict) -> dict:
    order = find_by_id(target, "order", delivery["order"]) or {}
    vendor = find_by_id(target, "vendor", delivery["vendor"]) or {}
    delivery["order_summary"] = {
        "order_number": order.get("order_number"),
        "items": order.get("items", []),
        "pricing": order.get("pricing", {}),
    }
    delivery["vendor_summary"] = {
        "business_name": vendor.get("business_name"),
        "address": vendor.get("address"),
        "phone": vendor.get("phone"),
    }
    return delivery


def active_deliveries(target, user) -> dict:
    rider = rider_for_user(target, user)
    deliveries = get_documents(
        target, "delivery",
        {"rider": str(rider["_id"]), "status": {"$in": ACTIVE_STATUSES}},
        sort=[("created_at", -1)],
    )
    deliveries = [_with_refs(target, d) for d in deliveries]
    return {"deliveries": deliveries, "total": len(deliveries)}


def delivery_history(target, user, page: int = 1, limit: int = 20, status: Optional[str] = None) -> dict:
    rider = rider_for_user(target, user)
    query = {"rider": str(rider["_id"])}
    if status:
        query["status"] = status
    page = max(1, page)
    limit = max(1, min(limit, 100))
    deliveries = get_documents(target, "delivery", query, limit=limit,
                               sort=[("created_at", -1)], skip=(page - 1) * limit)
    total = target["delivery"].count_documents(query)
    return {
        "deliveries": deliveries,
        "pagination": {
            "current_page": page,
            "total_pages": (total + limit - 1) // limit,
            "total_deliveries": total,
        },
    }


def delivery_details(target, user, delivery_id) -> dict:
    _, delivery = own_delivery(target, user, delivery_id)
    return _with_refs(target, delivery)


def period_start(period: str, now=None):
    now = now or utcnow()
    midnight = now.replace(hour=0, minute=0, second=0, microsecond=0)
    if period == EarningsPeriod.week.value:
        return now - timedelta(days=7)
    if period == EarningsPeriod.month.value:
        return now - timedelta(days=30)
    return midnight


def earnings(target, user, period: str = EarningsPeriod.today.value) -> dict:
    rider = rider_for_user(target, user)
    if period not in {p.value for p in EarningsPeriod}:
        period = EarningsPeriod.today.value
    completed = get_documents(target, "delivery", {
        "rider": str(rider["_id"]),
        "status": DeliveryStatus.delivered.value,
        "completed_at": {"$gte": period_start(period)},
    })
    total = sum(float((d.get("pricing") or {}).get("rider_earnings", 0)) for d in completed)
    count = len(completed)
    stats = rider.get("stats") or {}
    return {
        "period": period,
        "earnings": {
            "total": money(total),
            "average": money(total / count) if count else 0.0,
            "deliveries": count,
        },
        "lifetime": {
            "total": stats.get("total_earnings", 0),
            "deliveries": stats.get("completed_deliveries", 0),
        },
    }


def rider_stats(target, user) -> dict:
    rider = rider_for_user(target, user)
    today = target["delivery"].count_documents({
        "rider": str(rider["_id"]),
        "status": DeliveryStatus.delivered.value,
        "completed_at": {"$gte": period_start(EarningsPeriod.today.value)},
    })
    stats = dict(rider.get("stats") or {})
    stats["today_deliveries"] = today
    return {
        "rider": {
            "name": rider.get("name"),
            "rating": stats.get("rating", 0),
            "is_available": (rider.get("availability") or {}).get("is_available", False),
        },
        "stats": stats,
        "availability": rider.get("availability") or {},
    }
