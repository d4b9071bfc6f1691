"""
Rider selection and assignment for confirmed orders.

Riders are ranked with a linear score over distance to the store, rating,
current load, experience and whether they already work with the store:

    score = 100 - 2*km + 10*rating - 5*active + 0.1*completed (+20 if connected)

Riders without a known position are placed 999 km away.
"""
import copy
import logging
import math
from datetime import timedelta
from typing import List, Optional

from fastapi import HTTPException

from config import (
    AVERAGE_RIDER_SPEED_KMH, DEFAULT_SEARCH_RADIUS_KM, ESTIMATED_DELIVERY_MINUTES,
    ESTIMATED_PICKUP_MINUTES, RIDER_EARNINGS_SHARE,
)
from database import UnitOfWork, find_by_id, utcnow
from events import notify
from orders import get_order_or_404, move_order, owns_as_vendor, save_order, timeline_entry
from schemas import (
    REASSIGNED, Address, Delivery, DeliveryMetadata, DeliveryPricing, DeliveryStatus, OrderStatus, Role,
    Stop, money,
)
from workers import RiderTaken, is_connected_to_store, occupy_rider, release_rider, rider_is_assignable

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371
UNKNOWN_DISTANCE_KM = 999
TOP_CANDIDATES = 3

# A packed order waiting in store is as assignable as a freshly confirmed one
ASSIGNABLE_ORDER_STATUSES = frozenset({OrderStatus.confirmed.value, OrderStatus.ready_for_pickup.value})


def calculate_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in kilometres (Haversine)."""
    d_lat = math.radians(lat2 - lat1)
    d_lon = math.radians(lon2 - lon1)
    a = (math.sin(d_lat / 2) ** 2 +
         math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) *
         math.sin(d_lon / 2) ** 2)
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_KM * c


def lat_lon(point) -> Optional[tuple]:
    """(lat, lon) from a stored [longitude, latitude] pair, None when unknown."""
    if not point or len(point) < 2 or point[0] is None or point[1] is None:
        return None
    return float(point[1]), float(point[0])


def rider_position(rider: dict) -> Optional[tuple]:
    return lat_lon((rider.get("current_location") or {}).get("coordinates"))


def score_rider(rider: dict, vendor_id, vendor_lat: float, vendor_lon: float) -> dict:
    position = rider_position(rider)
    distance = UNKNOWN_DISTANCE_KM
    if position:
        distance = calculate_distance(vendor_lat, vendor_lon, *position)

    stats = rider.get("stats") or {}
    score = 100.0
    score -= distance * 2
    score += float(stats.get("rating", 0)) * 10
    score -= int(stats.get("active_deliveries", 0)) * 5
    score += int(stats.get("completed_deliveries", 0)) * 0.1

    connected = is_connected_to_store(rider, vendor_id)
    if connected:
        score += 20
    return {"rider": rider, "distance": distance, "score": score, "is_connected": connected}


def score_riders(riders: List[dict], vendor_id, vendor_lat: float, vendor_lon: float) -> List[dict]:
    scored = [score_rider(r, vendor_id, vendor_lat, vendor_lon) for r in riders]
    scored.sort(key=lambda c: c["score"], reverse=True)
    return scored


def rider_filter(vehicle_type: Optional[str] = None) -> dict:
    query = {
        "is_active": True,
        "availability.is_available": True,
        "verification.status": "verified",
    }
    if vehicle_type:
        query["vehicle.type"] = vehicle_type
    return query


def vendor_position(vendor: Optional[dict]) -> tuple:
    position = lat_lon(((vendor or {}).get("address") or {}).get("coordinates"))
    if not position:
        raise HTTPException(404, "Vendor address coordinates not found")
    return position


def _ensure_can_dispatch(target, user, order: dict) -> None:
    if user.get("role") != Role.admin.value and not owns_as_vendor(target, user, order):
        raise HTTPException(403, "This order does not belong to your store")


def build_delivery(order: dict, vendor: dict, customer: Optional[dict], rider: dict,
                   method: str, note: str, actor=None, distance: Optional[float] = None,
                   score: Optional[float] = None) -> dict:
    fee = money((order.get("pricing") or {}).get("delivery_fee"))
    rider_earnings = money(fee * RIDER_EARNINGS_SHARE)
    vendor_address = vendor.get("address") or {}
    dropoff = order.get("delivery_address") or {}
    return Delivery(
        order=str(order["_id"]),
        customer=order["customer"],
        vendor=str(vendor["_id"]),
        rider=str(rider["_id"]),
        status=DeliveryStatus.assigned,
        pickup=Stop(
            address=Address(**{k: v for k, v in vendor_address.items() if k != "coordinates"}),
            coordinates=vendor_address.get("coordinates"),
            contact_name=vendor.get("business_name"),
            contact_phone=vendor.get("phone"),
        ),
        dropoff=Stop(
            address=Address(**{k: v for k, v in dropoff.items() if k not in ("coordinates", "instructions")}),
            coordinates=dropoff.get("coordinates"),
            contact_name=(customer or {}).get("name") or "Customer",
            contact_phone=(customer or {}).get("phone"),
            instructions=dropoff.get("instructions"),
        ),
        pricing=DeliveryPricing(base_fee=fee, rider_earnings=rider_earnings, platform_fee=money(fee - rider_earnings)),
        metadata=DeliveryMetadata(
            vehicle_type=(rider.get("vehicle") or {}).get("type"),
            estimated_distance=round(distance, 2) if distance is not None else None,
            assignment_method=method,
            assignment_score=round(score, 2) if score is not None else None,
        ),
        timeline=[timeline_entry(DeliveryStatus.assigned, note, actor,
                                 (rider.get("current_location") or {}).get("coordinates"))],
    ).model_dump()


def commit_assignment(target, order: dict, vendor: dict, customer: Optional[dict], rider: dict,
                      method: str, note: str, actor=None, distance=None, score=None) -> tuple:
    """Create the Delivery, point the Order at it and occupy the rider, all or nothing."""
    order = copy.deepcopy(order)
    previous = move_order(order, OrderStatus.preparing, note, actor)
    now = utcnow()
    order["delivery"] = {
        **(order.get("delivery") or {}),
        "rider": str(rider["_id"]),
        "assigned_at": now,
        "estimated_pickup_time": now + timedelta(minutes=ESTIMATED_PICKUP_MINUTES),
        "estimated_delivery_time": now + timedelta(minutes=ESTIMATED_DELIVERY_MINUTES),
    }
    delivery = build_delivery(order, vendor, customer, rider, method, note, actor, distance, score)

    with UnitOfWork(target) as uow:
        save_order(uow, order, expected={"status": previous, "delivery.rider": None})
        delivery["_id"] = uow.insert("delivery", delivery)
        occupy_rider(uow, rider)
    return order, delivery


def _announce_assignment(publisher, order: dict, vendor: dict, rider: dict, delivery: dict, distance=None) -> None:
    rider_name = rider.get("name", "Your rider")
    notify(publisher, rider.get("user_id"), "new_delivery_assignment",
           delivery_id=str(delivery["_id"]), order_id=str(order["_id"]),
           pickup=delivery["pickup"], dropoff=delivery["dropoff"],
           earnings=delivery["pricing"]["rider_earnings"], distance=distance,
           message=f"New delivery assigned! Pick up from {vendor.get('business_name', 'the store')}")
    notify(publisher, order["customer"], "rider_assigned",
           order_id=str(order["_id"]), rider_name=rider_name,
           estimated_delivery_time=order["delivery"]["estimated_delivery_time"],
           message=f"Your rider {rider_name} is on the way!")
    notify(publisher, vendor.get("user_id"), "rider_assigned",
           order_id=str(order["_id"]), rider_name=rider_name,
           estimated_pickup_time=order["delivery"]["estimated_pickup_time"],
           message=f"Rider {rider_name} will pick up the order soon")


def auto_assign_rider(target, publisher, user, order_id, vehicle_type: Optional[str] = None) -> dict:
    order = get_order_or_404(target, order_id)
    _ensure_can_dispatch(target, user, order)
    vendor = find_by_id(target, "vendor", order["vendor"])
    if not vendor:
        raise HTTPException(404, "Vendor not found")
    if order["status"] not in ASSIGNABLE_ORDER_STATUSES:
        raise HTTPException(400, "Order must be confirmed before assigning rider")
    if (order.get("delivery") or {}).get("rider"):
        raise HTTPException(400, "Order already has an assigned rider")
    vendor_lat, vendor_lon = vendor_position(vendor)

    riders = list(target["rider"].find(rider_filter(vehicle_type)))
    if not riders:
        raise HTTPException(404, "No available riders found. Try again in a few minutes or contact support")

    top = score_riders(riders, vendor["_id"], vendor_lat, vendor_lon)[:TOP_CANDIDATES]
    customer = find_by_id(target, "user", order["customer"])

    # Lost races on a rider fall through to the next candidate
    for position, candidate in enumerate(top):
        rider = candidate["rider"]
        note = f"Auto-assigned to {rider.get('name', 'rider')} ({candidate['distance']:.1f}km away)"
        try:
            order_after, delivery = commit_assignment(
                target, order, vendor, customer, rider, "auto", note, user["_id"],
                candidate["distance"], candidate["score"],
            )
        except RiderTaken:
            logger.info("Rider %s taken before assignment of order %s", rider["_id"], order["order_number"])
            continue
        break
    else:
        raise HTTPException(409, "Failed to assign rider, all candidates were taken. Please retry")

    _announce_assignment(publisher, order_after, vendor, rider, delivery, candidate["distance"])
    logger.info("Rider %s assigned to order %s (score %.1f)", rider["_id"], order["order_number"], candidate["score"])
    return {
        "rider": {
            "id": str(rider["_id"]),
            "name": rider.get("name"),
            "rating": (rider.get("stats") or {}).get("rating", 0),
            "vehicle_type": (rider.get("vehicle") or {}).get("type"),
            "distance": round(candidate["distance"], 1),
            "score": round(candidate["score"], 1),
        },
        "delivery": {
            "id": delivery["_id"],
            "estimated_pickup_time": order_after["delivery"]["estimated_pickup_time"],
            "estimated_delivery_time": order_after["delivery"]["estimated_delivery_time"],
            "rider_earnings": delivery["pricing"]["rider_earnings"],
        },
        "alternative_riders": [
            {
                "id": str(c["rider"]["_id"]),
                "name": c["rider"].get("name"),
                "distance": round(c["distance"], 1),
                "score": round(c["score"], 1),
            }
            for c in top[position + 1:]
        ],
    }


def manual_assign_rider(target, publisher, user, order_id, rider_id) -> dict:
    order = get_order_or_404(target, order_id)
    rider = find_by_id(target, "rider", rider_id)
    if not rider:
        raise HTTPException(404, "Order or rider not found")
    _ensure_can_dispatch(target, user, order)
    if (order.get("delivery") or {}).get("rider"):
        raise HTTPException(400, "Order already has an assigned rider")
    if not rider_is_assignable(rider):
        raise HTTPException(400, "Rider is not available")
    vendor = find_by_id(target, "vendor", order["vendor"])
    if not vendor:
        raise HTTPException(404, "Vendor not found")
    customer = find_by_id(target, "user", order["customer"])

    note = f"Manually assigned to {rider.get('name', 'rider')}"
    try:
        order_after, delivery = commit_assignment(target, order, vendor, customer, rider, "manual", note, user["_id"])
    except RiderTaken:
        raise HTTPException(409, "Rider is no longer available")

    _announce_assignment(publisher, order_after, vendor, rider, delivery)
    logger.info("Rider %s manually assigned to order %s", rider["_id"], order["order_number"])
    return {"delivery": delivery, "rider": {"id": str(rider["_id"]), "name": rider.get("name")}}


def available_riders(target, vendor_id, vehicle_type: Optional[str] = None,
                     radius: float = DEFAULT_SEARCH_RADIUS_KM) -> dict:
    vendor = find_by_id(target, "vendor", vendor_id)
    if not vendor:
        raise HTTPException(404, "Vendor not found")
    vendor_lat, vendor_lon = vendor_position(vendor)

    nearby = []
    for rider in target["rider"].find(rider_filter(vehicle_type)):
        position = rider_position(rider)
        if not position:
            continue
        distance = calculate_distance(vendor_lat, vendor_lon, *position)
        if distance > radius:
            continue
        stats = rider.get("stats") or {}
        vehicle = rider.get("vehicle") or {}
        nearby.append({
            "rider": {
                "id": str(rider["_id"]),
                "name": rider.get("name"),
                "phone": rider.get("phone"),
                "rating": stats.get("rating", 0),
                "completed_deliveries": stats.get("completed_deliveries", 0),
                "vehicle_type": vehicle.get("type"),
                "vehicle_model": vehicle.get("model"),
                "is_connected": is_connected_to_store(rider, vendor["_id"]),
            },
            "distance": round(distance, 1),
            "estimated_arrival": round(distance / AVERAGE_RIDER_SPEED_KMH * 60),
        })
    nearby.sort(key=lambda r: r["distance"])
    return {"riders": nearby, "total": len(nearby), "search_radius": radius}


def reassign_delivery(target, publisher, user, delivery_id, new_rider_id, reason: Optional[str] = None) -> dict:
    delivery = find_by_id(target, "delivery", delivery_id)
    new_rider = find_by_id(target, "rider", new_rider_id)
    if not delivery or not new_rider:
        raise HTTPException(404, "Delivery or new rider not found")
    order = get_order_or_404(target, delivery["order"])
    _ensure_can_dispatch(target, user, order)
    if delivery["status"] != DeliveryStatus.assigned.value:
        raise HTTPException(400, f"Cannot reassign delivery with status: {delivery['status']}")
    if delivery.get("rider") == str(new_rider["_id"]):
        raise HTTPException(400, "Delivery is already assigned to this rider")
    if not rider_is_assignable(new_rider):
        raise HTTPException(400, "Rider is not available")

    old_rider = find_by_id(target, "rider", delivery.get("rider")) if delivery.get("rider") else None
    old_name = (old_rider or {}).get("name", "previous rider")
    note = f"Reassigned from {old_name} to {new_rider.get('name', 'rider')}. Reason: {reason or 'Not specified'}"

    try:
        with UnitOfWork(target) as uow:
            ok = uow.update(
                "delivery",
                {"_id": delivery["_id"], "status": DeliveryStatus.assigned.value, "rider": delivery.get("rider")},
                {"$set": {"rider": str(new_rider["_id"])},
                 "$push": {"timeline": timeline_entry(REASSIGNED, note, user["_id"])}},
            )
            if not ok:
                raise HTTPException(409, "Delivery changed while reassigning, please retry")
            uow.update("order", {"_id": order["_id"]},
                       {"$set": {"delivery.rider": str(new_rider["_id"]), "delivery.assigned_at": utcnow()}})
            if old_rider:
                release_rider(uow, old_rider["_id"])
            occupy_rider(uow, new_rider)
    except RiderTaken:
        raise HTTPException(409, "Rider is no longer available")

    if old_rider:
        notify(publisher, old_rider.get("user_id"), "delivery_reassigned",
               delivery_id=str(delivery["_id"]), message="Delivery has been reassigned to another rider")
    notify(publisher, new_rider.get("user_id"), "new_delivery_assignment",
           delivery_id=str(delivery["_id"]), message="New delivery assigned (reassigned from another rider)")
    logger.info("Delivery %s reassigned to rider %s", delivery["_id"], new_rider["_id"])
    return {
        "delivery": find_by_id(target, "delivery", delivery["_id"]),
        "new_rider": {"id": str(new_rider["_id"]), "name": new_rider.get("name")},
    }
