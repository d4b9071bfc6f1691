"""
Lookups and load bookkeeping for riders and pickers.

Rider and picker profiles are owned by the accounts side of the platform;
this service only reads them and adjusts availability and work counters.
"""
import logging
from typing import Optional

from fastapi import HTTPException

from database import to_object_id
from schemas import ConnectionStatus

logger = logging.getLogger(__name__)


class RiderTaken(HTTPException):
    """Another request took the rider between selection and assignment."""

    def __init__(self):
        super().__init__(status_code=409, detail="Rider was just assigned elsewhere")


def rider_for_user(target, user) -> dict:
    rider = target["rider"].find_one({"user_id": str(user["_id"])})
    if not rider:
        raise HTTPException(404, "Rider profile not found")
    return rider


def picker_for_user(target, user) -> dict:
    picker = target["picker"].find_one({"user_id": str(user["_id"])})
    if not picker:
        raise HTTPException(404, "Picker profile not found")
    return picker


def vendor_for_user(target, user) -> dict:
    vendor = target["vendor"].find_one({"user_id": str(user["_id"])})
    if not vendor:
        raise HTTPException(404, "Vendor profile not found")
    return vendor


def store_connection(worker: dict, vendor_id) -> Optional[dict]:
    for store in worker.get("connected_stores") or []:
        if str(store.get("vendor_id")) == str(vendor_id):
            return store
    return None


def is_connected_to_store(worker: dict, vendor_id) -> bool:
    store = store_connection(worker, vendor_id)
    return bool(store) and store.get("status") == ConnectionStatus.approved.value


def is_checked_in_at(picker: dict, vendor_id) -> bool:
    availability = picker.get("availability") or {}
    return bool(availability.get("is_available")) and str(availability.get("current_store")) == str(vendor_id)


def rider_is_assignable(rider: dict) -> bool:
    return bool(rider.get("is_active")) and bool((rider.get("availability") or {}).get("is_available"))


def occupy_rider(uow, rider: dict) -> None:
    """Count one more active delivery and take the rider off the market."""
    ok = uow.update(
        "rider",
        {"_id": rider["_id"], "availability.is_available": True},
        {"$inc": {"stats.active_deliveries": 1}, "$set": {"availability.is_available": False}},
    )
    if not ok:
        raise RiderTaken()


def release_rider(uow, rider_id, completed_earnings: Optional[float] = None) -> None:
    """Free one delivery slot; with `completed_earnings`, also book the completion."""
    oid = to_object_id(rider_id)
    update = {"$set": {"availability.is_available": True}}
    if completed_earnings is not None:
        update["$inc"] = {"stats.completed_deliveries": 1, "stats.total_earnings": completed_earnings}
    if not oid or not uow.update("rider", {"_id": oid}, update):
        logger.warning("Cannot release unknown rider %s", rider_id)
        return
    # Counters never go below zero
    uow.update("rider", {"_id": oid, "stats.active_deliveries": {"$gt": 0}},
               {"$inc": {"stats.active_deliveries": -1}})


def release_picker(uow, picker_id) -> None:
    oid = to_object_id(picker_id)
    if oid:
        uow.update("picker", {"_id": oid, "stats.active_orders": {"$gt": 0}}, {"$inc": {"stats.active_orders": -1}})
