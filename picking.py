"""
In-store fulfilment: vendors manage picker connections and hand orders to
pickers; pickers pick, pack and mark orders ready for a rider.

`Order.picking.status` always advances along PICKING_TRANSITIONS. The
top-level `Order.status` follows it only while no rider owns the order.
"""
import logging
from typing import List, Optional

from fastapi import HTTPException

from database import UnitOfWork, find_by_id, get_documents, utcnow
from events import notify
from lifecycle import CONNECTION_TRANSITIONS, ORDER_TRANSITIONS, PICKING_TRANSITIONS, ensure_transition, is_terminal
from orders import PICKER_BUSY_STATUSES, follow_in_store, get_order_or_404, save_order
from schemas import (
    ConnectionStatus, ItemIssue, ItemIssueType, OrderStatus, PickedItem, PickingStatus, Substitute,
    money,
)
from workers import (
    is_checked_in_at, is_connected_to_store, picker_for_user, release_picker, store_connection, vendor_for_user,
)

logger = logging.getLogger(__name__)

# A rider may already own the order; picking still proceeds on `picking.status`
PICKABLE_ORDER_STATUSES = frozenset({OrderStatus.confirmed.value, OrderStatus.preparing.value})

CLOSED_ORDER_STATUSES = frozenset(
    {status for status in ORDER_TRANSITIONS if is_terminal(ORDER_TRANSITIONS, status)}
    | {OrderStatus.delivered.value}
)


def picker_earnings(item_count: int, accuracy: Optional[float], pick_time: int) -> float:
    """Flat fee by basket size plus accuracy and speed bonuses."""
    earnings = 2.00
    if item_count > 5:
        earnings = 3.50
    if item_count > 15:
        earnings = 5.00
    if accuracy == 100:
        earnings += 0.50
    if pick_time < 5:
        earnings += 0.50
    elif pick_time <= 10:
        earnings += 0.25
    return money(earnings)


def picking_accuracy(items_picked: List[dict]) -> float:
    requested = sum(int(item.get("quantity_requested", 0)) for item in items_picked)
    picked = sum(int(item.get("quantity_picked", 0)) for item in items_picked)
    if requested <= 0:
        return 100.0
    return round(picked / requested * 100, 1)


# --- vendor side -----------------------------------------------------------

def _vendor_and_picker(target, user, picker_id) -> tuple:
    vendor = vendor_for_user(target, user)
    picker = find_by_id(target, "picker", picker_id)
    if not picker:
        raise HTTPException(404, "Picker not found")
    return vendor, picker


def picker_requests(target, user) -> dict:
    vendor = vendor_for_user(target, user)
    vendor_id = str(vendor["_id"])
    pickers = target["picker"].find({
        "connected_stores": {"$elemMatch": {"vendor_id": vendor_id, "status": ConnectionStatus.pending.value}},
    })
    requests = []
    for picker in pickers:
        connection = store_connection(picker, vendor_id)
        requests.append({
            "picker": {
                "id": picker["_id"],
                "name": picker.get("name"),
                "email": picker.get("email"),
                "phone": picker.get("phone"),
                "stats": picker.get("stats") or {},
            },
            "connection": {
                "requested_at": connection.get("requested_at"),
                "store_role": connection.get("store_role"),
                "sections": connection.get("sections", []),
            },
        })
    return {"requests": requests, "total": len(requests)}


def _approved_at(vendor_id: str) -> dict:
    return {"connected_stores": {"$elemMatch": {"vendor_id": vendor_id, "status": ConnectionStatus.approved.value}}}


def approved_pickers(target, user) -> dict:
    vendor = vendor_for_user(target, user)
    vendor_id = str(vendor["_id"])
    pickers = []
    for picker in target["picker"].find(_approved_at(vendor_id)):
        connection = store_connection(picker, vendor_id)
        pickers.append({
            "picker": {
                "id": picker["_id"],
                "name": picker.get("name"),
                "email": picker.get("email"),
                "phone": picker.get("phone"),
                "is_available": bool((picker.get("availability") or {}).get("is_available")),
                "is_at_store": is_checked_in_at(picker, vendor_id),
                "stats": picker.get("stats") or {},
            },
            "connection": {
                "store_role": connection.get("store_role"),
                "sections": connection.get("sections", []),
                "approved_at": connection.get("approved_at"),
            },
        })
    return {
        "pickers": pickers,
        "total": len(pickers),
        "currently_working": sum(1 for p in pickers if p["picker"]["is_at_store"]),
    }


def active_pickers(target, user) -> dict:
    """Approved pickers checked in at the vendor's store right now."""
    vendor = vendor_for_user(target, user)
    vendor_id = str(vendor["_id"])
    query = {
        **_approved_at(vendor_id),
        "availability.is_available": True,
        "availability.current_store": vendor_id,
    }
    pickers = []
    for picker in target["picker"].find(query):
        stats = picker.get("stats") or {}
        pickers.append({
            "id": picker["_id"],
            "name": picker.get("name"),
            "email": picker.get("email"),
            "phone": picker.get("phone"),
            "active_orders": stats.get("active_orders", 0),
            "orders_today": stats.get("orders_picked_today", 0),
            "rating": stats.get("rating", 0),
            "check_in_time": (picker.get("availability") or {}).get("last_check_in"),
        })
    return {"pickers": pickers, "total": len(pickers)}


def picker_performance(target, user, picker_id) -> dict:
    vendor, picker = _vendor_and_picker(target, user, picker_id)
    vendor_id = str(vendor["_id"])
    if not store_connection(picker, vendor_id):
        raise HTTPException(404, "Picker not found")
    orders = get_documents(target, "order", {
        "vendor": vendor_id,
        "picking.picker": str(picker["_id"]),
        "picking.status": PickingStatus.ready_for_pickup.value,
    })
    total = len(orders)
    average_pick_time = sum((o["picking"].get("pick_time") or 0) for o in orders) / total if total else 0
    average_accuracy = (
        sum(100 if o["picking"].get("accuracy") is None else o["picking"]["accuracy"] for o in orders) / total
        if total else 100
    )
    return {
        "picker": {"id": picker["_id"], "name": picker.get("name"), "email": picker.get("email")},
        "performance": {
            "total_orders_picked": total,
            "average_pick_time": round(average_pick_time, 1),
            "average_accuracy": round(average_accuracy, 1),
            "rating": (picker.get("stats") or {}).get("rating", 0),
        },
    }


def _move_connection(target, picker: dict, vendor_id: str, status: ConnectionStatus, changes: dict,
                     message: Optional[str] = None, extra: Optional[dict] = None) -> dict:
    connection = store_connection(picker, vendor_id)
    if not connection:
        raise HTTPException(404, "Connection request not found")
    current = connection.get("status")
    ensure_transition(CONNECTION_TRANSITIONS, current, status, "connection",
                      message or f"Connection is already {current}")

    stores = []
    for store in picker.get("connected_stores") or []:
        store = dict(store)
        if str(store.get("vendor_id")) == vendor_id:
            store.update({"status": status.value, **changes})
            connection = store
        stores.append(store)

    with UnitOfWork(target) as uow:
        ok = uow.update(
            "picker",
            {"_id": picker["_id"], "connected_stores": {"$elemMatch": {"vendor_id": vendor_id, "status": current}}},
            {"$set": {"connected_stores": stores, **(extra or {})}},
        )
    if not ok:
        raise HTTPException(409, "Picker was updated by another request, please retry")
    return connection


def approve_picker(target, publisher, user, picker_id, sections: Optional[List[str]] = None) -> dict:
    vendor, picker = _vendor_and_picker(target, user, picker_id)
    changes = {"approved_at": utcnow(), "approved_by": str(user["_id"])}
    if sections:
        changes["sections"] = list(sections)
    connection = _move_connection(target, picker, str(vendor["_id"]), ConnectionStatus.approved, changes)

    notify(publisher, picker.get("user_id"), "picker_request_approved",
           vendor_id=str(vendor["_id"]), vendor_name=vendor.get("business_name"),
           store_role=connection.get("store_role"),
           message=f"Your request to work at {vendor.get('business_name')} has been approved!")
    logger.info("Vendor %s approved picker %s", vendor["_id"], picker["_id"])
    return {"picker": {"id": picker["_id"], "name": picker.get("name")}, "connection": connection}


def reject_picker(target, publisher, user, picker_id, reason: Optional[str] = None) -> dict:
    vendor, picker = _vendor_and_picker(target, user, picker_id)
    connection = _move_connection(
        target, picker, str(vendor["_id"]), ConnectionStatus.rejected,
        {"rejected_at": utcnow(), "rejection_reason": reason or "No reason provided"},
        message="No pending connection request found",
    )
    notify(publisher, picker.get("user_id"), "picker_request_rejected",
           vendor_id=str(vendor["_id"]), vendor_name=vendor.get("business_name"),
           reason=reason or "Not specified",
           message=f"Your request to work at {vendor.get('business_name')} was not approved")
    logger.info("Vendor %s rejected picker %s", vendor["_id"], picker["_id"])
    return {"picker": {"id": picker["_id"], "name": picker.get("name")}, "connection": connection}


def suspend_picker(target, publisher, user, picker_id, reason: Optional[str] = None) -> dict:
    vendor, picker = _vendor_and_picker(target, user, picker_id)
    vendor_id = str(vendor["_id"])
    checkout = {}
    if is_checked_in_at(picker, vendor_id):
        checkout = {"availability.is_available": False, "availability.current_store": None}
    connection = _move_connection(
        target, picker, vendor_id, ConnectionStatus.suspended,
        {"suspended_at": utcnow(), "suspension_reason": reason or "No reason provided"},
        message="Only approved pickers can be suspended", extra=checkout,
    )
    notify(publisher, picker.get("user_id"), "picker_suspended",
           vendor_id=vendor_id, vendor_name=vendor.get("business_name"), reason=reason or "Not specified",
           message=f"Your access to {vendor.get('business_name')} has been suspended")
    logger.info("Vendor %s suspended picker %s", vendor_id, picker["_id"])
    return {"picker": {"id": picker["_id"], "name": picker.get("name")}, "connection": connection,
            "checked_out": bool(checkout)}


def assign_picker(target, publisher, user, order_id, picker_id) -> dict:
    vendor, picker = _vendor_and_picker(target, user, picker_id)
    vendor_id = str(vendor["_id"])
    order = get_order_or_404(target, order_id)
    if order.get("vendor") != vendor_id:
        raise HTTPException(403, "This order does not belong to your store")
    if not is_connected_to_store(picker, vendor_id):
        raise HTTPException(403, "Picker is not approved for your store")
    if not is_checked_in_at(picker, vendor_id):
        raise HTTPException(400, "Picker is not currently checked in at your store")
    picking = order.setdefault("picking", {})
    current = picking.get("status", PickingStatus.pending.value)
    ensure_transition(PICKING_TRANSITIONS, current, PickingStatus.assigned, "picking", f"Order is already {current}")
    if order["status"] not in PICKABLE_ORDER_STATUSES:
        raise HTTPException(400, f"Cannot assign a picker to an order with status: {order['status']}")

    picking.update({
        "status": PickingStatus.assigned.value,
        "picker": str(picker["_id"]),
        "assigned_at": utcnow(),
        "items_picked": [
            PickedItem(product_id=item["product"], quantity_requested=item["quantity"]).model_dump()
            for item in order.get("items") or []
        ],
    })
    follow_in_store(order, OrderStatus.assigned_picker, f"Assigned to picker {picker.get('name')}", user["_id"])

    with UnitOfWork(target) as uow:
        save_order(uow, order, expected={"picking.status": current})
        uow.update("picker", {"_id": picker["_id"]}, {"$inc": {"stats.active_orders": 1}})

    notify(publisher, picker.get("user_id"), "order_assigned",
           order_id=str(order["_id"]), order_number=order["order_number"],
           item_count=len(order.get("items") or []),
           message=f"New order #{order['order_number']} assigned to you by {vendor.get('business_name')}")
    logger.info("Order %s assigned to picker %s", order["order_number"], picker["_id"])
    return {
        "order": {"id": order["_id"], "order_number": order["order_number"], "status": order["status"]},
        "picker": {"id": picker["_id"], "name": picker.get("name")},
    }


# --- picker side -----------------------------------------------------------

def _assigned_order(target, picker: dict, order_id) -> dict:
    order = find_by_id(target, "order", order_id)
    if not order or (order.get("picking") or {}).get("picker") != str(picker["_id"]):
        raise HTTPException(404, "Order not found or not assigned to you")
    return order


def is_closed(order: dict) -> bool:
    """Cancelled, completed or already delivered: no more in-store work."""
    return order["status"] in CLOSED_ORDER_STATUSES


def _picker_order(target, user, order_id) -> tuple:
    picker = picker_for_user(target, user)
    order = _assigned_order(target, picker, order_id)
    if is_closed(order):
        raise HTTPException(400, f"Order is {order['status']} and can no longer be picked")
    return picker, order


def _require_picking_status(order: dict, status: PickingStatus, message: str) -> None:
    if order["picking"].get("status") != status.value:
        raise HTTPException(400, message)


def _picked_item(order: dict, product_id: str) -> dict:
    for item in order["picking"].get("items_picked") or []:
        if str(item.get("product_id")) == str(product_id):
            return item
    raise HTTPException(404, "Item not found in order")


def _item_name(order: dict, product_id: str) -> Optional[str]:
    for item in order.get("items") or []:
        if str(item.get("product")) == str(product_id):
            return item.get("name")
    return None


def _save_item_change(target, order: dict) -> None:
    # Item updates rewrite the whole picking sub-document, so guard on the last write
    with UnitOfWork(target) as uow:
        save_order(uow, order, expected={"updated_at": order.get("updated_at")})


def _advance_picking(order: dict, status: PickingStatus, message: str, check=None) -> str:
    """Validate and apply a `picking.status` move in memory; returns the previous status."""
    current = order["picking"].get("status")
    ensure_transition(PICKING_TRANSITIONS, current, status, "picking", message.format(status=current))
    if check:
        check(order)
    order["picking"]["status"] = status.value
    return current


def _save_advance(target, order: dict, previous: str) -> None:
    with UnitOfWork(target) as uow:
        save_order(uow, order, expected={"picking.status": previous})


def start_picking(target, user, order_id) -> dict:
    picker, order = _picker_order(target, user, order_id)
    previous = _advance_picking(order, PickingStatus.picking, "Cannot start picking. Order status is: {status}")
    order["picking"]["started_at"] = utcnow()
    follow_in_store(order, OrderStatus.picking, f"Picker {picker.get('name')} started picking", user["_id"])
    _save_advance(target, order, previous)
    logger.info("Picker %s started picking order %s", picker["_id"], order["order_number"])
    return {
        "order": order,
        "items_to_pick": [i for i in order["picking"].get("items_picked") or [] if not i.get("is_picked")],
    }


def mark_item_picked(target, user, order_id, product_id, quantity_picked: Optional[int] = None) -> dict:
    _, order = _picker_order(target, user, order_id)
    _require_picking_status(order, PickingStatus.picking, "Order is not in picking status")
    item = _picked_item(order, product_id)
    if item.get("is_picked"):
        raise HTTPException(400, "Item already marked as picked")
    requested = int(item["quantity_requested"])
    quantity = requested if quantity_picked is None else int(quantity_picked)
    if quantity < 0 or quantity > requested:
        raise HTTPException(400, f"Quantity picked must be between 0 and {requested}")

    item.update({"quantity_picked": quantity, "is_picked": True, "picked_at": utcnow()})
    _save_item_change(target, order)

    remaining = [i for i in order["picking"]["items_picked"] if not i.get("is_picked")]
    return {"picked_item": item, "remaining_items": len(remaining), "all_items_picked": not remaining}


def report_item_issue(target, publisher, user, order_id, product_id, issue_type: ItemIssueType,
                      description: str = "", quantity_available: Optional[int] = None) -> dict:
    _, order = _picker_order(target, user, order_id)
    _require_picking_status(order, PickingStatus.picking, "Order is not in picking status")
    item = _picked_item(order, product_id)
    issue = ItemIssue(type=issue_type, description=description or "", reported_at=utcnow()).model_dump()
    item.setdefault("issues", []).append(issue)

    now = utcnow()
    if issue["type"] == ItemIssueType.out_of_stock.value:
        # Nothing on the shelf still counts as processed
        item.update({"quantity_picked": 0, "is_picked": True, "picked_at": now})
    elif issue["type"] == ItemIssueType.wrong_quantity.value and quantity_available:
        available = min(int(quantity_available), int(item["quantity_requested"]))
        item.update({"quantity_picked": available, "is_picked": True, "picked_at": now})
    _save_item_change(target, order)

    notify(publisher, order["customer"], "order_item_issue",
           order_id=str(order["_id"]), order_number=order["order_number"],
           product_name=_item_name(order, product_id), issue_type=issue["type"], description=description)
    logger.info("Issue %s reported on order %s item %s", issue["type"], order["order_number"], product_id)
    return {"picked_item": item}


def suggest_substitute(target, publisher, user, order_id, product_id, substitute_product_id,
                       reason: Optional[str] = None) -> dict:
    _, order = _picker_order(target, user, order_id)
    _require_picking_status(order, PickingStatus.picking, "Order is not in picking status")
    substitute = find_by_id(target, "product", substitute_product_id)
    if not substitute or substitute.get("vendor") != order.get("vendor"):
        raise HTTPException(404, "Order or substitute product not found")
    item = _picked_item(order, product_id)

    item["substitute"] = Substitute(
        product_id=str(substitute["_id"]), name=substitute["name"], price=float(substitute["price"]),
    ).model_dump()
    item.setdefault("issues", []).append(ItemIssue(
        type=ItemIssueType.substitute_offered,
        description=reason or f"Substitute offered: {substitute['name']}",
        reported_at=utcnow(),
    ).model_dump())
    _save_item_change(target, order)

    images = substitute.get("images") or []
    notify(publisher, order["customer"], "substitute_offered",
           order_id=str(order["_id"]), order_number=order["order_number"],
           original_product=_item_name(order, product_id),
           substitute_product={"id": str(substitute["_id"]), "name": substitute["name"],
                               "price": substitute["price"], "image": images[0] if images else None},
           reason=reason)
    return {"picked_item": item, "awaiting": "customer_approval"}


def _all_items_processed(order: dict) -> None:
    remaining = [i for i in order["picking"].get("items_picked") or [] if not i.get("is_picked")]
    if remaining:
        raise HTTPException(400, f"Not all items have been picked ({len(remaining)} remaining)")


def complete_picking(target, user, order_id) -> dict:
    _, order = _picker_order(target, user, order_id)
    previous = _advance_picking(order, PickingStatus.picked, "Order is not in picking status",
                                check=_all_items_processed)
    accuracy = picking_accuracy(order["picking"]["items_picked"])
    order["picking"].update({"picked_at": utcnow(), "accuracy": accuracy})
    follow_in_store(order, OrderStatus.picked, f"All items picked ({accuracy}% accuracy)", user["_id"])
    _save_advance(target, order, previous)
    logger.info("Picking completed for order %s with %s%% accuracy", order["order_number"], accuracy)
    return {"order": order, "accuracy": accuracy, "next_step": "packing"}


def start_packing(target, user, order_id) -> dict:
    picker, order = _picker_order(target, user, order_id)
    previous = _advance_picking(order, PickingStatus.packing, "Order must be picked before packing")
    follow_in_store(order, OrderStatus.packing, f"Picker {picker.get('name')} started packing", user["_id"])
    _save_advance(target, order, previous)
    logger.info("Picker %s started packing order %s", picker["_id"], order["order_number"])
    return {"order": order}


def upload_packing_photos(target, user, order_id, photos: List[str], notes: Optional[str] = None) -> dict:
    if not photos:
        raise HTTPException(400, "Please upload at least one photo")
    _, order = _picker_order(target, user, order_id)
    _require_picking_status(order, PickingStatus.packing, "Order is not in packing status")
    order["picking"]["packing_photos"] = list(photos)
    if notes:
        order["picking"]["notes"] = notes
    _save_item_change(target, order)
    return {"photos_count": len(photos)}


def _require_packing_photos(order: dict) -> None:
    if not order["picking"].get("packing_photos"):
        raise HTTPException(400, "Please upload packing photos before completing")


def _picker_stats_after(picker: dict, pick_time: int, accuracy: Optional[float], earnings: float) -> dict:
    stats = picker.get("stats") or {}
    total = int(stats.get("total_orders_picked", 0)) + 1
    averages = {
        "stats.average_pick_time": round(
            (float(stats.get("average_pick_time", 0)) * (total - 1) + pick_time) / total, 2),
    }
    if accuracy is not None:
        averages["stats.accuracy_rate"] = round(
            (float(stats.get("accuracy_rate", 100)) * (total - 1) + accuracy) / total, 1)
    return {
        "$set": averages,
        "$inc": {
            "stats.total_orders_picked": 1,
            "stats.orders_picked_today": 1,
            "stats.total_earnings": earnings,
            "stats.earnings_this_week": earnings,
            "stats.earnings_this_month": earnings,
        },
    }


def complete_packing(target, publisher, user, order_id, notes: Optional[str] = None) -> dict:
    picker, order = _picker_order(target, user, order_id)
    previous = _advance_picking(order, PickingStatus.ready_for_pickup, "Order is not in packing status",
                                check=_require_packing_photos)
    picking = order["picking"]
    now = utcnow()
    pick_time = round((now - (picking.get("started_at") or now)).total_seconds() / 60)
    picking.update({"packed_at": now, "ready_at": now, "pick_time": pick_time})
    follow_in_store(order, OrderStatus.ready_for_pickup,
                    f"Order packed and ready for rider pickup ({pick_time} min)", user["_id"])
    if notes:
        picking["notes"] = f"{picking['notes']}\n{notes}" if picking.get("notes") else notes
    accuracy = picking.get("accuracy")
    earnings = picker_earnings(len(order.get("items") or []), accuracy, pick_time)

    with UnitOfWork(target) as uow:
        save_order(uow, order, expected={"picking.status": previous})
        uow.update("picker", {"_id": picker["_id"]}, _picker_stats_after(picker, pick_time, accuracy, earnings))
        release_picker(uow, picker["_id"])

    vendor = find_by_id(target, "vendor", order["vendor"]) or {}
    notify(publisher, order["customer"], "order_ready_for_delivery",
           order_id=str(order["_id"]), order_number=order["order_number"],
           vendor=vendor.get("business_name"), message="Your order is packed and ready for delivery!")
    notify(publisher, vendor.get("user_id"), "order_ready_for_delivery",
           order_id=str(order["_id"]), order_number=order["order_number"],
           message=f"Order #{order['order_number']} is packed and waiting for a rider")
    logger.info("Order %s packed by picker %s, earned %.2f", order["order_number"], picker["_id"], earnings)
    return {
        "order": order,
        "pick_time": pick_time,
        "accuracy": accuracy,
        "earnings": earnings,
        "next_step": "Wait for rider to pick up",
    }


def _with_vendor(target, order: dict) -> dict:
    vendor = find_by_id(target, "vendor", order.get("vendor")) or {}
    order["vendor_summary"] = {
        "business_name": vendor.get("business_name"),
        "address": vendor.get("address"),
        "phone": vendor.get("phone"),
    }
    return order


def active_orders(target, user) -> dict:
    picker = picker_for_user(target, user)
    orders = get_documents(target, "order", {
        "picking.picker": str(picker["_id"]),
        "picking.status": {"$in": sorted(PICKER_BUSY_STATUSES)},
        "status": {"$nin": sorted(CLOSED_ORDER_STATUSES)},
    }, sort=[("picking.assigned_at", 1)])
    orders = [_with_vendor(target, o) for o in orders]
    return {"orders": orders, "total": len(orders)}


def picking_history(target, user, page: int = 1, limit: int = 20, status: Optional[str] = None) -> dict:
    """Orders the picker worked on; defaults to the ones they finished packing."""
    picker = picker_for_user(target, user)
    query = {
        "picking.picker": str(picker["_id"]),
        "picking.status": status or PickingStatus.ready_for_pickup.value,
    }
    page = max(1, page)
    limit = max(1, min(limit, 100))
    orders = get_documents(target, "order", query, limit=limit,
                           sort=[("picking.ready_at", -1)], skip=(page - 1) * limit)
    total = target["order"].count_documents(query)
    return {
        "orders": orders,
        "pagination": {
            "current_page": page,
            "total_pages": (total + limit - 1) // limit,
            "total_orders": total,
        },
    }


def picker_order_details(target, user, order_id) -> dict:
    picker = picker_for_user(target, user)
    return {"order": _with_vendor(target, _assigned_order(target, picker, order_id))}
