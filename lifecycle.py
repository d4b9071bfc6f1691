"""
Status transition tables for orders, in-store picking, deliveries and
picker/store connections.

Handlers never compare statuses ad hoc; they ask this module whether a move
is legal before writing anything.
"""
from typing import Dict, FrozenSet, Mapping, Optional

from fastapi import HTTPException

from schemas import ConnectionStatus, DeliveryStatus, OrderStatus, PickingStatus

Table = Mapping[str, FrozenSet[str]]


def _table(edges: Dict) -> Dict[str, FrozenSet[str]]:
    return {str(src.value): frozenset(dst.value for dst in targets) for src, targets in edges.items()}


DELIVERY_TRANSITIONS: Table = _table({
    DeliveryStatus.assigned: {DeliveryStatus.accepted, DeliveryStatus.rejected, DeliveryStatus.cancelled},
    DeliveryStatus.accepted: {DeliveryStatus.picked_up, DeliveryStatus.cancelled},
    DeliveryStatus.picked_up: {DeliveryStatus.in_transit, DeliveryStatus.delivered},
    DeliveryStatus.in_transit: {DeliveryStatus.delivered},
    DeliveryStatus.delivered: set(),
    DeliveryStatus.rejected: set(),
    DeliveryStatus.cancelled: set(),
})

ORDER_TRANSITIONS: Table = _table({
    OrderStatus.pending: {OrderStatus.confirmed, OrderStatus.cancelled},
    OrderStatus.confirmed: {OrderStatus.assigned_picker, OrderStatus.preparing, OrderStatus.cancelled},
    OrderStatus.assigned_picker: {OrderStatus.picking, OrderStatus.cancelled},
    OrderStatus.picking: {OrderStatus.picked, OrderStatus.cancelled},
    OrderStatus.picked: {OrderStatus.packing, OrderStatus.cancelled},
    OrderStatus.packing: {OrderStatus.ready_for_pickup, OrderStatus.cancelled},
    OrderStatus.ready_for_pickup: {OrderStatus.preparing, OrderStatus.cancelled},
    # preparing -> preparing: rider accepted; -> confirmed: rider rejected
    OrderStatus.preparing: {OrderStatus.preparing, OrderStatus.confirmed, OrderStatus.picked_up,
                            OrderStatus.cancelled},
    OrderStatus.picked_up: {OrderStatus.in_transit, OrderStatus.delivered},
    OrderStatus.in_transit: {OrderStatus.delivered},
    OrderStatus.delivered: {OrderStatus.completed},
    OrderStatus.completed: set(),
    OrderStatus.cancelled: set(),
})

PICKING_TRANSITIONS: Table = _table({
    PickingStatus.pending: {PickingStatus.assigned},
    PickingStatus.assigned: {PickingStatus.picking},
    PickingStatus.picking: {PickingStatus.picked},
    PickingStatus.picked: {PickingStatus.packing},
    PickingStatus.packing: {PickingStatus.ready_for_pickup},
    PickingStatus.ready_for_pickup: set(),
})

CONNECTION_TRANSITIONS: Table = _table({
    ConnectionStatus.pending: {ConnectionStatus.approved, ConnectionStatus.rejected},
    ConnectionStatus.approved: {ConnectionStatus.suspended},
    ConnectionStatus.rejected: set(),
    ConnectionStatus.suspended: set(),
})


class InvalidTransition(HTTPException):
    def __init__(self, label: str, current, target, message: Optional[str] = None):
        self.current = _value(current)
        self.target = _value(target)
        super().__init__(
            status_code=400,
            detail=message or f"Cannot move {label} from '{self.current}' to '{self.target}'",
        )


def _value(status) -> str:
    return status.value if hasattr(status, "value") else str(status)


def allowed_targets(table: Table, current) -> FrozenSet[str]:
    return table.get(_value(current), frozenset())


def can_transition(table: Table, current, target) -> bool:
    return _value(target) in allowed_targets(table, current)


def ensure_transition(table: Table, current, target, label: str, message: Optional[str] = None) -> str:
    """Raise InvalidTransition unless `current -> target` is in `table`."""
    if not can_transition(table, current, target):
        raise InvalidTransition(label, current, target, message)
    return _value(target)


def is_terminal(table: Table, status) -> bool:
    return not allowed_targets(table, status)
