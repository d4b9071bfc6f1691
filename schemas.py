"""
Database Schemas for the Afrimercato delivery service

Each Pydantic model represents a MongoDB collection. Collection name is the lowercase
class name (e.g., Delivery -> "delivery"). References between documents are string ids.
"""
from __future__ import annotations
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator


def money(value) -> float:
    return round(float(value or 0), 2)


class Document(BaseModel):
    # Enums are stored as their plain string values.
    model_config = ConfigDict(use_enum_values=True, validate_default=True)


class Role(str, Enum):
    admin = "admin"
    vendor = "vendor"
    rider = "rider"
    picker = "picker"
    customer = "customer"


class OrderStatus(str, Enum):
    pending = "pending"
    confirmed = "confirmed"
    assigned_picker = "assigned_picker"
    picking = "picking"
    picked = "picked"
    packing = "packing"
    ready_for_pickup = "ready_for_pickup"
    preparing = "preparing"
    picked_up = "picked_up"
    in_transit = "in_transit"
    delivered = "delivered"
    completed = "completed"
    cancelled = "cancelled"


class PickingStatus(str, Enum):
    pending = "pending"
    assigned = "assigned"
    picking = "picking"
    picked = "picked"
    packing = "packing"
    ready_for_pickup = "ready_for_pickup"


class DeliveryStatus(str, Enum):
    assigned = "assigned"
    accepted = "accepted"
    picked_up = "picked_up"
    in_transit = "in_transit"
    delivered = "delivered"
    rejected = "rejected"
    cancelled = "cancelled"


class ConnectionStatus(str, Enum):
    pending = "pending"
    approved = "approved"
    rejected = "rejected"
    suspended = "suspended"


class VehicleType(str, Enum):
    bicycle = "bicycle"
    motorcycle = "motorcycle"
    car = "car"
    van = "van"


class ItemIssueType(str, Enum):
    out_of_stock = "out_of_stock"
    wrong_quantity = "wrong_quantity"
    damaged = "damaged"
    expired = "expired"
    substitute_offered = "substitute_offered"
    other = "other"


class DeliveryIssueType(str, Enum):
    customer_unavailable = "customer_unavailable"
    address_incorrect = "address_incorrect"
    access_denied = "access_denied"
    item_damaged = "item_damaged"
    delay = "delay"
    other = "other"


class EarningsPeriod(str, Enum):
    today = "today"
    week = "week"
    month = "month"


# Timeline markers that are not delivery statuses
REASSIGNED = "reassigned"
ISSUE_REPORTED = "issue_reported"


class User(Document):
    name: str
    email: EmailStr
    password_hash: str
    role: Role = Role.customer
    phone: Optional[str] = None
    is_active: bool = True


class Address(BaseModel):
    street: Optional[str] = None
    apartment: Optional[str] = None
    city: Optional[str] = None
    postcode: Optional[str] = None
    country: Optional[str] = None
    # [longitude, latitude]
    coordinates: Optional[List[float]] = None
    instructions: Optional[str] = None


class Vendor(Document):
    user_id: str
    business_name: str
    phone: Optional[str] = None
    address: Address = Field(default_factory=Address)
    delivery_fee: Optional[float] = Field(default=None, ge=0)
    is_active: bool = True


class Product(Document):
    vendor: str
    name: str
    price: float = Field(ge=0)
    unit: Optional[str] = None
    images: List[str] = []
    active: bool = True


class RiderStats(BaseModel):
    active_deliveries: int = 0
    completed_deliveries: int = 0
    rating: float = 0
    total_earnings: float = 0


class StoreConnection(Document):
    vendor_id: str
    status: ConnectionStatus = ConnectionStatus.pending
    store_role: str = "picker"
    sections: List[str] = []
    requested_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    rejected_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    suspended_at: Optional[datetime] = None
    suspension_reason: Optional[str] = None


class Rider(Document):
    user_id: str
    name: str
    phone: Optional[str] = None
    is_active: bool = True
    verification: Dict[str, Any] = {"status": "pending"}
    availability: Dict[str, Any] = {"is_available": False}
    vehicle: Dict[str, Any] = {}
    stats: RiderStats = Field(default_factory=RiderStats)
    connected_stores: List[StoreConnection] = []
    # {"coordinates": [longitude, latitude], "updated_at": ...}
    current_location: Optional[Dict[str, Any]] = None


class PickerStats(BaseModel):
    active_orders: int = 0
    orders_picked_today: int = 0
    total_orders_picked: int = 0
    average_pick_time: float = 0
    accuracy_rate: float = 100
    rating: float = 0
    total_earnings: float = 0
    earnings_this_week: float = 0
    earnings_this_month: float = 0


class Picker(Document):
    user_id: str
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    is_active: bool = True
    connected_stores: List[StoreConnection] = []
    # {"is_available": bool, "current_store": vendor id, "last_check_in": datetime}
    availability: Dict[str, Any] = {"is_available": False, "current_store": None}
    stats: PickerStats = Field(default_factory=PickerStats)


class OrderItem(BaseModel):
    product: str
    name: str
    price: float = Field(ge=0)
    quantity: int = Field(ge=1)
    subtotal: float = 0


class Pricing(BaseModel):
    subtotal: float = 0
    delivery_fee: float = Field(default=0, ge=0)
    tax: float = Field(default=0, ge=0)
    discount: float = Field(default=0, ge=0)
    total: float = 0


def compute_totals(items: List[dict], pricing: dict) -> dict:
    """Recompute line subtotals and order totals from the stored items.

    Mutates and returns `pricing`; client-supplied subtotal/total are ignored.
    """
    subtotal = 0.0
    for item in items:
        item["subtotal"] = money(float(item["price"]) * int(item["quantity"]))
        subtotal += item["subtotal"]
    pricing["subtotal"] = money(subtotal)
    pricing["total"] = money(
        pricing["subtotal"]
        + float(pricing.get("delivery_fee") or 0)
        + float(pricing.get("tax") or 0)
        - float(pricing.get("discount") or 0)
    )
    return pricing


class ItemIssue(Document):
    type: ItemIssueType
    description: str = ""
    reported_at: datetime


class Substitute(BaseModel):
    product_id: str
    name: str
    price: float
    customer_approved: bool = False


class PickedItem(BaseModel):
    product_id: str
    quantity_requested: int
    quantity_picked: int = 0
    is_picked: bool = False
    picked_at: Optional[datetime] = None
    issues: List[ItemIssue] = []
    substitute: Optional[Substitute] = None


class Picking(Document):
    status: PickingStatus = PickingStatus.pending
    picker: Optional[str] = None
    assigned_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    picked_at: Optional[datetime] = None
    packed_at: Optional[datetime] = None
    ready_at: Optional[datetime] = None
    items_picked: List[PickedItem] = []
    packing_photos: List[str] = []
    notes: Optional[str] = None
    accuracy: Optional[float] = None
    pick_time: Optional[int] = None


class OrderDelivery(BaseModel):
    rider: Optional[str] = None
    assigned_at: Optional[datetime] = None
    estimated_pickup_time: Optional[datetime] = None
    estimated_delivery_time: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class TimelineEntry(Document):
    status: str
    timestamp: datetime
    note: Optional[str] = None
    actor: Optional[str] = None
    # [longitude, latitude]
    location: Optional[List[float]] = None


class Order(Document):
    order_number: str
    customer: str
    vendor: str
    items: List[OrderItem]
    pricing: Pricing = Field(default_factory=Pricing)
    delivery_address: Address = Field(default_factory=Address)
    status: OrderStatus = OrderStatus.pending
    picking: Picking = Field(default_factory=Picking)
    delivery: OrderDelivery = Field(default_factory=OrderDelivery)
    timeline: List[TimelineEntry] = []
    cancellation_reason: Optional[str] = None
    cancelled_by: Optional[str] = None

    @model_validator(mode="after")
    def _recompute_pricing(self):
        items = [item.model_dump() for item in self.items]
        pricing = compute_totals(items, self.pricing.model_dump())
        self.items = [OrderItem(**item) for item in items]
        self.pricing = Pricing(**pricing)
        return self


class Stop(BaseModel):
    address: Address = Field(default_factory=Address)
    # [longitude, latitude]
    coordinates: Optional[List[float]] = None
    contact_name: Optional[str] = None
    contact_phone: Optional[str] = None
    instructions: Optional[str] = None


class DeliveryPricing(BaseModel):
    base_fee: float = 0
    rider_earnings: float = 0
    platform_fee: float = 0


class DeliveryMetadata(BaseModel):
    vehicle_type: Optional[str] = None
    estimated_distance: Optional[float] = None
    assignment_method: str = "auto"
    assignment_score: Optional[float] = None


class Proof(BaseModel):
    photos: List[str] = []
    pickup_photos: List[str] = []
    signature: Optional[str] = None
    recipient_name: Optional[str] = None
    delivered_at: Optional[datetime] = None
    location: Optional[List[float]] = None


class DeliveryIssue(Document):
    type: DeliveryIssueType
    description: str = ""
    reported_by: str = "rider"
    reported_at: datetime
    photos: List[str] = []
    location: Optional[List[float]] = None
    status: str = "open"


class Delivery(Document):
    order: str
    customer: str
    vendor: str
    rider: Optional[str] = None
    status: DeliveryStatus = DeliveryStatus.assigned
    pickup: Stop = Field(default_factory=Stop)
    dropoff: Stop = Field(default_factory=Stop)
    pricing: DeliveryPricing = Field(default_factory=DeliveryPricing)
    metadata: DeliveryMetadata = Field(default_factory=DeliveryMetadata)
    timeline: List[TimelineEntry] = []
    proof: Proof = Field(default_factory=Proof)
    issues: List[DeliveryIssue] = []
    completed_at: Optional[datetime] = None
    rejected_by: Optional[str] = None


# Notifications kept for clients to poll
class Event(Document):
    topic: str
    event: str
    recipient: Optional[str] = None
    payload: Dict[str, Any] = {}
    created_at: datetime
