import logging
import os
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Depends, Query, Request, status
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

import assignment
import deliveries
import orders
import picking
from config import (
    ACCESS_TOKEN_EXPIRE_MINUTES, ALGORITHM, DEFAULT_SEARCH_RADIUS_KM, EXPOSE_ERRORS, LOG_LEVEL, SECRET_KEY,
)
from database import db, find_by_id, get_documents, serialize
from events import CollectionPublisher
from schemas import (
    Address, DeliveryIssueType, EarningsPeriod, ItemIssueType, Role, VehicleType,
)
from workers import vendor_for_user

logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login")

app = FastAPI(title="Afrimercato Delivery API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"
    role: Optional[str] = None


class TokenData(BaseModel):
    user_id: Optional[str] = None
    role: Optional[str] = None


class LoginPayload(BaseModel):
    email: EmailStr
    password: str


# Helper functions for auth

def verify_password(plain_password, hashed_password):
    return pwd_context.verify(plain_password, hashed_password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    encoded_jwt = jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)
    return encoded_jwt


# Dependencies

def get_db():
    return db


def get_publisher(target=Depends(get_db)):
    return CollectionPublisher(target)


async def get_current_user(token: str = Depends(oauth2_scheme), target=Depends(get_db)):
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
        user_id: str = payload.get("sub")
        if user_id is None:
            raise credentials_exception
        token_data = TokenData(user_id=user_id, role=payload.get("role"))
    except JWTError:
        raise credentials_exception

    # Find in DB
    user = find_by_id(target, "user", token_data.user_id)
    if not user or not user.get("is_active", True):
        raise credentials_exception
    return user


def require_role(*roles: Role):
    allowed = {r.value for r in roles}

    def dependency(user=Depends(get_current_user)):
        if user.get("role") not in allowed:
            raise HTTPException(403, f"Access denied for role: {user.get('role')}")
        return user
    return dependency


def ok(data=None, message: str = "OK"):
    return {"success": True, "message": message, "data": serialize(data)}


# Error envelope

def _error(status_code: int, message, error=None, headers=None):
    return JSONResponse(
        status_code=status_code,
        content=jsonable_encoder({"success": False, "message": message, "error": error if error is not None else message}),
        headers=headers,
    )


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return _error(exc.status_code, exc.detail, headers=getattr(exc, "headers", None))


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return _error(400, "Validation failed", exc.errors())


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return _error(500, "Internal server error", str(exc) if EXPOSE_ERRORS else None)


# Request bodies accept both snake_case and the camelCase used by the web clients

class Payload(BaseModel):
    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)


class OrderLine(Payload):
    product_id: str = Field(alias="productId")
    quantity: int = Field(ge=1)


class OrderCreate(Payload):
    vendor_id: str = Field(alias="vendorId")
    items: List[OrderLine]
    delivery_address: Optional[Address] = Field(default=None, alias="deliveryAddress")
    discount: float = Field(default=0, ge=0)


class ReasonPayload(Payload):
    reason: Optional[str] = None


class AutoAssign(Payload):
    vehicle_type: Optional[VehicleType] = Field(default=None, alias="vehicleType")


class ManualAssign(Payload):
    rider_id: str = Field(alias="riderId")


class Reassign(Payload):
    new_rider_id: str = Field(alias="newRiderId")
    reason: Optional[str] = None


class PickupPayload(Payload):
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    notes: Optional[str] = None
    photos: List[str] = []


class CompletePayload(Payload):
    photos: List[str] = []
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    signature: Optional[str] = None
    customer_name: Optional[str] = Field(default=None, alias="customerName")
    notes: Optional[str] = None


class DeliveryIssuePayload(Payload):
    issue_type: DeliveryIssueType = Field(alias="issueType")
    description: str = ""
    photos: List[str] = []
    latitude: Optional[float] = None
    longitude: Optional[float] = None


class ApprovePicker(Payload):
    sections: List[str] = []


class AssignPicker(Payload):
    order_id: str = Field(alias="orderId")
    picker_id: str = Field(alias="pickerId")


class ItemPicked(Payload):
    quantity_picked: Optional[int] = Field(default=None, alias="quantityPicked", ge=0)


class ItemIssuePayload(Payload):
    issue_type: ItemIssueType = Field(alias="issueType")
    description: str = ""
    quantity_available: Optional[int] = Field(default=None, alias="quantityAvailable", ge=0)


class SubstitutePayload(Payload):
    substitute_product_id: str = Field(alias="substituteProductId")
    reason: Optional[str] = None


class PackingPhotos(Payload):
    photos: List[str] = []
    notes: Optional[str] = None


class NotesPayload(Payload):
    notes: Optional[str] = None


@app.get("/")
def root():
    return {"message": "Afrimercato Delivery Backend Running"}


# Auth endpoints
@app.post("/auth/login", response_model=Token)
def login(payload: LoginPayload, target=Depends(get_db)):
    user = target["user"].find_one({"email": payload.email.lower(), "is_active": True})
    if not user or not verify_password(payload.password, user["password_hash"]):
        raise HTTPException(status_code=400, detail="Incorrect email or password")

    access_token = create_access_token(data={"sub": str(user["_id"]), "role": user.get("role")})
    return {"access_token": access_token, "token_type": "bearer", "role": user.get("role")}


# Orders
@app.post("/api/orders", status_code=201)
def create_order(payload: OrderCreate, user=Depends(require_role(Role.customer)),
                 target=Depends(get_db), publisher=Depends(get_publisher)):
    order = orders.create_order(
        target, publisher, user, payload.vendor_id,
        [line.model_dump() for line in payload.items],
        payload.delivery_address.model_dump() if payload.delivery_address else None,
        payload.discount,
    )
    return ok(order, "Order placed successfully")


@app.get("/api/orders/{order_id}")
def get_order(order_id: str, user=Depends(get_current_user), target=Depends(get_db)):
    order = orders.get_order_or_404(target, order_id)
    if not orders.can_view_order(target, user, order):
        raise HTTPException(403, "You cannot view this order")
    return ok(order)


@app.post("/api/orders/{order_id}/confirm")
def confirm_order(order_id: str, user=Depends(require_role(Role.vendor, Role.admin)),
                  target=Depends(get_db), publisher=Depends(get_publisher)):
    return ok(orders.confirm_order(target, publisher, user, order_id), "Order confirmed")


@app.post("/api/orders/{order_id}/cancel")
def cancel_order(order_id: str, payload: Optional[ReasonPayload] = None,
                 user=Depends(require_role(Role.customer, Role.vendor, Role.admin)),
                 target=Depends(get_db), publisher=Depends(get_publisher)):
    payload = payload or ReasonPayload()
    return ok(orders.cancel_order(target, publisher, user, order_id, payload.reason), "Order cancelled")


# Delivery assignment
dispatcher = require_role(Role.vendor, Role.admin)


@app.post("/api/delivery-assignment/auto-assign/{order_id}")
def auto_assign(order_id: str, payload: Optional[AutoAssign] = None, user=Depends(dispatcher),
                target=Depends(get_db), publisher=Depends(get_publisher)):
    payload = payload or AutoAssign()
    result = assignment.auto_assign_rider(target, publisher, user, order_id, payload.vehicle_type)
    return ok(result, "Rider assigned successfully")


@app.post("/api/delivery-assignment/manual-assign/{order_id}")
def manual_assign(order_id: str, payload: ManualAssign, user=Depends(dispatcher),
                  target=Depends(get_db), publisher=Depends(get_publisher)):
    result = assignment.manual_assign_rider(target, publisher, user, order_id, payload.rider_id)
    return ok(result, "Rider assigned successfully")


@app.get("/api/delivery-assignment/available-riders/{vendor_id}")
def available_riders(vendor_id: str,
                     vehicle_type: Optional[VehicleType] = Query(default=None, alias="vehicleType"),
                     radius: float = Query(default=DEFAULT_SEARCH_RADIUS_KM, gt=0),
                     user=Depends(dispatcher), target=Depends(get_db)):
    if user.get("role") == Role.vendor.value and str(vendor_for_user(target, user)["_id"]) != vendor_id:
        raise HTTPException(403, "You can only list riders for your own store")
    result = assignment.available_riders(target, vendor_id, vehicle_type.value if vehicle_type else None, radius)
    return ok(result)


@app.post("/api/delivery-assignment/reassign/{delivery_id}")
def reassign(delivery_id: str, payload: Reassign, user=Depends(dispatcher),
             target=Depends(get_db), publisher=Depends(get_publisher)):
    result = assignment.reassign_delivery(target, publisher, user, delivery_id, payload.new_rider_id, payload.reason)
    return ok(result, "Delivery reassigned successfully")


# Rider deliveries
rider_only = require_role(Role.rider)


@app.get("/api/picker/deliveries/active")
def active_deliveries(user=Depends(rider_only), target=Depends(get_db)):
    return ok(deliveries.active_deliveries(target, user))


@app.get("/api/picker/deliveries")
def delivery_history(page: int = Query(default=1, ge=1), limit: int = Query(default=20, ge=1, le=100),
                     status_filter: Optional[str] = Query(default=None, alias="status"),
                     user=Depends(rider_only), target=Depends(get_db)):
    return ok(deliveries.delivery_history(target, user, page, limit, status_filter))


@app.get("/api/picker/deliveries/{delivery_id}")
def delivery_details(delivery_id: str, user=Depends(rider_only), target=Depends(get_db)):
    return ok(deliveries.delivery_details(target, user, delivery_id))


@app.post("/api/picker/deliveries/{delivery_id}/accept")
def accept_delivery(delivery_id: str, user=Depends(rider_only),
                    target=Depends(get_db), publisher=Depends(get_publisher)):
    return ok(deliveries.accept_delivery(target, publisher, user, delivery_id), "Delivery accepted successfully")


@app.post("/api/picker/deliveries/{delivery_id}/reject")
def reject_delivery(delivery_id: str, payload: Optional[ReasonPayload] = None, user=Depends(rider_only),
                    target=Depends(get_db), publisher=Depends(get_publisher)):
    payload = payload or ReasonPayload()
    return ok(deliveries.reject_delivery(target, publisher, user, delivery_id, payload.reason), "Delivery rejected")


@app.post("/api/picker/deliveries/{delivery_id}/pickup")
def pickup_delivery(delivery_id: str, payload: Optional[PickupPayload] = None, user=Depends(rider_only),
                    target=Depends(get_db), publisher=Depends(get_publisher)):
    payload = payload or PickupPayload()
    delivery = deliveries.mark_picked_up(target, publisher, user, delivery_id, payload.latitude,
                                         payload.longitude, payload.notes, payload.photos)
    return ok(delivery, "Order marked as picked up")


@app.post("/api/picker/deliveries/{delivery_id}/in-transit")
def in_transit(delivery_id: str, user=Depends(rider_only),
               target=Depends(get_db), publisher=Depends(get_publisher)):
    return ok(deliveries.mark_in_transit(target, publisher, user, delivery_id), "Delivery in transit")


@app.post("/api/picker/deliveries/{delivery_id}/complete")
def complete_delivery(delivery_id: str, payload: Optional[CompletePayload] = None, user=Depends(rider_only),
                      target=Depends(get_db), publisher=Depends(get_publisher)):
    payload = payload or CompletePayload()
    result = deliveries.complete_delivery(
        target, publisher, user, delivery_id, payload.photos, payload.latitude, payload.longitude,
        payload.signature, payload.customer_name, payload.notes,
    )
    return ok(result, "Delivery completed successfully!")


@app.post("/api/picker/deliveries/{delivery_id}/report-issue")
def report_delivery_issue(delivery_id: str, payload: DeliveryIssuePayload, user=Depends(rider_only),
                          target=Depends(get_db), publisher=Depends(get_publisher)):
    result = deliveries.report_issue(target, publisher, user, delivery_id, payload.issue_type,
                                     payload.description, payload.photos, payload.latitude, payload.longitude)
    return ok(result, "Issue reported successfully")


@app.get("/api/picker/earnings")
def rider_earnings(period: str = EarningsPeriod.today.value, user=Depends(rider_only), target=Depends(get_db)):
    return ok(deliveries.earnings(target, user, period))


@app.get("/api/picker/stats")
def rider_stats(user=Depends(rider_only), target=Depends(get_db)):
    return ok(deliveries.rider_stats(target, user))


# Vendor picker management
vendor_only = require_role(Role.vendor)


@app.get("/api/vendor/pickers/requests")
def picker_requests(user=Depends(vendor_only), target=Depends(get_db)):
    return ok(picking.picker_requests(target, user))


@app.get("/api/vendor/pickers/approved")
def approved_pickers(user=Depends(vendor_only), target=Depends(get_db)):
    return ok(picking.approved_pickers(target, user))


@app.get("/api/vendor/pickers/active")
def active_pickers(user=Depends(vendor_only), target=Depends(get_db)):
    return ok(picking.active_pickers(target, user))


@app.get("/api/vendor/pickers/{picker_id}/performance")
def picker_performance(picker_id: str, user=Depends(vendor_only), target=Depends(get_db)):
    return ok(picking.picker_performance(target, user, picker_id))


@app.post("/api/vendor/pickers/assign-order")
def assign_picker(payload: AssignPicker, user=Depends(vendor_only),
                  target=Depends(get_db), publisher=Depends(get_publisher)):
    result = picking.assign_picker(target, publisher, user, payload.order_id, payload.picker_id)
    return ok(result, f"Order assigned to picker {result['picker']['name']}")


@app.post("/api/vendor/pickers/{picker_id}/approve")
def approve_picker(picker_id: str, payload: Optional[ApprovePicker] = None, user=Depends(vendor_only),
                   target=Depends(get_db), publisher=Depends(get_publisher)):
    payload = payload or ApprovePicker()
    result = picking.approve_picker(target, publisher, user, picker_id, payload.sections)
    return ok(result, "Picker approved successfully")


@app.post("/api/vendor/pickers/{picker_id}/reject")
def reject_picker(picker_id: str, payload: Optional[ReasonPayload] = None, user=Depends(vendor_only),
                  target=Depends(get_db), publisher=Depends(get_publisher)):
    payload = payload or ReasonPayload()
    return ok(picking.reject_picker(target, publisher, user, picker_id, payload.reason), "Picker request rejected")


@app.post("/api/vendor/pickers/{picker_id}/suspend")
def suspend_picker(picker_id: str, payload: Optional[ReasonPayload] = None, user=Depends(vendor_only),
                   target=Depends(get_db), publisher=Depends(get_publisher)):
    payload = payload or ReasonPayload()
    return ok(picking.suspend_picker(target, publisher, user, picker_id, payload.reason), "Picker suspended")


# Picker order fulfilment
picker_only = require_role(Role.picker)


@app.get("/api/picker/orders/active")
def my_active_orders(user=Depends(picker_only), target=Depends(get_db)):
    return ok(picking.active_orders(target, user))


@app.get("/api/picker/orders/history")
def picking_history(page: int = Query(default=1, ge=1), limit: int = Query(default=20, ge=1, le=100),
                    status_filter: Optional[str] = Query(default=None, alias="status"),
                    user=Depends(picker_only), target=Depends(get_db)):
    return ok(picking.picking_history(target, user, page, limit, status_filter))


@app.get("/api/picker/orders/{order_id}")
def picker_order_details(order_id: str, user=Depends(picker_only), target=Depends(get_db)):
    return ok(picking.picker_order_details(target, user, order_id))


@app.post("/api/picker/orders/{order_id}/start-picking")
def start_picking(order_id: str, user=Depends(picker_only), target=Depends(get_db)):
    return ok(picking.start_picking(target, user, order_id), "Started picking order")


@app.post("/api/picker/orders/{order_id}/items/{product_id}/picked")
def item_picked(order_id: str, product_id: str, payload: Optional[ItemPicked] = None,
                user=Depends(picker_only), target=Depends(get_db)):
    payload = payload or ItemPicked()
    return ok(picking.mark_item_picked(target, user, order_id, product_id, payload.quantity_picked),
              "Item marked as picked")


@app.post("/api/picker/orders/{order_id}/items/{product_id}/issue")
def item_issue(order_id: str, product_id: str, payload: ItemIssuePayload, user=Depends(picker_only),
               target=Depends(get_db), publisher=Depends(get_publisher)):
    result = picking.report_item_issue(target, publisher, user, order_id, product_id, payload.issue_type,
                                       payload.description, payload.quantity_available)
    return ok(result, "Issue reported")


@app.post("/api/picker/orders/{order_id}/items/{product_id}/substitute")
def item_substitute(order_id: str, product_id: str, payload: SubstitutePayload, user=Depends(picker_only),
                    target=Depends(get_db), publisher=Depends(get_publisher)):
    result = picking.suggest_substitute(target, publisher, user, order_id, product_id,
                                        payload.substitute_product_id, payload.reason)
    return ok(result, "Substitute suggestion sent to customer")


@app.post("/api/picker/orders/{order_id}/complete-picking")
def complete_picking(order_id: str, user=Depends(picker_only), target=Depends(get_db)):
    return ok(picking.complete_picking(target, user, order_id), "Picking completed. Please proceed to packing.")


@app.post("/api/picker/orders/{order_id}/start-packing")
def start_packing(order_id: str, user=Depends(picker_only), target=Depends(get_db)):
    return ok(picking.start_packing(target, user, order_id), "Started packing order")


@app.post("/api/picker/orders/{order_id}/packing-photos")
def packing_photos(order_id: str, payload: PackingPhotos, user=Depends(picker_only), target=Depends(get_db)):
    return ok(picking.upload_packing_photos(target, user, order_id, payload.photos, payload.notes),
              "Packing photos uploaded")


@app.post("/api/picker/orders/{order_id}/complete-packing")
def complete_packing(order_id: str, payload: Optional[NotesPayload] = None, user=Depends(picker_only),
                     target=Depends(get_db), publisher=Depends(get_publisher)):
    payload = payload or NotesPayload()
    result = picking.complete_packing(target, publisher, user, order_id, payload.notes)
    return ok(result, "Order completed and ready for rider pickup!")


# Notifications kept by CollectionPublisher
@app.get("/api/events")
def my_events(limit: int = Query(default=50, ge=1, le=200), user=Depends(get_current_user), target=Depends(get_db)):
    events = get_documents(target, "event", {"recipient": str(user["_id"])}, limit=limit, sort=[("created_at", -1)])
    return ok({"events": events, "total": len(events)})


# Simple health and db test
@app.get("/test")
def test_database(target=Depends(get_db)):
    try:
        collections = target.list_collection_names()
        return {"backend": "ok", "db": "ok", "collections": collections}
    except PyMongoError as e:
        return {"backend": "ok", "db": f"error: {str(e)}"}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
