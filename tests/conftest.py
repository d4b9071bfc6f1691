import mongomock
import pytest
from fastapi.testclient import TestClient

import main
from database import create_document, find_by_id
from schemas import (
    Address, Order, OrderItem, Picker, Pricing, Product, Rider, RiderStats, StoreConnection, User, Vendor,
)

# Central London; riders are placed relative to it
STORE_LON, STORE_LAT = -0.1278, 51.5074
KM_IN_LAT_DEGREES = 1 / 111.2


class RecordingPublisher:
    def __init__(self):
        self.events = []

    def publish(self, topic, payload):
        self.events.append((topic, payload))

    def named(self, event):
        return [(topic, payload) for topic, payload in self.events if payload["event"] == event]

    def sent_to(self, user, event):
        topic = f"user:{user['_id']}"
        return [payload for t, payload in self.named(event) if t == topic]


class Seed:
    """Builds documents through the schema models, the way the service stores them."""

    def __init__(self, target):
        self.db = target
        self._n = 0

    def _next(self):
        self._n += 1
        return self._n

    def _insert(self, collection, model):
        return find_by_id(self.db, collection, create_document(self.db, collection, model.model_dump()))

    def user(self, role, name=None, password_hash="not-a-real-hash"):
        n = self._next()
        return self._insert("user", User(
            name=name or f"{role.title()} {n}",
            email=f"{role}{n}@example.com",
            password_hash=password_hash,
            role=role,
        ))

    def headers(self, user):
        token = main.create_access_token({"sub": str(user["_id"]), "role": user["role"]})
        return {"Authorization": f"Bearer {token}"}

    def vendor(self, coordinates=(STORE_LON, STORE_LAT), delivery_fee=5.00, name="Mama Africa Foods"):
        owner = self.user("vendor")
        vendor = self._insert("vendor", Vendor(
            user_id=str(owner["_id"]),
            business_name=name,
            phone="+44 20 7946 0000",
            address=Address(street="1 Market St", city="London", postcode="E1 6AN",
                             coordinates=list(coordinates) if coordinates else None),
            delivery_fee=delivery_fee,
        ))
        return owner, vendor

    def product(self, vendor, name="Plantain", price=2.50):
        return self._insert("product", Product(vendor=str(vendor["_id"]), name=name, price=price, images=["p.jpg"]))

    def rider(self, km_north=1.0, rating=4.0, active=0, completed=0, available=True, verified=True,
              connected_to=None, vehicle="bicycle", located=True):
        owner = self.user("rider")
        stores = []
        if connected_to is not None:
            stores.append(StoreConnection(vendor_id=str(connected_to["_id"]), status="approved", store_role="rider"))
        location = None
        if located:
            location = {"coordinates": [STORE_LON, STORE_LAT + km_north * KM_IN_LAT_DEGREES]}
        rider = self._insert("rider", Rider(
            user_id=str(owner["_id"]),
            name=owner["name"],
            phone="+44 7700 900000",
            verification={"status": "verified" if verified else "pending"},
            availability={"is_available": available},
            vehicle={"type": vehicle, "model": "Test"},
            stats=RiderStats(rating=rating, active_deliveries=active, completed_deliveries=completed),
            connected_stores=stores,
            current_location=location,
        ))
        return owner, rider

    def picker(self, vendor, connection="approved", checked_in=True):
        owner = self.user("picker")
        picker = self._insert("picker", Picker(
            user_id=str(owner["_id"]),
            name=owner["name"],
            email=owner["email"],
            connected_stores=[StoreConnection(vendor_id=str(vendor["_id"]), status=connection,
                                              sections=["produce"])],
            availability={
                "is_available": checked_in,
                "current_store": str(vendor["_id"]) if checked_in else None,
            },
        ))
        return owner, picker

    def order(self, customer, vendor, products=None, status="confirmed", delivery_fee=5.00):
        products = products or [self.product(vendor)]
        order = Order(
            order_number=f"AFM-2026-{self._next():06d}",
            customer=str(customer["_id"]),
            vendor=str(vendor["_id"]),
            items=[OrderItem(product=str(p["_id"]), name=p["name"], price=p["price"], quantity=2) for p in products],
            pricing=Pricing(delivery_fee=delivery_fee),
            delivery_address=Address(street="22 Baker St", city="London", postcode="NW1 6XE",
                                     coordinates=[-0.1586, 51.5237], instructions="Ring twice"),
            status=status,
        )
        return self._insert("order", order)

    def reload(self, collection, doc):
        return find_by_id(self.db, collection, doc["_id"] if isinstance(doc, dict) else doc)


@pytest.fixture
def mdb():
    return mongomock.MongoClient()["afrimercato_test"]


@pytest.fixture
def publisher():
    return RecordingPublisher()


@pytest.fixture
def seed(mdb):
    return Seed(mdb)


@pytest.fixture
def client(mdb, publisher):
    main.app.dependency_overrides[main.get_db] = lambda: mdb
    main.app.dependency_overrides[main.get_publisher] = lambda: publisher
    with TestClient(main.app) as test_client:
        yield test_client
    main.app.dependency_overrides.clear()


@pytest.fixture
def store(seed):
    """A vendor with one customer and a confirmed order."""
    owner, vendor = seed.vendor()
    customer = seed.user("customer")
    order = seed.order(customer, vendor)
    return {"owner": owner, "vendor": vendor, "customer": customer, "order": order}


@pytest.fixture
def assigned(client, seed, store):
    """The store's order auto-assigned to a single nearby rider."""
    rider_user, rider = seed.rider(km_north=1.0)
    resp = client.post(f"/api/delivery-assignment/auto-assign/{store['order']['_id']}",
                       headers=seed.headers(store["owner"]))
    assert resp.status_code == 200, resp.text
    return {
        **store,
        "rider_user": rider_user,
        "rider": rider,
        "delivery_id": resp.json()["data"]["delivery"]["id"],
    }
