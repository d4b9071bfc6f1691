import pytest

from assignment import (
    UNKNOWN_DISTANCE_KM, build_delivery, calculate_distance, lat_lon, rider_filter, score_rider, score_riders,
)

LONDON = (51.5074, -0.1278)
PARIS = (48.8566, 2.3522)


def rider_doc(rid, coordinates=None, rating=0, active=0, completed=0, connected_to=None):
    stores = [{"vendor_id": connected_to, "status": "approved"}] if connected_to else []
    return {
        "_id": rid,
        "name": f"Rider {rid}",
        "stats": {"rating": rating, "active_deliveries": active, "completed_deliveries": completed},
        "connected_stores": stores,
        "current_location": {"coordinates": coordinates} if coordinates else None,
        "vehicle": {"type": "car"},
    }


def test_distance_to_self_is_zero():
    assert calculate_distance(*LONDON, *LONDON) == 0


def test_distance_is_symmetric():
    assert calculate_distance(*LONDON, *PARIS) == pytest.approx(calculate_distance(*PARIS, *LONDON))


def test_london_to_paris():
    assert calculate_distance(*LONDON, *PARIS) == pytest.approx(343.5, abs=2)


def test_lat_lon_swaps_stored_order():
    assert lat_lon([-0.1278, 51.5074]) == (51.5074, -0.1278)
    assert lat_lon(None) is None
    assert lat_lon([1.0]) is None


def test_score_rider_formula():
    rider = rider_doc("a", coordinates=[LONDON[1], LONDON[0]], rating=4.5, active=1, completed=100)
    scored = score_rider(rider, "v1", *LONDON)
    assert scored["distance"] == 0
    assert scored["score"] == pytest.approx(100 + 45 - 5 + 10)
    assert scored["is_connected"] is False


def test_connected_store_adds_twenty():
    plain = rider_doc("a", coordinates=[LONDON[1], LONDON[0]], rating=3)
    connected = rider_doc("b", coordinates=[LONDON[1], LONDON[0]], rating=3, connected_to="v1")
    assert (score_rider(connected, "v1", *LONDON)["score"]
            - score_rider(plain, "v1", *LONDON)["score"]) == pytest.approx(20)


def test_pending_connection_gets_no_bonus():
    rider = rider_doc("a", coordinates=[LONDON[1], LONDON[0]])
    rider["connected_stores"] = [{"vendor_id": "v1", "status": "pending"}]
    assert score_rider(rider, "v1", *LONDON)["is_connected"] is False


def test_unknown_location_is_far_away():
    scored = score_rider(rider_doc("a"), "v1", *LONDON)
    assert scored["distance"] == UNKNOWN_DISTANCE_KM
    assert scored["score"] == pytest.approx(100 - 2 * UNKNOWN_DISTANCE_KM)


def test_score_riders_ranks_best_first():
    near = rider_doc("near", coordinates=[-0.1278, 51.5164])
    far = rider_doc("far", coordinates=[-0.1278, 51.5524])
    lost = rider_doc("lost")
    ranked = score_riders([lost, far, near], "v1", *LONDON)
    assert [c["rider"]["_id"] for c in ranked] == ["near", "far", "lost"]


def test_rider_filter_requires_available_verified_riders():
    query = rider_filter()
    assert query["availability.is_available"] is True
    assert query["verification.status"] == "verified"
    assert "vehicle.type" not in query
    assert rider_filter("van")["vehicle.type"] == "van"


@pytest.mark.parametrize("fee, earnings, platform", [
    (5.00, 4.00, 1.00),
    (3.99, 3.19, 0.80),
    (0, 0, 0),
])
def test_delivery_pricing_split(fee, earnings, platform):
    order = {"_id": "o1", "customer": "c1", "pricing": {"delivery_fee": fee}, "delivery_address": {}}
    vendor = {"_id": "v1", "business_name": "Store", "address": {"city": "London", "coordinates": [-0.1, 51.5]}}
    delivery = build_delivery(order, vendor, None, rider_doc("r1"), "auto", "Assigned")
    assert delivery["pricing"] == {"base_fee": fee, "rider_earnings": earnings, "platform_fee": platform}
    assert delivery["pricing"]["rider_earnings"] + delivery["pricing"]["platform_fee"] == pytest.approx(fee)


def test_delivery_snapshots_stops_and_metadata():
    order = {
        "_id": "o1", "customer": "c1", "pricing": {"delivery_fee": 5},
        "delivery_address": {"street": "22 Baker St", "coordinates": [-0.15, 51.52], "instructions": "Gate code 12"},
    }
    vendor = {"_id": "v1", "business_name": "Store", "phone": "123",
              "address": {"street": "1 Market St", "coordinates": [-0.1, 51.5]}}
    delivery = build_delivery(order, vendor, {"name": "Ada"}, rider_doc("r1"), "manual", "Assigned",
                              distance=1.234, score=150.456)
    assert delivery["status"] == "assigned"
    assert delivery["pickup"]["contact_name"] == "Store"
    assert delivery["pickup"]["coordinates"] == [-0.1, 51.5]
    assert delivery["dropoff"]["contact_name"] == "Ada"
    assert delivery["dropoff"]["instructions"] == "Gate code 12"
    assert delivery["metadata"] == {
        "vehicle_type": "car",
        "estimated_distance": 1.23,
        "assignment_method": "manual",
        "assignment_score": 150.46,
    }
    assert delivery["timeline"][0]["status"] == "assigned"
