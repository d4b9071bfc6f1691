import pytest


def act(client, seed, ctx, action, body=None, user=None):
    return client.post(f"/api/picker/deliveries/{ctx['delivery_id']}/{action}", json=body,
                       headers=seed.headers(user or ctx["rider_user"]))


def test_full_delivery_run(client, seed, assigned, publisher):
    assert act(client, seed, assigned, "accept").status_code == 200
    assert seed.reload("order", assigned["order"])["status"] == "preparing"
    assert publisher.sent_to(assigned["customer"], "delivery_accepted")

    resp = act(client, seed, assigned, "pickup", {"latitude": 51.5, "longitude": -0.12, "photos": ["bag.jpg"]})
    assert resp.status_code == 200
    delivery = seed.reload("delivery", assigned["delivery_id"])
    assert delivery["status"] == "picked_up"
    assert delivery["proof"]["pickup_photos"] == ["bag.jpg"]
    assert delivery["timeline"][-1]["location"] == [-0.12, 51.5]
    assert seed.reload("order", assigned["order"])["status"] == "picked_up"

    assert act(client, seed, assigned, "in-transit").status_code == 200
    assert seed.reload("order", assigned["order"])["status"] == "in_transit"

    resp = act(client, seed, assigned, "complete", {"photos": ["door.jpg"], "signature": "sig.png"})
    assert resp.status_code == 200, resp.text
    data = resp.json()["data"]
    assert data["earnings"] == 4.00
    assert data["total_completed"] == 1

    delivery = seed.reload("delivery", assigned["delivery_id"])
    assert delivery["status"] == "delivered"
    assert delivery["proof"]["photos"] == ["door.jpg"]
    assert delivery["proof"]["recipient_name"] == "Customer"
    assert delivery["completed_at"] is not None
    assert [e["status"] for e in delivery["timeline"]] == ["assigned", "accepted", "picked_up", "in_transit", "delivered"]

    order = seed.reload("order", assigned["order"])
    assert order["status"] == "delivered"
    assert order["delivery"]["completed_at"] is not None

    rider = seed.reload("rider", assigned["rider"])
    assert rider["stats"]["completed_deliveries"] == 1
    assert rider["stats"]["total_earnings"] == 4.00
    assert rider["stats"]["active_deliveries"] == 0
    assert rider["availability"]["is_available"] is True
    assert publisher.sent_to(assigned["owner"], "order_delivered")


def test_delivered_straight_from_pickup(client, seed, assigned):
    act(client, seed, assigned, "accept")
    act(client, seed, assigned, "pickup")
    resp = act(client, seed, assigned, "complete", {"photos": ["door.jpg"], "customerName": "Ada"})
    assert resp.status_code == 200
    assert seed.reload("delivery", assigned["delivery_id"])["proof"]["recipient_name"] == "Ada"


@pytest.mark.parametrize("steps, body", [
    (["pickup"], {"photos": []}),
    (["pickup"], None),
    (["pickup", "in-transit"], {"photos": []}),
    (["pickup", "in-transit"], {"signature": "sig.png"}),
])
def test_complete_without_photos_changes_nothing(client, seed, assigned, steps, body):
    act(client, seed, assigned, "accept")
    for step in steps:
        assert act(client, seed, assigned, step).status_code == 200
    stats_before = seed.reload("rider", assigned["rider"])["stats"]
    status = seed.reload("delivery", assigned["delivery_id"])["status"]

    resp = act(client, seed, assigned, "complete", body)
    assert resp.status_code == 400
    assert resp.json()["message"] == "Please upload proof of delivery photos"
    assert seed.reload("delivery", assigned["delivery_id"])["status"] == status
    assert seed.reload("order", assigned["order"])["status"] == status
    rider = seed.reload("rider", assigned["rider"])
    assert rider["stats"] == stats_before
    assert rider["availability"]["is_available"] is False


def test_complete_before_pickup_reports_status_first(client, seed, assigned):
    act(client, seed, assigned, "accept")
    resp = act(client, seed, assigned, "complete")
    assert resp.status_code == 400
    assert resp.json()["message"] == "Delivery must be picked up or in transit"


def test_accept_twice(client, seed, assigned):
    act(client, seed, assigned, "accept")
    resp = act(client, seed, assigned, "accept")
    assert resp.status_code == 400
    assert resp.json()["message"] == "Cannot accept delivery with status: accepted"
    delivery = seed.reload("delivery", assigned["delivery_id"])
    assert delivery["status"] == "accepted"
    assert len(delivery["timeline"]) == 2


@pytest.mark.parametrize("action, message", [
    ("pickup", "Delivery must be accepted first"),
    ("in-transit", "Order must be picked up first"),
])
def test_out_of_order_steps(client, seed, assigned, action, message):
    resp = act(client, seed, assigned, action)
    assert resp.status_code == 400
    assert resp.json()["message"] == message
    assert seed.reload("delivery", assigned["delivery_id"])["status"] == "assigned"


def test_reject_returns_order_to_store(client, seed, assigned, publisher):
    resp = act(client, seed, assigned, "reject", {"reason": "Too far"})
    assert resp.status_code == 200

    delivery = seed.reload("delivery", assigned["delivery_id"])
    assert delivery["status"] == "rejected"
    assert delivery["rider"] is None
    assert delivery["rejected_by"] == str(assigned["rider"]["_id"])

    order = seed.reload("order", assigned["order"])
    assert order["status"] == "confirmed"
    assert order["delivery"]["rider"] is None

    rider = seed.reload("rider", assigned["rider"])
    assert rider["availability"]["is_available"] is True
    assert rider["stats"]["active_deliveries"] == 0

    notes = publisher.sent_to(assigned["owner"], "delivery_rejected")
    assert notes and notes[0]["reason"] == "Too far"

    # The store can dispatch again
    again = client.post(f"/api/delivery-assignment/auto-assign/{assigned['order']['_id']}",
                        headers=seed.headers(assigned["owner"]))
    assert again.status_code == 200


def test_reject_after_accept(client, seed, assigned):
    act(client, seed, assigned, "accept")
    resp = act(client, seed, assigned, "reject")
    assert resp.status_code == 400
    assert resp.json()["message"] == "Can only reject assigned deliveries"


def test_other_riders_cannot_touch_the_delivery(client, seed, assigned):
    stranger, _ = seed.rider(km_north=2.0)
    resp = act(client, seed, assigned, "accept", user=stranger)
    assert resp.status_code == 404
    assert client.get(f"/api/picker/deliveries/{assigned['delivery_id']}",
                      headers=seed.headers(stranger)).status_code == 404


def test_report_issue_keeps_status(client, seed, assigned, publisher):
    act(client, seed, assigned, "accept")
    resp = act(client, seed, assigned, "report-issue",
               {"issueType": "address_incorrect", "description": "No such flat", "photos": ["door.jpg"]})
    assert resp.status_code == 200
    delivery = seed.reload("delivery", assigned["delivery_id"])
    assert delivery["status"] == "accepted"
    assert delivery["issues"][0]["type"] == "address_incorrect"
    assert delivery["issues"][0]["status"] == "open"
    assert delivery["timeline"][-1]["status"] == "issue_reported"
    assert publisher.sent_to(assigned["owner"], "delivery_issue")


def test_report_issue_rejects_unknown_type(client, seed, assigned):
    resp = act(client, seed, assigned, "report-issue", {"issueType": "alien_abduction"})
    assert resp.status_code == 400
    assert resp.json()["message"] == "Validation failed"


def test_active_history_and_details(client, seed, assigned):
    headers = seed.headers(assigned["rider_user"])
    active = client.get("/api/picker/deliveries/active", headers=headers).json()["data"]
    assert active["total"] == 1
    assert active["deliveries"][0]["order_summary"]["order_number"] == assigned["order"]["order_number"]

    history = client.get("/api/picker/deliveries", params={"status": "assigned"}, headers=headers).json()["data"]
    assert history["pagination"]["total_deliveries"] == 1
    assert history["deliveries"][0]["id"] == assigned["delivery_id"]

    details = client.get(f"/api/picker/deliveries/{assigned['delivery_id']}", headers=headers).json()["data"]
    assert details["vendor_summary"]["business_name"] == assigned["vendor"]["business_name"]


def test_earnings_and_stats(client, seed, assigned):
    act(client, seed, assigned, "accept")
    act(client, seed, assigned, "pickup")
    act(client, seed, assigned, "complete", {"photos": ["door.jpg"]})
    headers = seed.headers(assigned["rider_user"])

    for period in ("today", "week", "month", "decade"):
        data = client.get("/api/picker/earnings", params={"period": period}, headers=headers).json()["data"]
        assert data["earnings"]["total"] == 4.00
        assert data["earnings"]["deliveries"] == 1
    assert data["period"] == "today"

    stats = client.get("/api/picker/stats", headers=headers).json()["data"]
    assert stats["stats"]["today_deliveries"] == 1
    assert stats["stats"]["completed_deliveries"] == 1


def test_delivery_routes_are_for_riders(client, seed, assigned):
    resp = client.get("/api/picker/deliveries/active", headers=seed.headers(assigned["customer"]))
    assert resp.status_code == 403
