import pytest
from bson import ObjectId

from database import db

PARTNER_LOCATION = {"lat": 12.9750, "lng": 77.5990}


@pytest.fixture
def assigned(client, merchant, customer, make_user, make_product, place_order):
    """A COD order that the merchant has marked ready and that went to a nearby partner."""
    _, merchant_headers, store = merchant
    product = make_product(store)
    _, customer_headers = customer
    partner, partner_headers = make_user("Delivery", name="Ravi Rider", current_location=PARTNER_LOCATION)

    order = place_order(customer_headers, [(product, 2)])["order"]
    client.post(f"/api/v1/merchant-order/{order['id']}/accept", headers=merchant_headers)
    client.post(f"/api/v1/merchant-order/{order['id']}/ready", headers=merchant_headers)
    delivery = db["delivery"].find_one({"delivery_person": partner["_id"]})
    return {
        "order_id": order["id"],
        "delivery_id": str(delivery["_id"]),
        "partner": partner,
        "partner_headers": partner_headers,
        "customer_headers": customer_headers,
        "merchant_headers": merchant_headers,
    }


def _move(client, ctx, status, **extra):
    return client.put(f"/api/v1/delivery/{ctx['delivery_id']}/status", headers=ctx["partner_headers"],
                      json={"status": status, **extra})


def _order_status(ctx):
    return db["order"].find_one({"_id": ObjectId(ctx["order_id"])})["status"]


def test_full_delivery_flow_with_cod(client, assigned):
    ctx = assigned
    assert _move(client, ctx, "Accepted").status_code == 200
    assert _order_status(ctx) == "Assigned"

    assert _move(client, ctx, "PickedUp").json()["delivery"]["status"] == "PickedUp"
    assert _order_status(ctx) == "PickedUp"
    assert db["notification"].count_documents({"type": "ORDER_PICKED_UP"}) == 1

    _move(client, ctx, "OnTheWay")
    assert _order_status(ctx) == "OnTheWay"

    resp = _move(client, ctx, "Delivered")
    assert resp.status_code == 400
    assert resp.json()["message"] == "Collect COD payment before marking as Delivered"

    collect = client.post(f"/api/v1/cod/{ctx['order_id']}/collect", headers=ctx["partner_headers"])
    assert collect.status_code == 200
    assert collect.json()["payment"]["amount"] == 1048

    resp = _move(client, ctx, "Delivered", delivery_notes="Handed to security desk")
    assert resp.status_code == 200
    assert resp.json()["delivery"]["actual_delivery_time"]
    order = db["order"].find_one({})
    assert order["status"] == "Delivered"
    assert order["payment_status"] == "Completed"
    assert order["delivery_date"]
    partner = db["user"].find_one({"_id": ctx["partner"]["_id"]})
    assert partner["is_busy"] is False
    assert partner["current_order"] is None


def test_invalid_delivery_transition(client, assigned):
    resp = _move(client, assigned, "Delivered")
    assert resp.status_code == 400
    assert resp.json()["message"] == "Cannot change status from Pending to Delivered"


def test_other_partner_cannot_touch_delivery(client, assigned, make_user):
    _, other = make_user("Delivery")
    url = f"/api/v1/delivery/{assigned['delivery_id']}"
    assert client.get(url, headers=other).status_code == 403
    resp = client.put(f"{url}/status", headers=other, json={"status": "Accepted"})
    assert resp.json()["message"] == "Access denied. You can only update your own deliveries"


def test_only_delivery_partners_update_status(client, assigned):
    url = f"/api/v1/delivery/{assigned['delivery_id']}/status"
    for headers in (assigned["customer_headers"], assigned["merchant_headers"]):
        resp = client.put(url, headers=headers, json={"status": "Cancelled"})
        assert resp.status_code == 403
    delivery = db["delivery"].find_one({"_id": ObjectId(assigned["delivery_id"])})
    assert delivery["status"] == "Pending"
    order = db["order"].find_one({})
    assert order["status"] == "Assigned"
    assert order["delivery_person"] == assigned["partner"]["_id"]


def test_customer_and_merchant_can_view_delivery(client, assigned):
    url = f"/api/v1/delivery/{assigned['delivery_id']}"
    body = client.get(url, headers=assigned["customer_headers"]).json()
    assert body["delivery"]["delivery_person"]["name"] == "Ravi Rider"
    assert body["delivery"]["order"]["store"]["store_name"] == "Threads and Co"
    assert client.get(url, headers=assigned["merchant_headers"]).status_code == 200


def test_cancelling_delivery_returns_order_to_pool(client, assigned):
    _move(client, assigned, "Accepted")
    resp = _move(client, assigned, "Cancelled", cancellation_reason="Bike broke down")
    assert resp.status_code == 200
    order = db["order"].find_one({})
    assert order["status"] == "ReadyForPickup"
    assert order["delivery_person"] is None
    assert db["delivery"].find_one({})["cancellation_reason"] == "Bike broke down"
    assert db["user"].find_one({"_id": assigned["partner"]["_id"]})["is_busy"] is False


def test_reject_assignment_reassigns_to_someone_else(client, assigned, make_user):
    backup, _ = make_user("Delivery", name="Backup Rider", current_location=PARTNER_LOCATION)
    url = f"/api/v1/delivery/{assigned['delivery_id']}/reject"
    resp = client.post(url, headers=assigned["partner_headers"], json={"reason": "Too far from my area"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["message"] == "Delivery assignment rejected. Order will be reassigned to another delivery partner."
    assert body["order"]["status"] == "ReadyForPickup"

    rejected = db["delivery"].find_one({"status": "Cancelled"})
    assert rejected["cancellation_reason"] == "Too far from my area"
    assert db["user"].find_one({"_id": assigned["partner"]["_id"]})["is_busy"] is False

    order = db["order"].find_one({})
    assert order["status"] == "Assigned"
    assert order["delivery_person"] == backup["_id"]
    assert assigned["partner"]["_id"] in order["rejected_by"]


def test_reject_only_pending_assignments(client, assigned):
    _move(client, assigned, "Accepted")
    resp = client.post(f"/api/v1/delivery/{assigned['delivery_id']}/reject", headers=assigned["partner_headers"], json={})
    assert resp.status_code == 400
    assert resp.json()["message"].startswith("Cannot reject delivery with status: Accepted")


def test_cannot_go_offline_with_active_delivery(client, assigned):
    _move(client, assigned, "Accepted")
    resp = client.put("/api/v1/delivery/online-status", headers=assigned["partner_headers"], json={"is_online": False})
    assert resp.status_code == 400
    assert resp.json()["message"].startswith("Cannot go offline while you have an active delivery")


def test_going_online_keeps_partner_busy_during_delivery(client, assigned, merchant, make_product, place_order):
    _move(client, assigned, "Accepted")
    _, merchant_headers, store = merchant
    second = place_order(assigned["customer_headers"], [(make_product(store, name="Linen Shirt"), 1)])["order"]
    client.post(f"/api/v1/merchant-order/{second['id']}/accept", headers=merchant_headers)
    client.post(f"/api/v1/merchant-order/{second['id']}/ready", headers=merchant_headers)

    resp = client.put("/api/v1/delivery/online-status", headers=assigned["partner_headers"], json={"is_online": True})
    assert resp.status_code == 200
    partner = db["user"].find_one({"_id": assigned["partner"]["_id"]})
    assert partner["is_busy"] is True
    assert partner["current_order"] == ObjectId(assigned["order_id"])
    waiting = db["order"].find_one({"_id": ObjectId(second["id"])})
    assert waiting["status"] == "ReadyForPickup"
    assert waiting["delivery_person"] is None


def test_online_status_requires_boolean(client, make_user):
    _, headers = make_user("Delivery")
    resp = client.put("/api/v1/delivery/online-status", headers=headers, json={})
    assert resp.status_code == 400
    assert resp.json()["message"] == "is_online must be a boolean value"


def test_going_online_picks_up_waiting_order(client, merchant, customer, make_user, make_product, place_order):
    _, merchant_headers, store = merchant
    product = make_product(store)
    _, customer_headers = customer
    order = place_order(customer_headers, [(product, 1)])["order"]
    client.post(f"/api/v1/merchant-order/{order['id']}/accept", headers=merchant_headers)
    client.post(f"/api/v1/merchant-order/{order['id']}/ready", headers=merchant_headers)
    assert db["order"].find_one({})["status"] == "ReadyForPickup"

    partner, headers = make_user("Delivery", is_online=False, current_location=PARTNER_LOCATION)
    resp = client.put("/api/v1/delivery/online-status", headers=headers, json={"is_online": True})
    assert resp.json()["message"] == "You are now online"
    stored = db["order"].find_one({})
    assert stored["status"] == "Assigned"
    assert stored["delivery_person"] == partner["_id"]


def test_location_updates_are_validated(client, make_user):
    partner, headers = make_user("Delivery")
    url = "/api/v1/delivery/location"
    assert client.put(url, headers=headers, json={"lat": 12.9}).json()["message"] == "Latitude and longitude are required"
    assert client.put(url, headers=headers, json={"lat": "12.9", "lng": 77.5}).json()["message"] == "Latitude and longitude must be numbers"
    assert client.put(url, headers=headers, json={"lat": 95, "lng": 77.5}).json()["message"] == "Invalid coordinates"

    assert client.put(url, headers=headers, json={"lat": 12.9, "lng": 77.5}).status_code == 200
    body = client.get(f"/api/v1/delivery/location/{partner['_id']}", headers=headers).json()
    assert body["delivery_person"]["current_location"] == {"lat": 12.9, "lng": 77.5}


def _deliver(client, ctx):
    _move(client, ctx, "Accepted")
    _move(client, ctx, "PickedUp")
    client.post(f"/api/v1/cod/{ctx['order_id']}/collect", headers=ctx["partner_headers"])
    _move(client, ctx, "Delivered")


def test_rate_delivery_once(client, assigned):
    url = f"/api/v1/delivery/{assigned['delivery_id']}/rate"
    resp = client.post(url, headers=assigned["customer_headers"], json={"rating": 5})
    assert resp.json()["message"] == "Can only rate completed deliveries"

    _deliver(client, assigned)
    resp = client.post(url, headers=assigned["customer_headers"], json={"rating": 4, "review": "Quick and polite"})
    assert resp.status_code == 200
    assert resp.json()["delivery"]["rating"] == 4
    resp = client.post(url, headers=assigned["customer_headers"], json={"rating": 5})
    assert resp.json()["message"] == "Delivery has already been rated"
    assert client.post(url, headers=assigned["partner_headers"], json={"rating": 5}).status_code == 403


def test_delivery_stats(client, assigned):
    _deliver(client, assigned)
    stats = client.get("/api/v1/delivery/stats/overview", headers=assigned["partner_headers"]).json()["stats"]
    assert stats["total_deliveries"] == 1
    assert stats["completed"] == 1
    assert stats["total_earnings"] == 50
    assert stats["online_payment_earnings"] == 0

    listing = client.get("/api/v1/delivery", headers=assigned["partner_headers"], params={"status": "Delivered"}).json()
    assert listing["pagination"]["total_deliveries"] == 1


def test_cod_submit_and_summary(client, assigned):
    ctx = assigned
    _deliver(client, ctx)
    payment_id = str(db["payment"].find_one({})["_id"])

    summary = client.get("/api/v1/cod/summary", headers=ctx["partner_headers"]).json()["summary"]
    assert summary["collected_not_submitted"]["count"] == 1
    assert summary["collected_not_submitted"]["amount"] == 1048
    assert summary["collected_not_submitted"]["payments"][0]["order"]["order_number"].startswith("ORD-")

    resp = client.post("/api/v1/cod/submit", headers=ctx["partner_headers"], json={"payment_ids": [payment_id, "bogus"]})
    body = resp.json()
    assert body["message"] == "Successfully submitted 1 COD payment(s)"
    assert body["total_amount"] == 1048
    assert body["errors"] == [{"payment_id": "bogus", "error": "Payment not found"}]

    again = client.post("/api/v1/cod/submit", headers=ctx["partner_headers"], json={"payment_ids": [payment_id]}).json()
    assert again["errors"][0]["error"] == "COD already submitted"

    summary = client.get("/api/v1/cod/summary", headers=ctx["partner_headers"]).json()["summary"]
    assert summary["submitted"] == {"count": 1, "amount": 1048}
    assert summary["total_collected"]["count"] == 1


def test_cod_submit_requires_ids(client, make_user):
    _, headers = make_user("Delivery")
    resp = client.post("/api/v1/cod/submit", headers=headers, json={"payment_ids": []})
    assert resp.status_code == 400
    assert resp.json()["message"] == "Payment IDs array is required"


def test_cod_collect_requires_pickup(client, assigned):
    resp = client.post(f"/api/v1/cod/{assigned['order_id']}/collect", headers=assigned["partner_headers"])
    assert resp.status_code == 400
    assert resp.json()["message"] == "Order must be picked up before marking COD as collected"
