import re

import pytest

from database import db
from order_utils import calculate_delivery_fee, can_transition, round_half_up


@pytest.mark.parametrize("items_total,fee", [(499, 70), (500, 50), (999, 50), (1000, 30), (1999, 30), (2000, 0)])
def test_delivery_fee_tiers(items_total, fee):
    assert calculate_delivery_fee(items_total) == fee


def test_distance_based_fee():
    assert calculate_delivery_fee(0, distance_km=1.5) == 50
    assert calculate_delivery_fee(0, distance_km=5) == 80


def test_round_half_up():
    assert round_half_up(498.5) == 499
    assert round_half_up(498.49) == 498
    assert round_half_up(2.5) == 3


def test_transition_table():
    assert can_transition("Pending", "Accepted")
    assert can_transition("PickedUp", "Delivered")
    assert not can_transition("Pending", "Delivered")
    assert not can_transition("Delivered", "Cancelled")


def test_create_cod_order(client, merchant, customer, make_product, place_order):
    _, _, store = merchant
    product = make_product(store)
    user, headers = customer

    body = place_order(headers, [(product, 2)])
    order = body["order"]
    assert body["requires_payment"] is False
    assert order["items_total"] == 998
    assert order["delivery_fee"] == 50
    assert order["total_amount"] == 1048
    assert order["status"] == "Pending"
    assert re.match(r"^ORD-[0-9A-F]{6}-\d{8}-001$", order["order_number"])
    assert order["pickup_location"]["lat"] == 12.9716
    assert order["store"]["store_name"] == "Threads and Co"
    assert order["status_history"][0]["status"] == "Pending"

    assert db["product"].find_one({"_id": product["_id"]})["available_quantity"] == 8
    payment = db["payment"].find_one({"user": user["_id"]})
    assert payment["payment_method"] == "COD"
    assert payment["amount"] == 1048
    assert str(db["order"].find_one({})["payment_id"]) == str(payment["_id"])


def test_order_numbers_increment_per_store(client, merchant, customer, make_product, place_order):
    _, _, store = merchant
    product = make_product(store)
    _, headers = customer
    first = place_order(headers, [(product, 1)])["order"]["order_number"]
    second = place_order(headers, [(product, 1)])["order"]["order_number"]
    assert first.endswith("-001")
    assert second.endswith("-002")


def test_online_order_needs_payment(client, merchant, customer, make_product, place_order):
    _, _, store = merchant
    product = make_product(store)
    _, headers = customer
    body = place_order(headers, [(product, 1)], payment_method="Online")
    assert body["requires_payment"] is True
    assert db["payment"].count_documents({}) == 0


def test_insufficient_stock(client, merchant, customer, make_product):
    _, _, store = merchant
    product = make_product(store, available_quantity=1)
    _, headers = customer
    resp = client.post("/api/v1/order", headers=headers, json={
        "order_items": [{"product": str(product["_id"]), "quantity": 2}],
        "shipping_address": "221B Baker Street, Bengaluru",
        "payment_method": "COD",
    })
    assert resp.status_code == 400
    assert resp.json()["message"] == "Insufficient stock for product: Linen Shirt. Available: 1"
    assert db["order"].count_documents({}) == 0


def test_only_customers_place_orders(client, merchant, make_product):
    _, headers, store = merchant
    product = make_product(store)
    resp = client.post("/api/v1/order", headers=headers, json={
        "order_items": [{"product": str(product["_id"]), "quantity": 1}],
        "shipping_address": "221B Baker Street, Bengaluru",
        "payment_method": "COD",
    })
    assert resp.status_code == 403


def test_multi_store_checkout_splits_orders(client, make_store, make_product, customer, place_order):
    shirts = make_product(make_store(store_name="Shirt House"))
    sarees = make_product(make_store(store_name="Saree Palace"), name="Silk Saree", subcategory="Sarees",
                          category="Women", price=2500)
    _, headers = customer

    body = place_order(headers, [(shirts, 1), (sarees, 1)])
    assert body["multiple_stores"] is True
    assert body["message"] == "2 orders created successfully from 2 stores"
    totals = sorted(o["total_amount"] for o in body["orders"])
    assert totals == [569, 2500]
    assert db["order"].count_documents({}) == 2


def test_customer_can_only_cancel(client, merchant, customer, make_product, place_order):
    _, _, store = merchant
    product = make_product(store)
    _, headers = customer
    order = place_order(headers, [(product, 3)])["order"]

    resp = client.put(f"/api/v1/order/{order['id']}/status", headers=headers, json={"status": "Accepted"})
    assert resp.status_code == 403
    assert resp.json()["message"] == "You can only cancel orders"

    resp = client.put(f"/api/v1/order/{order['id']}/status", headers=headers,
                      json={"status": "Cancelled", "cancellation_reason": "Ordered the wrong size"})
    assert resp.status_code == 200
    assert resp.json()["order"]["status"] == "Cancelled"
    assert db["product"].find_one({"_id": product["_id"]})["available_quantity"] == 10
    stored = db["order"].find_one({})
    assert stored["cancellation_reason"] == "Ordered the wrong size"
    assert stored["status_history"][-1]["status"] == "Cancelled"


def test_invalid_transition_is_rejected(client, merchant, customer, make_product, place_order):
    _, merchant_headers, store = merchant
    product = make_product(store)
    _, headers = customer
    order = place_order(headers, [(product, 1)])["order"]

    resp = client.put(f"/api/v1/order/{order['id']}/status", headers=merchant_headers, json={"status": "Delivered"})
    assert resp.status_code == 400
    assert resp.json()["message"] == "Cannot change status from Pending to Delivered"


def test_orders_are_scoped_to_their_owner(client, merchant, customer, make_user, make_product, place_order):
    _, merchant_headers, store = merchant
    product = make_product(store)
    _, headers = customer
    order = place_order(headers, [(product, 1)])["order"]

    _, stranger = make_user()
    resp = client.get(f"/api/v1/order/{order['id']}", headers=stranger)
    assert resp.status_code == 403
    assert resp.json()["message"] == "Access denied. You can only view your own orders"

    assert client.get(f"/api/v1/order/{order['id']}", headers=merchant_headers).status_code == 200
    listing = client.get("/api/v1/order", headers=merchant_headers).json()
    assert listing["pagination"]["total_orders"] == 1
    assert client.get("/api/v1/order", headers=stranger).json()["orders"] == []


def test_order_stats_per_role(client, merchant, customer, make_product, place_order):
    _, merchant_headers, store = merchant
    product = make_product(store)
    _, headers = customer
    place_order(headers, [(product, 1)])

    stats = client.get("/api/v1/order/stats/overview", headers=headers).json()["stats"]
    assert stats == {"total_orders": 1, "pending_orders": 1, "delivered_orders": 0, "cancelled_orders": 0}
    merchant_stats = client.get("/api/v1/order/stats/overview", headers=merchant_headers).json()["stats"]
    assert merchant_stats["pending_orders"] == 1
    assert merchant_stats["total_revenue"] == 0


def test_order_placed_notifies_customer_and_merchant(client, merchant, customer, make_product, place_order):
    merchant_user, _, store = merchant
    product = make_product(store)
    user, headers = customer
    place_order(headers, [(product, 1)])
    assert db["notification"].count_documents({"recipient": user["_id"], "type": "ORDER_PLACED"}) == 1
    assert db["notification"].count_documents({"recipient": merchant_user["_id"], "type": "ORDER_PLACED"}) == 1
