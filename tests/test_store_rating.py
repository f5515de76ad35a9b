import pytest

import routes.store_rating as store_rating
from database import db


@pytest.fixture
def delivered_order(merchant, customer, make_product, place_order):
    _, _, store = merchant
    _, headers = customer
    order = place_order(headers, [(make_product(store), 1)])["order"]
    db["order"].update_one({"order_number": order["order_number"]}, {"$set": {"status": "Delivered"}})
    return order


def _rate(client, headers, order, rating, review=None):
    return client.post("/api/v1/store-rating/rate", headers=headers,
                       json={"order_id": order["id"], "rating": rating, "review": review})


def test_rating_updates_running_average(client, merchant, customer, make_product, place_order, delivered_order):
    _, _, store = merchant
    _, headers = customer
    resp = _rate(client, headers, delivered_order, 5, "Lovely fabric")
    assert resp.status_code == 200
    assert resp.json()["store_rating"] == {"average": 5, "total_reviews": 1}

    second = place_order(headers, [(make_product(store), 1)])["order"]
    db["order"].update_one({"order_number": second["order_number"]}, {"$set": {"status": "Delivered"}})
    resp = _rate(client, headers, second, 2)
    assert resp.json()["store_rating"] == {"average": 3.5, "total_reviews": 2}

    stored = db["store"].find_one({"_id": store["_id"]})
    assert stored["rating"] == {"average": 3.5, "total_reviews": 2}


def test_order_can_only_be_rated_once(client, customer, delivered_order):
    _, headers = customer
    _rate(client, headers, delivered_order, 4)
    resp = _rate(client, headers, delivered_order, 1)
    assert resp.status_code == 400
    assert resp.json()["message"] == "You have already rated this order"


def test_only_delivered_orders_by_their_owner(client, merchant, customer, make_user, make_product, place_order):
    _, _, store = merchant
    _, headers = customer
    order = place_order(headers, [(make_product(store), 1)])["order"]
    resp = _rate(client, headers, order, 4)
    assert resp.status_code == 400
    assert resp.json()["message"] == "You can only rate delivered orders"

    _, stranger = make_user()
    assert _rate(client, stranger, order, 4).status_code == 403


def test_public_ratings_list_reviews(client, merchant, customer, delivered_order):
    _, _, store = merchant
    _, headers = customer
    _rate(client, headers, delivered_order, 4, "Good <b>fit</b>")
    body = client.get(f"/api/v1/store-rating/{store['_id']}/ratings").json()
    assert body["rating"]["total_reviews"] == 1
    assert body["reviews"][0]["customer"] == "Chetan Customer"
    assert body["reviews"][0]["rating"] == 4


def test_failed_store_update_lets_customer_rate_again(client, merchant, customer, delivered_order, monkeypatch):
    _, _, store = merchant
    _, headers = customer
    monkeypatch.setattr(store_rating, "RATING_UPDATE_ATTEMPTS", 0)
    resp = _rate(client, headers, delivered_order, 4, "Great fit")
    assert resp.status_code == 409
    order = db["order"].find_one({"order_number": delivered_order["order_number"]})
    assert order["store_rated"] is False
    assert "store_rating" not in order

    monkeypatch.setattr(store_rating, "RATING_UPDATE_ATTEMPTS", 5)
    resp = _rate(client, headers, delivered_order, 4, "Great fit")
    assert resp.status_code == 200
    assert db["store"].find_one({"_id": store["_id"]})["rating"] == {"average": 4, "total_reviews": 1}
