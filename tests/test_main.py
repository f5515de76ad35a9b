import asyncio
import json

from starlette.requests import Request

import config
import main
from database import db


def test_root(client):
    assert client.get("/").json() == {"message": "Clothing Marketplace API running"}


def test_database_check(client):
    body = client.get("/test").json()
    assert body["backend"] == "ok"
    assert body["database"] == "ok"


def test_unknown_route_uses_envelope(client):
    resp = client.get("/api/v1/nothing-here")
    assert resp.status_code == 404
    assert resp.json() == {"success": False, "message": "Not Found"}


def test_invalid_object_id(client, customer):
    _, headers = customer
    resp = client.get("/api/v1/order/not-an-id", headers=headers)
    assert resp.status_code == 400
    assert resp.json()["message"] == "Invalid id"


def test_timeouts_per_route_group():
    assert main.timeout_for("/api/v1/payment/verify") == 45
    assert main.timeout_for("/api/v1/upload/url") == 120
    assert main.timeout_for("/api/v1/settlement/report") == 60
    assert main.timeout_for("/api/v1/order") == 30


def _request(path):
    return Request({"type": "http", "method": "GET", "path": path, "headers": [], "query_string": b""})


def test_slow_request_returns_timeout_envelope(monkeypatch):
    monkeypatch.setattr(config, "STANDARD_TIMEOUT", 0.01)

    async def slow_handler(request):
        await asyncio.sleep(1)

    resp = asyncio.run(main.request_timeout(_request("/api/v1/order"), slow_handler))
    assert resp.status_code == 408
    assert json.loads(resp.body) == {
        "success": False,
        "message": "Request timeout - The server took too long to respond",
        "error": "TIMEOUT",
    }


def test_fast_request_passes_through(monkeypatch):
    monkeypatch.setattr(config, "PAYMENT_TIMEOUT", 5)

    async def quick_handler(request):
        return "done"

    assert asyncio.run(main.request_timeout(_request("/api/v1/payment/verify"), quick_handler)) == "done"


def test_notifications(client, merchant, customer, make_product, place_order):
    _, _, store = merchant
    user, headers = customer
    place_order(headers, [(make_product(store), 1)])
    place_order(headers, [(make_product(store, name="Second Shirt"), 1)])

    body = client.get("/api/v1/notification", headers=headers).json()
    assert body["unread_count"] == 2
    assert body["pagination"]["total_notifications"] == 2
    first = body["notifications"][0]
    assert first["type"] == "ORDER_PLACED"
    assert first["recipient_role"] == "User"

    resp = client.put(f"/api/v1/notification/{first['id']}/read", headers=headers)
    assert resp.json()["notification"]["is_read"] is True
    assert client.get("/api/v1/notification", headers=headers, params={"unread_only": True}).json()["unread_count"] == 1

    assert client.put("/api/v1/notification/read-all", headers=headers).json()["updated"] == 1
    assert db["notification"].count_documents({"recipient": user["_id"], "is_read": False}) == 0


def test_notifications_are_private(client, customer, make_user):
    user, _ = customer
    note_id = db["notification"].insert_one({"recipient": user["_id"], "is_read": False, "type": "ORDER_PLACED"}).inserted_id
    _, other = make_user()
    resp = client.put(f"/api/v1/notification/{note_id}/read", headers=other)
    assert resp.status_code == 404
    assert resp.json()["message"] == "Notification not found"


def test_app_logger_follows_module_name():
    assert main.logger.name == main.__name__
