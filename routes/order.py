import logging
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from pymongo.errors import DuplicateKeyError

import location
import notifications
from assignment import free_partner
from auth import get_current_user, require_role
from database import create_document, db
from order_utils import (
    calculate_delivery_fee,
    can_transition,
    generate_order_number,
    get_order_or_404,
    history_entry,
    release_inventory,
    reserve_inventory,
    round_half_up,
    transition_order,
)
from schemas import Order as OrderSchema, Payment as PaymentSchema
from utils import ok, page_params, pagination, sanitize, sanitize_text, to_obj_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/order", tags=["order"])

ORDER_NUMBER_RETRIES = 3

OrderStatus = Literal[
    "Pending", "Accepted", "Rejected", "Processing", "ReadyForPickup", "Assigned",
    "PickedUp", "OnTheWay", "Shipped", "Delivered", "Cancelled",
]


class OrderItemIn(BaseModel):
    product: str = Field(..., min_length=1)
    quantity: int = Field(..., ge=1)
    price: float = Field(0, ge=0)


class CreateOrderRequest(BaseModel):
    order_items: List[OrderItemIn] = Field(..., min_length=1)
    shipping_address: str = Field(..., min_length=10, max_length=500)
    payment_method: Literal["COD", "Online"]


class UpdateOrderStatusRequest(BaseModel):
    status: OrderStatus
    cancellation_reason: Optional[str] = Field(None, max_length=500)


def present_orders(orders: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Serialize orders with store, customer and product summaries attached."""
    store_ids = {o["store"] for o in orders}
    user_ids = {o["user"] for o in orders}
    product_ids = {i["product"] for o in orders for i in o.get("order_items", [])}
    stores = {s["_id"]: s for s in db["store"].find({"_id": {"$in": list(store_ids)}}, {"store_name": 1, "address": 1, "store_images": 1})}
    users = {u["_id"]: u for u in db["user"].find({"_id": {"$in": list(user_ids)}}, {"name": 1, "phone": 1, "email": 1})}
    products = {p["_id"]: p for p in db["product"].find({"_id": {"$in": list(product_ids)}}, {"name": 1, "images": 1, "price": 1})}

    result = []
    for o in orders:
        item = sanitize(o)
        item["store"] = sanitize(stores.get(o["store"])) or str(o["store"])
        item["user"] = sanitize(users.get(o["user"])) or str(o["user"])
        for line, raw in zip(item.get("order_items", []), o.get("order_items", [])):
            line["product"] = sanitize(products.get(raw["product"])) or str(raw["product"])
        result.append(item)
    return result


def present_order(order: Dict[str, Any]) -> Dict[str, Any]:
    return present_orders([order])[0]


def check_order_access(order: Dict[str, Any], user: Dict[str, Any], action: str = "view") -> None:
    role = user.get("role")
    user_id = to_obj_id(user["id"])
    if role == "User" and order["user"] != user_id:
        raise HTTPException(status_code=403, detail=f"Access denied. You can only {action} your own orders")
    if role == "Merchant":
        store = db["store"].find_one({"merchant_id": user_id}, {"_id": 1})
        if not store or order["store"] != store["_id"]:
            raise HTTPException(status_code=403, detail=f"Access denied. You can only {action} orders from your store")
    if role == "Delivery" and order.get("delivery_person") != user_id:
        raise HTTPException(status_code=403, detail=f"Access denied. You can only {action} orders assigned to you")


def _insert_order(doc: Dict[str, Any], store_id: Any) -> None:
    for attempt in range(ORDER_NUMBER_RETRIES + 1):
        try:
            create_document("order", doc)
            return
        except DuplicateKeyError:
            if attempt == ORDER_NUMBER_RETRIES:
                raise
            doc.pop("_id", None)
            doc["order_number"] = generate_order_number(store_id)
            logger.warning("Order number collision, retrying with %s", doc["order_number"])


def create_single_store_order(user_id: Any, store_id: Any, lines: List[Dict[str, Any]],
                              shipping_address: str, payment_method: str) -> Dict[str, Any]:
    store = db["store"].find_one({"_id": store_id})
    if not store or not store.get("is_active", True):
        raise HTTPException(status_code=400, detail="Store is not available")

    order_items = []
    items_total = 0
    for line in lines:
        price = round_half_up(line["product"]["price"])
        items_total += price * line["quantity"]
        order_items.append({"product": line["product"]["_id"], "quantity": line["quantity"], "price": price})
    delivery_fee = round_half_up(calculate_delivery_fee(items_total))
    total_amount = items_total + delivery_fee

    pickup_location = location.get_store_location(store)
    delivery_location = location.get_delivery_location(shipping_address)

    reserve_inventory((i["product"], i["quantity"], line["product"]["name"]) for i, line in zip(order_items, lines))

    doc = OrderSchema(
        order_number=generate_order_number(store_id),
        user=user_id,
        store=store_id,
        order_items=order_items,
        shipping_address=shipping_address,
        items_total=items_total,
        delivery_fee=delivery_fee,
        total_amount=total_amount,
        payment_method=payment_method,
        pickup_location=pickup_location,
        delivery_location=delivery_location,
        status_history=[history_entry("Pending", user_id, "Order created")],
    ).model_dump()
    try:
        _insert_order(doc, store_id)
    except DuplicateKeyError:
        release_inventory(doc)
        raise HTTPException(status_code=409, detail="Could not allocate an order number, please retry")

    if payment_method == "COD":
        payment = PaymentSchema(order=doc["_id"], user=user_id, store=store_id, amount=total_amount, payment_method="COD")
        payment_id = create_document("payment", payment)
        doc["payment_id"] = to_obj_id(payment_id)
        db["order"].update_one({"_id": doc["_id"]}, {"$set": {"payment_id": doc["payment_id"]}})

    notifications.order_placed(doc)
    logger.info("Order %s created for store %s (%s)", doc["order_number"], store_id, payment_method)
    return doc


@router.post("", status_code=201)
def create_order(payload: CreateOrderRequest, current_user=Depends(require_role("User"))):
    user_id = to_obj_id(current_user["id"])
    shipping_address = sanitize_text(payload.shipping_address)
    if len(shipping_address) < 10:
        raise HTTPException(status_code=400, detail="Shipping address must be at least 10 characters")

    by_store: "OrderedDict[Any, List[Dict[str, Any]]]" = OrderedDict()
    for item in payload.order_items:
        product = db["product"].find_one({"_id": to_obj_id(item.product)})
        if not product:
            raise HTTPException(status_code=404, detail=f"Product not found: {item.product}")
        if not product.get("is_active", True):
            raise HTTPException(status_code=400, detail=f"Product is not available: {product['name']}")
        if product.get("available_quantity", 0) < item.quantity:
            raise HTTPException(
                status_code=400,
                detail=f"Insufficient stock for product: {product['name']}. Available: {product.get('available_quantity', 0)}",
            )
        by_store.setdefault(product["store_id"], []).append({"product": product, "quantity": item.quantity})

    if len(by_store) == 1:
        store_id, lines = next(iter(by_store.items()))
        order = create_single_store_order(user_id, store_id, lines, shipping_address, payload.payment_method)
        return ok(
            "Order created successfully",
            order=present_order(order),
            requires_payment=payload.payment_method == "Online",
        )

    created, errors = [], []
    for store_id, lines in by_store.items():
        try:
            created.append(create_single_store_order(user_id, store_id, lines, shipping_address, payload.payment_method))
        except HTTPException as exc:
            logger.warning("Order for store %s failed: %s", store_id, exc.detail)
            errors.append({"store_id": str(store_id), "error": exc.detail})

    if not created:
        return JSONResponse(status_code=400, content={"success": False, "message": "No orders were created successfully", "errors": errors})

    plural = "s" if len(created) > 1 else ""
    return ok(
        f"{len(created)} order{plural} created successfully from {len(by_store)} stores",
        orders=present_orders(created),
        multiple_stores=True,
        requires_payment=payload.payment_method == "Online",
        errors=errors or None,
    )


@router.get("/stats/overview")
def get_order_stats(current_user=Depends(get_current_user)):
    user_id = to_obj_id(current_user["id"])
    role = current_user.get("role")
    if role == "User":
        q = {"user": user_id}
        stats = {
            "total_orders": db["order"].count_documents(q),
            "pending_orders": db["order"].count_documents({**q, "status": "Pending"}),
            "delivered_orders": db["order"].count_documents({**q, "status": "Delivered"}),
            "cancelled_orders": db["order"].count_documents({**q, "status": "Cancelled"}),
        }
    elif role == "Merchant":
        store = db["store"].find_one({"merchant_id": user_id})
        if not store:
            raise HTTPException(status_code=404, detail="Store not found for this merchant")
        q = {"store": store["_id"]}
        revenue = list(db["order"].aggregate([
            {"$match": {"store": store["_id"], "status": "Delivered"}},
            {"$group": {"_id": None, "total_revenue": {"$sum": "$total_amount"}}},
        ]))
        stats = {"total_orders": db["order"].count_documents(q)}
        for status in ("Pending", "Processing", "Shipped", "Delivered", "Cancelled"):
            stats[f"{status.lower()}_orders"] = db["order"].count_documents({**q, "status": status})
        stats["total_revenue"] = revenue[0]["total_revenue"] if revenue else 0
    else:
        q = {"delivery_person": user_id}
        stats = {
            "total_orders": db["order"].count_documents(q),
            "active_orders": db["order"].count_documents({**q, "status": {"$in": ["Assigned", "PickedUp", "OnTheWay"]}}),
            "delivered_orders": db["order"].count_documents({**q, "status": "Delivered"}),
        }
    return ok("Order statistics retrieved successfully", stats=stats)


@router.get("")
def get_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[str] = None,
    payment_status: Optional[str] = None,
    current_user=Depends(get_current_user),
):
    page, limit, skip = page_params(page, limit)
    user_id = to_obj_id(current_user["id"])
    role = current_user.get("role")
    if role == "Merchant":
        store = db["store"].find_one({"merchant_id": user_id})
        if not store:
            raise HTTPException(status_code=404, detail="Store not found for this merchant")
        q: Dict[str, Any] = {"store": store["_id"]}
    elif role == "Delivery":
        q = {"delivery_person": user_id}
    else:
        q = {"user": user_id}
    if status:
        q["status"] = status
    if payment_status:
        q["payment_status"] = payment_status

    orders = list(db["order"].find(q).sort("created_at", -1).skip(skip).limit(limit))
    total = db["order"].count_documents(q)
    return ok("Orders retrieved successfully", orders=present_orders(orders), pagination=pagination(page, limit, total, "orders"))


@router.get("/{order_id}")
def get_order_by_id(order_id: str, current_user=Depends(get_current_user)):
    order = get_order_or_404(to_obj_id(order_id))
    check_order_access(order, current_user)
    return ok("Order retrieved successfully", order=present_order(order))


@router.put("/{order_id}/status")
def update_order_status(order_id: str, payload: UpdateOrderStatusRequest, current_user=Depends(get_current_user)):
    order = get_order_or_404(to_obj_id(order_id))
    role = current_user.get("role")
    check_order_access(order, current_user, action="update")
    if role == "User" and payload.status != "Cancelled":
        raise HTTPException(status_code=403, detail="You can only cancel orders")
    if role == "Delivery" and payload.status not in ("Shipped", "Delivered"):
        raise HTTPException(status_code=403, detail="You can only update delivery statuses")
    if not can_transition(order["status"], payload.status):
        raise HTTPException(status_code=400, detail=f"Cannot change status from {order['status']} to {payload.status}")

    now = datetime.now(timezone.utc)
    set_fields: Dict[str, Any] = {}
    if payload.status == "Cancelled":
        set_fields["cancelled_at"] = now
        if payload.cancellation_reason:
            set_fields["cancellation_reason"] = sanitize_text(payload.cancellation_reason)
    if payload.status == "Delivered":
        set_fields["delivery_date"] = now

    updated = transition_order(
        order["_id"], order["status"], payload.status,
        updated_by=to_obj_id(current_user["id"]),
        note=payload.cancellation_reason or f"Status updated to {payload.status}",
        set_fields=set_fields,
    )
    if not updated:
        raise HTTPException(status_code=409, detail="Order was updated by someone else. Please refresh and retry.")

    if payload.status == "Cancelled":
        release_inventory(updated)
        if updated.get("delivery_person"):
            db["delivery"].update_many(
                {"order": updated["_id"], "status": {"$nin": ["Delivered", "Cancelled"]}},
                {"$set": {"status": "Cancelled", "cancellation_reason": "Order cancelled", "updated_at": now}},
            )
            free_partner(updated["delivery_person"])
    if payload.status == "Delivered":
        notifications.order_delivered(updated)

    logger.info("Order %s moved %s -> %s by %s", updated["order_number"], order["status"], payload.status, current_user["id"])
    return ok("Order status updated successfully", order=present_order(updated))


