import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from pydantic import BaseModel, Field, StrictBool
from pymongo import ReturnDocument

import assignment
import notifications
from auth import get_current_user, require_role
from database import create_document, db
from order_utils import DELIVERY_TRANSITIONS, can_transition, get_order_or_404, transition_order
from schemas import Delivery as DeliverySchema
from utils import ok, page_params, pagination, sanitize, sanitize_text, to_obj_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/delivery", tags=["delivery"])

ACTIVE_DELIVERY_STATUSES = ["Accepted", "PickedUp", "OnTheWay"]

DeliveryStatus = Literal["Pending", "Accepted", "PickedUp", "OnTheWay", "Delivered", "Cancelled"]


class CreateDeliveryRequest(BaseModel):
    order: str = Field(..., min_length=1)
    pickup_address: str = Field(..., min_length=10)
    delivery_address: str = Field(..., min_length=10)
    estimated_delivery_time: datetime
    delivery_fee: float = Field(..., ge=0)


class UpdateDeliveryStatusRequest(BaseModel):
    status: DeliveryStatus
    delivery_notes: Optional[str] = Field(None, max_length=500)
    cancellation_reason: Optional[str] = Field(None, max_length=500)


class RateDeliveryRequest(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    review: Optional[str] = Field(None, max_length=500)


class RejectDeliveryRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=500)


class LocationRequest(BaseModel):
    lat: Any = None
    lng: Any = None


class OnlineStatusRequest(BaseModel):
    is_online: Optional[StrictBool] = None


def present_deliveries(deliveries: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Serialize deliveries with partner, order, customer and store summaries."""
    partner_ids = {d["delivery_person"] for d in deliveries}
    order_ids = {d["order"] for d in deliveries}
    orders = {o["_id"]: o for o in db["order"].find({"_id": {"$in": list(order_ids)}})}
    user_ids = partner_ids | {o["user"] for o in orders.values()}
    users = {u["_id"]: u for u in db["user"].find({"_id": {"$in": list(user_ids)}}, {"name": 1, "phone": 1})}
    store_ids = {o["store"] for o in orders.values()}
    stores = {s["_id"]: s for s in db["store"].find({"_id": {"$in": list(store_ids)}}, {"store_name": 1, "address": 1, "map_link": 1})}

    result = []
    for d in deliveries:
        item = sanitize(d)
        item["delivery_person"] = sanitize(users.get(d["delivery_person"])) or str(d["delivery_person"])
        order = orders.get(d["order"])
        if order:
            summary = sanitize(order)
            summary["user"] = sanitize(users.get(order["user"])) or str(order["user"])
            summary["store"] = sanitize(stores.get(order["store"])) or str(order["store"])
            item["order"] = summary
        result.append(item)
    return result


def present_delivery(delivery: Dict[str, Any]) -> Dict[str, Any]:
    return present_deliveries([delivery])[0]


def get_delivery_or_404(delivery_id: str) -> Dict[str, Any]:
    delivery = db["delivery"].find_one({"_id": to_obj_id(delivery_id)})
    if not delivery:
        raise HTTPException(status_code=404, detail="Delivery not found")
    return delivery


def _has_active_delivery(partner_id: Any, statuses: List[str] = ACTIVE_DELIVERY_STATUSES) -> bool:
    return db["delivery"].find_one({"delivery_person": partner_id, "status": {"$in": statuses}}) is not None


@router.post("", status_code=201)
def create_delivery(payload: CreateDeliveryRequest, partner=Depends(require_role("Delivery"))):
    order = get_order_or_404(to_obj_id(payload.order))
    if order["status"] not in ("Processing", "ReadyForPickup"):
        raise HTTPException(status_code=400, detail=f"Order is not ready for delivery. Current status: {order['status']}")
    if db["delivery"].find_one({"order": order["_id"]}):
        raise HTTPException(status_code=400, detail="Delivery already exists for this order")

    partner_id = to_obj_id(partner["id"])
    claimed = db["order"].find_one_and_update(
        {"_id": order["_id"], "status": order["status"], "delivery_person": None},
        {"$set": {"delivery_person": partner_id, "updated_at": datetime.now(timezone.utc)}},
        return_document=ReturnDocument.AFTER,
    )
    if not claimed:
        raise HTTPException(status_code=409, detail="Order already has a delivery partner assigned")

    delivery = DeliverySchema(
        delivery_person=partner_id,
        order=order["_id"],
        pickup_address=payload.pickup_address.strip(),
        delivery_address=payload.delivery_address.strip(),
        estimated_delivery_time=payload.estimated_delivery_time,
        delivery_fee=payload.delivery_fee,
    )
    delivery_id = create_document("delivery", delivery)
    logger.info("Partner %s created delivery %s for order %s", partner["id"], delivery_id, order["order_number"])
    return ok("Delivery created successfully", delivery=present_delivery(get_delivery_or_404(delivery_id)))


@router.get("")
def get_deliveries_for_delivery_person(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    status: Optional[DeliveryStatus] = None,
    partner=Depends(require_role("Delivery")),
):
    page, limit, skip = page_params(page, limit)
    q: Dict[str, Any] = {"delivery_person": to_obj_id(partner["id"])}
    if status:
        q["status"] = status
    deliveries = list(db["delivery"].find(q).sort("created_at", -1).skip(skip).limit(limit))
    total = db["delivery"].count_documents(q)
    return ok(
        "Deliveries retrieved successfully",
        deliveries=present_deliveries(deliveries),
        pagination=pagination(page, limit, total, "deliveries"),
    )


@router.get("/stats/overview")
def get_delivery_stats(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    partner=Depends(require_role("Delivery")),
):
    end = end_date or datetime.now(timezone.utc)
    start = start_date or end - timedelta(days=365)
    base = {"delivery_person": to_obj_id(partner["id"]), "created_at": {"$gte": start, "$lte": end}}

    counts = {s: db["delivery"].count_documents({**base, "status": s}) for s in DELIVERY_TRANSITIONS}
    rating = list(db["delivery"].aggregate([
        {"$match": {**base, "rating": {"$ne": None}}},
        {"$group": {"_id": None, "average": {"$avg": "$rating"}}},
    ]))
    delivered = list(db["delivery"].find({**base, "status": "Delivered"}, {"order": 1, "delivery_fee": 1}))
    online_orders = {
        o["_id"] for o in db["order"].find(
            {"_id": {"$in": [d["order"] for d in delivered]}, "payment_method": "Online"}, {"_id": 1}
        )
    }

    stats = {
        "total_deliveries": db["delivery"].count_documents(base),
        "pending": counts["Pending"] + counts["Accepted"] + counts["PickedUp"],
        "completed": counts["Delivered"],
        "cancelled": counts["Cancelled"],
        "average_rating": rating[0]["average"] if rating else 0,
        "total_earnings": sum(d.get("delivery_fee") or 0 for d in delivered),
        "online_payment_earnings": sum(d.get("delivery_fee") or 0 for d in delivered if d["order"] in online_orders),
    }
    return ok("Delivery stats retrieved successfully", stats=stats)


@router.put("/location")
def update_delivery_location(payload: LocationRequest, partner=Depends(require_role("Delivery"))):
    lat, lng = payload.lat, payload.lng
    if lat in (None, "") or lng in (None, ""):
        raise HTTPException(status_code=400, detail="Latitude and longitude are required")
    if isinstance(lat, bool) or isinstance(lng, bool) or not isinstance(lat, (int, float)) or not isinstance(lng, (int, float)):
        raise HTTPException(status_code=400, detail="Latitude and longitude must be numbers")
    if not (-90 <= lat <= 90 and -180 <= lng <= 180):
        raise HTTPException(status_code=400, detail="Invalid coordinates")

    db["user"].update_one(
        {"_id": to_obj_id(partner["id"])},
        {"$set": {"current_location": {"lat": lat, "lng": lng}, "updated_at": datetime.now(timezone.utc)}},
    )
    return ok("Location updated successfully", location={"lat": lat, "lng": lng})


@router.get("/location/{delivery_person_id}")
def get_delivery_location(delivery_person_id: str, current_user=Depends(get_current_user)):
    person = db["user"].find_one({"_id": to_obj_id(delivery_person_id)})
    if not person or person.get("role") != "Delivery":
        raise HTTPException(status_code=404, detail="Delivery person not found")
    return ok("Location retrieved successfully", delivery_person={
        "id": str(person["_id"]),
        "name": person.get("name"),
        "phone": person.get("phone"),
        "current_location": person.get("current_location"),
        "is_busy": bool(person.get("is_busy")),
    })


@router.put("/online-status")
def toggle_online_status(payload: OnlineStatusRequest, background_tasks: BackgroundTasks,
                         partner=Depends(require_role("Delivery"))):
    if payload.is_online is None:
        raise HTTPException(status_code=400, detail="is_online must be a boolean value")
    partner_id = to_obj_id(partner["id"])
    active = _has_active_delivery(partner_id)
    if not payload.is_online and active:
        raise HTTPException(
            status_code=400,
            detail="Cannot go offline while you have an active delivery. Please complete or cancel it first.",
        )

    update: Dict[str, Any] = {"is_online": payload.is_online, "updated_at": datetime.now(timezone.utc)}
    if not _has_active_delivery(partner_id, ["Pending", *ACTIVE_DELIVERY_STATUSES]):
        update.update({"is_busy": False, "current_order": None})
    db["user"].update_one({"_id": partner_id}, {"$set": update})

    if payload.is_online:
        logger.info("Partner %s went online", partner_id)
        background_tasks.add_task(assignment.assign_orders_to_newly_online_partner, partner_id)
    else:
        logger.info("Partner %s went offline", partner_id)
    state = "online" if payload.is_online else "offline"
    return ok(f"You are now {state}", is_online=payload.is_online)


@router.get("/{delivery_id}")
def get_delivery_by_id(delivery_id: str, current_user=Depends(get_current_user)):
    delivery = get_delivery_or_404(delivery_id)
    role = current_user.get("role")
    user_id = to_obj_id(current_user["id"])
    if role == "Delivery" and delivery["delivery_person"] != user_id:
        raise HTTPException(status_code=403, detail="Access denied. You can only view your own deliveries")
    order = db["order"].find_one({"_id": delivery["order"]}, {"user": 1, "store": 1}) or {}
    if role == "User" and order.get("user") != user_id:
        raise HTTPException(status_code=403, detail="Access denied. You can only view deliveries for your orders")
    if role == "Merchant":
        store = db["store"].find_one({"merchant_id": user_id}, {"_id": 1})
        if not store or order.get("store") != store["_id"]:
            raise HTTPException(status_code=403, detail="Access denied. You can only view deliveries for your store orders")
    return ok("Delivery retrieved successfully", delivery=present_delivery(delivery))


def _mirror_on_order(delivery: Dict[str, Any], status: str, partner_id: Any) -> None:
    """Carry a delivery status change over to its order."""
    order_id = delivery["order"]
    if status == "PickedUp":
        updated = transition_order(
            order_id, ["Assigned", "ReadyForPickup", "Processing"], "PickedUp",
            updated_by=partner_id, note="Order picked up by delivery partner",
        )
        if updated:
            notifications.order_picked_up(updated)
    elif status == "OnTheWay":
        updated = transition_order(
            order_id, "PickedUp", "OnTheWay",
            updated_by=partner_id, note="Delivery partner is on the way to delivery location",
        )
    elif status == "Delivered":
        updated = transition_order(
            order_id, ["PickedUp", "OnTheWay"], "Delivered",
            updated_by=partner_id, note="Order delivered successfully",
            set_fields={"delivery_date": datetime.now(timezone.utc)},
        )
        if updated:
            notifications.order_delivered(updated)
        assignment.free_partner(delivery["delivery_person"])
    elif status == "Cancelled":
        updated = transition_order(
            order_id, ["Assigned", "PickedUp", "OnTheWay", "ReadyForPickup", "Processing"], "ReadyForPickup",
            updated_by=partner_id, note="Delivery cancelled by delivery partner",
            set_fields={"delivery_person": None},
        )
        assignment.free_partner(delivery["delivery_person"])
    else:
        return
    if not updated:
        logger.warning("Order %s was not moved to %s; its status changed concurrently", order_id, status)


@router.put("/{delivery_id}/status")
def update_delivery_status(delivery_id: str, payload: UpdateDeliveryStatusRequest, partner=Depends(require_role("Delivery"))):
    delivery = get_delivery_or_404(delivery_id)
    user_id = to_obj_id(partner["id"])
    if delivery["delivery_person"] != user_id:
        raise HTTPException(status_code=403, detail="Access denied. You can only update your own deliveries")
    if not can_transition(delivery["status"], payload.status, DELIVERY_TRANSITIONS):
        raise HTTPException(status_code=400, detail=f"Cannot change status from {delivery['status']} to {payload.status}")

    if payload.status == "Delivered":
        order = db["order"].find_one({"_id": delivery["order"]}, {"payment_method": 1, "payment_status": 1})
        if order and order.get("payment_method") == "COD" and order.get("payment_status") != "Completed":
            raise HTTPException(status_code=400, detail="Collect COD payment before marking as Delivered")

    now = datetime.now(timezone.utc)
    set_fields: Dict[str, Any] = {"status": payload.status, "updated_at": now}
    if payload.delivery_notes:
        set_fields["delivery_notes"] = sanitize_text(payload.delivery_notes)
    if payload.status == "Cancelled" and payload.cancellation_reason:
        set_fields["cancellation_reason"] = sanitize_text(payload.cancellation_reason)
    if payload.status == "Delivered":
        set_fields["actual_delivery_time"] = now

    updated = db["delivery"].find_one_and_update(
        {"_id": delivery["_id"], "status": delivery["status"]},
        {"$set": set_fields},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise HTTPException(status_code=409, detail="Delivery was updated by someone else. Please refresh and retry.")

    _mirror_on_order(updated, payload.status, user_id)
    logger.info("Delivery %s moved %s -> %s", delivery["_id"], delivery["status"], payload.status)
    return ok("Delivery status updated successfully", delivery=present_delivery(updated))


@router.post("/{delivery_id}/reject")
def reject_delivery_assignment(delivery_id: str, payload: RejectDeliveryRequest, background_tasks: BackgroundTasks,
                               partner=Depends(require_role("Delivery"))):
    delivery = get_delivery_or_404(delivery_id)
    partner_id = to_obj_id(partner["id"])
    if delivery["delivery_person"] != partner_id:
        raise HTTPException(status_code=403, detail="You can only reject your own delivery assignments")
    if delivery["status"] != "Pending":
        raise HTTPException(
            status_code=400,
            detail=f"Cannot reject delivery with status: {delivery['status']}. You can only reject pending assignments.",
        )
    get_order_or_404(delivery["order"])

    reason = sanitize_text(payload.reason or "")
    cancelled = db["delivery"].find_one_and_update(
        {"_id": delivery["_id"], "status": "Pending"},
        {"$set": {"status": "Cancelled", "cancellation_reason": reason or "Rejected by delivery partner",
                  "updated_at": datetime.now(timezone.utc)}},
    )
    if not cancelled:
        raise HTTPException(status_code=409, detail="Delivery was updated by someone else. Please refresh and retry.")

    note = f"Delivery rejected by {partner.get('name') or 'delivery partner'}"
    if reason:
        note = f"{note}: {reason}"
    db["order"].update_one({"_id": delivery["order"]}, {"$addToSet": {"rejected_by": partner_id}})
    order = transition_order(
        delivery["order"], ["Assigned", "ReadyForPickup", "Processing"], "ReadyForPickup",
        updated_by=partner_id, note=note, set_fields={"delivery_person": None},
    )
    assignment.free_partner(partner_id)
    logger.info("Partner %s rejected delivery %s; reassigning", partner_id, delivery["_id"])
    background_tasks.add_task(assignment.process_unassigned_orders)

    order = order or get_order_or_404(delivery["order"])
    return ok(
        "Delivery assignment rejected. Order will be reassigned to another delivery partner.",
        order={"id": str(order["_id"]), "status": order["status"]},
    )


@router.post("/{delivery_id}/rate")
def rate_delivery(delivery_id: str, payload: RateDeliveryRequest, current_user=Depends(get_current_user)):
    delivery = get_delivery_or_404(delivery_id)
    order = db["order"].find_one({"_id": delivery["order"]}, {"user": 1}) or {}
    if current_user.get("role") != "User" or order.get("user") != to_obj_id(current_user["id"]):
        raise HTTPException(status_code=403, detail="Only the customer who placed the order can rate the delivery")
    if delivery["status"] != "Delivered":
        raise HTTPException(status_code=400, detail="Can only rate completed deliveries")
    if delivery.get("rating"):
        raise HTTPException(status_code=400, detail="Delivery has already been rated")

    updated = db["delivery"].find_one_and_update(
        {"_id": delivery["_id"], "rating": None},
        {"$set": {"rating": payload.rating, "review": sanitize_text(payload.review or ""),
                  "updated_at": datetime.now(timezone.utc)}},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise HTTPException(status_code=400, detail="Delivery has already been rated")
    return ok("Delivery rated successfully", delivery=present_delivery(updated))
