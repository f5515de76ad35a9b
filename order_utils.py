import logging
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from fastapi import HTTPException
from pymongo import DESCENDING, ReturnDocument

from database import db

logger = logging.getLogger(__name__)

ORDER_TRANSITIONS: Dict[str, List[str]] = {
    "Pending": ["Accepted", "Rejected", "Cancelled"],
    "Accepted": ["Processing", "Cancelled"],
    "Processing": ["ReadyForPickup", "Cancelled"],
    "ReadyForPickup": ["Assigned", "Shipped", "Cancelled"],
    "Assigned": ["PickedUp", "Cancelled"],
    "PickedUp": ["OnTheWay", "Delivered", "Cancelled"],
    "OnTheWay": ["Delivered", "Cancelled"],
    "Shipped": ["Delivered", "Cancelled"],
    "Rejected": [],
    "Delivered": [],
    "Cancelled": [],
}

DELIVERY_TRANSITIONS: Dict[str, List[str]] = {
    "Pending": ["Accepted", "Cancelled"],
    "Accepted": ["PickedUp", "Cancelled"],
    "PickedUp": ["OnTheWay", "Delivered", "Cancelled"],
    "OnTheWay": ["Delivered", "Cancelled"],
    "Delivered": [],
    "Cancelled": [],
}


def round_half_up(value: float) -> int:
    """Whole-rupee rounding, halves go up."""
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def can_transition(current: str, new: str, table: Dict[str, List[str]] = ORDER_TRANSITIONS) -> bool:
    return new in table.get(current, [])


def calculate_delivery_fee(items_total: float, distance_km: Optional[float] = None) -> float:
    if distance_km is not None:
        return round(50 + max(0.0, (distance_km - 2) * 10), 2)
    if items_total >= 2000:
        return 0
    if items_total >= 1000:
        return 30
    if items_total >= 500:
        return 50
    return 70


def generate_order_number(store_id: Any, when: Optional[datetime] = None) -> str:
    """ORD-<last 6 of store id>-<YYYYMMDD>-<NNN>, sequence restarting each day per store."""
    when = when or datetime.now(timezone.utc)
    prefix = f"ORD-{str(store_id)[-6:].upper()}-{when.strftime('%Y%m%d')}-"
    last = db["order"].find_one({"order_number": {"$regex": f"^{prefix}"}}, sort=[("order_number", DESCENDING)])
    seq = 1
    if last:
        try:
            seq = int(last["order_number"].rsplit("-", 1)[1]) + 1
        except (IndexError, ValueError):
            seq = db["order"].count_documents({"order_number": {"$regex": f"^{prefix}"}}) + 1
    return f"{prefix}{seq:03d}"


def history_entry(status: str, updated_by: Any = None, note: Optional[str] = None) -> Dict[str, Any]:
    return {"status": status, "timestamp": datetime.now(timezone.utc), "updated_by": updated_by, "note": note}


def reserve_inventory(items: Iterable[Tuple[Any, int, str]]) -> None:
    """Decrement stock for (product_id, quantity, name) items, undoing earlier ones on failure."""
    reserved: List[Tuple[Any, int]] = []
    for product_id, quantity, name in items:
        result = db["product"].update_one(
            {"_id": product_id, "available_quantity": {"$gte": quantity}},
            {"$inc": {"available_quantity": -quantity}},
        )
        if result.modified_count != 1:
            for done_id, done_qty in reserved:
                db["product"].update_one({"_id": done_id}, {"$inc": {"available_quantity": done_qty}})
            raise HTTPException(status_code=400, detail=f"Insufficient stock for {name}")
        reserved.append((product_id, quantity))


def release_inventory(order: Dict[str, Any]) -> None:
    for item in order.get("order_items", []):
        db["product"].update_one({"_id": item["product"]}, {"$inc": {"available_quantity": item["quantity"]}})
    logger.info("Released inventory for order %s", order.get("order_number"))


def transition_order(order_id: Any, from_status: Union[str, List[str]], new_status: str,
                     updated_by: Any = None, note: Optional[str] = None,
                     set_fields: Optional[Dict[str, Any]] = None,
                     unset_fields: Optional[List[str]] = None,
                     extra_filter: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
    """Move an order to new_status only if it is still in from_status. Returns the updated order or None."""
    allowed = [from_status] if isinstance(from_status, str) else list(from_status)
    query = {"_id": order_id, "status": {"$in": allowed}}
    query.update(extra_filter or {})
    update: Dict[str, Any] = {
        "$set": {"status": new_status, "updated_at": datetime.now(timezone.utc), **(set_fields or {})},
        "$push": {"status_history": history_entry(new_status, updated_by, note)},
    }
    if unset_fields:
        update["$unset"] = {f: "" for f in unset_fields}
    return db["order"].find_one_and_update(query, update, return_document=ReturnDocument.AFTER)


def add_history_note(order_id: Any, status: str, note: str, updated_by: Any = None) -> None:
    db["order"].update_one(
        {"_id": order_id},
        {"$push": {"status_history": history_entry(status, updated_by, note)},
         "$set": {"updated_at": datetime.now(timezone.utc)}},
    )


def get_order_or_404(order_id: Any) -> Dict[str, Any]:
    order = db["order"].find_one({"_id": order_id})
    if not order:
        raise HTTPException(status_code=404, detail="Order not found")
    return order


def merchant_store(merchant_id: Any) -> Dict[str, Any]:
    store = db["store"].find_one({"merchant_id": merchant_id})
    if not store:
        raise HTTPException(status_code=404, detail="Store not found. Please create a store first.")
    return store


def set_payment_status(order_ids: List[Any], status: str, **fields) -> None:
    stamp = datetime.now(timezone.utc)
    db["order"].update_many({"_id": {"$in": order_ids}}, {"$set": {"payment_status": status, "updated_at": stamp}})
    db["payment"].update_many({"order": {"$in": order_ids}}, {"$set": {"payment_status": status, "updated_at": stamp, **fields}})
