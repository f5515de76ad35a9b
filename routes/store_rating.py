import logging
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from auth import require_role
from database import db
from order_utils import get_order_or_404
from utils import ok, sanitize_text, to_obj_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/store-rating", tags=["store-rating"])

RATING_UPDATE_ATTEMPTS = 5


class RateStoreRequest(BaseModel):
    order_id: str = Field(..., min_length=1)
    rating: int = Field(..., ge=1, le=5)
    review: Optional[str] = Field(None, max_length=1000)


def _add_rating(store_id, rating: int):
    """Fold one rating into the store's running average. Returns the new rating block."""
    for _ in range(RATING_UPDATE_ATTEMPTS):
        store = db["store"].find_one({"_id": store_id}, {"rating": 1})
        if not store:
            return None
        current = store.get("rating") or {"average": 0, "total_reviews": 0}
        count = current.get("total_reviews", 0)
        new_count = count + 1
        new_block = {"average": (current.get("average", 0) * count + rating) / new_count, "total_reviews": new_count}
        result = db["store"].update_one(
            {"_id": store_id, "rating.total_reviews": count},
            {"$set": {"rating": new_block, "updated_at": datetime.now(timezone.utc)}},
        )
        if result.modified_count:
            return new_block
    raise HTTPException(status_code=409, detail="Store rating is being updated. Please retry.")


@router.post("/rate")
def rate_store(payload: RateStoreRequest, current_user=Depends(require_role("User"))):
    order = get_order_or_404(to_obj_id(payload.order_id))
    if order["user"] != to_obj_id(current_user["id"]):
        raise HTTPException(status_code=403, detail="You can only rate your own orders")
    if order["status"] != "Delivered":
        raise HTTPException(status_code=400, detail="You can only rate delivered orders")
    if not db["store"].find_one({"_id": order["store"]}, {"_id": 1}):
        raise HTTPException(status_code=404, detail="Store not found")

    claimed = db["order"].update_one(
        {"_id": order["_id"], "store_rated": {"$ne": True}},
        {"$set": {
            "store_rated": True,
            "store_rating": payload.rating,
            "store_review": sanitize_text(payload.review or ""),
            "updated_at": datetime.now(timezone.utc),
        }},
    )
    if not claimed.modified_count:
        raise HTTPException(status_code=400, detail="You have already rated this order")

    try:
        rating = _add_rating(order["store"], payload.rating)
    except HTTPException:
        db["order"].update_one(
            {"_id": order["_id"]},
            {"$set": {"store_rated": False}, "$unset": {"store_rating": "", "store_review": ""}},
        )
        raise
    logger.info("Store %s rated %d for order %s", order["store"], payload.rating, order["order_number"])
    return ok("Store rated successfully", store_rating=rating)


@router.get("/{store_id}/ratings")
def get_store_ratings(store_id: str, limit: int = Query(10, ge=1, le=50)):
    store = db["store"].find_one({"_id": to_obj_id(store_id)}, {"rating": 1})
    if not store:
        raise HTTPException(status_code=404, detail="Store not found")

    rated = list(
        db["order"].find({"store": store["_id"], "store_rated": True, "store_review": {"$nin": [None, ""]}},
                         {"user": 1, "store_rating": 1, "store_review": 1, "updated_at": 1})
        .sort("updated_at", -1).limit(limit)
    )
    names = {u["_id"]: u.get("name") for u in db["user"].find({"_id": {"$in": [o["user"] for o in rated]}}, {"name": 1})}
    reviews = [
        {"rating": o.get("store_rating"), "review": o["store_review"], "customer": names.get(o["user"]), "date": o.get("updated_at")}
        for o in rated
    ]
    return ok("Store ratings retrieved successfully", rating=store.get("rating"), reviews=reviews)
