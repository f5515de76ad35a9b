from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from pymongo.errors import DuplicateKeyError

from auth import get_current_user
from database import create_document, db
from schemas import Favorite
from utils import is_obj_id, ok, page_params, pagination, sanitize, to_obj_id

router = APIRouter(prefix="/api/v1/favorite", tags=["favorite"])


class AddFavoriteRequest(BaseModel):
    product_id: Optional[str] = None


class FavoriteStatusRequest(BaseModel):
    product_ids: Optional[List[str]] = None


@router.post("/add", status_code=201)
def add_to_favorites(payload: AddFavoriteRequest, current_user=Depends(get_current_user)):
    if not payload.product_id:
        raise HTTPException(status_code=400, detail="Product ID is required")
    product = db["product"].find_one({"_id": to_obj_id(payload.product_id)}, {"_id": 1})
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")

    doc = Favorite(user=to_obj_id(current_user["id"]), product=product["_id"]).model_dump()
    try:
        create_document("favorite", doc)
    except DuplicateKeyError:
        raise HTTPException(status_code=409, detail="Product already in favorites")
    return ok("Product added to favorites", favorite=sanitize(doc))


@router.delete("/remove/{product_id}")
def remove_from_favorites(product_id: str, current_user=Depends(get_current_user)):
    result = db["favorite"].delete_one({"user": to_obj_id(current_user["id"]), "product": to_obj_id(product_id)})
    if not result.deleted_count:
        raise HTTPException(status_code=404, detail="Product not found in favorites")
    return ok("Product removed from favorites")


@router.get("/user")
def get_user_favorites(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    current_user=Depends(get_current_user),
):
    page, limit, skip = page_params(page, limit)
    q = {"user": to_obj_id(current_user["id"])}
    favorites = list(db["favorite"].find(q).sort("created_at", -1).skip(skip).limit(limit))
    total = db["favorite"].count_documents(q)

    products = {p["_id"]: p for p in db["product"].find({"_id": {"$in": [f["product"] for f in favorites]}})}
    stores = {
        s["_id"]: s for s in db["store"].find(
            {"_id": {"$in": list({p["store_id"] for p in products.values()})}},
            {"store_name": 1, "store_images": 1, "address": 1},
        )
    }
    items = []
    for fav in favorites:
        product = products.get(fav["product"])
        if product:
            product = sanitize(product)
            product["store_id"] = sanitize(stores.get(products[fav["product"]]["store_id"])) or product["store_id"]
        items.append({"id": fav["_id"], "product": product, "created_at": fav.get("created_at")})

    return ok("Favorites retrieved successfully", favorites=items, pagination=pagination(page, limit, total, "favorites"))


@router.get("/status/{product_id}")
def check_favorite_status(product_id: str, current_user=Depends(get_current_user)):
    favorite = db["favorite"].find_one({"user": to_obj_id(current_user["id"]), "product": to_obj_id(product_id)})
    return ok(
        "Favorite status retrieved successfully",
        is_favorite=favorite is not None,
        favorite_id=favorite["_id"] if favorite else None,
    )


@router.post("/status/multiple")
def get_multiple_favorite_status(payload: FavoriteStatusRequest, current_user=Depends(get_current_user)):
    if payload.product_ids is None:
        raise HTTPException(status_code=400, detail="Product IDs array is required")
    valid = [to_obj_id(p) for p in payload.product_ids if is_obj_id(p)]
    liked = {
        str(f["product"]) for f in db["favorite"].find({"user": to_obj_id(current_user["id"]), "product": {"$in": valid}})
    }
    return ok("Favorite status retrieved successfully", favorites=[
        {"product_id": p, "is_favorite": p in liked} for p in payload.product_ids
    ])
