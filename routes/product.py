import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field, field_validator

from auth import get_current_user, require_role
from database import create_document, db
from schemas import SUBCATEGORIES, Category, Product as ProductSchema, Season, Size
from utils import clean_query, ok, page_params, pagination, regex_filter, sanitize, sanitize_text, to_obj_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/product", tags=["product"])


class ProductCreateRequest(BaseModel):
    name: str = Field(..., min_length=2, max_length=200)
    description: str = Field(..., min_length=5, max_length=2000)
    category: Category
    subcategory: str
    images: List[str] = Field(..., min_length=1)
    price: float = Field(..., gt=0)
    discount_percentage: float = Field(0, ge=0, le=100)
    is_on_sale: bool = False
    sizes: List[Size] = Field(default_factory=list)
    available_quantity: int = Field(0, ge=0)
    specifications: Dict[str, Any] = Field(default_factory=dict)
    season: Season = "All Season"
    is_new_arrival: bool = False
    is_best_seller: bool = False

    @field_validator("subcategory")
    @classmethod
    def known_subcategory(cls, v: str) -> str:
        if v not in SUBCATEGORIES:
            raise ValueError(f"Subcategory must be one of: {', '.join(SUBCATEGORIES)}")
        return v


class ProductUpdateRequest(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=200)
    description: Optional[str] = Field(None, min_length=5, max_length=2000)
    category: Optional[Category] = None
    subcategory: Optional[str] = None
    images: Optional[List[str]] = Field(None, min_length=1)
    price: Optional[float] = Field(None, gt=0)
    discount_percentage: Optional[float] = None
    is_on_sale: Optional[bool] = None
    sizes: Optional[List[Size]] = None
    available_quantity: Optional[int] = Field(None, ge=0)
    specifications: Optional[Dict[str, Any]] = None
    season: Optional[Season] = None
    is_new_arrival: Optional[bool] = None
    is_best_seller: Optional[bool] = None
    is_active: Optional[bool] = None

    @field_validator("subcategory")
    @classmethod
    def known_subcategory(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in SUBCATEGORIES:
            raise ValueError(f"Subcategory must be one of: {', '.join(SUBCATEGORIES)}")
        return v


def apply_discount(original_price: float, discount_percentage: float, is_on_sale: bool) -> Dict[str, float]:
    """Selling price after discount. A discount applies when on sale or when a positive percentage is set."""
    discount = discount_percentage or 0
    price = original_price
    if is_on_sale or discount > 0:
        price = original_price - (original_price * discount) / 100
    return {"price": round(price, 2), "original_price": original_price, "discount_percentage": discount}


def public_filter(
    category: Optional[str] = None,
    subcategory: Optional[str] = None,
    search: Optional[str] = None,
    min_price: Optional[float] = None,
    max_price: Optional[float] = None,
    is_best_seller: Optional[bool] = None,
    is_new_arrival: Optional[bool] = None,
) -> Dict[str, Any]:
    q: Dict[str, Any] = {"is_active": True}
    if category:
        q["category"] = category
    if subcategory:
        q["subcategory"] = subcategory
    if search:
        q["$or"] = [{"name": regex_filter(search)}, {"description": regex_filter(search)}, {"subcategory": regex_filter(search)}]
    if min_price is not None or max_price is not None:
        q["price"] = {}
        if min_price is not None:
            q["price"]["$gte"] = min_price
        if max_price is not None:
            q["price"]["$lte"] = max_price
    if is_best_seller is not None:
        q["is_best_seller"] = is_best_seller
    if is_new_arrival is not None:
        q["is_new_arrival"] = is_new_arrival
    return q


def _list(q: Dict[str, Any], page: int, limit: int, message: str):
    page, limit, skip = page_params(page, limit)
    cursor = db["product"].find(q).sort("created_at", -1).skip(skip).limit(limit)
    total = db["product"].count_documents(q)
    products = [sanitize(p) for p in cursor]
    return ok(message, products=products, pagination=pagination(page, limit, total, "products"))


def _owned_product(product_id: str, merchant: Dict[str, Any]) -> Dict[str, Any]:
    product = db["product"].find_one({"_id": to_obj_id(product_id), "merchant_id": to_obj_id(merchant["id"])})
    if not product:
        raise HTTPException(status_code=404, detail="Product not found or you don't have permission to modify it")
    return product


@router.post("/create", status_code=201)
def create_product(payload: ProductCreateRequest, merchant=Depends(require_role("Merchant"))):
    merchant_id = to_obj_id(merchant["id"])
    store = db["store"].find_one({"merchant_id": merchant_id})
    if not store:
        raise HTTPException(status_code=400, detail="You must create a store before adding products")

    data = payload.model_dump()
    data["name"] = sanitize_text(data["name"])
    data["description"] = sanitize_text(data["description"])
    data["specifications"] = clean_query(data["specifications"])
    data.update(apply_discount(data["price"], data["discount_percentage"], data["is_on_sale"]))
    doc = ProductSchema(merchant_id=merchant_id, store_id=store["_id"], **data).model_dump()
    create_document("product", doc)
    logger.info("Product %s created in store %s", doc["name"], store["_id"])
    return ok("Product created successfully", product=sanitize(doc))


@router.get("/merchant")
def get_merchant_products(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    category: Optional[str] = None,
    subcategory: Optional[str] = None,
    search: Optional[str] = None,
    is_active: Optional[bool] = None,
    merchant=Depends(require_role("Merchant")),
):
    q: Dict[str, Any] = {"merchant_id": to_obj_id(merchant["id"])}
    if category:
        q["category"] = category
    if subcategory:
        q["subcategory"] = subcategory
    if search:
        q["$or"] = [{"name": regex_filter(search)}, {"description": regex_filter(search)}]
    if is_active is not None:
        q["is_active"] = is_active
    return _list(q, page, limit, "Products retrieved successfully")


@router.get("/all")
def get_all_products(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    category: Optional[str] = None,
    subcategory: Optional[str] = None,
    search: Optional[str] = None,
    min_price: Optional[float] = Query(None, ge=0),
    max_price: Optional[float] = Query(None, ge=0),
    is_best_seller: Optional[bool] = None,
    is_new_arrival: Optional[bool] = None,
):
    q = public_filter(category, subcategory, search, min_price, max_price, is_best_seller, is_new_arrival)
    return _list(q, page, limit, "Products retrieved successfully")


@router.get("/subcategory")
def get_products_by_subcategory(
    subcategory: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    category: Optional[str] = None,
    min_price: Optional[float] = Query(None, ge=0),
    max_price: Optional[float] = Query(None, ge=0),
):
    if not subcategory:
        raise HTTPException(status_code=400, detail="Subcategory is required")
    q = public_filter(category, subcategory, None, min_price, max_price)
    return _list(q, page, limit, f"Products retrieved successfully for subcategory: {subcategory}")


@router.get("/store/{store_id}")
def get_store_products(store_id: str, page: int = Query(1, ge=1), limit: int = Query(20, ge=1, le=100)):
    store = db["store"].find_one({"_id": to_obj_id(store_id)})
    if not store:
        raise HTTPException(status_code=404, detail="Store not found")
    return _list({"store_id": store["_id"], "is_active": True}, page, limit, "Store products retrieved successfully")


@router.get("/{product_id}")
def get_product_by_id(product_id: str, current_user=Depends(get_current_user)):
    product = db["product"].find_one({"_id": to_obj_id(product_id)})
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    store = db["store"].find_one({"_id": product["store_id"]}, {"store_name": 1, "address": 1, "rating": 1})
    return ok("Product retrieved successfully", product=sanitize(product), store=sanitize(store))


@router.put("/{product_id}")
def update_product(product_id: str, payload: ProductUpdateRequest, merchant=Depends(require_role("Merchant"))):
    current = _owned_product(product_id, merchant)
    updates = payload.model_dump(exclude_unset=True)
    if "discount_percentage" in updates and not 0 <= (updates["discount_percentage"] or 0) <= 100:
        raise HTTPException(status_code=400, detail="Discount percentage must be between 0 and 100")
    for key in ("name", "description"):
        if updates.get(key):
            updates[key] = sanitize_text(updates[key])
    if updates.get("specifications") is not None:
        updates["specifications"] = clean_query(updates["specifications"])

    if {"price", "discount_percentage", "is_on_sale"} & updates.keys():
        original = updates.pop("price", None) or current.get("original_price") or current["price"]
        discount = updates.get("discount_percentage", current.get("discount_percentage", 0))
        on_sale = updates.get("is_on_sale", current.get("is_on_sale", False))
        updates.update(apply_discount(original, discount, on_sale))

    if not updates:
        return ok("Product updated successfully", product=sanitize(current))
    updates["updated_at"] = datetime.now(timezone.utc)
    db["product"].update_one({"_id": current["_id"]}, {"$set": updates})
    return ok("Product updated successfully", product=sanitize(db["product"].find_one({"_id": current["_id"]})))


@router.delete("/{product_id}")
def delete_product(product_id: str, merchant=Depends(require_role("Merchant"))):
    product = _owned_product(product_id, merchant)
    db["product"].delete_one({"_id": product["_id"]})
    db["favorite"].delete_many({"product": product["_id"]})
    logger.info("Product %s deleted by merchant %s", product["_id"], merchant["id"])
    return ok("Product deleted successfully")
