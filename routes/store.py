import logging
import re
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from auth import require_role
from database import create_document, db
from schemas import WEEK_DAYS, Store as StoreSchema
from utils import as_utc, ok, page_params, pagination, regex_filter, sanitize, sanitize_text, to_obj_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/store", tags=["store"])

EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
WEBSITE_RE = re.compile(r"^https?://", re.IGNORECASE)
EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)


class ContactIn(BaseModel):
    phone: Optional[str] = None
    email: Optional[str] = None
    website: Optional[str] = None


class StoreCreateRequest(BaseModel):
    store_name: str
    description: Optional[str] = Field(None, max_length=1000)
    store_images: List[str] = Field(default_factory=list)
    address: str
    map_link: str
    contact: ContactIn
    working_days: Dict[str, bool]


class StoreUpdateRequest(BaseModel):
    store_name: Optional[str] = None
    description: Optional[str] = Field(None, max_length=1000)
    store_images: Optional[List[str]] = None
    address: Optional[str] = None
    map_link: Optional[str] = None
    contact: Optional[ContactIn] = None
    working_days: Optional[Dict[str, bool]] = None


def validate_store_fields(data: Dict[str, Any]) -> None:
    """Raise 400 with a readable message for the first invalid store field present in data."""
    if "store_name" in data and len((data["store_name"] or "").strip()) < 2:
        raise HTTPException(status_code=400, detail="Store name must be at least 2 characters long")
    if "address" in data and len((data["address"] or "").strip()) < 5:
        raise HTTPException(status_code=400, detail="Address must be at least 5 characters long")
    if "map_link" in data and not (data["map_link"] or "").strip():
        raise HTTPException(status_code=400, detail="Map link is required")

    contact = data.get("contact")
    if contact is not None:
        phone = re.sub(r"\D", "", contact.get("phone") or "")
        if not 10 <= len(phone) <= 12:
            raise HTTPException(status_code=400, detail="Phone number must be between 10-12 digits")
        if contact.get("email") and not EMAIL_RE.match(contact["email"]):
            raise HTTPException(status_code=400, detail="Please provide a valid email address")
        if contact.get("website") and not WEBSITE_RE.match(contact["website"]):
            raise HTTPException(status_code=400, detail="Website must be a valid URL starting with http:// or https://")

    days = data.get("working_days")
    if days is not None:
        invalid = [d for d in days if d.lower() not in WEEK_DAYS]
        if invalid:
            raise HTTPException(status_code=400, detail=f"Invalid working days: {', '.join(invalid)}")
        if not any(days.values()):
            raise HTTPException(status_code=400, detail="Please select at least one working day")


def _clean(data: Dict[str, Any]) -> Dict[str, Any]:
    for key in ("store_name", "description", "address"):
        if data.get(key):
            data[key] = sanitize_text(data[key])
    if data.get("working_days") is not None:
        data["working_days"] = {d.lower(): bool(v) for d, v in data["working_days"].items()}
    if data.get("contact") is not None:
        data["contact"] = {k: v for k, v in data["contact"].items() if v}
        data["contact"]["phone"] = re.sub(r"\D", "", data["contact"].get("phone", ""))
    return data


def with_merchant(stores: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    ids = list({s["merchant_id"] for s in stores if s.get("merchant_id")})
    merchants = {u["_id"]: u for u in db["user"].find({"_id": {"$in": ids}}, {"name": 1, "email": 1})} if ids else {}
    result = []
    for s in stores:
        m = merchants.get(s.get("merchant_id"), {})
        item = sanitize(s)
        item["merchant"] = {"id": str(m["_id"]), "name": m.get("name"), "email": m.get("email")} if m else None
        result.append(item)
    return result


@router.post("/create", status_code=201)
def create_store(payload: StoreCreateRequest, merchant=Depends(require_role("Merchant"))):
    merchant_id = to_obj_id(merchant["id"])
    if db["store"].find_one({"merchant_id": merchant_id}):
        raise HTTPException(status_code=409, detail="Store already exists. Use PUT /update to modify store details.")

    data = payload.model_dump()
    validate_store_fields(data)
    data = _clean(data)
    doc = StoreSchema(merchant_id=merchant_id, **data).model_dump()
    create_document("store", doc)
    db["user"].update_one({"_id": merchant_id}, {"$set": {"is_profile_complete": True, "updated_at": datetime.now(timezone.utc)}})
    logger.info("Store %s created by merchant %s", doc["store_name"], merchant["id"])
    return ok("Store created successfully", store=sanitize(doc))


@router.put("/update")
def update_store(payload: StoreUpdateRequest, merchant=Depends(require_role("Merchant"))):
    data = payload.model_dump(exclude_unset=True)
    validate_store_fields(data)
    data = _clean(data)
    store = db["store"].find_one({"merchant_id": to_obj_id(merchant["id"])})
    if not store:
        raise HTTPException(status_code=404, detail="Store not found. Create a store first.")
    if not data:
        return ok("Store updated successfully", store=sanitize(store))
    data["updated_at"] = datetime.now(timezone.utc)
    db["store"].update_one({"_id": store["_id"]}, {"$set": data})
    return ok("Store updated successfully", store=sanitize(db["store"].find_one({"_id": store["_id"]})))


@router.get("/details")
def get_store_details(merchant=Depends(require_role("Merchant"))):
    store = db["store"].find_one({"merchant_id": to_obj_id(merchant["id"])})
    if not store:
        raise HTTPException(status_code=404, detail="Store details not found")
    product_count = db["product"].count_documents({"store_id": store["_id"], "is_active": True})
    return ok("Store details retrieved successfully", store=sanitize(store), product_count=product_count)


@router.delete("/delete")
def delete_store(merchant=Depends(require_role("Merchant"))):
    merchant_id = to_obj_id(merchant["id"])
    store = db["store"].find_one({"merchant_id": merchant_id})
    if not store:
        raise HTTPException(status_code=404, detail="Store details not found")
    db["store"].delete_one({"_id": store["_id"]})
    db["product"].update_many({"store_id": store["_id"]}, {"$set": {"is_active": False, "updated_at": datetime.now(timezone.utc)}})
    db["user"].update_one({"_id": merchant_id}, {"$set": {"is_profile_complete": False, "updated_at": datetime.now(timezone.utc)}})
    logger.info("Store %s deleted by merchant %s", store["_id"], merchant["id"])
    return ok("Store details deleted successfully")


@router.get("/all")
def get_all_stores(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    search: Optional[str] = None,
    location: Optional[str] = None,
):
    page, limit, skip = page_params(page, limit)
    q: Dict[str, Any] = {"is_active": True}
    if search:
        q["$or"] = [{"store_name": regex_filter(search)}, {"description": regex_filter(search)}, {"address": regex_filter(search)}]
    if location:
        q["address"] = regex_filter(location)
    cursor = db["store"].find(q).sort([("rating.average", -1), ("created_at", -1)]).skip(skip).limit(limit)
    total = db["store"].count_documents(q)
    return ok("Stores retrieved successfully", stores=with_merchant(list(cursor)), pagination=pagination(page, limit, total, "stores"))


@router.get("/bestsellers")
def get_bestseller_stores(limit: int = Query(4, ge=1, le=50)):
    cursor = db["store"].find({"is_active": True}).sort([("rating.average", -1), ("rating.total_reviews", -1)]).limit(limit)
    return ok("Best seller stores retrieved successfully", stores=with_merchant(list(cursor)))


def rank_stores_for_query(q: str) -> List[Dict[str, Any]]:
    """Score stores by matching products (2 per match + rating) and by their own fields (rating + 1)."""
    rx = regex_filter(q)
    product_match = {
        "is_active": True,
        "$or": [
            {"name": rx}, {"description": rx}, {"category": rx}, {"subcategory": rx},
            {"specifications.material": rx}, {"specifications.fit": rx}, {"specifications.pattern": rx},
        ],
    }
    groups = list(db["product"].aggregate([
        {"$match": product_match},
        {"$group": {"_id": "$store_id", "match_count": {"$sum": 1}, "subcategories": {"$push": "$subcategory"}}},
    ]))
    stores = {s["_id"]: s for s in db["store"].find({"_id": {"$in": [g["_id"] for g in groups]}, "is_active": True})}

    ranked: Dict[Any, Dict[str, Any]] = {}
    for g in groups:
        store = stores.get(g["_id"])
        if not store:
            continue
        rating = (store.get("rating") or {}).get("average", 0) or 0
        common = Counter(s for s in g["subcategories"] if s).most_common(1)
        ranked[store["_id"]] = {
            "store": store,
            "matched_subcategory": common[0][0] if common else None,
            "score": g["match_count"] * 2 + rating,
            "rating": rating,
        }

    field_matches = db["store"].find({
        "is_active": True,
        "$or": [{"store_name": rx}, {"description": rx}, {"address": rx}],
    })
    for store in field_matches:
        rating = (store.get("rating") or {}).get("average", 0) or 0
        base = rating + 1
        entry = ranked.get(store["_id"])
        if entry:
            entry["score"] = max(entry["score"], base)
        else:
            ranked[store["_id"]] = {"store": store, "matched_subcategory": None, "score": base, "rating": rating}

    results = sorted(ranked.values(), key=lambda r: as_utc(r["store"].get("created_at")) or EPOCH, reverse=True)
    results.sort(key=lambda r: (r["score"], r["rating"]), reverse=True)
    return results


@router.get("/search")
def search_stores(
    q: Optional[str] = None,
    search: Optional[str] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
):
    page, limit, skip = page_params(page, limit)
    query = (q or search or "").strip()
    if not query:
        base = {"is_active": True}
        cursor = db["store"].find(base).sort([("rating.average", -1), ("rating.total_reviews", -1)]).skip(skip).limit(limit)
        total = db["store"].count_documents(base)
        stores = [{"store": s, "matched_subcategory": None} for s in with_merchant(list(cursor))]
        return ok("Stores retrieved successfully", stores=stores, pagination=pagination(page, limit, total, "stores"))

    ranked = rank_stores_for_query(query)
    paged = ranked[skip:skip + limit]
    stores = [{"store": sanitize(r["store"]), "matched_subcategory": r["matched_subcategory"]} for r in paged]
    return ok("Stores ranked for query", stores=stores, pagination=pagination(page, limit, len(ranked), "stores"))


@router.get("/{store_id}")
def get_store_by_id(store_id: str):
    store = db["store"].find_one({"_id": to_obj_id(store_id)})
    if not store:
        raise HTTPException(status_code=404, detail="Store not found")
    product_count = db["product"].count_documents({"store_id": store["_id"], "is_active": True})
    return ok("Store retrieved successfully", store=with_merchant([store])[0], product_count=product_count)
