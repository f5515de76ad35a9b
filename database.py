"""
MongoDB access layer.

`db` is None when DATABASE_URL is not configured, so the app can still boot
and report the missing database on /test.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel
from pymongo import ASCENDING, DESCENDING, MongoClient

import config

logger = logging.getLogger(__name__)

client: Optional[MongoClient] = None
db = None

if config.DATABASE_URL:
    client = MongoClient(config.DATABASE_URL)
    db = client[config.DATABASE_NAME]


def now() -> datetime:
    return datetime.now(timezone.utc)


def create_document(collection_name: str, data: Union[BaseModel, Dict[str, Any]]) -> str:
    """Insert a document with created_at/updated_at stamps and return its id.

    A dict argument is stamped in place, so callers can read back `_id`.
    """
    if db is None:
        raise RuntimeError("Database not available. Check DATABASE_URL.")
    doc = data.model_dump() if isinstance(data, BaseModel) else data
    stamp = now()
    doc.setdefault("created_at", stamp)
    doc["updated_at"] = stamp
    result = db[collection_name].insert_one(doc)
    doc["_id"] = result.inserted_id
    return str(result.inserted_id)


def ensure_indexes(database=None) -> None:
    database = database if database is not None else db
    if database is None:
        logger.warning("Skipping index creation: no database configured")
        return

    database.user.create_index([("phone", ASCENDING)], unique=True)
    database.user.create_index([("role", ASCENDING), ("is_active", ASCENDING), ("is_busy", ASCENDING)])

    database.store.create_index([("merchant_id", ASCENDING)], unique=True)
    database.store.create_index([("is_active", ASCENDING), ("rating.average", DESCENDING)])

    database.product.create_index([("store_id", ASCENDING), ("is_active", ASCENDING)])
    database.product.create_index([("merchant_id", ASCENDING), ("created_at", DESCENDING)])
    database.product.create_index([("category", ASCENDING), ("subcategory", ASCENDING)])

    database.order.create_index([("order_number", ASCENDING)], unique=True)
    database.order.create_index([("user", ASCENDING), ("created_at", DESCENDING)])
    database.order.create_index([("store", ASCENDING), ("status", ASCENDING)])
    database.order.create_index([("status", ASCENDING), ("delivery_person", ASCENDING), ("created_at", ASCENDING)])

    database.delivery.create_index([("delivery_person", ASCENDING), ("status", ASCENDING)])
    database.delivery.create_index([("order", ASCENDING)])

    database.payment.create_index([("order", ASCENDING)])
    database.payment.create_index([("gateway_order_id", ASCENDING)])
    database.payment.create_index([("store", ASCENDING), ("payout_status", ASCENDING)])
    database.payment.create_index([("cod_collected_by", ASCENDING), ("cod_submitted_to_store", ASCENDING)])

    database.favorite.create_index([("user", ASCENDING), ("product", ASCENDING)], unique=True)
    database.notification.create_index([("recipient", ASCENDING), ("is_read", ASCENDING), ("created_at", DESCENDING)])
    logger.info("Database indexes ensured")
