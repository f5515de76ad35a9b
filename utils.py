import math
import re
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

from bson import ObjectId
from fastapi import HTTPException

_SCRIPT_RE = re.compile(r"<\s*(script|iframe|object|embed|style)[^>]*>.*?<\s*/\s*\1\s*>", re.IGNORECASE | re.DOTALL)
_TAG_RE = re.compile(r"<\s*/?\s*(script|iframe|object|embed|style|link|meta)[^>]*>", re.IGNORECASE)
_HANDLER_RE = re.compile(r"\son\w+\s*=\s*(\"[^\"]*\"|'[^']*'|[^\s>]+)", re.IGNORECASE)


def to_obj_id(id_str: Any) -> ObjectId:
    if isinstance(id_str, ObjectId):
        return id_str
    try:
        return ObjectId(id_str)
    except Exception:
        raise HTTPException(status_code=400, detail="Invalid id")


def is_obj_id(value: Any) -> bool:
    return isinstance(value, ObjectId) or (isinstance(value, str) and ObjectId.is_valid(value))


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Mongo hands back naive datetimes; treat them as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def serialize(value: Any) -> Any:
    """Make Mongo documents JSON friendly: ObjectId -> str, datetime -> ISO."""
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, list):
        return [serialize(v) for v in value]
    if isinstance(value, dict):
        return {k: serialize(v) for k, v in value.items()}
    return value


def sanitize(doc: Optional[Dict]) -> Optional[Dict]:
    if not doc:
        return doc
    d = {**doc}
    if "_id" in d:
        d["id"] = str(d.pop("_id"))
    for private in ("otp_hash", "otp_expiry"):
        d.pop(private, None)
    return serialize(d)


def sanitize_text(value: str) -> str:
    """Strip script-like tags and inline event handlers from user supplied text."""
    cleaned = _SCRIPT_RE.sub("", value)
    cleaned = _TAG_RE.sub("", cleaned)
    cleaned = _HANDLER_RE.sub("", cleaned)
    return cleaned.strip()


def clean_query(value: Any) -> Any:
    """Drop operator keys ($...) from client supplied filter fragments."""
    if isinstance(value, dict):
        return {k: clean_query(v) for k, v in value.items() if not str(k).startswith("$")}
    if isinstance(value, list):
        return [clean_query(v) for v in value]
    return value


def regex_filter(text: str) -> Dict[str, str]:
    return {"$regex": re.escape(text), "$options": "i"}


def page_params(page: int, limit: int, max_limit: int = 100) -> Tuple[int, int, int]:
    page = max(1, page)
    limit = max(1, min(limit, max_limit))
    return page, limit, (page - 1) * limit


def pagination(page: int, limit: int, total: int, noun: str = "items") -> Dict[str, Any]:
    total_pages = math.ceil(total / limit) if limit else 0
    return {
        "current_page": page,
        "total_pages": total_pages,
        f"total_{noun}": total,
        "has_next_page": page < total_pages,
        "has_prev_page": page > 1,
    }


def ok(message: str, **data) -> Dict[str, Any]:
    body = {"success": True, "message": message}
    body.update({k: serialize(v) for k, v in data.items()})
    return body
