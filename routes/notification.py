from datetime import datetime, timezone

from fastapi import APIRouter, Depends, HTTPException, Query
from pymongo import ReturnDocument

from auth import get_current_user
from database import db
from utils import ok, page_params, pagination, sanitize, to_obj_id

router = APIRouter(prefix="/api/v1/notification", tags=["notification"])


@router.get("")
def get_notifications(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    unread_only: bool = False,
    current_user=Depends(get_current_user),
):
    page, limit, skip = page_params(page, limit)
    recipient = to_obj_id(current_user["id"])
    q = {"recipient": recipient}
    if unread_only:
        q["is_read"] = False
    items = list(db["notification"].find(q).sort("created_at", -1).skip(skip).limit(limit))
    total = db["notification"].count_documents(q)
    unread = db["notification"].count_documents({"recipient": recipient, "is_read": False})
    return ok(
        "Notifications retrieved successfully",
        notifications=[sanitize(n) for n in items],
        unread_count=unread,
        pagination=pagination(page, limit, total, "notifications"),
    )


@router.put("/read-all")
def mark_all_as_read(current_user=Depends(get_current_user)):
    now = datetime.now(timezone.utc)
    result = db["notification"].update_many(
        {"recipient": to_obj_id(current_user["id"]), "is_read": False},
        {"$set": {"is_read": True, "read_at": now, "updated_at": now}},
    )
    return ok("All notifications marked as read", updated=result.modified_count)


@router.put("/{notification_id}/read")
def mark_as_read(notification_id: str, current_user=Depends(get_current_user)):
    now = datetime.now(timezone.utc)
    notification = db["notification"].find_one_and_update(
        {"_id": to_obj_id(notification_id), "recipient": to_obj_id(current_user["id"])},
        {"$set": {"is_read": True, "read_at": now, "updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if not notification:
        raise HTTPException(status_code=404, detail="Notification not found")
    return ok("Notification marked as read", notification=sanitize(notification))
