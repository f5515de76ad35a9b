import logging
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from pymongo import ReturnDocument

from auth import require_role
from database import create_document, db
from order_utils import get_order_or_404
from schemas import Payment as PaymentSchema
from utils import is_obj_id, ok, sanitize, to_obj_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/cod", tags=["cod"])

COLLECTABLE_STATUSES = ("PickedUp", "OnTheWay", "Delivered")


class SubmitCodRequest(BaseModel):
    payment_ids: List[str] = Field(default_factory=list)


@router.post("/submit")
def submit_cod_to_store(payload: SubmitCodRequest, partner=Depends(require_role("Delivery"))):
    if not payload.payment_ids:
        raise HTTPException(status_code=400, detail="Payment IDs array is required")
    partner_id = to_obj_id(partner["id"])

    submitted: List[Dict[str, Any]] = []
    errors: List[Dict[str, str]] = []
    for payment_id in payload.payment_ids:
        payment = db["payment"].find_one({"_id": to_obj_id(payment_id)}) if is_obj_id(payment_id) else None
        if not payment:
            errors.append({"payment_id": payment_id, "error": "Payment not found"})
            continue
        if payment.get("cod_collected_by") != partner_id:
            errors.append({"payment_id": payment_id, "error": "Payment not collected by you"})
            continue
        now = datetime.now(timezone.utc)
        updated = db["payment"].find_one_and_update(
            {"_id": payment["_id"], "cod_submitted_to_store": {"$ne": True}},
            {"$set": {"cod_submitted_to_store": True, "cod_submitted_at": now, "updated_at": now}},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            errors.append({"payment_id": payment_id, "error": "COD already submitted"})
            continue
        submitted.append({"payment_id": updated["_id"], "order_id": updated["order"], "amount": updated["amount"]})

    total = sum(p["amount"] for p in submitted)
    logger.info("Partner %s submitted %d COD payments totalling %s", partner_id, len(submitted), total)
    body = ok(f"Successfully submitted {len(submitted)} COD payment(s)", submitted_payments=submitted, total_amount=total)
    if errors:
        body["errors"] = errors
    return body


@router.get("/summary")
def get_cod_summary(partner=Depends(require_role("Delivery"))):
    base = {"cod_collected_by": to_obj_id(partner["id"]), "payment_method": "COD"}
    pending = list(db["payment"].find({**base, "cod_submitted_to_store": {"$ne": True}}))
    submitted = list(db["payment"].find({**base, "cod_submitted_to_store": True}))

    orders = {
        o["_id"]: o for o in db["order"].find(
            {"_id": {"$in": [p["order"] for p in pending]}}, {"order_number": 1, "total_amount": 1}
        )
    }
    pending_out = []
    for p in pending:
        item = sanitize(p)
        item["order"] = sanitize(orders.get(p["order"])) or str(p["order"])
        pending_out.append(item)

    return ok("COD summary retrieved successfully", summary={
        "collected_not_submitted": {
            "count": len(pending),
            "amount": sum(p["amount"] for p in pending),
            "payments": pending_out,
        },
        "submitted": {"count": len(submitted), "amount": sum(p["amount"] for p in submitted)},
        "total_collected": {
            "count": len(pending) + len(submitted),
            "amount": sum(p["amount"] for p in pending + submitted),
        },
    })


@router.post("/{order_id}/collect")
def mark_cod_collected(order_id: str, partner=Depends(require_role("Delivery"))):
    order = get_order_or_404(to_obj_id(order_id))
    partner_id = to_obj_id(partner["id"])
    if order.get("delivery_person") != partner_id:
        raise HTTPException(status_code=403, detail="This order is not assigned to you")
    if order.get("payment_method") != "COD":
        raise HTTPException(status_code=400, detail="This order is not a COD order")
    if order["status"] not in COLLECTABLE_STATUSES:
        raise HTTPException(status_code=400, detail="Order must be picked up before marking COD as collected")

    payment = db["payment"].find_one({"order": order["_id"]})
    if not payment:
        payment = PaymentSchema(
            order=order["_id"], user=order["user"], store=order["store"],
            amount=order["total_amount"], payment_method="COD",
        ).model_dump()
        create_document("payment", payment)

    now = datetime.now(timezone.utc)
    payment = db["payment"].find_one_and_update(
        {"_id": payment["_id"]},
        {"$set": {
            "payment_status": "Completed",
            "cod_collected_by": partner_id,
            "cod_collected_at": now,
            "transaction_date": now,
            "updated_at": now,
        }},
        return_document=ReturnDocument.AFTER,
    )
    order_update: Dict[str, Any] = {"payment_status": "Completed", "updated_at": now}
    if not order.get("payment_id"):
        order_update["payment_id"] = payment["_id"]
    db["order"].update_one({"_id": order["_id"]}, {"$set": order_update})

    logger.info("COD of %s collected for order %s by %s", payment["amount"], order["order_number"], partner_id)
    return ok("COD marked as collected successfully", payment={
        "id": payment["_id"],
        "amount": payment["amount"],
        "cod_collected_at": payment["cod_collected_at"],
    })
