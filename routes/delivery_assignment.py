import logging
from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

import assignment
from auth import require_role
from database import db
from order_utils import get_order_or_404, merchant_store
from utils import ok, to_obj_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/delivery-assignment", tags=["delivery-assignment"])


class ManualAssignRequest(BaseModel):
    delivery_person_id: str = Field(..., min_length=1)


def _assignable_order(order_id: str, merchant: Dict[str, Any]) -> Dict[str, Any]:
    store = merchant_store(to_obj_id(merchant["id"]))
    order = get_order_or_404(to_obj_id(order_id))
    if order["store"] != store["_id"]:
        raise HTTPException(status_code=403, detail="This order does not belong to your store")
    if order["status"] != "ReadyForPickup":
        raise HTTPException(status_code=400, detail="Order must be ready for pickup before assigning delivery")
    if order.get("delivery_person"):
        raise HTTPException(status_code=400, detail="Order already has a delivery partner assigned")
    return order


def _assignment_payload(order: Dict[str, Any], delivery_id: str) -> Dict[str, Any]:
    partner = db["user"].find_one({"_id": order["delivery_person"]}, {"name": 1, "phone": 1, "current_location": 1})
    delivery = db["delivery"].find_one({"_id": to_obj_id(delivery_id)}, {"estimated_delivery_time": 1})
    return {
        "delivery_partner": {
            "id": str(partner["_id"]),
            "name": partner.get("name"),
            "phone": partner.get("phone"),
            "current_location": partner.get("current_location"),
        },
        "delivery": {"id": delivery_id, "estimated_delivery_time": delivery.get("estimated_delivery_time")},
    }


@router.post("/{order_id}/auto-assign")
def auto_assign_delivery_partner(order_id: str, merchant=Depends(require_role("Merchant"))):
    order = _assignable_order(order_id, merchant)
    result = assignment.auto_assign(order, assigned_by=to_obj_id(merchant["id"]), nearby_only=True)
    if not result:
        return {
            "success": False,
            "message": "No delivery partners available within 5km radius. Order marked as waiting.",
            "waiting_for_delivery_partner": True,
        }
    updated, delivery_id = result
    return ok("Delivery partner assigned successfully", **_assignment_payload(updated, delivery_id))


@router.post("/{order_id}/manual-assign")
def manually_assign_delivery_partner(order_id: str, payload: ManualAssignRequest, merchant=Depends(require_role("Merchant"))):
    order = _assignable_order(order_id, merchant)
    partner = db["user"].find_one({"_id": to_obj_id(payload.delivery_person_id)})
    if not partner or partner.get("role") != "Delivery":
        raise HTTPException(status_code=404, detail="Delivery person not found")
    if partner.get("is_busy"):
        raise HTTPException(status_code=409, detail="Delivery person is busy with another order")

    result = assignment.assign_partner(
        order, partner,
        assigned_by=to_obj_id(merchant["id"]),
        note=f"Delivery partner {partner.get('name') or 'Unknown'} manually assigned",
    )
    if not result:
        raise HTTPException(status_code=409, detail="Assignment failed because the order or partner changed. Please retry.")
    updated, delivery_id = result
    logger.info("Merchant %s manually assigned order %s to %s", merchant["id"], updated["order_number"], partner["_id"])
    return ok("Delivery partner assigned successfully", **_assignment_payload(updated, delivery_id))
