import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

import assignment
import notifications
import razorpay_client
from auth import require_role
from database import db
from order_utils import get_order_or_404, merchant_store, release_inventory, transition_order
from routes.order import present_order, present_orders
from utils import ok, page_params, pagination, sanitize_text, to_obj_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/merchant-order", tags=["merchant-order"])


class RejectOrderRequest(BaseModel):
    reason: Optional[str] = None


def _store_order(order_id: str, merchant: Dict[str, Any]):
    store = merchant_store(to_obj_id(merchant["id"]))
    order = get_order_or_404(to_obj_id(order_id))
    if order["store"] != store["_id"]:
        raise HTTPException(status_code=403, detail="This order does not belong to your store")
    return store, order


def refund_online_payment(order: Dict[str, Any], reason: str) -> bool:
    """Refund a captured online payment. Failures are logged and reported as False."""
    payment = db["payment"].find_one({"order": order["_id"], "payment_method": "Online"})
    if not payment or not payment.get("gateway_payment_id"):
        logger.warning("No captured payment to refund for order %s", order["_id"])
        return False
    try:
        refund = razorpay_client.refund_payment(
            payment["gateway_payment_id"], payment["amount"],
            notes={"reason": reason, "order_id": str(order["_id"])},
        )
    except razorpay_client.PaymentGatewayError as exc:
        logger.error("Refund failed for order %s: %s", order["_id"], exc)
        return False

    now = datetime.now(timezone.utc)
    db["payment"].update_one({"_id": payment["_id"]}, {"$set": {
        "payment_status": "Refunded",
        "refund_amount": round((refund.get("amount") or 0) / 100),
        "refund_reason": reason,
        "refund_date": now,
        "refund_transaction_id": refund.get("id"),
        "updated_at": now,
    }})
    db["order"].update_one({"_id": order["_id"]}, {"$set": {"payment_status": "Refunded", "updated_at": now}})
    return True


@router.get("")
def get_merchant_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    status: Optional[str] = None,
    merchant=Depends(require_role("Merchant")),
):
    store = merchant_store(to_obj_id(merchant["id"]))
    page, limit, skip = page_params(page, limit)
    q: Dict[str, Any] = {"store": store["_id"]}
    if status:
        q["status"] = status
    orders = list(db["order"].find(q).sort("created_at", -1).skip(skip).limit(limit))
    total = db["order"].count_documents(q)
    return ok("Orders retrieved successfully", orders=present_orders(orders), pagination=pagination(page, limit, total, "orders"))


@router.post("/{order_id}/accept")
def accept_order(order_id: str, merchant=Depends(require_role("Merchant"))):
    _, order = _store_order(order_id, merchant)
    if order["status"] != "Pending":
        raise HTTPException(status_code=400, detail=f"Cannot accept order with status: {order['status']}")
    if order.get("payment_method") == "Online" and order.get("payment_status") != "Completed":
        raise HTTPException(status_code=400, detail="Payment not completed for this order")

    updated = transition_order(
        order["_id"], "Pending", "Accepted",
        updated_by=to_obj_id(merchant["id"]),
        note="Order accepted by merchant",
        set_fields={"merchant_accepted_at": datetime.now(timezone.utc)},
    )
    if not updated:
        raise HTTPException(status_code=409, detail="Order was updated by someone else. Please refresh and retry.")
    notifications.order_accepted(updated)
    return ok("Order accepted successfully", order=present_order(updated))


@router.post("/{order_id}/reject")
def reject_order(order_id: str, payload: RejectOrderRequest, merchant=Depends(require_role("Merchant"))):
    reason = sanitize_text(payload.reason or "")
    if len(reason) < 10:
        raise HTTPException(status_code=400, detail="Rejection reason is required (minimum 10 characters)")
    _, order = _store_order(order_id, merchant)
    if order["status"] != "Pending":
        raise HTTPException(status_code=400, detail=f"Cannot reject order with status: {order['status']}")

    updated = transition_order(
        order["_id"], "Pending", "Rejected",
        updated_by=to_obj_id(merchant["id"]),
        note=f"Order rejected: {reason}",
        set_fields={"rejection_reason": reason},
    )
    if not updated:
        raise HTTPException(status_code=409, detail="Order was updated by someone else. Please refresh and retry.")

    release_inventory(updated)
    refunded = False
    if updated.get("payment_method") == "Online" and updated.get("payment_status") == "Completed":
        refunded = refund_online_payment(updated, "Order rejected by merchant")
    notifications.order_rejected(updated, reason)
    logger.info("Order %s rejected by merchant %s", updated["order_number"], merchant["id"])
    return ok("Order rejected successfully", order=present_order(get_order_or_404(updated["_id"])), refunded=refunded)


@router.post("/{order_id}/ready")
def mark_ready_for_pickup(order_id: str, merchant=Depends(require_role("Merchant"))):
    _, order = _store_order(order_id, merchant)
    if order["status"] not in ("Accepted", "Processing"):
        raise HTTPException(status_code=400, detail=f"Cannot mark order as ready from status: {order['status']}")

    merchant_id = to_obj_id(merchant["id"])
    updated = transition_order(
        order["_id"], ["Accepted", "Processing"], "ReadyForPickup",
        updated_by=merchant_id,
        note="Order packed and ready for pickup",
        set_fields={"ready_at": datetime.now(timezone.utc)},
    )
    if not updated:
        raise HTTPException(status_code=409, detail="Order was updated by someone else. Please refresh and retry.")
    notifications.order_ready(updated)

    result = assignment.auto_assign(updated, assigned_by=merchant_id, nearby_only=False)
    if result:
        return ok("Order marked as ready for pickup and delivery partner assigned",
                  order=present_order(result[0]), delivery_partner_assigned=True)
    return ok("Order marked as ready for pickup. Waiting for a delivery partner.",
              order=present_order(get_order_or_404(updated["_id"])), delivery_partner_assigned=False)
