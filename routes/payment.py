import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

import config
import notifications
import razorpay_client
from auth import get_current_user
from database import create_document, db
from order_utils import get_order_or_404, release_inventory, set_payment_status, transition_order
from routes.order import check_order_access
from schemas import Payment as PaymentSchema
from utils import is_obj_id, ok, sanitize, to_obj_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/payment", tags=["payment"])


class CreatePaymentOrderRequest(BaseModel):
    order_id: Optional[str] = None
    order_ids: List[str] = Field(default_factory=list)


class VerifyPaymentRequest(BaseModel):
    razorpay_order_id: Optional[str] = None
    razorpay_payment_id: Optional[str] = None
    razorpay_signature: Optional[str] = None
    payment_id: Optional[str] = None
    payment_ids: List[str] = Field(default_factory=list)


def _gateway_order_summary(gateway_order: Dict[str, Any]) -> Dict[str, Any]:
    return {"id": gateway_order.get("id"), "amount": gateway_order.get("amount"), "currency": gateway_order.get("currency")}


def _fail_orders(orders: List[Dict[str, Any]], note: str) -> None:
    """Mark a payment group failed, cancel its unpaid orders and give their stock back."""
    set_payment_status([o["_id"] for o in orders], "Failed", notes=note)
    for order in orders:
        cancelled = transition_order(
            order["_id"], "Pending", "Cancelled",
            note=note,
            set_fields={"cancellation_reason": "Payment failed", "cancelled_at": datetime.now(timezone.utc)},
        )
        if cancelled:
            release_inventory(cancelled)
        notifications.payment_failed(order)


@router.post("/create-order")
def create_razorpay_order(payload: CreatePaymentOrderRequest, current_user=Depends(get_current_user)):
    target_ids = payload.order_ids or ([payload.order_id] if payload.order_id else [])
    if not target_ids:
        raise HTTPException(status_code=400, detail="Order ID(s) are required")
    if not all(is_obj_id(i) for i in target_ids):
        raise HTTPException(status_code=404, detail="One or more orders not found")

    orders = list(db["order"].find({"_id": {"$in": [to_obj_id(i) for i in target_ids]}}))
    if len(orders) != len(set(target_ids)):
        raise HTTPException(status_code=404, detail="One or more orders not found")
    user_id = to_obj_id(current_user["id"])
    for o in orders:
        if o["user"] != user_id:
            raise HTTPException(status_code=403, detail="Access denied for one or more orders")
        if o.get("payment_status") == "Completed":
            raise HTTPException(status_code=400, detail=f"Order {o['order_number']} is already paid")
        if o.get("payment_method") != "Online":
            raise HTTPException(status_code=400, detail=f"Order {o['order_number']} payment method is not Online")

    total = sum(o["total_amount"] for o in orders)
    stamp = str(int(datetime.now(timezone.utc).timestamp()))[-6:]
    receipt = f"grp_{orders[0]['order_number'][-8:]}_{stamp}"
    try:
        gateway_order = razorpay_client.create_order(total, receipt, notes={
            "order_ids": json.dumps([str(o["_id"]) for o in orders]),
            "user_id": str(user_id),
        })
    except razorpay_client.PaymentGatewayError as exc:
        logger.error("Could not create gateway order for %s: %s", target_ids, exc)
        raise HTTPException(status_code=500, detail="Failed to create payment order")

    payment_ids = []
    for o in orders:
        payment = PaymentSchema(
            order=o["_id"], user=user_id, store=o["store"], amount=o["total_amount"],
            payment_method="Online", payment_gateway="Razorpay",
            gateway_order_id=gateway_order["id"], metadata={"group": gateway_order["id"]},
        )
        payment_id = create_document("payment", payment)
        db["order"].update_one({"_id": o["_id"]}, {"$set": {"payment_id": to_obj_id(payment_id)}})
        payment_ids.append(payment_id)

    return ok(
        "Razorpay order created successfully",
        razorpay_order=_gateway_order_summary(gateway_order),
        payment_ids=payment_ids,
        key_id=config.RAZORPAY_KEY_ID,
    )


@router.post("/verify")
def verify_razorpay_payment(payload: VerifyPaymentRequest, current_user=Depends(get_current_user)):
    target_ids = payload.payment_ids or ([payload.payment_id] if payload.payment_id else [])
    if not (payload.razorpay_order_id and payload.razorpay_payment_id and payload.razorpay_signature and target_ids):
        raise HTTPException(status_code=400, detail="Missing payment verification details")
    if not all(is_obj_id(i) for i in target_ids):
        raise HTTPException(status_code=404, detail="One or more payment records not found")

    payments = list(db["payment"].find({"_id": {"$in": [to_obj_id(i) for i in target_ids]}}))
    if len(payments) != len(set(target_ids)):
        raise HTTPException(status_code=404, detail="One or more payment records not found")
    orders = list(db["order"].find({"_id": {"$in": [p["order"] for p in payments]}}))
    user_id = to_obj_id(current_user["id"])
    if any(o["user"] != user_id for o in orders):
        raise HTTPException(status_code=403, detail="Access denied")
    if any(p.get("gateway_order_id") != payload.razorpay_order_id for p in payments):
        raise HTTPException(status_code=400, detail="Payment records do not belong to this gateway order")
    if any(p.get("payment_status") != "Pending" for p in payments):
        raise HTTPException(status_code=400, detail="Payment has already been processed")

    if not razorpay_client.verify_payment_signature(
        payload.razorpay_order_id, payload.razorpay_payment_id, payload.razorpay_signature
    ):
        logger.warning("Signature mismatch for gateway order %s", payload.razorpay_order_id)
        _fail_orders(orders, "Signature verification failed")
        raise HTTPException(status_code=400, detail="Payment verification failed")

    set_payment_status(
        [o["_id"] for o in orders], "Completed",
        gateway_payment_id=payload.razorpay_payment_id,
        gateway_signature=payload.razorpay_signature,
        transaction_id=payload.razorpay_payment_id,
        transaction_date=datetime.now(timezone.utc),
    )
    if orders:
        notifications.payment_success(orders[0])
    logger.info("Payment %s verified for %d orders", payload.razorpay_payment_id, len(orders))
    return ok("Payment verified successfully", orders=[
        {"id": o["_id"], "order_number": o["order_number"], "payment_status": "Completed", "status": o["status"]}
        for o in orders
    ])


def _on_payment_captured(entity: Dict[str, Any]) -> None:
    group = list(db["payment"].find({"gateway_order_id": entity.get("order_id")}))
    if not group:
        logger.error("No payment record for gateway order %s", entity.get("order_id"))
        return
    if all(p.get("payment_status") == "Completed" for p in group):
        return
    set_payment_status(
        [p["order"] for p in group], "Completed",
        gateway_payment_id=entity.get("id"),
        transaction_id=entity.get("id"),
        transaction_date=datetime.now(timezone.utc),
    )


def _on_payment_failed(entity: Dict[str, Any]) -> None:
    group = list(db["payment"].find({"gateway_order_id": entity.get("order_id")}))
    if not group:
        logger.error("No payment record for gateway order %s", entity.get("order_id"))
        return
    orders = list(db["order"].find({"_id": {"$in": [p["order"] for p in group]}}))
    _fail_orders(orders, entity.get("error_description") or "Payment failed")


def _on_refund_created(entity: Dict[str, Any]) -> None:
    payment = db["payment"].find_one({"gateway_payment_id": entity.get("payment_id")})
    if not payment:
        logger.error("No payment record for gateway payment %s", entity.get("payment_id"))
        return
    now = datetime.now(timezone.utc)
    db["payment"].update_one({"_id": payment["_id"]}, {"$set": {
        "payment_status": "Refunded",
        "refund_amount": (entity.get("amount") or 0) / 100,
        "refund_transaction_id": entity.get("id"),
        "refund_date": now,
        "updated_at": now,
    }})
    db["order"].update_one({"_id": payment["order"]}, {"$set": {"payment_status": "Refunded", "updated_at": now}})


WEBHOOK_HANDLERS = {
    "payment.captured": ("payment", _on_payment_captured),
    "payment.failed": ("payment", _on_payment_failed),
    "refund.created": ("refund", _on_refund_created),
}


@router.post("/webhook/razorpay")
async def handle_razorpay_webhook(request: Request):
    raw = await request.body()
    if not razorpay_client.verify_webhook_signature(raw, request.headers.get("x-razorpay-signature")):
        logger.error("Webhook signature verification failed")
        return JSONResponse(status_code=400, content={"success": False, "message": "Invalid signature"})

    try:
        body = json.loads(raw)
    except ValueError:
        return JSONResponse(status_code=400, content={"success": False, "message": "Invalid payload"})
    event = body.get("event")
    logger.info("Webhook received: %s", event)
    handler = WEBHOOK_HANDLERS.get(event)
    if handler is None:
        logger.info("Unhandled webhook event: %s", event)
    else:
        kind, func = handler
        entity = ((body.get("payload") or {}).get(kind) or {}).get("entity") or {}
        func(entity)
    return {"success": True, "message": "Webhook processed"}


@router.post("/retry/{order_id}")
def retry_payment(order_id: str, current_user=Depends(get_current_user)):
    order = get_order_or_404(to_obj_id(order_id))
    if order["user"] != to_obj_id(current_user["id"]):
        raise HTTPException(status_code=403, detail="Access denied. You can only retry payment for your own orders")
    if order.get("payment_status") not in ("Pending", "Failed"):
        raise HTTPException(status_code=400, detail=f"Cannot retry payment. Current payment status: {order.get('payment_status')}")
    if order.get("payment_method") != "Online":
        raise HTTPException(status_code=400, detail="Payment retry is only available for online payments")
    if order["status"] == "Cancelled":
        raise HTTPException(status_code=400, detail="Cannot retry payment for a cancelled order")

    stamp = str(int(datetime.now(timezone.utc).timestamp()))
    try:
        gateway_order = razorpay_client.create_order(
            order["total_amount"], f"retry_{order['_id']}_{stamp}",
            notes={"order_id": str(order["_id"]), "user_id": current_user["id"], "retry": "true"},
        )
    except razorpay_client.PaymentGatewayError as exc:
        logger.error("Could not create retry gateway order for %s: %s", order["_id"], exc)
        raise HTTPException(status_code=500, detail="Failed to create payment order")

    payment = db["payment"].find_one({"_id": order.get("payment_id")}) if order.get("payment_id") else None
    if payment:
        db["payment"].update_one({"_id": payment["_id"]}, {"$set": {
            "gateway_order_id": gateway_order["id"],
            "payment_status": "Pending",
            "notes": "Payment retry initiated",
            "updated_at": datetime.now(timezone.utc),
        }})
        payment_id = str(payment["_id"])
    else:
        payment_id = create_document("payment", PaymentSchema(
            order=order["_id"], user=order["user"], store=order["store"], amount=order["total_amount"],
            payment_method="Online", payment_gateway="Razorpay", gateway_order_id=gateway_order["id"],
        ))
        db["order"].update_one({"_id": order["_id"]}, {"$set": {"payment_id": to_obj_id(payment_id)}})
    db["order"].update_one({"_id": order["_id"]}, {"$set": {"payment_status": "Pending"}})

    return ok(
        "Payment retry initiated successfully",
        razorpay_order=_gateway_order_summary(gateway_order),
        payment_id=payment_id,
    )


@router.get("/{order_id}")
def get_payment_details(order_id: str, current_user=Depends(get_current_user)):
    order = get_order_or_404(to_obj_id(order_id))
    if current_user.get("role") in ("User", "Merchant"):
        check_order_access(order, current_user)
    payment = db["payment"].find_one({"order": order["_id"]})
    if not payment:
        raise HTTPException(status_code=404, detail="Payment record not found")

    result = sanitize(payment)
    user = db["user"].find_one({"_id": payment["user"]}, {"name": 1, "phone": 1, "email": 1})
    store = db["store"].find_one({"_id": payment["store"]}, {"store_name": 1})
    result["user"] = sanitize(user) or str(payment["user"])
    result["store"] = sanitize(store) or str(payment["store"])
    return ok("Payment details retrieved successfully", payment=result)
