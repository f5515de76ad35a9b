import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

import config
from auth import require_role
from database import db
from utils import as_utc, ok, to_obj_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/settlement", tags=["settlement"])

DEFAULT_REPORT_DAYS = 30


class PayoutRequest(BaseModel):
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


def platform_fee(items_value: float) -> float:
    return round(items_value * config.PLATFORM_FEE_PERCENT / 100, 2)


def _period(start_date: Optional[datetime], end_date: Optional[datetime]) -> Tuple[datetime, datetime]:
    end = as_utc(end_date) or datetime.now(timezone.utc)
    start = as_utc(start_date) or end - timedelta(days=DEFAULT_REPORT_DAYS)
    if start > end:
        raise HTTPException(status_code=400, detail="start_date must be before end_date")
    return start, end


def _merchant_store(merchant: Dict[str, Any]) -> Dict[str, Any]:
    store = db["store"].find_one({"merchant_id": to_obj_id(merchant["id"])})
    if not store:
        raise HTTPException(status_code=404, detail="Store not found for this merchant")
    return store


@router.get("/report")
def get_settlement_report(
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    merchant=Depends(require_role("Merchant")),
):
    store = _merchant_store(merchant)
    start, end = _period(start_date, end_date)

    orders = list(db["order"].find({
        "store": store["_id"],
        "status": "Delivered",
        "delivery_date": {"$gte": start, "$lte": end},
    }).sort("delivery_date", -1))
    customers = {
        u["_id"]: u for u in db["user"].find({"_id": {"$in": list({o["user"] for o in orders})}}, {"name": 1, "phone": 1})
    }

    items_value = sum(o["items_total"] for o in orders)
    fee = platform_fee(items_value)
    cod_orders = [o for o in orders if o.get("payment_method") == "COD"]
    online_orders = [o for o in orders if o.get("payment_method") == "Online"]

    cod_payments = list(db["payment"].find({
        "store": store["_id"],
        "payment_method": "COD",
        "cod_collected_at": {"$gte": start, "$lte": end},
    }))
    submitted = [p for p in cod_payments if p.get("cod_submitted_to_store")]
    pending = [p for p in cod_payments if not p.get("cod_submitted_to_store")]

    report = {
        "period": {"start_date": start, "end_date": end},
        "summary": {
            "total_orders": len(orders),
            "total_revenue": sum(o["total_amount"] for o in orders),
            "total_items_value": items_value,
            "total_delivery_fees": sum(o.get("delivery_fee", 0) for o in orders),
            "platform_fee": fee,
            "net_payout": round(items_value - fee, 2),
        },
        "payment_breakdown": {
            "cod": {
                "orders": len(cod_orders),
                "revenue": sum(o["total_amount"] for o in cod_orders),
                "collected": len(submitted),
                "collected_amount": sum(p["amount"] for p in submitted),
                "pending": len(pending),
                "pending_amount": sum(p["amount"] for p in pending),
            },
            "online": {
                "orders": len(online_orders),
                "revenue": sum(o["total_amount"] for o in online_orders),
            },
        },
        "orders": [
            {
                "id": o["_id"],
                "order_number": o["order_number"],
                "order_date": o.get("created_at"),
                "delivery_date": o.get("delivery_date"),
                "customer": {
                    "name": customers.get(o["user"], {}).get("name"),
                    "phone": customers.get(o["user"], {}).get("phone"),
                },
                "items_total": o["items_total"],
                "delivery_fee": o.get("delivery_fee", 0),
                "total_amount": o["total_amount"],
                "payment_method": o.get("payment_method"),
                "payment_status": o.get("payment_status"),
            }
            for o in orders
        ],
    }
    return ok("Settlement report retrieved successfully", report=report)


@router.get("/payout-summary")
def get_payout_summary(merchant=Depends(require_role("Merchant"))):
    store = _merchant_store(merchant)
    payments = list(db["payment"].find({"store": store["_id"], "payment_status": "Completed"}))
    completed = [p for p in payments if p.get("payout_status") == "Completed"]
    pending = [p for p in payments if p.get("payout_status", "Pending") == "Pending"]
    return ok("Payout summary retrieved successfully", summary={
        "completed": {"count": len(completed), "amount": sum(p.get("payout_amount") or 0 for p in completed)},
        "pending": {"count": len(pending), "amount": sum(p["amount"] for p in pending)},
    })


@router.post("/payouts")
def create_payout(payload: PayoutRequest, merchant=Depends(require_role("Merchant"))):
    """Record a payout for paid, delivered orders in the period that have not been paid out yet."""
    store = _merchant_store(merchant)
    start, end = _period(payload.start_date, payload.end_date)

    orders = {
        o["_id"]: o for o in db["order"].find({
            "store": store["_id"],
            "status": "Delivered",
            "delivery_date": {"$gte": start, "$lte": end},
        }, {"items_total": 1})
    }
    payments = list(db["payment"].find({
        "order": {"$in": list(orders)},
        "payment_status": "Completed",
        "payout_status": {"$ne": "Completed"},
    }))

    now = datetime.now(timezone.utc)
    transaction_id = f"PAYOUT-{str(store['_id'])[-6:].upper()}-{now.strftime('%Y%m%d%H%M%S')}"
    count, total = 0, 0.0
    for payment in payments:
        items_value = orders[payment["order"]]["items_total"]
        amount = round(items_value - platform_fee(items_value), 2)
        result = db["payment"].update_one(
            {"_id": payment["_id"], "payout_status": {"$ne": "Completed"}},
            {"$set": {
                "payout_status": "Completed",
                "payout_amount": amount,
                "payout_date": now,
                "payout_transaction_id": transaction_id,
                "updated_at": now,
            }},
        )
        if result.modified_count:
            count += 1
            total += amount

    logger.info("Payout %s recorded for store %s: %d payments, %.2f", transaction_id, store["_id"], count, total)
    return ok(
        f"Payout recorded for {count} payment(s)",
        payout={"transaction_id": transaction_id, "count": count, "amount": round(total, 2),
                "period": {"start_date": start, "end_date": end}},
    )
