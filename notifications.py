"""
In-app notifications for order, delivery and payment events.

Every helper logs and returns None on failure so a notification problem never
breaks the operation that triggered it.
"""

import logging
from typing import Any, Dict, Optional

from pymongo.errors import PyMongoError

from database import create_document, db
from schemas import Notification

logger = logging.getLogger(__name__)


def _money(amount: Any) -> str:
    return f"₹{float(amount or 0):.2f}"


def notify(recipient: Any, role: str, type_: str, title: str, message: str,
           order: Optional[Dict] = None, store: Any = None, delivery: Any = None,
           data: Optional[Dict[str, Any]] = None) -> Optional[str]:
    if not recipient:
        return None
    try:
        doc = Notification(
            recipient=recipient,
            recipient_role=role,
            type=type_,
            title=title,
            message=message,
            order=order["_id"] if order else None,
            store=store if store is not None else (order or {}).get("store"),
            delivery=delivery,
            data=data or {},
        )
        return create_document("notification", doc)
    except (PyMongoError, RuntimeError, ValueError) as exc:
        logger.error("Failed to create %s notification for %s: %s", type_, recipient, exc)
        return None


def _merchant_of(order: Dict) -> Any:
    store = db["store"].find_one({"_id": order.get("store")}, {"merchant_id": 1})
    return store.get("merchant_id") if store else None


def order_placed(order: Dict) -> None:
    num = order["order_number"]
    notify(order["user"], "User", "ORDER_PLACED", "Order Placed Successfully!",
           f"Your order {num} of {_money(order['total_amount'])} has been placed.", order)
    notify(_merchant_of(order), "Merchant", "ORDER_PLACED", "New Order Received!",
           f"You have a new order {num} worth {_money(order['total_amount'])}.", order)


def order_accepted(order: Dict) -> None:
    notify(order["user"], "User", "ORDER_ACCEPTED", "Order Accepted!",
           f"Your order {order['order_number']} has been accepted by the store.", order)


def order_rejected(order: Dict, reason: str) -> None:
    notify(order["user"], "User", "ORDER_REJECTED", "Order Rejected",
           f"Your order {order['order_number']} was rejected: {reason}", order)


def order_ready(order: Dict) -> None:
    notify(order["user"], "User", "ORDER_READY", "Order Ready for Pickup!",
           f"Your order {order['order_number']} is packed and waiting for a delivery partner.", order)


def delivery_assigned(order: Dict, partner: Dict, delivery_id: Any = None) -> None:
    name = partner.get("name") or "A delivery partner"
    notify(order["user"], "User", "DELIVERY_ASSIGNED", "Delivery Partner Assigned!",
           f"{name} will deliver your order {order['order_number']}.", order, delivery=delivery_id)
    notify(partner["_id"], "Delivery", "DELIVERY_ASSIGNED", "New Delivery Assignment!",
           f"You have been assigned order {order['order_number']}.", order, delivery=delivery_id,
           data={"pickup_location": order.get("pickup_location"), "delivery_location": order.get("delivery_location")})
    notify(_merchant_of(order), "Merchant", "DELIVERY_ASSIGNED", "Delivery Partner Assigned!",
           f"{name} will pick up order {order['order_number']}.", order, delivery=delivery_id)


def order_picked_up(order: Dict) -> None:
    notify(order["user"], "User", "ORDER_PICKED_UP", "Order Picked Up!",
           f"Your order {order['order_number']} is on its way.", order)


def order_delivered(order: Dict) -> None:
    notify(order["user"], "User", "ORDER_DELIVERED", "Order Delivered!",
           f"Your order {order['order_number']} has been delivered. Enjoy!", order)
    notify(_merchant_of(order), "Merchant", "ORDER_DELIVERED", "Order Delivered!",
           f"Order {order['order_number']} was delivered to the customer.", order)


def payment_success(order: Dict) -> None:
    notify(order["user"], "User", "PAYMENT_SUCCESS", "Payment Successful!",
           f"Payment of {_money(order['total_amount'])} for order {order['order_number']} received.", order)


def payment_failed(order: Dict) -> None:
    notify(order["user"], "User", "PAYMENT_FAILED", "Payment Failed",
           f"Payment for order {order['order_number']} failed. The order has been cancelled.", order)
