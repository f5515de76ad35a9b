"""
Delivery partner assignment.

A partner is available when they are an active, online Delivery user who is
not busy. Partners and orders are both claimed with conditional updates, so
two concurrent assigners can never hand the same partner two orders or the
same order two partners.
"""

import logging
from datetime import datetime, timedelta, timezone
from threading import Event, RLock, Thread
from typing import Any, Dict, List, Optional, Tuple

from pymongo import ASCENDING, ReturnDocument
from pymongo.errors import PyMongoError

import config
import notifications
from database import create_document, db
from location import haversine_km, is_valid_coordinates
from order_utils import add_history_note, transition_order
from schemas import Delivery
from utils import as_utc

logger = logging.getLogger(__name__)

WIDEN_RADIUS_AFTER = timedelta(seconds=60)
UNASSIGNED_BATCH = 50
ONLINE_PARTNER_BATCH = 10

AVAILABLE_PARTNER_QUERY = {
    "role": "Delivery",
    "is_active": True,
    "is_online": {"$ne": False},
    "is_busy": {"$ne": True},
}


def find_available_partners() -> List[Dict[str, Any]]:
    return list(db["user"].find(AVAILABLE_PARTNER_QUERY).sort("created_at", ASCENDING))


def _pickup_coords(order: Dict[str, Any]) -> Tuple[Optional[float], Optional[float]]:
    pickup = order.get("pickup_location") or {}
    lat, lng = pickup.get("lat"), pickup.get("lng")
    if is_valid_coordinates(lat, lng):
        return lat, lng
    return None, None


def _by_distance(lat: float, lng: float, partners: List[Dict[str, Any]]) -> List[Tuple[float, Dict[str, Any]]]:
    ranked = []
    for partner in partners:
        loc = partner.get("current_location") or {}
        if is_valid_coordinates(loc.get("lat"), loc.get("lng")):
            ranked.append((haversine_km(lat, lng, loc["lat"], loc["lng"]), partner))
    ranked.sort(key=lambda pair: pair[0])
    return ranked


def radius_for(order: Dict[str, Any], now: Optional[datetime] = None) -> float:
    now = now or datetime.now(timezone.utc)
    waiting_since = as_utc(order.get("ready_at") or order.get("created_at"))
    if waiting_since and now - waiting_since >= WIDEN_RADIUS_AFTER:
        return config.EXTENDED_ASSIGNMENT_RADIUS_KM
    return config.ASSIGNMENT_RADIUS_KM


def select_partner(order: Dict[str, Any], partners: Optional[List[Dict[str, Any]]] = None,
                   nearby_only: bool = False) -> Tuple[Optional[Dict[str, Any]], Optional[float]]:
    """Pick a partner for an order and return (partner, distance_km).

    Partners who already declined the order are skipped.
    With nearby_only the partner must be within the base radius. Otherwise the
    radius widens for orders that have waited a while, then falls back to the
    closest partner with a known location. Orders without pickup coordinates
    go to the first available partner.
    """
    partners = find_available_partners() if partners is None else partners
    declined = set(order.get("rejected_by") or [])
    partners = [p for p in partners if p["_id"] not in declined]
    if not partners:
        return None, None
    lat, lng = _pickup_coords(order)
    if lat is None:
        return partners[0], None

    ranked = _by_distance(lat, lng, partners)
    radius = config.ASSIGNMENT_RADIUS_KM if nearby_only else radius_for(order)
    for distance, partner in ranked:
        if distance <= radius:
            return partner, distance
    if nearby_only or not ranked:
        return None, None
    return ranked[0][1], ranked[0][0]


def assign_partner(order: Dict[str, Any], partner: Dict[str, Any], assigned_by: Any = None,
                   note: Optional[str] = None) -> Optional[Tuple[Dict[str, Any], str]]:
    """Claim partner and order, then create the delivery. Returns (order, delivery_id) or None."""
    claimed = db["user"].find_one_and_update(
        {"_id": partner["_id"], "role": "Delivery", "is_busy": {"$ne": True}},
        {"$set": {"is_busy": True, "current_order": order["_id"], "updated_at": datetime.now(timezone.utc)}},
        return_document=ReturnDocument.AFTER,
    )
    if not claimed:
        logger.info("Partner %s was claimed by another assignment", partner["_id"])
        return None

    updated = transition_order(
        order["_id"], "ReadyForPickup", "Assigned",
        updated_by=assigned_by,
        note=note or f"Assigned to {claimed.get('name') or 'delivery partner'}",
        set_fields={"delivery_person": claimed["_id"]},
        extra_filter={"delivery_person": None},
    )
    if not updated:
        free_partner(claimed["_id"])
        logger.info("Order %s was no longer assignable", order["_id"])
        return None

    delivery_id = create_delivery_record(updated, claimed["_id"])
    notifications.delivery_assigned(updated, claimed, delivery_id)
    logger.info("Assigned order %s to partner %s", updated.get("order_number"), claimed["_id"])
    return updated, delivery_id


def create_delivery_record(order: Dict[str, Any], partner_id: Any, status: str = "Pending") -> str:
    pickup = (order.get("pickup_location") or {}).get("address")
    if not pickup:
        store = db["store"].find_one({"_id": order["store"]}, {"address": 1}) or {}
        pickup = store.get("address", "")
    delivery = Delivery(
        delivery_person=partner_id,
        order=order["_id"],
        status=status,
        pickup_address=pickup,
        delivery_address=order["shipping_address"],
        estimated_delivery_time=datetime.now(timezone.utc) + timedelta(hours=1),
        delivery_fee=order.get("delivery_fee", 0),
    )
    return create_document("delivery", delivery)


def free_partner(partner_id: Any) -> None:
    db["user"].update_one(
        {"_id": partner_id},
        {"$set": {"is_busy": False, "current_order": None, "updated_at": datetime.now(timezone.utc)}},
    )


def auto_assign(order: Dict[str, Any], assigned_by: Any = None,
                nearby_only: bool = True) -> Optional[Tuple[Dict[str, Any], str]]:
    """Assign a partner to a ready order, or record that the order is waiting for one."""
    partner, distance = select_partner(order, nearby_only=nearby_only)
    if partner:
        note = f"Auto-assigned partner {distance:.2f} km away" if distance is not None else None
        result = assign_partner(order, partner, assigned_by=assigned_by, note=note)
        if result:
            return result
    add_history_note(
        order["_id"], order.get("status", "ReadyForPickup"),
        f"Waiting for delivery partner within {config.ASSIGNMENT_RADIUS_KM:g} km",
        updated_by=assigned_by,
    )
    logger.warning("No delivery partner available for order %s", order.get("order_number"))
    return None


def unassigned_orders(limit: int) -> List[Dict[str, Any]]:
    return list(
        db["order"].find({"status": "ReadyForPickup", "delivery_person": None})
        .sort("created_at", ASCENDING)
        .limit(limit)
    )


def process_unassigned_orders() -> int:
    assigned = 0
    for order in unassigned_orders(UNASSIGNED_BATCH):
        partner, _ = select_partner(order)
        if partner and assign_partner(order, partner, note="Assigned by scheduler"):
            assigned += 1
    if assigned:
        logger.info("Scheduler assigned %d waiting orders", assigned)
    return assigned


def assign_orders_to_newly_online_partner(partner_id: Any) -> Optional[Tuple[Dict[str, Any], str]]:
    partner = db["user"].find_one({"_id": partner_id, **AVAILABLE_PARTNER_QUERY})
    if not partner:
        return None
    orders = [o for o in unassigned_orders(ONLINE_PARTNER_BATCH) if partner_id not in (o.get("rejected_by") or [])]
    if not orders:
        return None

    loc = partner.get("current_location") or {}
    chosen = orders[0]
    if is_valid_coordinates(loc.get("lat"), loc.get("lng")):
        ranked = []
        for order in orders:
            lat, lng = _pickup_coords(order)
            if lat is not None:
                ranked.append((haversine_km(loc["lat"], loc["lng"], lat, lng), order))
        ranked.sort(key=lambda pair: pair[0])
        nearby = [o for d, o in ranked if d <= config.ASSIGNMENT_RADIUS_KM]
        if nearby:
            chosen = nearby[0]
        elif ranked:
            chosen = ranked[0][1]
    return assign_partner(chosen, partner, note="Assigned when partner came online")


class AssignmentScheduler:
    """Periodically retries assignment for orders still waiting for a partner."""

    def __init__(self, interval: float):
        self._interval = interval
        self._stop = Event()
        self._thread: Optional[Thread] = None
        self._lock = RLock()

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._lock:
            if self.running:
                return
            self._stop.clear()
            self._thread = Thread(target=self._loop, name="assignment-scheduler", daemon=True)
            self._thread.start()
        logger.info("Assignment scheduler started (every %ss)", self._interval)

    def stop(self) -> None:
        with self._lock:
            if not self._thread:
                return
            self._stop.set()
            self._thread.join(timeout=5)
            self._thread = None
        logger.info("Assignment scheduler stopped")

    def run_once(self) -> int:
        try:
            return process_unassigned_orders()
        except PyMongoError:
            logger.exception("Assignment pass failed")
            return 0

    def _loop(self) -> None:
        while not self._stop.wait(self._interval):
            self.run_once()
