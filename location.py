"""
Coordinates, distances and Google Maps lookups.

Lookups return None when the API key is missing or the call fails; callers
treat a missing location as "unknown" rather than an error.
"""

import logging
import re
from math import asin, cos, radians, sin, sqrt
from typing import Any, Dict, Optional

import requests

import config

logger = logging.getLogger(__name__)

GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"
DIRECTIONS_URL = "https://maps.googleapis.com/maps/api/directions/json"

_NUM = r"(-?\d+(?:\.\d+)?)"
MAP_LINK_PATTERNS = [
    re.compile(r"[?&]q=" + _NUM + r"\s*,\s*" + _NUM),
    re.compile(r"@" + _NUM + r"," + _NUM + r","),
    re.compile(r"/@" + _NUM + r"," + _NUM),
    re.compile(r"[?&]ll=" + _NUM + r"," + _NUM),
]


def is_valid_coordinates(lat: Any, lng: Any) -> bool:
    if isinstance(lat, bool) or isinstance(lng, bool):
        return False
    if not isinstance(lat, (int, float)) or not isinstance(lng, (int, float)):
        return False
    return -90 <= lat <= 90 and -180 <= lng <= 180


def haversine_km(lat1, lon1, lat2, lon2):
    if None in (lat1, lon1, lat2, lon2):
        return None
    r = 6371.0
    dlat = radians(lat2 - lat1)
    dlon = radians(lon2 - lon1)
    a = sin(dlat / 2) ** 2 + cos(radians(lat1)) * cos(radians(lat2)) * sin(dlon / 2) ** 2
    return 2 * r * asin(sqrt(a))


def extract_coordinates_from_map_link(map_link: Optional[str]) -> Optional[Dict[str, float]]:
    if not map_link:
        return None
    for pattern in MAP_LINK_PATTERNS:
        match = pattern.search(map_link)
        if match:
            lat, lng = float(match.group(1)), float(match.group(2))
            if is_valid_coordinates(lat, lng):
                return {"lat": lat, "lng": lng}
    return None


def geocode_address(address: Optional[str]) -> Optional[Dict[str, Any]]:
    if not address:
        return None
    if not config.GOOGLE_MAPS_API_KEY:
        logger.warning("GOOGLE_MAPS_API_KEY not set; skipping geocoding")
        return None
    try:
        response = requests.get(
            GEOCODE_URL,
            params={"address": address, "key": config.GOOGLE_MAPS_API_KEY},
            timeout=10,
        )
        data = response.json()
    except (requests.RequestException, ValueError) as exc:
        logger.error("Geocoding failed for %r: %s", address, exc)
        return None
    if data.get("status") != "OK" or not data.get("results"):
        logger.info("Geocoding returned %s for %r", data.get("status"), address)
        return None
    result = data["results"][0]
    loc = result["geometry"]["location"]
    return {"lat": loc["lat"], "lng": loc["lng"], "formatted_address": result.get("formatted_address")}


def get_store_location(store: Dict[str, Any]) -> Dict[str, Any]:
    """Resolve a store's pickup location: map link first, then the street address."""
    address = store.get("address")
    coords = extract_coordinates_from_map_link(store.get("map_link"))
    if not coords:
        coords = geocode_address(address)
    if coords:
        return {"lat": coords["lat"], "lng": coords["lng"], "address": address}
    return {"lat": None, "lng": None, "address": address}


def get_delivery_location(address: str) -> Dict[str, Any]:
    coords = geocode_address(address)
    if coords:
        return {"lat": coords["lat"], "lng": coords["lng"], "address": address}
    return {"lat": None, "lng": None, "address": address}


class DirectionsError(Exception):
    def __init__(self, status: str, error_message: Optional[str] = None):
        super().__init__(status)
        self.status = status
        self.error_message = error_message


def get_directions(origin: str, destination: str) -> Dict[str, Any]:
    """Fetch a driving route. Raises DirectionsError when Google reports a non-OK status."""
    response = requests.get(
        DIRECTIONS_URL,
        params={"origin": origin, "destination": destination, "key": config.GOOGLE_MAPS_API_KEY,
                "mode": "driving", "alternatives": "false"},
        timeout=15,
    )
    data = response.json()
    if data.get("status") != "OK" or not data.get("routes"):
        raise DirectionsError(data.get("status", "UNKNOWN_ERROR"), data.get("error_message"))
    route = data["routes"][0]
    leg = route["legs"][0]
    return {
        "polyline": route["overview_polyline"]["points"],
        "distance": leg["distance"],
        "duration": leg["duration"],
        "start_address": leg.get("start_address"),
        "end_address": leg.get("end_address"),
    }
