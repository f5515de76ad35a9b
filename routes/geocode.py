import logging
from typing import Any, Optional

import requests
from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel

import config
import location
from auth import get_current_user
from utils import ok

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["maps"])


class GeocodeRequest(BaseModel):
    address: Any = None


@router.post("/geocode")
def geocode(payload: GeocodeRequest, current_user=Depends(get_current_user)):
    if not payload.address or not isinstance(payload.address, str):
        raise HTTPException(status_code=400, detail="Address is required and must be a string")
    coordinates = location.geocode_address(payload.address)
    if not coordinates:
        raise HTTPException(status_code=404, detail="Could not geocode the provided address")
    return ok("Address geocoded successfully", data=coordinates)


@router.get("/directions")
def get_directions(origin: Optional[str] = None, destination: Optional[str] = None,
                   current_user=Depends(get_current_user)):
    if not origin or not destination:
        raise HTTPException(status_code=400, detail="Origin and destination are required")
    if not config.GOOGLE_MAPS_API_KEY:
        raise HTTPException(status_code=500, detail="Google Maps API key not configured")
    try:
        route = location.get_directions(origin, destination)
    except location.DirectionsError as exc:
        logger.error("Google Directions API error: %s %s", exc.status, exc.error_message)
        return JSONResponse(status_code=400, content={
            "success": False,
            "message": f"Directions API error: {exc.status}",
            "error": exc.error_message,
        })
    except (requests.RequestException, ValueError) as exc:
        logger.error("Directions request failed: %s", exc)
        raise HTTPException(status_code=500, detail="Failed to get directions")
    return ok("Directions retrieved successfully", data=route)
