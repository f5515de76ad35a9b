import logging

import requests

import config

logger = logging.getLogger(__name__)

TWO_FACTOR_URL = "https://2factor.in/API/V1/{key}/SMS/{phone}/{otp}"


def send_phone_otp(phone: str, otp: str) -> bool:
    """Send a login OTP through the 2Factor SMS gateway. Returns False on any failure."""
    if not config.TWO_FACTOR_API_KEY:
        logger.error("TWO_FACTOR_API_KEY is not configured; cannot send OTP to %s", phone)
        return False
    digits = phone.lstrip("+")
    url = TWO_FACTOR_URL.format(key=config.TWO_FACTOR_API_KEY, phone=digits, otp=otp)
    try:
        response = requests.get(url, timeout=20)
        data = response.json()
    except (requests.RequestException, ValueError) as exc:
        logger.error("2Factor request failed for %s: %s", phone, exc)
        return False
    if data.get("Status") != "Success":
        logger.error("2Factor rejected OTP for %s: %s", phone, data.get("Details"))
        return False
    return True
