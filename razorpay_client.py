"""Thin Razorpay REST client plus signature checks."""

import hashlib
import hmac
import logging
from typing import Any, Dict, Optional

import requests

import config

logger = logging.getLogger(__name__)

API_BASE = "https://api.razorpay.com/v1"


class PaymentGatewayError(Exception):
    pass


def to_paise(amount: float) -> int:
    return int(round(float(amount) * 100))


def _post(path: str, payload: Dict[str, Any]) -> Dict[str, Any]:
    if not config.RAZORPAY_KEY_ID or not config.RAZORPAY_KEY_SECRET:
        raise PaymentGatewayError("Razorpay credentials are not configured")
    try:
        response = requests.post(
            f"{API_BASE}/{path}",
            json=payload,
            auth=(config.RAZORPAY_KEY_ID, config.RAZORPAY_KEY_SECRET),
            timeout=30,
        )
    except requests.RequestException as exc:
        raise PaymentGatewayError(f"Razorpay request failed: {exc}") from exc
    if response.status_code >= 400:
        logger.error("Razorpay %s failed: %s", path, response.text)
        raise PaymentGatewayError(f"Razorpay returned {response.status_code}")
    return response.json()


def create_order(amount: float, receipt: str, notes: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    order = _post("orders", {
        "amount": to_paise(amount),
        "currency": "INR",
        "receipt": receipt[:40],
        "notes": notes or {},
    })
    logger.info("Created Razorpay order %s for receipt %s", order.get("id"), receipt)
    return order


def refund_payment(payment_id: str, amount: float, notes: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    refund = _post(f"payments/{payment_id}/refund", {
        "amount": to_paise(amount),
        "speed": "optimum",
        "notes": notes or {},
    })
    logger.info("Refund %s created for payment %s", refund.get("id"), payment_id)
    return refund


def _hmac_hex(secret: str, message: bytes) -> str:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).hexdigest()


def verify_payment_signature(gateway_order_id: str, gateway_payment_id: str, signature: str) -> bool:
    if not config.RAZORPAY_KEY_SECRET or not signature:
        return False
    expected = _hmac_hex(config.RAZORPAY_KEY_SECRET, f"{gateway_order_id}|{gateway_payment_id}".encode("utf-8"))
    return hmac.compare_digest(expected, signature)


def verify_webhook_signature(raw_body: bytes, signature: Optional[str]) -> bool:
    if not config.RAZORPAY_WEBHOOK_SECRET or not signature:
        return False
    return hmac.compare_digest(_hmac_hex(config.RAZORPAY_WEBHOOK_SECRET, raw_body), signature)
