import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel, EmailStr, Field

import auth
import config
import sms
from auth import create_access_token, get_current_user, normalize_phone, normalize_role
from database import create_document, db
from schemas import Address, Gender, User as UserSchema
from utils import as_utc, ok, sanitize, sanitize_text, to_obj_id

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/user", tags=["user"])


class OnboardingRequest(BaseModel):
    phone: str = Field(..., min_length=10, max_length=20)


class VerifyOtpRequest(BaseModel):
    phone: str = Field(..., min_length=10, max_length=20)
    otp: str = Field(..., pattern=r"^\d{4}$")


class CompleteProfileRequest(BaseModel):
    name: str = Field(..., min_length=2, max_length=50)
    role: str
    gender: Optional[Gender] = None
    email: Optional[EmailStr] = None
    avatar: Optional[str] = None


class AddressesRequest(BaseModel):
    addresses: List[Address] = Field(..., max_length=10)


def _public_user(user: dict) -> dict:
    u = sanitize(user)
    return {
        "id": u["id"],
        "phone": u["phone"],
        "name": u.get("name"),
        "email": u.get("email"),
        "gender": u.get("gender"),
        "avatar": u.get("avatar"),
        "role": u.get("role"),
        "addresses": u.get("addresses", []),
        "is_phone_verified": u.get("is_phone_verified", False),
        "is_profile_complete": u.get("is_profile_complete", False),
    }


@router.post("/onboarding")
def onboarding(payload: OnboardingRequest, response: Response):
    phone = normalize_phone(payload.phone)
    user = db["user"].find_one({"phone": phone})

    otp = auth.generate_otp()
    otp_expiry = datetime.now(timezone.utc) + timedelta(minutes=config.OTP_EXPIRE_MINUTES)
    if not sms.send_phone_otp(phone, otp):
        raise HTTPException(status_code=400, detail="Failed to send OTP. Please try again.")

    if not user:
        doc = UserSchema(phone=phone, otp_hash=auth.hash_otp(otp), otp_expiry=otp_expiry).model_dump()
        create_document("user", doc)
        logger.info("New user onboarded: %s", phone)
        response.status_code = 201
        return ok("User created successfully. OTP sent to your phone.", user=_public_user(doc))

    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"otp_hash": auth.hash_otp(otp), "otp_expiry": otp_expiry, "updated_at": datetime.now(timezone.utc)}},
    )
    return ok("OTP sent successfully to your phone.", user=_public_user(user))


@router.post("/verify-otp")
def verify_otp(payload: VerifyOtpRequest):
    phone = normalize_phone(payload.phone)
    user = db["user"].find_one({"phone": phone})
    if not user:
        raise HTTPException(status_code=400, detail="User not found. Please request OTP first.")
    if not user.get("otp_hash"):
        raise HTTPException(status_code=400, detail="No OTP found. Please request a new OTP.")
    expiry = as_utc(user.get("otp_expiry"))
    if expiry and expiry < datetime.now(timezone.utc):
        raise HTTPException(status_code=400, detail="OTP has expired. Please request a new OTP.")
    if not auth.verify_otp(payload.otp, user["otp_hash"]):
        raise HTTPException(status_code=400, detail="Incorrect OTP. Please try again.")

    db["user"].update_one(
        {"_id": user["_id"]},
        {"$set": {"is_phone_verified": True, "updated_at": datetime.now(timezone.utc)},
         "$unset": {"otp_hash": "", "otp_expiry": ""}},
    )
    user["is_phone_verified"] = True
    token = create_access_token({"sub": str(user["_id"])})
    return ok(
        "OTP verified successfully. You are now logged in.",
        user=_public_user(user),
        token=token,
        is_profile_complete=user.get("is_profile_complete", False),
    )


@router.get("/profile")
def get_profile(current_user=Depends(get_current_user)):
    user = db["user"].find_one({"_id": to_obj_id(current_user["id"])})
    return ok("Profile retrieved successfully", user=_public_user(user))


@router.post("/complete-profile")
def complete_profile(payload: CompleteProfileRequest, current_user=Depends(get_current_user)):
    role = normalize_role(payload.role)
    if current_user.get("is_profile_complete") and role != current_user.get("role"):
        raise HTTPException(status_code=400, detail="Role cannot be changed after the profile is complete")
    if current_user.get("role") == "Merchant" and role != "Merchant":
        if db["store"].find_one({"merchant_id": to_obj_id(current_user["id"])}):
            raise HTTPException(status_code=400, detail="Delete your store before changing role")

    updates = {
        "name": sanitize_text(payload.name),
        "role": role,
        # merchants finish onboarding by creating their store
        "is_profile_complete": role != "Merchant" or bool(current_user.get("is_profile_complete")),
        "updated_at": datetime.now(timezone.utc),
    }
    if payload.gender:
        updates["gender"] = payload.gender
    if payload.email:
        updates["email"] = payload.email
    if payload.avatar:
        updates["avatar"] = payload.avatar
    if role == "Delivery":
        updates.setdefault("is_busy", False)
        updates["is_online"] = True

    db["user"].update_one({"_id": to_obj_id(current_user["id"])}, {"$set": updates})
    user = db["user"].find_one({"_id": to_obj_id(current_user["id"])})
    return ok("Profile updated successfully", user=_public_user(user))


@router.put("/addresses")
def update_addresses(payload: AddressesRequest, current_user=Depends(get_current_user)):
    addresses = []
    for a in payload.addresses:
        d = a.model_dump()
        d["line"] = sanitize_text(d["line"])
        addresses.append(d)
    db["user"].update_one(
        {"_id": to_obj_id(current_user["id"])},
        {"$set": {"addresses": addresses, "updated_at": datetime.now(timezone.utc)}},
    )
    return ok("Addresses updated successfully", addresses=addresses)
