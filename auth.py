import logging
import re
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext

import config
from database import db
from utils import is_obj_id, sanitize, to_obj_id

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/user/verify-otp", auto_error=False)

PHONE_RE = re.compile(r"^\+?[1-9]\d{0,15}$")

ROLE_ALIASES = {"user": "User", "customer": "User", "merchant": "Merchant", "delivery": "Delivery"}


def normalize_phone(phone: str) -> str:
    cleaned = re.sub(r"[^\d+]", "", phone or "")
    if not (10 <= len(cleaned) <= 15) or not PHONE_RE.match(cleaned):
        raise HTTPException(status_code=400, detail="Please provide a valid phone number")
    if not cleaned.startswith("+"):
        cleaned = config.DEFAULT_COUNTRY_CODE + cleaned
    return cleaned


def normalize_role(role: str) -> str:
    value = ROLE_ALIASES.get((role or "").strip().lower())
    if not value:
        raise HTTPException(status_code=400, detail="Role must be one of: user, merchant, delivery")
    return value


def generate_otp() -> str:
    return f"{secrets.randbelow(10000):04d}"


def hash_otp(otp: str) -> str:
    return pwd_context.hash(otp)


def verify_otp(otp: str, hashed: str) -> bool:
    return pwd_context.verify(otp, hashed)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=config.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, config.JWT_SECRET, algorithm=config.JWT_ALGORITHM)


async def get_current_user(token: Optional[str] = Depends(oauth2_scheme)):
    if token is None:
        raise HTTPException(status_code=401, detail="No token provided")
    if not token.strip():
        raise HTTPException(status_code=401, detail="Token is missing or invalid")
    try:
        payload = jwt.decode(token, config.JWT_SECRET, algorithms=[config.JWT_ALGORITHM])
    except JWTError:
        raise HTTPException(status_code=401, detail="Invalid token")
    user_id = payload.get("sub")
    if not user_id or not is_obj_id(user_id):
        raise HTTPException(status_code=401, detail="Invalid token")
    user = db["user"].find_one({"_id": to_obj_id(user_id)})
    if not user:
        raise HTTPException(status_code=401, detail="User not found")
    if not user.get("is_phone_verified"):
        raise HTTPException(status_code=401, detail="Phone number not verified")
    if not user.get("is_active", True):
        raise HTTPException(status_code=401, detail="Account is deactivated")
    return sanitize(user)


def require_role(*roles: str):
    async def role_dep(current_user=Depends(get_current_user)):
        if current_user.get("role") not in roles:
            raise HTTPException(
                status_code=403,
                detail=f"Access denied. Required roles: {', '.join(roles)}. Your role: {current_user.get('role')}",
            )
        return current_user
    return role_dep
