import logging
import mimetypes
import os
import uuid
from typing import Any, Dict, Optional
from urllib.parse import unquote, urlparse

import boto3
from botocore.exceptions import BotoCoreError, ClientError

import config

logger = logging.getLogger(__name__)

ALLOWED_FILE_TYPES = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/gif": "gif",
    "image/webp": "webp",
    "video/mp4": "mp4",
    "video/quicktime": "mov",
}
UPLOAD_URL_EXPIRES = 3600

_client = None


def get_client():
    global _client
    if _client is None:
        _client = boto3.client(
            "s3",
            endpoint_url=config.R2_ENDPOINT,
            aws_access_key_id=config.R2_ACCESS_KEY,
            aws_secret_access_key=config.R2_SECRET_KEY,
            region_name="auto",
        )
    return _client


def folder_for(file_type: str, file_name: str) -> str:
    name = (file_name or "").lower()
    if file_type == "application/pdf" or name.endswith(".pdf"):
        return "pdfs"
    if "cover" in name:
        return "cover"
    if "product" in name:
        return "products"
    return "profile"


def build_key(role: str, user_id: str, file_type: str, file_name: str) -> str:
    ext = os.path.splitext(file_name or "")[1].lstrip(".").lower() or ALLOWED_FILE_TYPES[file_type]
    return f"{role.lower()}/{user_id}/{folder_for(file_type, file_name)}/{uuid.uuid4()}.{ext}"


def content_type_for(key: str, fallback: Optional[str] = None) -> str:
    guessed, _ = mimetypes.guess_type(key)
    return guessed or fallback or "application/octet-stream"


def public_url(key: str) -> str:
    return f"{config.R2_PUBLIC_URL.rstrip('/')}/{key}"


def presign_upload(key: str, file_type: str) -> Dict[str, Any]:
    upload_url = get_client().generate_presigned_url(
        "put_object",
        Params={"Bucket": config.R2_BUCKET_NAME, "Key": key, "ContentType": content_type_for(key, file_type)},
        ExpiresIn=UPLOAD_URL_EXPIRES,
    )
    return {"upload_url": upload_url, "file_url": public_url(key), "key": key, "expires_in": UPLOAD_URL_EXPIRES}


def key_from_url(file_url: str) -> str:
    return unquote(urlparse(file_url).path.lstrip("/"))


def delete_file(file_url: str) -> bool:
    key = key_from_url(file_url)
    if not key:
        return False
    try:
        get_client().delete_object(Bucket=config.R2_BUCKET_NAME, Key=key)
    except (BotoCoreError, ClientError) as exc:
        logger.error("Failed to delete %s from storage: %s", key, exc)
        return False
    logger.info("Deleted %s from storage", key)
    return True
