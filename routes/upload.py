import logging
from typing import List, Optional

from botocore.exceptions import BotoCoreError, ClientError
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

import storage
from auth import get_current_user
from utils import ok

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/upload", tags=["upload"])

MAX_BATCH_FILES = 10


class UploadUrlRequest(BaseModel):
    file_type: Optional[str] = None
    file_name: Optional[str] = None
    is_permanent: bool = False
    role: Optional[str] = None


class BatchUploadUrlRequest(BaseModel):
    files: List[UploadUrlRequest] = Field(..., min_length=1, max_length=MAX_BATCH_FILES)


class DeleteFileRequest(BaseModel):
    file_url: Optional[str] = None


def _upload_url(item: UploadUrlRequest, user) -> dict:
    if not item.file_type or not item.file_name:
        raise HTTPException(status_code=400, detail="File type and name are required")
    if item.file_type not in storage.ALLOWED_FILE_TYPES:
        raise HTTPException(
            status_code=400,
            detail="File type not supported. Allowed types: " + ", ".join(storage.ALLOWED_FILE_TYPES),
        )
    role = item.role or user.get("role") or "Merchant"
    key = storage.build_key(role, user["id"], item.file_type, item.file_name)
    try:
        signed = storage.presign_upload(key, item.file_type)
    except (BotoCoreError, ClientError) as exc:
        logger.error("Failed to presign upload for %s: %s", key, exc)
        raise HTTPException(status_code=500, detail="Failed to generate upload URL")
    return {**signed, "file_type": item.file_type, "file_name": item.file_name, "is_permanent": item.is_permanent}


@router.post("/url")
def get_upload_url(payload: UploadUrlRequest, current_user=Depends(get_current_user)):
    logger.info("Upload URL requested by %s for %s", current_user["id"], payload.file_name)
    return ok("Upload URL generated successfully", **_upload_url(payload, current_user))


@router.post("/urls")
def get_upload_urls(payload: BatchUploadUrlRequest, current_user=Depends(get_current_user)):
    uploads = [_upload_url(item, current_user) for item in payload.files]
    return ok(f"Generated {len(uploads)} upload URL(s)", uploads=uploads)


@router.delete("/file")
def delete_file(payload: DeleteFileRequest, current_user=Depends(get_current_user)):
    if not payload.file_url:
        raise HTTPException(status_code=400, detail="File URL is required")
    logger.info("Delete requested by %s for %s", current_user["id"], payload.file_url)
    if not storage.delete_file(payload.file_url):
        raise HTTPException(status_code=500, detail="Failed to delete file")
    return ok("File deleted successfully")
