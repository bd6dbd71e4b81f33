"""
Storage quota API routes.

- GET  /api/storage/usage: Used / limit / remaining
- POST /api/storage/check-quota: Would an upload of N bytes fit?
- POST /api/storage/authorize-upload: Same, but 403 with usage details if not
- GET  /api/storage/locked: The caller's locked items
- GET  /api/storage/content/{content_id}/lock-status
"""
from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from backend.core.auth import get_current_user_id
from backend.features.storage.service import (
    check_content_locked,
    check_quota,
    ensure_upload_allowed,
    get_locked_content,
    get_storage_summary,
)

router = APIRouter(prefix="/api/storage", tags=["storage"])


class QuotaRequest(BaseModel):
    size_bytes: int = Field(..., ge=0)


@router.get("/usage")
def get_usage(user_id: str = Depends(get_current_user_id)):
    return get_storage_summary(user_id)


@router.post("/check-quota")
def check_upload_quota(body: QuotaRequest, user_id: str = Depends(get_current_user_id)):
    return check_quota(user_id, body.size_bytes).to_dict()


@router.post("/authorize-upload")
def authorize_upload(body: QuotaRequest, user_id: str = Depends(get_current_user_id)):
    return ensure_upload_allowed(user_id, body.size_bytes).to_dict()


@router.get("/locked")
def get_my_locked_content(user_id: str = Depends(get_current_user_id)):
    return get_locked_content(user_id)


@router.get("/content/{content_id}/lock-status")
def get_lock_status(content_id: str, user_id: str = Depends(get_current_user_id)):
    return check_content_locked(content_id, viewer_id=user_id)
