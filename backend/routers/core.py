from fastapi import APIRouter, Depends, HTTPException

from backend.config import (
    ALLOW_MANUAL_ENTRY,
    AUTO_MARK_ABSENT_ON_CLOSE,
    DB_PATH,
    ENABLE_DEBUG_ENDPOINTS,
    NOTIFY_LATE,
    PRESENT_THRESHOLD_MINUTES,
    PUBLIC_BASE_URL,
    STORAGE_BACKEND,
    TOKEN_VALIDITY_SECONDS,
)
from backend.security import require_session

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/debug/dbpath")
def dbpath(_session: dict = Depends(require_session)):
    if not ENABLE_DEBUG_ENDPOINTS:
        raise HTTPException(status_code=404, detail="Not found.")
    return {"db_path": str(DB_PATH)}


@router.get("/config/attendance")
def attendance_config():
    return {
        "token_validity_seconds": TOKEN_VALIDITY_SECONDS,
        "present_threshold_minutes": PRESENT_THRESHOLD_MINUTES,
        "allow_manual_entry": ALLOW_MANUAL_ENTRY,
        "notify_late": NOTIFY_LATE,
        "auto_mark_absent_on_close": AUTO_MARK_ABSENT_ON_CLOSE,
        "storage_backend": STORAGE_BACKEND,
        "public_base_url": PUBLIC_BASE_URL,
    }
