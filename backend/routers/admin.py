import logging

from fastapi import APIRouter, Depends, Request

from backend.config import PUBLIC_BASE_URL, STORAGE_BACKEND, TOKEN_VALIDITY_SECONDS
from backend.security import require_session
from backend.services.container import AttendanceServices, build_services, get_services
from database.db import clear_attendance

logger = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_session)])


@router.post("/admin/tokens/purge")
def purge_expired_tokens(services: AttendanceServices = Depends(get_services)):
    removed = services.tokens.purge_expired(services.clock.now())
    return {
        "ok": True,
        "removed": removed,
        "outstanding": services.tokens.count(),
    }


@router.post("/admin/reset/attendance")
def reset_attendance(request: Request, services: AttendanceServices = Depends(get_services)):
    clear_attendance()
    # In-memory stores are rebuilt empty; classes and roster are untouched.
    request.app.state.services = build_services(
        storage_backend=STORAGE_BACKEND,
        clock=services.clock,
        token_validity_seconds=TOKEN_VALIDITY_SECONDS,
        public_base_url=PUBLIC_BASE_URL,
    )
    logger.warning("Attendance records, audit trail and scan tokens cleared")
    return {"ok": True, "message": "Attendance logs cleared"}
