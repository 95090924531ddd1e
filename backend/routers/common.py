from fastapi import HTTPException

from backend.security import session_teacher_id
from backend.services.container import AttendanceServices
from backend.services.errors import AttendanceError
from backend.services.models import ClassSession, ScanOutcome

_NOT_FOUND_CODES = {"CLASS_NOT_FOUND", "STUDENT_NOT_FOUND", "RECORD_NOT_FOUND"}


def http_error(exc: AttendanceError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.message)


def scan_response(result: ScanOutcome) -> ScanOutcome:
    """Success and AlreadyRecorded pass through; Error becomes 404/400."""
    if result["outcome"] != "Error":
        return result
    status_code = 404 if result["error_code"] in _NOT_FOUND_CODES else 400
    raise HTTPException(status_code=status_code, detail=result["message"])


def require_owned_class(services: AttendanceServices, class_id: int, session: dict) -> ClassSession:
    row = services.catalog.get_class(class_id)
    if row is None:
        raise HTTPException(status_code=404, detail="Class not found.")
    if row["teacher_id"] != session_teacher_id(session):
        raise HTTPException(status_code=403, detail="You do not have access to this class.")
    return row
