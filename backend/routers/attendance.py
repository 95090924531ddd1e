from typing import Literal

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.routers.common import http_error, require_owned_class, scan_response
from backend.security import require_session, session_teacher_id
from backend.services.container import AttendanceServices, get_services
from backend.services.errors import AttendanceError

router = APIRouter()


class StudentScan(BaseModel):
    student_id: int
    class_id: int
    token_id: str


class TeacherScan(BaseModel):
    student_id: int
    class_id: int


class ManualEntry(BaseModel):
    student_id: int
    class_id: int
    justification: str


class Amendment(BaseModel):
    new_state: Literal["Presente", "Tardanza", "Ausente", "Excusado"]
    justification: str


@router.post("/attendance/student-scan")
def student_scan(payload: StudentScan, services: AttendanceServices = Depends(get_services)):
    token_id = payload.token_id.strip()
    if not token_id:
        raise HTTPException(status_code=400, detail="Token is required.")
    result = services.scans.student_scan(payload.student_id, payload.class_id, token_id)
    return scan_response(result)


@router.post("/attendance/teacher-scan")
def teacher_scan(
    payload: TeacherScan,
    session: dict = Depends(require_session),
    services: AttendanceServices = Depends(get_services),
):
    require_owned_class(services, payload.class_id, session)
    result = services.scans.teacher_scan(payload.student_id, payload.class_id, session_teacher_id(session))
    return scan_response(result)


@router.post("/attendance/manual")
def manual_entry(
    payload: ManualEntry,
    session: dict = Depends(require_session),
    services: AttendanceServices = Depends(get_services),
):
    require_owned_class(services, payload.class_id, session)
    result = services.scans.manual_entry(
        payload.student_id,
        payload.class_id,
        session_teacher_id(session),
        payload.justification,
    )
    return scan_response(result)


def _owned_record(services: AttendanceServices, record_id: int, session: dict):
    record = services.registry.get_record(record_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Attendance record not found.")
    require_owned_class(services, record["class_id"], session)
    return record


@router.post("/attendance/{record_id}/amend")
def amend_attendance(
    record_id: int,
    payload: Amendment,
    session: dict = Depends(require_session),
    services: AttendanceServices = Depends(get_services),
):
    _owned_record(services, record_id, session)
    try:
        record = services.registry.amend_record(
            record_id,
            payload.new_state,
            payload.justification,
            session_teacher_id(session),
        )
    except AttendanceError as exc:
        raise http_error(exc)
    return {"ok": True, "message": "Attendance amended.", "record": record}


@router.get("/attendance/{record_id}/audit")
def attendance_audit(
    record_id: int,
    session: dict = Depends(require_session),
    services: AttendanceServices = Depends(get_services),
):
    _owned_record(services, record_id, session)
    return services.registry.list_audit(record_id)
