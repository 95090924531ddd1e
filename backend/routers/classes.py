from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response
from pydantic import BaseModel, Field

from backend.config import TOKEN_MAX_VALIDITY_SECONDS, TOKEN_MIN_VALIDITY_SECONDS
from backend.routers.common import http_error, require_owned_class
from backend.security import require_session, session_teacher_id
from backend.services.container import AttendanceServices, get_services
from backend.services.errors import AttendanceError
from backend.services.lifecycle import REOPEN_NOTICE
from backend.services.qr import render_base64, render_png
from database.db import add_class, get_course_by_id, get_students_by_ids

router = APIRouter()


class ClassCreate(BaseModel):
    subject: str
    course_id: int | None = None
    description: str | None = None
    open_now: bool = True


class ConfigUpdate(BaseModel):
    present_threshold_minutes: int = Field(default=20, ge=0, le=600)
    allow_manual_entry: bool = False
    notify_late: bool = True
    auto_mark_absent_on_close: bool = True


@router.post("/classes")
def create_class(
    payload: ClassCreate,
    session: dict = Depends(require_session),
    services: AttendanceServices = Depends(get_services),
):
    subject = payload.subject.strip()
    if not subject:
        raise HTTPException(status_code=400, detail="Subject is required.")
    if payload.course_id is not None and not get_course_by_id(payload.course_id):
        raise HTTPException(status_code=404, detail="Course not found.")

    new_id = add_class(
        subject=subject,
        teacher_id=session_teacher_id(session),
        course_id=payload.course_id,
        description=(payload.description or "").strip() or None,
    )
    if payload.open_now:
        return services.lifecycle.open(new_id)
    return services.catalog.get_class(new_id)


@router.get("/classes/{class_id}")
def class_detail(
    class_id: int,
    session: dict = Depends(require_session),
    services: AttendanceServices = Depends(get_services),
):
    return require_owned_class(services, class_id, session)


@router.post("/classes/{class_id}/open")
def open_class(
    class_id: int,
    session: dict = Depends(require_session),
    services: AttendanceServices = Depends(get_services),
):
    require_owned_class(services, class_id, session)
    try:
        return services.lifecycle.open(class_id)
    except AttendanceError as exc:
        raise http_error(exc)


@router.post("/classes/{class_id}/close")
def close_class(
    class_id: int,
    session: dict = Depends(require_session),
    services: AttendanceServices = Depends(get_services),
):
    require_owned_class(services, class_id, session)
    try:
        return services.lifecycle.close(class_id)
    except AttendanceError as exc:
        raise http_error(exc)


@router.post("/classes/{class_id}/sweep")
def sweep_class(
    class_id: int,
    session: dict = Depends(require_session),
    services: AttendanceServices = Depends(get_services),
):
    require_owned_class(services, class_id, session)
    try:
        swept = services.lifecycle.sweep_absentees(class_id)
    except AttendanceError as exc:
        raise http_error(exc)
    return {"class_id": class_id, "swept_count": swept}


@router.post("/classes/{class_id}/reopen")
def reopen_class(
    class_id: int,
    session: dict = Depends(require_session),
    services: AttendanceServices = Depends(get_services),
):
    require_owned_class(services, class_id, session)
    try:
        row = services.lifecycle.reopen(class_id)
    except AttendanceError as exc:
        raise http_error(exc)
    return {"class": row, "message": REOPEN_NOTICE}


@router.get("/classes/{class_id}/config")
def get_class_config(
    class_id: int,
    session: dict = Depends(require_session),
    services: AttendanceServices = Depends(get_services),
):
    require_owned_class(services, class_id, session)
    return services.catalog.get_config(class_id)


@router.put("/classes/{class_id}/config")
def update_class_config(
    class_id: int,
    payload: ConfigUpdate,
    session: dict = Depends(require_session),
    services: AttendanceServices = Depends(get_services),
):
    require_owned_class(services, class_id, session)
    return services.catalog.save_config(
        {
            "class_id": class_id,
            "present_threshold_minutes": payload.present_threshold_minutes,
            "allow_manual_entry": payload.allow_manual_entry,
            "notify_late": payload.notify_late,
            "auto_mark_absent_on_close": payload.auto_mark_absent_on_close,
        }
    )


@router.post("/classes/{class_id}/token")
def mint_class_token(
    class_id: int,
    validity_seconds: int | None = Query(
        default=None,
        ge=TOKEN_MIN_VALIDITY_SECONDS,
        le=TOKEN_MAX_VALIDITY_SECONDS,
    ),
    include_qr: bool = True,
    session: dict = Depends(require_session),
    services: AttendanceServices = Depends(get_services),
):
    require_owned_class(services, class_id, session)
    try:
        minted = services.scans.mint_token(class_id, validity_seconds=validity_seconds)
    except AttendanceError as exc:
        raise http_error(exc)

    payload = {
        "token_id": minted["token_id"],
        "class_id": minted["class_id"],
        "expires_at": minted["expires_at"],
        "scan_url": minted["scan_url"],
    }
    if include_qr:
        payload["qr_base64_png"] = render_base64(minted["scan_url"])
    return payload


@router.get("/classes/{class_id}/qr.png")
def class_qr_png(
    class_id: int,
    session: dict = Depends(require_session),
    services: AttendanceServices = Depends(get_services),
):
    require_owned_class(services, class_id, session)
    try:
        minted = services.scans.mint_token(class_id)
    except AttendanceError as exc:
        raise http_error(exc)
    return Response(
        content=render_png(minted["scan_url"]),
        media_type="image/png",
        headers={
            "Cache-Control": "no-store",
            "X-Scan-Token-Expires-At": minted["expires_at"].isoformat(),
        },
    )


@router.get("/classes/{class_id}/attendance")
def class_attendance(
    class_id: int,
    session: dict = Depends(require_session),
    services: AttendanceServices = Depends(get_services),
):
    require_owned_class(services, class_id, session)
    return services.registry.list_by_class(class_id)


@router.get("/classes/{class_id}/live")
def class_live(
    class_id: int,
    session: dict = Depends(require_session),
    services: AttendanceServices = Depends(get_services),
):
    require_owned_class(services, class_id, session)
    summary = services.lifecycle.live_summary(class_id)
    pending_ids = summary.pop("pending_student_ids")
    summary["pending_students"] = [
        {"id": sid, "code": code, "full_name": full_name, "state": "Pendiente"}
        for (sid, code, full_name) in get_students_by_ids(pending_ids)
    ]
    return summary
