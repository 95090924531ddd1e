import logging
import sqlite3
import threading
from datetime import datetime
from typing import Any, Protocol, cast

from backend.clock import Clock, SystemClock
from backend.config import PRESENT_THRESHOLD_MINUTES
from backend.services.classifier import classify, late_minutes
from backend.services.errors import InvalidAmendment, InvalidStateError, RecordAlreadyExists, RecordNotFound
from backend.services.models import (
    PERSISTED_STATES,
    REGISTRATION_METHODS,
    AttendanceRecord,
    AttendanceState,
    AuditAction,
    AuditEntry,
    RegistrationMethod,
)
from database import db

logger = logging.getLogger(__name__)


class AttendanceRegistry(Protocol):
    """
    Attendance records, at most one per (student_id, class_id).

    The storage layer is the race breaker: `create_record` raises
    RecordAlreadyExists for the loser of concurrent duplicate inserts.
    """

    def record_exists(self, student_id: int, class_id: int) -> bool: ...

    def create_record(
        self,
        student_id: int,
        class_id: int,
        *,
        marked_at: datetime,
        class_started_at: datetime,
        class_closed_at: datetime | None,
        method: RegistrationMethod,
        recorded_by: int | None = None,
        justification: str | None = None,
        present_threshold_minutes: int = PRESENT_THRESHOLD_MINUTES,
        state: AttendanceState | None = None,
    ) -> AttendanceRecord: ...

    def amend_record(
        self,
        record_id: int,
        new_state: AttendanceState,
        justification: str,
        amended_by: int,
    ) -> AttendanceRecord: ...

    def get_record(self, record_id: int) -> AttendanceRecord | None: ...

    def list_by_class(self, class_id: int) -> list[AttendanceRecord]: ...

    def list_audit(self, record_id: int) -> list[AuditEntry]: ...


def _prepare_record(
    *,
    student_id: int,
    class_id: int,
    marked_at: datetime,
    class_started_at: datetime,
    class_closed_at: datetime | None,
    method: RegistrationMethod,
    recorded_by: int | None,
    justification: str | None,
    present_threshold_minutes: int,
    state: AttendanceState | None,
    created_at: datetime,
) -> dict[str, Any]:
    # Classify before touching storage so a failure never leaves a half-written row.
    if method not in REGISTRATION_METHODS:
        raise ValueError(f"Unexpected registration method: {method}")

    is_manual = method == "Manual"
    clean_justification = (justification or "").strip() or None
    if is_manual and not clean_justification:
        raise InvalidStateError("Manual attendance requires a justification.")

    final_state = state or classify(
        marked_at,
        class_started_at,
        class_closed_at,
        present_threshold_minutes=present_threshold_minutes,
    )
    if final_state not in PERSISTED_STATES:
        raise InvalidStateError(f"State {final_state} cannot be stored on an attendance record.")

    return {
        "student_id": int(student_id),
        "class_id": int(class_id),
        "marked_at": marked_at,
        "class_started_at": class_started_at,
        "class_closed_at": class_closed_at,
        "late_minutes": late_minutes(marked_at, class_started_at),
        "state": final_state,
        "method": method,
        "is_manual": is_manual,
        "manual_justification": clean_justification,
        "recorded_by_teacher_id": recorded_by,
        "created_at": created_at,
    }


def _log_created(record: AttendanceRecord) -> None:
    logger.info(
        "Attendance recorded record_id=%s student_id=%s class_id=%s state=%s method=%s late_minutes=%s",
        record["id"],
        record["student_id"],
        record["class_id"],
        record["state"],
        record["method"],
        record["late_minutes"],
    )


def _validate_amendment(new_state: str, justification: str) -> str:
    if new_state not in PERSISTED_STATES:
        raise InvalidAmendment(f"Cannot amend a record to state {new_state}.")
    clean = (justification or "").strip()
    if not clean:
        raise InvalidAmendment("A justification is required to amend attendance.")
    return clean


class InMemoryAttendanceRegistry:
    def __init__(self, *, clock: Clock | None = None):
        self._clock = clock or SystemClock()
        self._lock = threading.Lock()
        self._records: dict[int, AttendanceRecord] = {}
        self._by_pair: dict[tuple[int, int], int] = {}
        self._audit: list[AuditEntry] = []
        self._next_record_id = 1
        self._next_audit_id = 1

    def record_exists(self, student_id: int, class_id: int) -> bool:
        with self._lock:
            return (int(student_id), int(class_id)) in self._by_pair

    def create_record(
        self,
        student_id: int,
        class_id: int,
        *,
        marked_at: datetime,
        class_started_at: datetime,
        class_closed_at: datetime | None,
        method: RegistrationMethod,
        recorded_by: int | None = None,
        justification: str | None = None,
        present_threshold_minutes: int = PRESENT_THRESHOLD_MINUTES,
        state: AttendanceState | None = None,
    ) -> AttendanceRecord:
        fields = _prepare_record(
            student_id=student_id,
            class_id=class_id,
            marked_at=marked_at,
            class_started_at=class_started_at,
            class_closed_at=class_closed_at,
            method=method,
            recorded_by=recorded_by,
            justification=justification,
            present_threshold_minutes=present_threshold_minutes,
            state=state,
            created_at=self._clock.now(),
        )
        pair = (fields["student_id"], fields["class_id"])
        with self._lock:
            if pair in self._by_pair:
                raise RecordAlreadyExists(*pair)
            record = cast(AttendanceRecord, {"id": self._next_record_id, **fields, "modified_at": None})
            self._next_record_id += 1
            self._records[record["id"]] = record
            self._by_pair[pair] = record["id"]
            if record["is_manual"] and recorded_by is not None:
                self._append_audit_locked(
                    record_id=record["id"],
                    action="CREATED_MANUAL",
                    teacher_id=recorded_by,
                    justification=record["manual_justification"] or "",
                    previous=None,
                    recorded_at=record["created_at"],
                )
            _log_created(record)
            return cast(AttendanceRecord, dict(record))

    def amend_record(
        self,
        record_id: int,
        new_state: AttendanceState,
        justification: str,
        amended_by: int,
    ) -> AttendanceRecord:
        clean = _validate_amendment(new_state, justification)
        now = self._clock.now()
        with self._lock:
            record = self._records.get(int(record_id))
            if record is None:
                raise RecordNotFound()
            previous = {
                "state": record["state"],
                "manual_justification": record["manual_justification"],
                "modified_at": db.to_db_stamp(record["modified_at"]) if record["modified_at"] else None,
            }
            record["state"] = new_state
            record["manual_justification"] = clean
            record["is_manual"] = True
            record["recorded_by_teacher_id"] = amended_by
            record["modified_at"] = now
            self._append_audit_locked(
                record_id=record["id"],
                action="AMENDED_MANUAL",
                teacher_id=amended_by,
                justification=clean,
                previous=previous,
                recorded_at=now,
            )
            return cast(AttendanceRecord, dict(record))

    def get_record(self, record_id: int) -> AttendanceRecord | None:
        with self._lock:
            record = self._records.get(int(record_id))
            return cast(AttendanceRecord, dict(record)) if record else None

    def list_by_class(self, class_id: int) -> list[AttendanceRecord]:
        with self._lock:
            rows = [dict(r) for r in self._records.values() if r["class_id"] == int(class_id)]
        rows.sort(key=lambda r: (r["marked_at"], r["id"]))
        return cast(list[AttendanceRecord], rows)

    def list_audit(self, record_id: int) -> list[AuditEntry]:
        with self._lock:
            return [cast(AuditEntry, dict(e)) for e in self._audit if e["record_id"] == int(record_id)]

    def _append_audit_locked(
        self,
        *,
        record_id: int,
        action: AuditAction,
        teacher_id: int,
        justification: str,
        previous: dict | None,
        recorded_at: datetime,
    ) -> None:
        self._audit.append(
            {
                "id": self._next_audit_id,
                "record_id": record_id,
                "action": action,
                "teacher_id": teacher_id,
                "justification": justification,
                "previous": previous,
                "recorded_at": recorded_at,
            }
        )
        self._next_audit_id += 1


class SqliteAttendanceRegistry:
    def __init__(self, *, clock: Clock | None = None):
        self._clock = clock or SystemClock()

    def record_exists(self, student_id: int, class_id: int) -> bool:
        return db.attendance_record_exists(student_id, class_id)

    def create_record(
        self,
        student_id: int,
        class_id: int,
        *,
        marked_at: datetime,
        class_started_at: datetime,
        class_closed_at: datetime | None,
        method: RegistrationMethod,
        recorded_by: int | None = None,
        justification: str | None = None,
        present_threshold_minutes: int = PRESENT_THRESHOLD_MINUTES,
        state: AttendanceState | None = None,
    ) -> AttendanceRecord:
        fields = _prepare_record(
            student_id=student_id,
            class_id=class_id,
            marked_at=marked_at,
            class_started_at=class_started_at,
            class_closed_at=class_closed_at,
            method=method,
            recorded_by=recorded_by,
            justification=justification,
            present_threshold_minutes=present_threshold_minutes,
            state=state,
            created_at=self._clock.now(),
        )
        try:
            record = db.insert_attendance_record(
                **fields,
                audit_action="CREATED_MANUAL" if fields["is_manual"] else None,
            )
        except sqlite3.IntegrityError:
            if not db.attendance_record_exists(fields["student_id"], fields["class_id"]):
                raise
            raise RecordAlreadyExists(fields["student_id"], fields["class_id"])
        _log_created(record)
        return record

    def amend_record(
        self,
        record_id: int,
        new_state: AttendanceState,
        justification: str,
        amended_by: int,
    ) -> AttendanceRecord:
        clean = _validate_amendment(new_state, justification)
        record = db.amend_attendance_record(
            record_id,
            new_state=new_state,
            justification=clean,
            amended_by=amended_by,
            modified_at=self._clock.now(),
        )
        if record is None:
            raise RecordNotFound()
        return record

    def get_record(self, record_id: int) -> AttendanceRecord | None:
        return db.get_attendance_record(record_id)

    def list_by_class(self, class_id: int) -> list[AttendanceRecord]:
        return db.list_attendance_records_by_class(class_id)

    def list_audit(self, record_id: int) -> list[AuditEntry]:
        return db.list_attendance_audit(record_id)
