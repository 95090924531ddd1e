from datetime import datetime
from typing import Literal, TypedDict

AttendanceState = Literal["Presente", "Tardanza", "Ausente", "Excusado", "Pendiente"]
RegistrationMethod = Literal["StudentScan", "TeacherScan", "Manual", "AutoAbsent"]
TokenCheck = Literal["OK", "NOT_FOUND", "CLASS_MISMATCH", "EXPIRED"]
ScanOutcomeKind = Literal["Success", "AlreadyRecorded", "Error"]
AuditAction = Literal["CREATED_MANUAL", "AMENDED_MANUAL"]

# Pendiente only exists while projecting a still-open class.
PERSISTED_STATES: frozenset[str] = frozenset({"Presente", "Tardanza", "Ausente", "Excusado"})
REGISTRATION_METHODS: frozenset[str] = frozenset({"StudentScan", "TeacherScan", "Manual", "AutoAbsent"})


class ScanToken(TypedDict):
    token_id: str
    class_id: int
    expires_at: datetime


class ClassSession(TypedDict):
    id: int
    course_id: int | None
    teacher_id: int | None
    subject: str
    description: str | None
    started_at: datetime | None
    closed_at: datetime | None
    is_open: bool


class AttendanceConfig(TypedDict):
    class_id: int
    present_threshold_minutes: int
    allow_manual_entry: bool
    notify_late: bool
    auto_mark_absent_on_close: bool


class AttendanceRecord(TypedDict):
    id: int
    student_id: int
    class_id: int
    marked_at: datetime
    class_started_at: datetime
    class_closed_at: datetime | None
    late_minutes: int
    state: AttendanceState
    method: RegistrationMethod
    is_manual: bool
    manual_justification: str | None
    recorded_by_teacher_id: int | None
    created_at: datetime
    modified_at: datetime | None


class AuditEntry(TypedDict):
    id: int
    record_id: int
    action: AuditAction
    teacher_id: int
    justification: str
    previous: dict | None
    recorded_at: datetime


class ScanOutcome(TypedDict):
    outcome: ScanOutcomeKind
    error_code: str | None
    message: str
    state: AttendanceState | None
    late_minutes: int | None
    record_id: int | None


class MintedToken(TypedDict):
    token_id: str
    class_id: int
    expires_at: datetime
    scan_url: str


def is_class_open(started_at: datetime | None, closed_at: datetime | None) -> bool:
    return started_at is not None and closed_at is None
