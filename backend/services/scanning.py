import logging
from datetime import datetime
from typing import cast
from urllib.parse import urlencode

from backend.clock import Clock, SystemClock
from backend.config import PUBLIC_BASE_URL
from backend.services.catalog import Catalog
from backend.services.errors import (
    AttendanceError,
    ClassClosed,
    ClassNotFound,
    RecordAlreadyExists,
    StudentNotFound,
)
from backend.services.models import (
    AttendanceRecord,
    ClassSession,
    MintedToken,
    RegistrationMethod,
    ScanOutcome,
    ScanOutcomeKind,
)
from backend.services.registry import AttendanceRegistry
from backend.services.tokens import TokenStore

logger = logging.getLogger(__name__)

INVALID_TOKEN_MESSAGE = "QR token invalid or expired. Please scan the QR code again."


def build_scan_url(base_url: str, class_id: int, token_id: str) -> str:
    query = urlencode({"classId": class_id, "nonce": token_id})
    return f"{base_url.rstrip('/')}/scan?{query}"


def _outcome(
    outcome: ScanOutcomeKind,
    message: str,
    *,
    error_code: str | None = None,
    record: AttendanceRecord | None = None,
) -> ScanOutcome:
    return {
        "outcome": outcome,
        "error_code": error_code,
        "message": message,
        "state": record["state"] if record else None,
        "late_minutes": record["late_minutes"] if record else None,
        "record_id": record["id"] if record else None,
    }


def _error(exc: AttendanceError) -> ScanOutcome:
    return _outcome("Error", exc.message, error_code=exc.code)


class ScanCoordinator:
    """
    Orchestrates a scan end to end.

    Order of checks: class exists, class open, student exists, then (for
    student scans) the token is burned, then the duplicate check. A malformed
    request therefore never burns a token, but a student who scans twice
    burns two tokens even though only the first one writes a record.
    """

    def __init__(
        self,
        *,
        catalog: Catalog,
        tokens: TokenStore,
        registry: AttendanceRegistry,
        clock: Clock | None = None,
        public_base_url: str = PUBLIC_BASE_URL,
    ):
        self._catalog = catalog
        self._tokens = tokens
        self._registry = registry
        self._clock = clock or SystemClock()
        self._public_base_url = public_base_url

    def mint_token(self, class_id: int, *, validity_seconds: int | None = None) -> MintedToken:
        self._load_open_class(class_id)
        token = self._tokens.mint(class_id, validity_seconds=validity_seconds)
        return {
            "token_id": token["token_id"],
            "class_id": token["class_id"],
            "expires_at": token["expires_at"],
            "scan_url": build_scan_url(self._public_base_url, class_id, token["token_id"]),
        }

    def teacher_scan(self, student_id: int, class_id: int, teacher_id: int) -> ScanOutcome:
        try:
            session = self._load_open_class(class_id)
            self._require_student(student_id)
        except AttendanceError as exc:
            logger.info("Teacher scan rejected class_id=%s student_id=%s reason=%s", class_id, student_id, exc.code)
            return _error(exc)

        return self._record(
            session,
            student_id,
            method="TeacherScan",
            recorded_by=teacher_id,
            success_message="Attendance recorded (teacher scan).",
        )

    def student_scan(self, student_id: int, class_id: int, token_id: str) -> ScanOutcome:
        try:
            session = self._load_open_class(class_id)
            self._require_student(student_id)
        except AttendanceError as exc:
            logger.info("Student scan rejected class_id=%s student_id=%s reason=%s", class_id, student_id, exc.code)
            return _error(exc)

        check = self._tokens.validate_and_consume(token_id, class_id, self._clock.now())
        if check != "OK":
            # The reason stays in the logs; callers only learn the token is unusable.
            logger.warning(
                "Scan token rejected class_id=%s student_id=%s reason=%s",
                class_id,
                student_id,
                check,
            )
            return _outcome("Error", INVALID_TOKEN_MESSAGE, error_code="INVALID_OR_EXPIRED_TOKEN")
        logger.info("Scan token consumed class_id=%s student_id=%s", class_id, student_id)

        return self._record(
            session,
            student_id,
            method="StudentScan",
            recorded_by=None,
            success_message="Attendance recorded successfully.",
        )

    def manual_entry(self, student_id: int, class_id: int, teacher_id: int, justification: str) -> ScanOutcome:
        try:
            session = self._load_open_class(class_id)
            self._require_student(student_id)
        except AttendanceError as exc:
            return _error(exc)

        config = self._catalog.get_config(class_id)
        if not config["allow_manual_entry"]:
            return _outcome(
                "Error",
                "Manual entry is not enabled for this class.",
                error_code="MANUAL_ENTRY_DISABLED",
            )
        if not (justification or "").strip():
            return _outcome(
                "Error",
                "Manual entry requires a justification.",
                error_code="JUSTIFICATION_REQUIRED",
            )

        return self._record(
            session,
            student_id,
            method="Manual",
            recorded_by=teacher_id,
            justification=justification,
            success_message="Attendance recorded manually.",
        )

    def _load_open_class(self, class_id: int) -> ClassSession:
        session = self._catalog.get_class(class_id)
        if session is None:
            raise ClassNotFound(f"Class {class_id} does not exist.")
        if not session["is_open"] or session["started_at"] is None:
            raise ClassClosed(f"Class {class_id} is not open.")
        return session

    def _require_student(self, student_id: int) -> None:
        if not self._catalog.student_exists(student_id):
            raise StudentNotFound(f"Student {student_id} does not exist.")

    def _record(
        self,
        session: ClassSession,
        student_id: int,
        *,
        method: RegistrationMethod,
        recorded_by: int | None,
        success_message: str,
        justification: str | None = None,
    ) -> ScanOutcome:
        class_id = session["id"]
        if self._registry.record_exists(student_id, class_id):
            return _outcome("AlreadyRecorded", "Attendance was already recorded for this student.")

        config = self._catalog.get_config(class_id)
        try:
            record = self._registry.create_record(
                student_id,
                class_id,
                marked_at=self._clock.now(),
                class_started_at=cast(datetime, session["started_at"]),
                class_closed_at=session["closed_at"],
                method=method,
                recorded_by=recorded_by,
                justification=justification,
                present_threshold_minutes=config["present_threshold_minutes"],
            )
        except RecordAlreadyExists:
            # Lost a race with a concurrent scan for the same pair.
            return _outcome("AlreadyRecorded", "Attendance was already recorded for this student.")

        return _outcome("Success", f"{success_message} State: {record['state']}.", record=record)
