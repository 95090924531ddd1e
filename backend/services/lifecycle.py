import logging
from datetime import datetime
from typing import Any, cast

from backend.clock import Clock, SystemClock
from backend.services.catalog import Catalog
from backend.services.classifier import elapsed_minutes
from backend.services.errors import (
    AlreadyClosed,
    AlreadyOpen,
    ClassClosed,
    ClassNotFound,
    ClassOpen,
    NotClosed,
    RecordAlreadyExists,
)
from backend.services.models import ClassSession
from backend.services.registry import AttendanceRegistry

logger = logging.getLogger(__name__)

SUMMARY_STATES = ("Presente", "Tardanza", "Ausente", "Excusado", "Pendiente")
REOPEN_NOTICE = (
    "Class reopened. Students marked absent when the class closed keep that "
    "record until it is amended manually."
)


class ClassLifecycle:
    def __init__(self, *, catalog: Catalog, registry: AttendanceRegistry, clock: Clock | None = None):
        self._catalog = catalog
        self._registry = registry
        self._clock = clock or SystemClock()

    def open(self, class_id: int) -> ClassSession:
        """
        Start a new session for the class. Repeated opens of an open class are
        rejected; opening a closed class starts a fresh session.
        """
        session = self._get(class_id)
        if session["is_open"]:
            raise AlreadyOpen(f"Class {class_id} is already open.")

        now = self._clock.now()
        if not self._catalog.start_session(class_id, now):
            raise AlreadyOpen(f"Class {class_id} is already open.")
        logger.info("Class opened class_id=%s started_at=%s", class_id, now.isoformat())
        return self._get(class_id)

    def close(self, class_id: int) -> dict[str, Any]:
        session = self._get(class_id)
        if session["closed_at"] is not None:
            raise AlreadyClosed(f"Class {class_id} is already closed.")
        if session["started_at"] is None:
            raise ClassClosed(f"Class {class_id} has not been opened.")

        closed_at = self._clock.now()
        if not self._catalog.close_session(class_id, closed_at):
            raise AlreadyClosed(f"Class {class_id} is already closed.")
        session = self._get(class_id)

        swept = 0
        config = self._catalog.get_config(class_id)
        if config["auto_mark_absent_on_close"]:
            swept = self._sweep(session)
        logger.info("Class closed class_id=%s closed_at=%s swept=%s", class_id, closed_at.isoformat(), swept)
        return {"class_id": class_id, "closed_at": closed_at, "swept_count": swept}

    def sweep_absentees(self, class_id: int) -> int:
        """
        Fill in AutoAbsent records for enrolled students without one.

        Safe to re-run after a partial failure: students that already have a
        record are skipped.
        """
        session = self._get(class_id)
        if session["closed_at"] is None:
            raise ClassOpen(f"Class {class_id} must be closed before sweeping absentees.")
        return self._sweep(session)

    def reopen(self, class_id: int) -> ClassSession:
        session = self._get(class_id)
        if session["closed_at"] is None:
            raise NotClosed(f"Class {class_id} is not closed.")

        # AutoAbsent records written by the previous close stay in place.
        if not self._catalog.resume_session(class_id):
            raise NotClosed(f"Class {class_id} is not closed.")
        logger.info("Class reopened class_id=%s", class_id)
        return self._get(class_id)

    def live_summary(self, class_id: int) -> dict[str, Any]:
        session = self._get(class_id)
        records = self._registry.list_by_class(class_id)

        enrolled: list[int] = []
        if session["course_id"] is not None:
            enrolled = self._catalog.get_enrolled_students(session["course_id"])

        recorded = {r["student_id"] for r in records}
        pending = [sid for sid in enrolled if sid not in recorded]

        counts = {state: 0 for state in SUMMARY_STATES}
        for record in records:
            counts[record["state"]] += 1
        counts["Pendiente"] = len(pending)

        total = len(enrolled) if session["course_id"] is not None else len(records)
        attended = counts["Presente"] + counts["Tardanza"]
        minutes = None
        if session["started_at"] is not None:
            end = session["closed_at"] or self._clock.now()
            minutes = max(0, elapsed_minutes(end, session["started_at"]))

        latest = sorted(records, key=lambda r: (r["marked_at"], r["id"]), reverse=True)[:10]
        return {
            "class": session,
            "total_students": total,
            "counts": counts,
            "attendance_rate": round(attended * 100.0 / total, 1) if total else 0.0,
            "minutes_elapsed": minutes,
            "pending_student_ids": pending,
            "latest_records": latest,
        }

    def _get(self, class_id: int) -> ClassSession:
        session = self._catalog.get_class(class_id)
        if session is None:
            raise ClassNotFound(f"Class {class_id} does not exist.")
        return session

    def _sweep(self, session: ClassSession) -> int:
        if session["course_id"] is None:
            return 0

        closed_at = cast(datetime, session["closed_at"])
        started_at = cast(datetime, session["started_at"])
        swept = 0
        for student_id in self._catalog.get_enrolled_students(session["course_id"]):
            if self._registry.record_exists(student_id, session["id"]):
                continue
            try:
                self._registry.create_record(
                    student_id,
                    session["id"],
                    marked_at=closed_at,
                    class_started_at=started_at,
                    class_closed_at=closed_at,
                    method="AutoAbsent",
                    recorded_by=session["teacher_id"],
                    state="Ausente",
                )
            except RecordAlreadyExists:
                continue
            swept += 1
        return swept
