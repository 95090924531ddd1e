import threading
from datetime import datetime
from typing import Protocol, cast

from backend.services.models import AttendanceConfig, ClassSession, is_class_open
from database import db


class Catalog(Protocol):
    """Class, student and enrollment lookups the attendance core depends on."""

    def get_class(self, class_id: int) -> ClassSession | None: ...

    def student_exists(self, student_id: int) -> bool: ...

    def get_enrolled_students(self, course_id: int) -> list[int]: ...

    # Guarded transitions: each returns False when the class was not in the
    # required state at write time.
    def start_session(self, class_id: int, started_at: datetime) -> bool: ...

    def close_session(self, class_id: int, closed_at: datetime) -> bool: ...

    def resume_session(self, class_id: int) -> bool: ...

    def get_config(self, class_id: int) -> AttendanceConfig: ...

    def save_config(self, config: AttendanceConfig) -> AttendanceConfig: ...


class SqliteCatalog:
    def get_class(self, class_id: int) -> ClassSession | None:
        return db.get_class_by_id(class_id)

    def student_exists(self, student_id: int) -> bool:
        return db.get_student_by_id(student_id) is not None

    def get_enrolled_students(self, course_id: int) -> list[int]:
        return db.get_enrolled_student_ids(course_id)

    def start_session(self, class_id: int, started_at: datetime) -> bool:
        return db.start_class_session(class_id, started_at)

    def close_session(self, class_id: int, closed_at: datetime) -> bool:
        return db.close_class_session(class_id, closed_at)

    def resume_session(self, class_id: int) -> bool:
        return db.resume_class_session(class_id)

    def get_config(self, class_id: int) -> AttendanceConfig:
        return db.get_attendance_config(class_id)

    def save_config(self, config: AttendanceConfig) -> AttendanceConfig:
        return db.upsert_attendance_config(config)


class InMemoryCatalog:
    def __init__(self):
        self._lock = threading.Lock()
        self._classes: dict[int, ClassSession] = {}
        self._students: set[int] = set()
        self._enrollments: dict[int, list[int]] = {}
        self._configs: dict[int, AttendanceConfig] = {}

    # Seeding helpers
    def add_student(self, student_id: int) -> None:
        with self._lock:
            self._students.add(int(student_id))

    def enroll(self, course_id: int, student_id: int) -> None:
        with self._lock:
            self._students.add(int(student_id))
            roster = self._enrollments.setdefault(int(course_id), [])
            if int(student_id) not in roster:
                roster.append(int(student_id))

    def add_class(
        self,
        class_id: int,
        *,
        course_id: int | None = None,
        teacher_id: int | None = None,
        subject: str = "",
        started_at: datetime | None = None,
        closed_at: datetime | None = None,
    ) -> ClassSession:
        session: ClassSession = {
            "id": int(class_id),
            "course_id": course_id,
            "teacher_id": teacher_id,
            "subject": subject,
            "description": None,
            "started_at": started_at,
            "closed_at": closed_at,
            "is_open": is_class_open(started_at, closed_at),
        }
        with self._lock:
            self._classes[session["id"]] = session
        return cast(ClassSession, dict(session))

    # Catalog
    def get_class(self, class_id: int) -> ClassSession | None:
        with self._lock:
            session = self._classes.get(int(class_id))
            return cast(ClassSession, dict(session)) if session else None

    def student_exists(self, student_id: int) -> bool:
        with self._lock:
            return int(student_id) in self._students

    def get_enrolled_students(self, course_id: int) -> list[int]:
        with self._lock:
            return list(self._enrollments.get(int(course_id), []))

    def set_class_window(self, class_id: int, started_at: datetime | None, closed_at: datetime | None) -> None:
        """Seeding helper: overwrite the window without any state check."""
        with self._lock:
            self._set_window_locked(self._classes[int(class_id)], started_at, closed_at)

    def start_session(self, class_id: int, started_at: datetime) -> bool:
        with self._lock:
            session = self._classes.get(int(class_id))
            if session is None or session["is_open"]:
                return False
            self._set_window_locked(session, started_at, None)
            return True

    def close_session(self, class_id: int, closed_at: datetime) -> bool:
        with self._lock:
            session = self._classes.get(int(class_id))
            if session is None or session["started_at"] is None or session["closed_at"] is not None:
                return False
            self._set_window_locked(session, session["started_at"], closed_at)
            return True

    def resume_session(self, class_id: int) -> bool:
        with self._lock:
            session = self._classes.get(int(class_id))
            if session is None or session["closed_at"] is None:
                return False
            self._set_window_locked(session, session["started_at"], None)
            return True

    @staticmethod
    def _set_window_locked(session: ClassSession, started_at: datetime | None, closed_at: datetime | None) -> None:
        session["started_at"] = started_at
        session["closed_at"] = closed_at
        session["is_open"] = is_class_open(started_at, closed_at)

    def get_config(self, class_id: int) -> AttendanceConfig:
        with self._lock:
            config = self._configs.get(int(class_id))
        if config is None:
            return db.default_attendance_config(int(class_id))
        return cast(AttendanceConfig, dict(config))

    def save_config(self, config: AttendanceConfig) -> AttendanceConfig:
        clean = cast(AttendanceConfig, dict(config))
        clean["present_threshold_minutes"] = max(0, int(clean["present_threshold_minutes"]))
        with self._lock:
            self._configs[clean["class_id"]] = clean
        return cast(AttendanceConfig, dict(clean))
