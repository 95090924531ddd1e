import hashlib
import hmac
import json
import secrets
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, cast

from backend.config import (
    ADMIN_FULL_NAME,
    ADMIN_PASSWORD,
    ADMIN_USERNAME,
    ALLOW_MANUAL_ENTRY,
    AUTO_MARK_ABSENT_ON_CLOSE,
    DB_PATH,
    NOTIFY_LATE,
    PRESENT_THRESHOLD_MINUTES,
    SQLITE_BUSY_TIMEOUT_SECONDS,
)
from backend.services.models import (
    AttendanceConfig,
    AttendanceRecord,
    AttendanceState,
    AuditAction,
    AuditEntry,
    ClassSession,
    RegistrationMethod,
    TokenCheck,
    is_class_open,
)


PASSWORD_HASH_ALGO = "pbkdf2_sha256"
PASSWORD_HASH_ITERATIONS = 120_000
SCHEMA_MIGRATION_FILE = Path(__file__).resolve().parent / "migrations" / "001_attendance.sql"


def _hash_password(password: str, *, salt: str | None = None) -> str:
    salt_value = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        PASSWORD_HASH_ITERATIONS,
    ).hex()
    return f"{PASSWORD_HASH_ALGO}${PASSWORD_HASH_ITERATIONS}${salt_value}${digest}"


def _verify_password(password: str, password_hash: str) -> bool:
    try:
        algo, rounds_text, salt_value, expected_digest = password_hash.split("$", 3)
        rounds = int(rounds_text)
    except (ValueError, TypeError):
        return False

    if algo != PASSWORD_HASH_ALGO or rounds <= 0:
        return False

    candidate_digest = hashlib.pbkdf2_hmac(
        "sha256",
        password.encode("utf-8"),
        salt_value.encode("utf-8"),
        rounds,
    ).hex()
    return hmac.compare_digest(candidate_digest, expected_digest)


def connect_db():
    conn = sqlite3.connect(str(DB_PATH), timeout=SQLITE_BUSY_TIMEOUT_SECONDS, check_same_thread=False)
    # recommended with FK tables
    conn.execute("PRAGMA foreign_keys = ON;")
    return conn


# -----------------------------
# Timestamps
# -----------------------------
def to_db_stamp(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def from_db_stamp(value: str | None) -> datetime | None:
    if not value:
        return None
    parsed = datetime.fromisoformat(str(value))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _ensure_default_teacher(cursor: sqlite3.Cursor) -> None:
    username = (ADMIN_USERNAME or "").strip()
    password = (ADMIN_PASSWORD or "").strip()
    if not username or not password:
        return

    cursor.execute(
        """
        SELECT id
        FROM teachers
        WHERE username = ? COLLATE NOCASE
        """,
        (username,),
    )
    if cursor.fetchone():
        return

    cursor.execute(
        """
        INSERT INTO teachers (username, full_name, password_hash)
        VALUES (?, ?, ?)
        """,
        (username, ADMIN_FULL_NAME, _hash_password(password)),
    )


def create_tables():
    conn = connect_db()
    sql = SCHEMA_MIGRATION_FILE.read_text(encoding="utf-8")
    conn.executescript(sql)

    cursor = conn.cursor()
    _ensure_default_teacher(cursor)

    conn.commit()
    conn.close()


# -----------------------------
# Teachers
# -----------------------------
def add_teacher(username: str, full_name: str, password: str) -> int:
    clean_username = username.strip()
    clean_password = password.strip()
    if not clean_username or not clean_password:
        raise ValueError("Username and password are required.")

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO teachers (username, full_name, password_hash)
        VALUES (?, ?, ?)
        """,
        (clean_username, full_name.strip(), _hash_password(clean_password)),
    )
    teacher_id = cur.lastrowid
    conn.commit()
    conn.close()
    return teacher_id


def get_teacher_by_id(teacher_id: int):
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("""
        SELECT id, username, full_name
        FROM teachers
        WHERE id = ?
    """, (teacher_id,))
    row = cur.fetchone()
    conn.close()
    return row


def verify_teacher_credentials(username: str, password: str) -> dict | None:
    clean_username = username.strip()
    clean_password = password.strip()
    if not clean_username or not clean_password:
        return None

    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, username, full_name, password_hash
        FROM teachers
        WHERE username = ? COLLATE NOCASE
        """,
        (clean_username,),
    )
    row = cur.fetchone()
    conn.close()

    if not row:
        return None

    teacher_id, saved_username, full_name, password_hash = row
    if not _verify_password(clean_password, password_hash):
        return None

    return {"id": teacher_id, "username": saved_username, "full_name": full_name}


# -----------------------------
# Courses, students, enrollments
# -----------------------------
def add_course(name: str) -> int:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("INSERT INTO courses (name) VALUES (?)", (name,))
    course_id = cur.lastrowid
    conn.commit()
    conn.close()
    return course_id


def get_course_by_id(course_id: int):
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("SELECT id, name, created_at FROM courses WHERE id = ?", (course_id,))
    row = cur.fetchone()
    conn.close()
    return row


def add_student(code: str, full_name: str) -> int:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO students (code, full_name)
        VALUES (?, ?)
        """,
        (code, full_name),
    )
    student_id = cur.lastrowid
    conn.commit()
    conn.close()
    return student_id


def get_student_by_id(student_id: int):
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, code, full_name
        FROM students
        WHERE id = ?
        """,
        (student_id,),
    )
    row = cur.fetchone()
    conn.close()
    return row


def enroll_student(course_id: int, student_id: int) -> int:
    """
    Enroll (or re-activate) a student in a course and return the enrollment id.
    """
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            """
            INSERT INTO enrollments (course_id, student_id)
            VALUES (?, ?)
            """,
            (course_id, student_id),
        )
        enrollment_id = int(cur.lastrowid)
    except sqlite3.IntegrityError:
        cur.execute(
            """
            UPDATE enrollments
            SET active = 1
            WHERE course_id = ? AND student_id = ?
            """,
            (course_id, student_id),
        )
        cur.execute(
            "SELECT id FROM enrollments WHERE course_id = ? AND student_id = ?",
            (course_id, student_id),
        )
        row = cur.fetchone()
        if not row:
            raise
        enrollment_id = int(row[0])
    conn.commit()
    conn.close()
    return enrollment_id


def get_enrolled_student_ids(course_id: int) -> list[int]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT student_id
        FROM enrollments
        WHERE course_id = ? AND active = 1
        ORDER BY student_id ASC
        """,
        (course_id,),
    )
    rows = cur.fetchall()
    conn.close()
    return [int(r[0]) for r in rows]


def get_students_by_ids(student_ids: list[int]) -> list[tuple[int, str, str]]:
    if not student_ids:
        return []
    placeholders = ", ".join("?" for _ in student_ids)
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT id, code, full_name
        FROM students
        WHERE id IN ({placeholders})
        ORDER BY full_name ASC
        """,
        list(student_ids),
    )
    rows = cur.fetchall()
    conn.close()
    return [(int(r[0]), str(r[1]), str(r[2])) for r in rows]


# -----------------------------
# Classes
# -----------------------------
def add_class(
    *,
    subject: str,
    teacher_id: int | None,
    course_id: int | None = None,
    description: str | None = None,
    started_at: datetime | None = None,
) -> int:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO classes (course_id, teacher_id, subject, description, started_at)
        VALUES (?, ?, ?, ?, ?)
        """,
        (
            course_id,
            teacher_id,
            subject,
            description,
            to_db_stamp(started_at) if started_at else None,
        ),
    )
    class_id = cur.lastrowid
    conn.commit()
    conn.close()
    return class_id


def _row_to_class(row) -> ClassSession:
    started_at = from_db_stamp(row[5])
    closed_at = from_db_stamp(row[6])
    return {
        "id": int(row[0]),
        "course_id": int(row[1]) if row[1] is not None else None,
        "teacher_id": int(row[2]) if row[2] is not None else None,
        "subject": str(row[3]),
        "description": str(row[4]) if row[4] is not None else None,
        "started_at": started_at,
        "closed_at": closed_at,
        "is_open": is_class_open(started_at, closed_at),
    }


def get_class_by_id(class_id: int) -> ClassSession | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, course_id, teacher_id, subject, description, started_at, closed_at
        FROM classes
        WHERE id = ?
        """,
        (class_id,),
    )
    row = cur.fetchone()
    conn.close()
    if not row:
        return None
    return _row_to_class(row)


def _transition_class(sql: str, params: tuple) -> bool:
    """Run a guarded UPDATE on one class row; True when the guard matched."""
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(sql, params)
    changed = cur.rowcount == 1
    conn.commit()
    conn.close()
    return changed


def start_class_session(class_id: int, started_at: datetime) -> bool:
    # Draft or closed classes only; an open class keeps its session.
    return _transition_class(
        """
        UPDATE classes
        SET started_at = ?,
            closed_at = NULL
        WHERE id = ?
          AND (started_at IS NULL OR closed_at IS NOT NULL)
        """,
        (to_db_stamp(started_at), class_id),
    )


def close_class_session(class_id: int, closed_at: datetime) -> bool:
    return _transition_class(
        """
        UPDATE classes
        SET closed_at = ?
        WHERE id = ?
          AND started_at IS NOT NULL
          AND closed_at IS NULL
        """,
        (to_db_stamp(closed_at), class_id),
    )


def resume_class_session(class_id: int) -> bool:
    return _transition_class(
        """
        UPDATE classes
        SET closed_at = NULL
        WHERE id = ?
          AND closed_at IS NOT NULL
        """,
        (class_id,),
    )


# -----------------------------
# Attendance configuration (per class)
# -----------------------------
def default_attendance_config(class_id: int) -> AttendanceConfig:
    return {
        "class_id": class_id,
        "present_threshold_minutes": PRESENT_THRESHOLD_MINUTES,
        "allow_manual_entry": ALLOW_MANUAL_ENTRY,
        "notify_late": NOTIFY_LATE,
        "auto_mark_absent_on_close": AUTO_MARK_ABSENT_ON_CLOSE,
    }


def get_attendance_config(class_id: int) -> AttendanceConfig:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT present_threshold_minutes, allow_manual_entry, notify_late, auto_mark_absent_on_close
        FROM attendance_config
        WHERE class_id = ?
        """,
        (class_id,),
    )
    row = cur.fetchone()
    conn.close()
    if not row:
        return default_attendance_config(class_id)
    return {
        "class_id": class_id,
        "present_threshold_minutes": max(0, int(row[0])),
        "allow_manual_entry": bool(row[1]),
        "notify_late": bool(row[2]),
        "auto_mark_absent_on_close": bool(row[3]),
    }


def upsert_attendance_config(config: AttendanceConfig) -> AttendanceConfig:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO attendance_config (
            class_id,
            present_threshold_minutes,
            allow_manual_entry,
            notify_late,
            auto_mark_absent_on_close
        )
        VALUES (?, ?, ?, ?, ?)
        ON CONFLICT(class_id) DO UPDATE SET
            present_threshold_minutes = excluded.present_threshold_minutes,
            allow_manual_entry = excluded.allow_manual_entry,
            notify_late = excluded.notify_late,
            auto_mark_absent_on_close = excluded.auto_mark_absent_on_close,
            updated_at = CURRENT_TIMESTAMP
        """,
        (
            config["class_id"],
            max(0, int(config["present_threshold_minutes"])),
            1 if config["allow_manual_entry"] else 0,
            1 if config["notify_late"] else 0,
            1 if config["auto_mark_absent_on_close"] else 0,
        ),
    )
    conn.commit()
    conn.close()
    return get_attendance_config(config["class_id"])


# -----------------------------
# Scan tokens
# -----------------------------
def insert_scan_token(nonce: str, class_id: int, expires_at: datetime, created_at: datetime) -> None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        INSERT INTO scan_tokens (nonce, class_id, expires_at, created_at)
        VALUES (?, ?, ?, ?)
        """,
        (nonce, class_id, to_db_stamp(expires_at), to_db_stamp(created_at)),
    )
    conn.commit()
    conn.close()


def consume_scan_token(nonce: str, class_id: int, now: datetime) -> TokenCheck:
    """
    Burn a token if it exists, belongs to `class_id` and has not expired.

    The conditional DELETE is the race breaker: of any number of concurrent
    callers only one sees rowcount == 1. Losers fall through to the
    diagnostic SELECT and observe NOT_FOUND.
    """
    now_stamp = to_db_stamp(now)
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            """
            DELETE FROM scan_tokens
            WHERE nonce = ?
              AND class_id = ?
              AND expires_at >= ?
            """,
            (nonce, class_id, now_stamp),
        )
        consumed = cur.rowcount == 1
        conn.commit()
        if consumed:
            return "OK"

        cur.execute(
            """
            SELECT class_id, expires_at
            FROM scan_tokens
            WHERE nonce = ?
            """,
            (nonce,),
        )
        row = cur.fetchone()
        if not row:
            return "NOT_FOUND"
        if int(row[0]) != int(class_id):
            return "CLASS_MISMATCH"

        # Only remaining reason is expiry; drop the dead token.
        cur.execute(
            """
            DELETE FROM scan_tokens
            WHERE nonce = ?
              AND expires_at < ?
            """,
            (nonce, now_stamp),
        )
        conn.commit()
        return "EXPIRED"
    finally:
        conn.close()


def purge_expired_scan_tokens(now: datetime) -> int:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("DELETE FROM scan_tokens WHERE expires_at < ?", (to_db_stamp(now),))
    removed = cur.rowcount
    conn.commit()
    conn.close()
    return int(removed or 0)


def count_scan_tokens() -> int:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("SELECT COUNT(1) FROM scan_tokens")
    row = cur.fetchone()
    conn.close()
    return int(row[0] or 0)


# -----------------------------
# Attendance records
# -----------------------------
_RECORD_COLUMNS = """
    id,
    student_id,
    class_id,
    marked_at,
    class_started_at,
    class_closed_at,
    late_minutes,
    state,
    method,
    is_manual,
    manual_justification,
    recorded_by_teacher_id,
    created_at,
    modified_at
"""


def _row_to_record(row) -> AttendanceRecord:
    return {
        "id": int(row[0]),
        "student_id": int(row[1]),
        "class_id": int(row[2]),
        "marked_at": cast(datetime, from_db_stamp(row[3])),
        "class_started_at": cast(datetime, from_db_stamp(row[4])),
        "class_closed_at": from_db_stamp(row[5]),
        "late_minutes": int(row[6] or 0),
        "state": cast(AttendanceState, str(row[7])),
        "method": cast(RegistrationMethod, str(row[8])),
        "is_manual": bool(row[9]),
        "manual_justification": str(row[10]) if row[10] is not None else None,
        "recorded_by_teacher_id": int(row[11]) if row[11] is not None else None,
        "created_at": cast(datetime, from_db_stamp(row[12])),
        "modified_at": from_db_stamp(row[13]),
    }


def insert_attendance_record(
    *,
    student_id: int,
    class_id: int,
    marked_at: datetime,
    class_started_at: datetime,
    class_closed_at: datetime | None,
    late_minutes: int,
    state: AttendanceState,
    method: RegistrationMethod,
    is_manual: bool,
    manual_justification: str | None,
    recorded_by_teacher_id: int | None,
    created_at: datetime,
    audit_action: AuditAction | None = None,
) -> AttendanceRecord:
    """
    Insert one attendance row (plus its audit entry, if any) in a single
    transaction. Raises sqlite3.IntegrityError when (student_id, class_id)
    already has a record.
    """
    conn = connect_db()
    cur = conn.cursor()
    try:
        cur.execute(
            """
            INSERT INTO attendance_records (
                student_id,
                class_id,
                marked_at,
                class_started_at,
                class_closed_at,
                late_minutes,
                state,
                method,
                is_manual,
                manual_justification,
                recorded_by_teacher_id,
                created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                student_id,
                class_id,
                to_db_stamp(marked_at),
                to_db_stamp(class_started_at),
                to_db_stamp(class_closed_at) if class_closed_at else None,
                max(0, int(late_minutes)),
                state,
                method,
                1 if is_manual else 0,
                manual_justification,
                recorded_by_teacher_id,
                to_db_stamp(created_at),
            ),
        )
        record_id = int(cur.lastrowid)
        if audit_action and recorded_by_teacher_id is not None:
            _insert_audit(
                cur,
                record_id=record_id,
                action=audit_action,
                teacher_id=recorded_by_teacher_id,
                justification=manual_justification or "",
                previous=None,
                recorded_at=created_at,
            )
        conn.commit()
        cur.execute(f"SELECT {_RECORD_COLUMNS} FROM attendance_records WHERE id = ?", (record_id,))
        return _row_to_record(cur.fetchone())
    except sqlite3.IntegrityError:
        conn.rollback()
        raise
    finally:
        conn.close()


def attendance_record_exists(student_id: int, class_id: int) -> bool:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT 1
        FROM attendance_records
        WHERE student_id = ? AND class_id = ?
        LIMIT 1
        """,
        (student_id, class_id),
    )
    row = cur.fetchone()
    conn.close()
    return row is not None


def get_attendance_record(record_id: int) -> AttendanceRecord | None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(f"SELECT {_RECORD_COLUMNS} FROM attendance_records WHERE id = ?", (record_id,))
    row = cur.fetchone()
    conn.close()
    if not row:
        return None
    return _row_to_record(row)


def list_attendance_records_by_class(class_id: int) -> list[AttendanceRecord]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        f"""
        SELECT {_RECORD_COLUMNS}
        FROM attendance_records
        WHERE class_id = ?
        ORDER BY marked_at ASC, id ASC
        """,
        (class_id,),
    )
    rows = cur.fetchall()
    conn.close()
    return [_row_to_record(r) for r in rows]


def amend_attendance_record(
    record_id: int,
    *,
    new_state: AttendanceState,
    justification: str,
    amended_by: int,
    modified_at: datetime,
) -> AttendanceRecord | None:
    """
    Apply a manual correction and append the audit entry atomically.
    Returns None when the record does not exist.
    """
    conn = connect_db()
    cur = conn.cursor()
    try:
        # Take the write lock before reading so the audit entry sees the state being replaced.
        cur.execute("BEGIN IMMEDIATE")
        cur.execute(
            """
            SELECT state, manual_justification, modified_at
            FROM attendance_records
            WHERE id = ?
            """,
            (record_id,),
        )
        row = cur.fetchone()
        if not row:
            conn.rollback()
            return None
        previous = {
            "state": row[0],
            "manual_justification": row[1],
            "modified_at": row[2],
        }

        cur.execute(
            """
            UPDATE attendance_records
            SET state = ?,
                manual_justification = ?,
                is_manual = 1,
                recorded_by_teacher_id = ?,
                modified_at = ?
            WHERE id = ?
            """,
            (new_state, justification, amended_by, to_db_stamp(modified_at), record_id),
        )
        if cur.rowcount != 1:
            conn.rollback()
            return None
        _insert_audit(
            cur,
            record_id=record_id,
            action="AMENDED_MANUAL",
            teacher_id=amended_by,
            justification=justification,
            previous=previous,
            recorded_at=modified_at,
        )
        conn.commit()
        cur.execute(f"SELECT {_RECORD_COLUMNS} FROM attendance_records WHERE id = ?", (record_id,))
        return _row_to_record(cur.fetchone())
    finally:
        conn.close()


# -----------------------------
# Audit trail
# -----------------------------
def _insert_audit(
    cur: sqlite3.Cursor,
    *,
    record_id: int,
    action: AuditAction,
    teacher_id: int,
    justification: str,
    previous: dict[str, Any] | None,
    recorded_at: datetime,
) -> int:
    cur.execute(
        """
        INSERT INTO attendance_audit (
            record_id,
            action,
            teacher_id,
            justification,
            previous_json,
            recorded_at
        )
        VALUES (?, ?, ?, ?, ?, ?)
        """,
        (
            record_id,
            action,
            teacher_id,
            justification,
            json.dumps(previous, sort_keys=True) if previous is not None else None,
            to_db_stamp(recorded_at),
        ),
    )
    return int(cur.lastrowid)


def list_attendance_audit(record_id: int) -> list[AuditEntry]:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute(
        """
        SELECT id, record_id, action, teacher_id, justification, previous_json, recorded_at
        FROM attendance_audit
        WHERE record_id = ?
        ORDER BY id ASC
        """,
        (record_id,),
    )
    rows = cur.fetchall()
    conn.close()

    out: list[AuditEntry] = []
    for entry_id, rec_id, action, teacher_id, justification, previous_json, recorded_at in rows:
        out.append(
            {
                "id": int(entry_id),
                "record_id": int(rec_id),
                "action": cast(AuditAction, str(action)),
                "teacher_id": int(teacher_id),
                "justification": str(justification or ""),
                "previous": json.loads(previous_json) if previous_json else None,
                "recorded_at": cast(datetime, from_db_stamp(recorded_at)),
            }
        )
    return out


# -----------------------------
# Resets
# -----------------------------
def clear_attendance() -> None:
    conn = connect_db()
    cur = conn.cursor()
    cur.execute("DELETE FROM attendance_audit;")
    cur.execute("DELETE FROM attendance_records;")
    cur.execute("DELETE FROM scan_tokens;")
    cur.execute("DELETE FROM sqlite_sequence WHERE name='attendance_audit';")
    cur.execute("DELETE FROM sqlite_sequence WHERE name='attendance_records';")
    conn.commit()
    conn.close()
