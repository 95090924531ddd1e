class AttendanceError(Exception):
    """Base for failures the attendance core reports to its caller."""

    code = "ERROR"
    status_code = 400
    default_message = "Attendance operation failed."

    def __init__(self, message: str | None = None):
        super().__init__(message or self.default_message)

    @property
    def message(self) -> str:
        return str(self)


# -----------------------------
# NotFound (404)
# -----------------------------
class NotFoundError(AttendanceError):
    code = "NOT_FOUND"
    status_code = 404
    default_message = "Not found."


class ClassNotFound(NotFoundError):
    code = "CLASS_NOT_FOUND"
    default_message = "Class not found."


class StudentNotFound(NotFoundError):
    code = "STUDENT_NOT_FOUND"
    default_message = "Student not found."


class RecordNotFound(NotFoundError):
    code = "RECORD_NOT_FOUND"
    default_message = "Attendance record not found."


# -----------------------------
# InvalidState (400)
# -----------------------------
class InvalidStateError(AttendanceError):
    code = "INVALID_STATE"
    status_code = 400
    default_message = "Operation not allowed in the current state."


class ClassClosed(InvalidStateError):
    code = "CLASS_CLOSED"
    default_message = "Class is not open."


class ClassOpen(InvalidStateError):
    code = "CLASS_OPEN"
    default_message = "Class is still open."


class AlreadyOpen(InvalidStateError):
    code = "ALREADY_OPEN"
    default_message = "Class is already open."


class AlreadyClosed(InvalidStateError):
    code = "ALREADY_CLOSED"
    default_message = "Class is already closed."


class NotClosed(InvalidStateError):
    code = "NOT_CLOSED"
    default_message = "Class is not closed."


class InvalidAmendment(InvalidStateError):
    code = "INVALID_AMENDMENT"
    default_message = "Invalid attendance amendment."


# -----------------------------
# Conflict (downgraded by the coordinator)
# -----------------------------
class RecordAlreadyExists(AttendanceError):
    code = "ALREADY_EXISTS"
    status_code = 409
    default_message = "Attendance already recorded for this student."

    def __init__(self, student_id: int, class_id: int):
        super().__init__(f"Attendance already recorded for student {student_id} in class {class_id}.")
        self.student_id = student_id
        self.class_id = class_id
