from datetime import datetime, timedelta

from backend.config import PRESENT_THRESHOLD_MINUTES
from backend.services.models import AttendanceState


def elapsed_minutes(marked_at: datetime, class_started_at: datetime) -> int:
    """Whole minutes from class start to the scan, truncated toward zero (may be negative)."""
    return int((marked_at - class_started_at).total_seconds() / 60)


def late_minutes(marked_at: datetime, class_started_at: datetime) -> int:
    return max(0, elapsed_minutes(marked_at, class_started_at))


def classify(
    marked_at: datetime,
    class_started_at: datetime,
    class_closed_at: datetime | None,
    *,
    present_threshold_minutes: int = PRESENT_THRESHOLD_MINUTES,
) -> AttendanceState:
    """
    Map a scan instant to Presente / Tardanza / Ausente.

    The threshold is compared against the exact elapsed time, so a scan at
    start + 20min is Presente and one at start + 20min + 1s is Tardanza.
    Scans before the start count as Presente.
    """
    if marked_at - class_started_at <= timedelta(minutes=max(0, present_threshold_minutes)):
        return "Presente"
    if class_closed_at is None or marked_at <= class_closed_at:
        return "Tardanza"
    return "Ausente"
