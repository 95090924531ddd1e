from concurrent.futures import ThreadPoolExecutor
from urllib.parse import parse_qs, urlparse

import pytest

from backend.services.errors import ClassClosed
from backend.services.scanning import INVALID_TOKEN_MESSAGE, build_scan_url
from backend.tests.support import CLASS_ID, T0, TEACHER_ID


def _mint(coordinator, **kwargs):
    return coordinator.mint_token(CLASS_ID, **kwargs)["token_id"]


def test_scan_url_carries_class_and_nonce():
    url = build_scan_url("http://testserver/", CLASS_ID, "abc-123")
    parsed = urlparse(url)
    assert parsed.path == "/scan"
    assert parse_qs(parsed.query) == {"classId": [str(CLASS_ID)], "nonce": ["abc-123"]}


def test_mint_returns_scan_url(coordinator):
    minted = coordinator.mint_token(CLASS_ID)
    assert minted["class_id"] == CLASS_ID
    assert minted["scan_url"].startswith("http://testserver/scan?")
    assert minted["token_id"] in minted["scan_url"]


def test_student_scan_on_time_is_present(coordinator, clock, registry):
    token = _mint(coordinator)
    clock.advance(minutes=5)

    result = coordinator.student_scan(101, CLASS_ID, token)
    assert result["outcome"] == "Success"
    assert result["state"] == "Presente"
    assert result["late_minutes"] == 5
    assert result["error_code"] is None

    record = registry.get_record(result["record_id"])
    assert record["method"] == "StudentScan"
    assert record["class_started_at"] == T0


def test_student_scan_after_threshold_is_late(coordinator, clock):
    clock.advance(minutes=24)
    token = _mint(coordinator)
    clock.advance(minutes=1)

    result = coordinator.student_scan(101, CLASS_ID, token)
    assert result["outcome"] == "Success"
    assert result["state"] == "Tardanza"
    assert result["late_minutes"] == 25


def test_second_scan_with_fresh_token_is_already_recorded(coordinator, registry):
    first = coordinator.student_scan(101, CLASS_ID, _mint(coordinator))
    second = coordinator.student_scan(101, CLASS_ID, _mint(coordinator))

    assert first["outcome"] == "Success"
    assert second["outcome"] == "AlreadyRecorded"
    assert second["error_code"] is None
    assert len(registry.list_by_class(CLASS_ID)) == 1


def test_token_cannot_be_reused_by_another_student(coordinator, registry):
    token = _mint(coordinator)
    assert coordinator.student_scan(101, CLASS_ID, token)["outcome"] == "Success"

    result = coordinator.student_scan(102, CLASS_ID, token)
    assert result["outcome"] == "Error"
    assert result["error_code"] == "INVALID_OR_EXPIRED_TOKEN"
    assert not registry.record_exists(102, CLASS_ID)


def test_expired_token_leaves_no_record_and_no_token(coordinator, clock, token_store, registry):
    token = _mint(coordinator, validity_seconds=90)
    clock.advance(seconds=91)

    result = coordinator.student_scan(101, CLASS_ID, token)
    assert result["outcome"] == "Error"
    assert result["error_code"] == "INVALID_OR_EXPIRED_TOKEN"
    assert result["message"] == INVALID_TOKEN_MESSAGE
    assert registry.list_by_class(CLASS_ID) == []
    assert token_store.count() == 0


def test_token_from_other_class_is_rejected_with_same_error(coordinator, catalog, token_store):
    catalog.add_class(2, course_id=None, teacher_id=TEACHER_ID, subject="Physics", started_at=T0)
    other = coordinator.mint_token(2)["token_id"]

    result = coordinator.student_scan(101, CLASS_ID, other)
    assert result["error_code"] == "INVALID_OR_EXPIRED_TOKEN"
    assert result["message"] == INVALID_TOKEN_MESSAGE
    assert token_store.count() == 1


def test_unknown_class_and_student(coordinator):
    token = _mint(coordinator)

    missing_class = coordinator.student_scan(101, 999, token)
    assert missing_class["error_code"] == "CLASS_NOT_FOUND"

    missing_student = coordinator.student_scan(4242, CLASS_ID, token)
    assert missing_student["error_code"] == "STUDENT_NOT_FOUND"

    # Neither failure burned the token.
    assert coordinator.student_scan(101, CLASS_ID, token)["outcome"] == "Success"


def test_closed_class_rejects_scans_and_mints(coordinator, catalog, clock):
    token = _mint(coordinator)
    catalog.set_class_window(CLASS_ID, T0, clock.advance(minutes=60))

    result = coordinator.student_scan(101, CLASS_ID, token)
    assert result["error_code"] == "CLASS_CLOSED"

    teacher = coordinator.teacher_scan(101, CLASS_ID, TEACHER_ID)
    assert teacher["error_code"] == "CLASS_CLOSED"

    with pytest.raises(ClassClosed):
        coordinator.mint_token(CLASS_ID)


def test_never_opened_class_is_closed(coordinator, catalog):
    catalog.add_class(3, course_id=None, teacher_id=TEACHER_ID, subject="Draft")
    result = coordinator.teacher_scan(101, 3, TEACHER_ID)
    assert result["outcome"] == "Error"
    assert result["error_code"] == "CLASS_CLOSED"


def test_teacher_scan_records_teacher(coordinator, clock, registry):
    clock.advance(minutes=30)
    result = coordinator.teacher_scan(102, CLASS_ID, TEACHER_ID)
    assert result["outcome"] == "Success"
    assert result["state"] == "Tardanza"

    record = registry.get_record(result["record_id"])
    assert record["method"] == "TeacherScan"
    assert record["recorded_by_teacher_id"] == TEACHER_ID
    assert record["is_manual"] is False


def test_class_threshold_config_applies(coordinator, catalog, clock):
    catalog.save_config(
        {
            "class_id": CLASS_ID,
            "present_threshold_minutes": 5,
            "allow_manual_entry": False,
            "notify_late": True,
            "auto_mark_absent_on_close": True,
        }
    )
    clock.advance(minutes=6)
    assert coordinator.teacher_scan(101, CLASS_ID, TEACHER_ID)["state"] == "Tardanza"


def test_manual_entry_requires_config_and_justification(coordinator, catalog, registry):
    disabled = coordinator.manual_entry(101, CLASS_ID, TEACHER_ID, "Lost phone")
    assert disabled["error_code"] == "MANUAL_ENTRY_DISABLED"

    config = catalog.get_config(CLASS_ID)
    config["allow_manual_entry"] = True
    catalog.save_config(config)

    blank = coordinator.manual_entry(101, CLASS_ID, TEACHER_ID, "  ")
    assert blank["error_code"] == "JUSTIFICATION_REQUIRED"

    ok = coordinator.manual_entry(101, CLASS_ID, TEACHER_ID, "Lost phone")
    assert ok["outcome"] == "Success"
    record = registry.get_record(ok["record_id"])
    assert record["method"] == "Manual"
    assert record["is_manual"] is True
    assert registry.list_audit(record["id"])[0]["action"] == "CREATED_MANUAL"


def test_concurrent_scans_by_same_student_write_one_record(coordinator, registry):
    tokens = [_mint(coordinator) for _ in range(8)]

    with ThreadPoolExecutor(max_workers=8) as pool:
        results = list(pool.map(lambda t: coordinator.student_scan(101, CLASS_ID, t), tokens))

    outcomes = [r["outcome"] for r in results]
    assert outcomes.count("Success") == 1
    assert outcomes.count("AlreadyRecorded") == 7
    assert len(registry.list_by_class(CLASS_ID)) == 1
