import base64
from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

import backend.config as config
import backend.main as main
import backend.routers.core as core
import database.db as db
from backend.services.container import build_services
from backend.services.lifecycle import REOPEN_NOTICE
from backend.services.scanning import INVALID_TOKEN_MESSAGE
from backend.tests.support import T0, FrozenClock

PNG_MAGIC = b"\x89PNG\r\n\x1a\n"


@pytest.fixture()
def api_clock():
    return FrozenClock(T0)


@pytest.fixture()
def client(tmp_path, monkeypatch, api_clock):
    test_db = tmp_path / "asistencia_test.db"

    # Point DB to a temp file for isolation.
    monkeypatch.setattr(config, "DB_PATH", test_db)
    monkeypatch.setattr(db, "DB_PATH", test_db)

    db.create_tables()

    with TestClient(main.app) as c:
        main.app.state.services = build_services(
            storage_backend="sqlite",
            clock=api_clock,
            public_base_url="http://testserver",
        )
        yield c


@pytest.fixture()
def auth_headers(client):
    return _login(client, config.ADMIN_USERNAME, config.ADMIN_PASSWORD)


def _login(client, username: str, password: str) -> dict:
    res = client.post("/auth/login", json={"username": username, "password": password})
    assert res.status_code == 200
    token = res.json()["access_token"]
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def roster(client, auth_headers):
    res = client.post("/courses", json={"name": "Matematica 1A"}, headers=auth_headers)
    assert res.status_code == 200
    course_id = res.json()["id"]

    student_ids = []
    for code, name in [("A001", "Ana Rojas"), ("A002", "Bruno Diaz"), ("A003", "Carla Vega")]:
        res = client.post("/students", json={"code": code, "full_name": name}, headers=auth_headers)
        assert res.status_code == 200
        student_ids.append(res.json()["id"])
        res = client.post(
            f"/courses/{course_id}/enrollments",
            json={"student_id": student_ids[-1]},
            headers=auth_headers,
        )
        assert res.status_code == 200
    return {"course_id": course_id, "student_ids": student_ids}


@pytest.fixture()
def open_class(client, auth_headers, roster):
    res = client.post(
        "/classes",
        json={"subject": "Algebra", "course_id": roster["course_id"]},
        headers=auth_headers,
    )
    assert res.status_code == 200
    body = res.json()
    assert body["is_open"] is True
    return body["id"]


def _mint(client, class_id: int, headers: dict, **params) -> dict:
    res = client.post(f"/classes/{class_id}/token", params=params, headers=headers)
    assert res.status_code == 200
    return res.json()


def test_health(client):
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json() == {"status": "ok"}


def test_debug_dbpath_disabled_by_default(client, auth_headers):
    res = client.get("/debug/dbpath", headers=auth_headers)
    assert res.status_code == 404
    assert res.json()["detail"] == "Not found."


def test_debug_dbpath_requires_session_when_enabled(client, monkeypatch, auth_headers):
    monkeypatch.setattr(core, "ENABLE_DEBUG_ENDPOINTS", True)

    res = client.get("/debug/dbpath")
    assert res.status_code == 401

    res = client.get("/debug/dbpath", headers=auth_headers)
    assert res.status_code == 200
    assert "db_path" in res.json()


def test_login_rejects_invalid_credentials(client):
    res = client.post(
        "/auth/login",
        json={"username": config.ADMIN_USERNAME, "password": "wrong-password"},
    )
    assert res.status_code == 401
    assert res.json()["detail"] == "Invalid teacher credentials."


def test_auth_me_reports_session(client, auth_headers):
    res = client.get("/auth/me", headers=auth_headers)
    assert res.status_code == 200
    body = res.json()
    assert body["username"] == config.ADMIN_USERNAME
    assert body["role"] == "teacher"
    assert body["full_name"] == config.ADMIN_FULL_NAME
    assert isinstance(body["teacher_id"], int)


def test_teacher_endpoints_require_session(client):
    assert client.get("/auth/me").status_code == 401
    assert client.post("/courses", json={"name": "X"}).status_code == 401
    assert client.post("/classes", json={"subject": "X"}).status_code == 401
    assert client.post("/attendance/teacher-scan", json={"student_id": 1, "class_id": 1}).status_code == 401

    res = client.get("/classes/1", headers={"Authorization": "Basic abc"})
    assert res.status_code == 401
    assert res.json()["detail"] == "Invalid authorization scheme."


def test_attendance_defaults_are_public(client):
    res = client.get("/config/attendance")
    assert res.status_code == 200
    body = res.json()
    assert body["present_threshold_minutes"] == config.PRESENT_THRESHOLD_MINUTES
    assert body["token_validity_seconds"] == config.TOKEN_VALIDITY_SECONDS


def test_duplicate_student_code_conflicts(client, auth_headers):
    payload = {"code": "DUP1", "full_name": "Dup One"}
    assert client.post("/students", json=payload, headers=auth_headers).status_code == 200
    res = client.post("/students", json=payload, headers=auth_headers)
    assert res.status_code == 409
    assert res.json()["detail"] == "Student code already exists."


def test_student_scan_flow(client, auth_headers, roster, open_class, api_clock):
    first, second, _ = roster["student_ids"]
    minted = _mint(client, open_class, auth_headers)
    assert minted["scan_url"].startswith("http://testserver/scan?")
    assert base64.b64decode(minted["qr_base64_png"]).startswith(PNG_MAGIC)

    api_clock.advance(minutes=5)
    res = client.post(
        "/attendance/student-scan",
        json={"student_id": first, "class_id": open_class, "token_id": minted["token_id"]},
    )
    assert res.status_code == 200
    body = res.json()
    assert body["outcome"] == "Success"
    assert body["state"] == "Presente"
    assert body["late_minutes"] == 5

    # Same token, different student.
    res = client.post(
        "/attendance/student-scan",
        json={"student_id": second, "class_id": open_class, "token_id": minted["token_id"]},
    )
    assert res.status_code == 400
    assert res.json()["detail"] == INVALID_TOKEN_MESSAGE

    # Fresh token, same student.
    again = _mint(client, open_class, auth_headers, include_qr=False)
    assert "qr_base64_png" not in again
    res = client.post(
        "/attendance/student-scan",
        json={"student_id": first, "class_id": open_class, "token_id": again["token_id"]},
    )
    assert res.status_code == 200
    assert res.json()["outcome"] == "AlreadyRecorded"

    res = client.get(f"/classes/{open_class}/attendance", headers=auth_headers)
    assert res.status_code == 200
    assert [r["student_id"] for r in res.json()] == [first]


def test_expired_token_is_rejected(client, auth_headers, roster, open_class, api_clock):
    minted = _mint(client, open_class, auth_headers, validity_seconds=90)
    api_clock.advance(seconds=91)

    res = client.post(
        "/attendance/student-scan",
        json={"student_id": roster["student_ids"][0], "class_id": open_class, "token_id": minted["token_id"]},
    )
    assert res.status_code == 400
    assert res.json()["detail"] == INVALID_TOKEN_MESSAGE

    res = client.post("/admin/tokens/purge", headers=auth_headers)
    assert res.status_code == 200
    assert res.json()["outstanding"] == 0


def test_token_validity_bounds(client, auth_headers, open_class):
    res = client.post(
        f"/classes/{open_class}/token",
        params={"validity_seconds": config.TOKEN_MIN_VALIDITY_SECONDS - 1},
        headers=auth_headers,
    )
    assert res.status_code == 422

    res = client.post(
        f"/classes/{open_class}/token",
        params={"validity_seconds": config.TOKEN_MAX_VALIDITY_SECONDS + 1},
        headers=auth_headers,
    )
    assert res.status_code == 422


def test_qr_png_endpoint(client, auth_headers, open_class):
    res = client.get(f"/classes/{open_class}/qr.png", headers=auth_headers)
    assert res.status_code == 200
    assert res.headers["content-type"] == "image/png"
    assert res.headers["cache-control"] == "no-store"
    assert res.content.startswith(PNG_MAGIC)


def test_student_scan_unknown_class(client):
    res = client.post(
        "/attendance/student-scan",
        json={"student_id": 1, "class_id": 999, "token_id": "nope"},
    )
    assert res.status_code == 404


def test_teacher_scan_close_sweep_and_reopen(client, auth_headers, roster, open_class, api_clock):
    first, second, third = roster["student_ids"]

    api_clock.advance(minutes=25)
    res = client.post(
        "/attendance/teacher-scan",
        json={"student_id": first, "class_id": open_class},
        headers=auth_headers,
    )
    assert res.status_code == 200
    assert res.json()["state"] == "Tardanza"

    res = client.get(f"/classes/{open_class}/live", headers=auth_headers)
    assert res.status_code == 200
    live = res.json()
    assert live["counts"]["Tardanza"] == 1
    assert live["counts"]["Pendiente"] == 2
    assert {s["id"] for s in live["pending_students"]} == {second, third}
    assert live["minutes_elapsed"] == 25

    api_clock.set(T0 + timedelta(minutes=90))
    res = client.post(f"/classes/{open_class}/close", headers=auth_headers)
    assert res.status_code == 200
    assert res.json()["swept_count"] == 2

    res = client.post(f"/classes/{open_class}/close", headers=auth_headers)
    assert res.status_code == 400

    res = client.post(
        "/attendance/teacher-scan",
        json={"student_id": second, "class_id": open_class},
        headers=auth_headers,
    )
    assert res.status_code == 400

    rows = client.get(f"/classes/{open_class}/attendance", headers=auth_headers).json()
    by_student = {r["student_id"]: r for r in rows}
    assert by_student[second]["method"] == "AutoAbsent"
    assert by_student[third]["state"] == "Ausente"

    res = client.post(f"/classes/{open_class}/sweep", headers=auth_headers)
    assert res.status_code == 200
    assert res.json()["swept_count"] == 0

    res = client.post(f"/classes/{open_class}/reopen", headers=auth_headers)
    assert res.status_code == 200
    assert res.json()["message"] == REOPEN_NOTICE
    assert res.json()["class"]["is_open"] is True

    rows = client.get(f"/classes/{open_class}/attendance", headers=auth_headers).json()
    assert sum(1 for r in rows if r["method"] == "AutoAbsent") == 2


def test_manual_entry_amend_and_audit(client, auth_headers, roster, open_class):
    student = roster["student_ids"][0]
    payload = {"student_id": student, "class_id": open_class, "justification": "Sin bateria"}

    res = client.post("/attendance/manual", json=payload, headers=auth_headers)
    assert res.status_code == 400
    assert res.json()["detail"] == "Manual entry is not enabled for this class."

    res = client.put(
        f"/classes/{open_class}/config",
        json={"present_threshold_minutes": 10, "allow_manual_entry": True},
        headers=auth_headers,
    )
    assert res.status_code == 200
    assert res.json()["allow_manual_entry"] is True
    res = client.get(f"/classes/{open_class}/config", headers=auth_headers)
    assert res.json()["present_threshold_minutes"] == 10

    res = client.post("/attendance/manual", json=payload, headers=auth_headers)
    assert res.status_code == 200
    record_id = res.json()["record_id"]

    res = client.post(
        f"/attendance/{record_id}/amend",
        json={"new_state": "Excusado", "justification": "Certificado medico"},
        headers=auth_headers,
    )
    assert res.status_code == 200
    assert res.json()["record"]["state"] == "Excusado"

    res = client.post(
        f"/attendance/{record_id}/amend",
        json={"new_state": "Ausente", "justification": "   "},
        headers=auth_headers,
    )
    assert res.status_code == 400

    res = client.get(f"/attendance/{record_id}/audit", headers=auth_headers)
    assert res.status_code == 200
    actions = [a["action"] for a in res.json()]
    assert actions == ["CREATED_MANUAL", "AMENDED_MANUAL"]

    assert client.get("/attendance/9999/audit", headers=auth_headers).status_code == 404


def test_other_teacher_cannot_manage_class(client, auth_headers, open_class):
    db.add_teacher("otro", "Otro Docente", "otro-pass")
    other_headers = _login(client, "otro", "otro-pass")

    res = client.get(f"/classes/{open_class}", headers=other_headers)
    assert res.status_code == 403
    assert client.post(f"/classes/{open_class}/token", headers=other_headers).status_code == 403
    assert client.get("/classes/9999", headers=other_headers).status_code == 404


def test_class_lifecycle_guards(client, auth_headers):
    res = client.post("/classes", json={"subject": "Draft", "open_now": False}, headers=auth_headers)
    assert res.status_code == 200
    class_id = res.json()["id"]
    assert res.json()["is_open"] is False

    assert client.post(f"/classes/{class_id}/token", headers=auth_headers).status_code == 400
    assert client.post(f"/classes/{class_id}/reopen", headers=auth_headers).status_code == 400

    res = client.post(f"/classes/{class_id}/open", headers=auth_headers)
    assert res.status_code == 200
    assert res.json()["started_at"] is not None

    res = client.post(f"/classes/{class_id}/open", headers=auth_headers)
    assert res.status_code == 400
    assert res.json()["detail"] == f"Class {class_id} is already open."

    res = client.post("/classes", json={"subject": "X", "course_id": 9999}, headers=auth_headers)
    assert res.status_code == 404


def test_reset_attendance_clears_records(client, auth_headers, roster, open_class):
    res = client.post(
        "/attendance/teacher-scan",
        json={"student_id": roster["student_ids"][0], "class_id": open_class},
        headers=auth_headers,
    )
    assert res.status_code == 200

    res = client.post("/admin/reset/attendance", headers=auth_headers)
    assert res.status_code == 200
    assert client.get(f"/classes/{open_class}/attendance", headers=auth_headers).json() == []
