import pytest

import backend.config as config
import database.db as db
from backend.services.catalog import InMemoryCatalog
from backend.services.lifecycle import ClassLifecycle
from backend.services.registry import InMemoryAttendanceRegistry, SqliteAttendanceRegistry
from backend.services.scanning import ScanCoordinator
from backend.services.tokens import InMemoryTokenStore, SqliteTokenStore
from backend.tests.support import CLASS_ID, COURSE_ID, ENROLLED, T0, TEACHER_ID, FrozenClock


@pytest.fixture()
def sqlite_db(tmp_path, monkeypatch):
    test_db = tmp_path / "asistencia_test.db"

    # Point DB to a temp file for isolation.
    monkeypatch.setattr(config, "DB_PATH", test_db)
    monkeypatch.setattr(db, "DB_PATH", test_db)

    db.create_tables()
    return test_db


@pytest.fixture()
def clock():
    return FrozenClock(T0)


@pytest.fixture(params=["memory", "sqlite"])
def backend_kind(request):
    if request.param == "sqlite":
        request.getfixturevalue("sqlite_db")
    return request.param


@pytest.fixture()
def token_store(backend_kind, clock):
    if backend_kind == "sqlite":
        return SqliteTokenStore(clock=clock, validity_seconds=300)
    return InMemoryTokenStore(clock=clock, validity_seconds=300)


@pytest.fixture()
def registry(backend_kind, clock):
    if backend_kind == "sqlite":
        return SqliteAttendanceRegistry(clock=clock)
    return InMemoryAttendanceRegistry(clock=clock)


@pytest.fixture()
def catalog():
    cat = InMemoryCatalog()
    for student_id in ENROLLED:
        cat.enroll(COURSE_ID, student_id)
    cat.add_student(500)  # exists, not enrolled
    cat.add_class(
        CLASS_ID,
        course_id=COURSE_ID,
        teacher_id=TEACHER_ID,
        subject="Algebra",
        started_at=T0,
    )
    return cat


@pytest.fixture()
def coordinator(catalog, token_store, registry, clock):
    return ScanCoordinator(
        catalog=catalog,
        tokens=token_store,
        registry=registry,
        clock=clock,
        public_base_url="http://testserver",
    )


@pytest.fixture()
def lifecycle(catalog, registry, clock):
    return ClassLifecycle(catalog=catalog, registry=registry, clock=clock)
