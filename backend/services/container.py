from fastapi import Request

from backend.clock import Clock, SystemClock
from backend.config import PUBLIC_BASE_URL, STORAGE_BACKEND, TOKEN_VALIDITY_SECONDS
from backend.services.catalog import Catalog, SqliteCatalog
from backend.services.lifecycle import ClassLifecycle
from backend.services.registry import AttendanceRegistry, InMemoryAttendanceRegistry, SqliteAttendanceRegistry
from backend.services.scanning import ScanCoordinator
from backend.services.tokens import InMemoryTokenStore, SqliteTokenStore, TokenStore


class AttendanceServices:
    """Wiring of the attendance core for one application instance."""

    def __init__(
        self,
        *,
        catalog: Catalog,
        tokens: TokenStore,
        registry: AttendanceRegistry,
        clock: Clock,
        public_base_url: str = PUBLIC_BASE_URL,
    ):
        self.catalog = catalog
        self.tokens = tokens
        self.registry = registry
        self.clock = clock
        self.scans = ScanCoordinator(
            catalog=catalog,
            tokens=tokens,
            registry=registry,
            clock=clock,
            public_base_url=public_base_url,
        )
        self.lifecycle = ClassLifecycle(catalog=catalog, registry=registry, clock=clock)


def build_services(
    *,
    storage_backend: str = STORAGE_BACKEND,
    clock: Clock | None = None,
    token_validity_seconds: int = TOKEN_VALIDITY_SECONDS,
    public_base_url: str = PUBLIC_BASE_URL,
) -> AttendanceServices:
    active_clock = clock or SystemClock()
    tokens: TokenStore
    registry: AttendanceRegistry
    if storage_backend == "memory":
        tokens = InMemoryTokenStore(clock=active_clock, validity_seconds=token_validity_seconds)
        registry = InMemoryAttendanceRegistry(clock=active_clock)
    else:
        tokens = SqliteTokenStore(clock=active_clock, validity_seconds=token_validity_seconds)
        registry = SqliteAttendanceRegistry(clock=active_clock)
    return AttendanceServices(
        catalog=SqliteCatalog(),
        tokens=tokens,
        registry=registry,
        clock=active_clock,
        public_base_url=public_base_url,
    )


def get_services(request: Request) -> AttendanceServices:
    return request.app.state.services
