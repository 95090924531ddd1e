import os
import secrets
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parents[1]

DB_PATH = Path(os.getenv("ASISTENCIA_DB_PATH", BASE_DIR / "database" / "asistencia.db"))
ADMIN_USERNAME = os.getenv("ASISTENCIA_ADMIN_USERNAME", "docente").strip() or "docente"
ADMIN_PASSWORD = os.getenv("ASISTENCIA_ADMIN_PASSWORD", "docente123").strip() or "docente123"
ADMIN_FULL_NAME = os.getenv("ASISTENCIA_ADMIN_FULL_NAME", "Docente Principal").strip() or "Docente Principal"
SIGNING_KEY = os.getenv("ASISTENCIA_SIGNING_KEY", "").strip() or secrets.token_urlsafe(32)
AUTH_TOKEN_TTL_SECONDS = int(os.getenv("ASISTENCIA_AUTH_TOKEN_TTL_SECONDS", "43200"))


def _parse_bool(value: str | None, fallback: bool) -> bool:
    if value is None:
        return fallback
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return fallback


def _parse_csv(value: str | None, fallback: list[str]) -> list[str]:
    if not value:
        return fallback
    parsed = [item.strip() for item in value.split(",") if item.strip()]
    return parsed or fallback


def _parse_storage_backend(value: str | None) -> str:
    normalized = (value or "").strip().lower()
    if normalized in {"memory", "in_memory", "in-memory"}:
        return "memory"
    return "sqlite"


CORS_ALLOW_ORIGINS = _parse_csv(
    os.getenv("ASISTENCIA_CORS_ALLOW_ORIGINS"),
    ["http://localhost:5173", "http://127.0.0.1:5173"],
)
CORS_ALLOW_METHODS = _parse_csv(
    os.getenv("ASISTENCIA_CORS_ALLOW_METHODS"),
    ["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
)
CORS_ALLOW_HEADERS = _parse_csv(
    os.getenv("ASISTENCIA_CORS_ALLOW_HEADERS"),
    ["Authorization", "Content-Type", "Accept"],
)
CORS_ALLOW_CREDENTIALS = _parse_bool(os.getenv("ASISTENCIA_CORS_ALLOW_CREDENTIALS"), True)
ENABLE_DEBUG_ENDPOINTS = _parse_bool(os.getenv("ASISTENCIA_ENABLE_DEBUG_ENDPOINTS"), False)

LOG_LEVEL = os.getenv("ASISTENCIA_LOG_LEVEL", "INFO").strip().upper() or "INFO"
STORAGE_BACKEND = _parse_storage_backend(os.getenv("ASISTENCIA_STORAGE_BACKEND"))

# Base used to build the URL encoded in each QR code.
PUBLIC_BASE_URL = os.getenv("ASISTENCIA_PUBLIC_BASE_URL", "http://localhost:8000").strip().rstrip("/")

# Scan tokens
TOKEN_VALIDITY_SECONDS = max(
    1,
    int(os.getenv("ASISTENCIA_TOKEN_VALIDITY_SECONDS", "300")),
)
TOKEN_MIN_VALIDITY_SECONDS = 30
TOKEN_MAX_VALIDITY_SECONDS = 3600

# Attendance classification defaults (per-class config overrides these)
PRESENT_THRESHOLD_MINUTES = max(
    0,
    int(os.getenv("ASISTENCIA_PRESENT_THRESHOLD_MINUTES", "20")),
)
ALLOW_MANUAL_ENTRY = _parse_bool(os.getenv("ASISTENCIA_ALLOW_MANUAL_ENTRY"), False)
NOTIFY_LATE = _parse_bool(os.getenv("ASISTENCIA_NOTIFY_LATE"), True)
AUTO_MARK_ABSENT_ON_CLOSE = _parse_bool(os.getenv("ASISTENCIA_AUTO_MARK_ABSENT_ON_CLOSE"), True)

SQLITE_BUSY_TIMEOUT_SECONDS = float(os.getenv("ASISTENCIA_SQLITE_BUSY_TIMEOUT_SECONDS", "5"))
