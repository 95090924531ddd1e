import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from backend.config import (
    CORS_ALLOW_CREDENTIALS,
    CORS_ALLOW_HEADERS,
    CORS_ALLOW_METHODS,
    CORS_ALLOW_ORIGINS,
    LOG_LEVEL,
    PUBLIC_BASE_URL,
    STORAGE_BACKEND,
    TOKEN_VALIDITY_SECONDS,
)
from backend.routers import admin, attendance, auth, classes, core, roster
from backend.services.container import build_services
from database.db import create_tables

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


# -----------------------------
# Startup
# -----------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    create_tables()
    app.state.services = build_services(
        storage_backend=STORAGE_BACKEND,
        token_validity_seconds=TOKEN_VALIDITY_SECONDS,
        public_base_url=PUBLIC_BASE_URL,
    )
    logger.info("Attendance API ready storage_backend=%s", STORAGE_BACKEND)
    yield


app = FastAPI(title="Asistencia QR API", lifespan=lifespan)


# -----------------------------
# CORS (web dashboard)
# -----------------------------
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOW_ORIGINS,
    allow_credentials=CORS_ALLOW_CREDENTIALS,
    allow_methods=CORS_ALLOW_METHODS,
    allow_headers=CORS_ALLOW_HEADERS,
)


# -----------------------------
# Routers
# -----------------------------
app.include_router(core.router)
app.include_router(auth.router)
app.include_router(roster.router)
app.include_router(classes.router)
app.include_router(attendance.router)
app.include_router(admin.router)
