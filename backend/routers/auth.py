import time
import sqlite3

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from backend.security import issue_session_token, require_session
from database.db import create_tables, get_teacher_by_id, verify_teacher_credentials

router = APIRouter()


class TeacherLogin(BaseModel):
    username: str
    password: str


@router.post("/auth/login")
def teacher_login(payload: TeacherLogin):
    username = payload.username.strip()
    password = payload.password.strip()

    if not username:
        raise HTTPException(status_code=400, detail="Username is required.")
    if not password:
        raise HTTPException(status_code=400, detail="Password is required.")

    try:
        teacher = verify_teacher_credentials(username, password)
    except sqlite3.OperationalError:
        # Self-heal when DB schema is missing (e.g., startup/lifespan skipped).
        try:
            create_tables()
            teacher = verify_teacher_credentials(username, password)
        except sqlite3.OperationalError:
            raise HTTPException(
                status_code=503,
                detail="Authentication service unavailable. Please retry.",
            )

    if not teacher:
        raise HTTPException(status_code=401, detail="Invalid teacher credentials.")

    token, claims = issue_session_token(teacher["id"], teacher["username"])
    now = int(time.time())
    return {
        "access_token": token,
        "token_type": "bearer",
        "teacher_id": claims["tid"],
        "username": claims["sub"],
        "full_name": teacher["full_name"],
        "role": claims["role"],
        "expires_at": claims["exp"],
        "expires_in": max(0, int(claims["exp"]) - now),
    }


@router.get("/auth/me")
def auth_me(session: dict = Depends(require_session)):
    row = get_teacher_by_id(session["tid"])
    if not row:
        raise HTTPException(status_code=401, detail="Teacher account no longer exists.")
    return {
        "teacher_id": row[0],
        "full_name": row[2],
        "username": session.get("sub"),
        "role": session.get("role", "teacher"),
        "expires_at": session.get("exp"),
        "issued_at": session.get("iat"),
    }
