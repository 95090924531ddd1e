import base64
import hashlib
import hmac
import json
import time
from typing import Any

from fastapi import Header, HTTPException

from backend.config import AUTH_TOKEN_TTL_SECONDS, SIGNING_KEY

TEACHER_ROLE = "teacher"
SESSION_ROLES = {TEACHER_ROLE}


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _unb64url(value: str) -> bytes:
    return base64.urlsafe_b64decode(value + "=" * (-len(value) % 4))


def _signature(body: str) -> str:
    mac = hmac.new(SIGNING_KEY.encode("utf-8"), body.encode("utf-8"), hashlib.sha256)
    return _b64url(mac.digest())


def issue_session_token(teacher_id: int, username: str, *, role: str = TEACHER_ROLE) -> tuple[str, dict[str, Any]]:
    """
    Sign a teacher session. The token is `<claims>.<hmac>`, both base64url
    without padding; claims carry the username (sub) and the teacher id (tid).
    """
    issued_at = int(time.time())
    claims = {
        "sub": username.strip(),
        "tid": int(teacher_id),
        "role": role,
        "iat": issued_at,
        "exp": issued_at + AUTH_TOKEN_TTL_SECONDS,
    }
    body = _b64url(json.dumps(claims, separators=(",", ":"), sort_keys=True).encode("utf-8"))
    return f"{body}.{_signature(body)}", claims


def _claims_valid(claims: Any, now: int) -> bool:
    if not isinstance(claims, dict):
        return False
    sub = claims.get("sub")
    if not isinstance(sub, str) or not sub.strip():
        return False
    if not isinstance(claims.get("tid"), int):
        return False
    if claims.get("role", TEACHER_ROLE) not in SESSION_ROLES:
        return False
    exp = claims.get("exp")
    return isinstance(exp, int) and exp >= now


def decode_session_token(token: str) -> dict[str, Any] | None:
    body, dot, signature = (token or "").partition(".")
    if not dot or not body:
        return None
    if not hmac.compare_digest(signature.encode("utf-8"), _signature(body).encode("ascii")):
        return None

    try:
        claims = json.loads(_unb64url(body).decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return None

    return claims if _claims_valid(claims, int(time.time())) else None


def require_session(authorization: str | None = Header(default=None)) -> dict[str, Any]:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing bearer token.")

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token:
        raise HTTPException(status_code=401, detail="Invalid authorization scheme.")

    session = decode_session_token(token.strip())
    if session is None:
        raise HTTPException(status_code=401, detail="Invalid or expired session token.")
    return session


def session_teacher_id(session: dict[str, Any]) -> int:
    return int(session["tid"])
