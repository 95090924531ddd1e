import logging
import secrets
import threading
from datetime import datetime, timedelta
from typing import Protocol

from backend.clock import Clock, SystemClock
from backend.config import TOKEN_VALIDITY_SECONDS
from backend.services.models import ScanToken, TokenCheck
from database import db

logger = logging.getLogger(__name__)

# 24 random bytes -> 192 bits of entropy, 32 URL-safe characters.
TOKEN_BYTES = 24


def new_token_id() -> str:
    return secrets.token_urlsafe(TOKEN_BYTES)


class TokenStore(Protocol):
    """
    Outstanding single-use scan tokens keyed by nonce.

    `validate_and_consume` must be atomic per token id: of N concurrent
    callers presenting the same id, exactly one gets "OK".
    """

    def mint(self, class_id: int, *, validity_seconds: int | None = None) -> ScanToken: ...

    def validate_and_consume(self, token_id: str, expected_class_id: int, now: datetime) -> TokenCheck: ...

    def purge_expired(self, now: datetime) -> int: ...

    def count(self) -> int: ...


def _validity(default_seconds: int, override: int | None) -> timedelta:
    seconds = default_seconds if override is None else int(override)
    return timedelta(seconds=max(1, seconds))


class InMemoryTokenStore:
    def __init__(self, *, clock: Clock | None = None, validity_seconds: int = TOKEN_VALIDITY_SECONDS):
        self._clock = clock or SystemClock()
        self._validity_seconds = validity_seconds
        self._tokens: dict[str, ScanToken] = {}
        self._lock = threading.Lock()

    def mint(self, class_id: int, *, validity_seconds: int | None = None) -> ScanToken:
        now = self._clock.now()
        token: ScanToken = {
            "token_id": new_token_id(),
            "class_id": int(class_id),
            "expires_at": now + _validity(self._validity_seconds, validity_seconds),
        }
        with self._lock:
            self._purge_locked(now)
            self._tokens[token["token_id"]] = token
        logger.info("Scan token minted class_id=%s expires_at=%s", class_id, token["expires_at"].isoformat())
        return token

    def validate_and_consume(self, token_id: str, expected_class_id: int, now: datetime) -> TokenCheck:
        with self._lock:
            token = self._tokens.get(token_id)
            if token is None:
                return "NOT_FOUND"
            if token["class_id"] != int(expected_class_id):
                return "CLASS_MISMATCH"
            # Whether consumed or expired, the token is gone afterwards.
            del self._tokens[token_id]
            if now > token["expires_at"]:
                return "EXPIRED"
            return "OK"

    def purge_expired(self, now: datetime) -> int:
        with self._lock:
            return self._purge_locked(now)

    def count(self) -> int:
        with self._lock:
            return len(self._tokens)

    def _purge_locked(self, now: datetime) -> int:
        expired = [k for k, v in self._tokens.items() if now > v["expires_at"]]
        for k in expired:
            self._tokens.pop(k, None)
        return len(expired)


class SqliteTokenStore:
    def __init__(self, *, clock: Clock | None = None, validity_seconds: int = TOKEN_VALIDITY_SECONDS):
        self._clock = clock or SystemClock()
        self._validity_seconds = validity_seconds

    def mint(self, class_id: int, *, validity_seconds: int | None = None) -> ScanToken:
        now = self._clock.now()
        token: ScanToken = {
            "token_id": new_token_id(),
            "class_id": int(class_id),
            "expires_at": now + _validity(self._validity_seconds, validity_seconds),
        }
        purged = db.purge_expired_scan_tokens(now)
        if purged:
            logger.debug("Purged %s expired scan tokens", purged)
        db.insert_scan_token(token["token_id"], token["class_id"], token["expires_at"], now)
        logger.info("Scan token minted class_id=%s expires_at=%s", class_id, token["expires_at"].isoformat())
        return token

    def validate_and_consume(self, token_id: str, expected_class_id: int, now: datetime) -> TokenCheck:
        return db.consume_scan_token(token_id, int(expected_class_id), now)

    def purge_expired(self, now: datetime) -> int:
        return db.purge_expired_scan_tokens(now)

    def count(self) -> int:
        return db.count_scan_tokens()
