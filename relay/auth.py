# (C) 2026 Rodrigo Rodrigues da Silva <rodrigopitanga@posteo.net>
# SPDX-License-Identifier: GPL-3.0-or-later

# relay/auth.py

from __future__ import annotations
import hashlib, hmac, secrets, threading, time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict
from fastapi import Request, Security
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from . import config as cfg
from .errors import AuthenticationError, RateLimitExceeded, RelayError
from .log import get_logger
from .schemas import ApiKeyRecord

log = get_logger("auth")

bearer = HTTPBearer(auto_error=False)

WINDOW_S = 3600


@dataclass
class KeyValidation:
    valid: bool
    rate_limited: bool = False
    key_id: str | None = None
    rate_limit: int = 0
    current_usage: int = 0
    retry_after_s: int = 0


def hash_key(raw: str, salt: str = "") -> str:
    return hashlib.sha256(f"{salt}{raw}".encode("utf-8")).hexdigest()


def generate_api_key() -> str:
    return secrets.token_hex(32)


def new_key_record(key_id: str, rate_limit_per_hour: int = 100,
                   salt: str = "") -> tuple[str, ApiKeyRecord]:
    """Issue a key. The raw key is returned once and never stored."""
    raw = generate_api_key()
    record = ApiKeyRecord(
        id=key_id,
        name_prefix=raw[:8],
        rate_limit_per_hour=rate_limit_per_hour,
        created_at=datetime.now(timezone.utc),
        key_hash=hash_key(raw, salt),
    )
    return raw, record


class KeyValidator:
    """
    Static key table from config (``auth.api_keys``: id -> {hash,
    rate_limit_per_hour, status, name_prefix}) with a fixed one-hour usage
    window per key, kept in process memory.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._usage: Dict[str, tuple[float, int]] = {}

    @staticmethod
    def _records() -> Dict[str, ApiKeyRecord]:
        table: Dict[str, Any] = cfg.CFG.get("auth.api_keys") or {}
        out: Dict[str, ApiKeyRecord] = {}
        for key_id, entry in table.items():
            if isinstance(entry, str):
                entry = {"hash": entry}
            out[key_id] = ApiKeyRecord(
                id=key_id,
                name_prefix=str(entry.get("name_prefix", "")),
                status=entry.get("status", "active"),
                rate_limit_per_hour=int(entry.get("rate_limit_per_hour", 100)),
                created_at=entry.get("created_at") or datetime.fromtimestamp(0, timezone.utc),
                key_hash=str(entry["hash"]),
            )
        return out

    def _count(self, key_id: str, limit: int) -> tuple[bool, int, int]:
        now = time.monotonic()
        with self._lock:
            start, used = self._usage.get(key_id, (now, 0))
            if now - start >= WINDOW_S:
                start, used = now, 0
            if limit > 0 and used >= limit:
                self._usage[key_id] = (start, used)
                return True, used, int(WINDOW_S - (now - start)) + 1
            self._usage[key_id] = (start, used + 1)
            return False, used + 1, 0

    def validate(self, token: str | None) -> KeyValidation:
        if not token:
            return KeyValidation(valid=False)
        digest = hash_key(token, str(cfg.CFG.get("auth.salt") or ""))
        for key_id, record in self._records().items():
            if not hmac.compare_digest(digest, record.key_hash):
                continue
            if record.status != "active":
                return KeyValidation(valid=False, key_id=key_id)
            limited, used, retry_after = self._count(key_id, record.rate_limit_per_hour)
            return KeyValidation(valid=True, rate_limited=limited, key_id=key_id,
                                 rate_limit=record.rate_limit_per_hour, current_usage=used,
                                 retry_after_s=retry_after)
        return KeyValidation(valid=False)

    def reset(self) -> None:
        with self._lock:
            self._usage.clear()


VALIDATOR = KeyValidator()


def require_key(request: Request,
                credentials: HTTPAuthorizationCredentials | None = Security(bearer)) -> KeyValidation:
    # read through cfg.CFG so tests and env overrides apply
    mode = str(cfg.CFG.get("auth.mode", "none")).strip().lower()

    if mode == "none":
        return KeyValidation(valid=True, key_id=None)

    if mode == "static":
        token = credentials.credentials.strip() \
            if credentials and credentials.scheme.lower() == "bearer" else None
        if not token:
            raise AuthenticationError("missing API key in Authorization header")
        validator = getattr(request.app.state, "validator", None) or VALIDATOR
        result = validator.validate(token)
        if not result.valid:
            raise AuthenticationError("invalid or inactive API key")
        if result.rate_limited:
            log.info(f"key {result.key_id} over its limit ({result.rate_limit}/h)")
            raise RateLimitExceeded(
                f"rate limit exceeded: {result.rate_limit} requests per hour",
                retry_after=result.retry_after_s)
        return result

    raise RelayError(f"unknown auth mode: {mode}")
