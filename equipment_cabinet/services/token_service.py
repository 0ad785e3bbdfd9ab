from __future__ import annotations

import hashlib
import hmac
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from equipment_cabinet.settings import TOKEN_EXPIRY_MINUTES

TOKEN_BYTES = 32
MAX_TOKEN_LENGTH = 256


@dataclass(frozen=True)
class IssuedToken:
    token: str
    token_hash: str
    expires_at: datetime


def utcnow() -> datetime:
    # Naive UTC; matches what DateTime columns hand back.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _as_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def generate_token() -> str:
    return secrets.token_urlsafe(TOKEN_BYTES)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def is_well_formed(token: object) -> bool:
    # Compared exactly as issued: no trimming, no case folding.
    if not isinstance(token, str):
        return False
    return 0 < len(token) <= MAX_TOKEN_LENGTH and token.isascii() and not any(ch.isspace() for ch in token)


def verify_token(token: object, stored_hash: object) -> bool:
    if not is_well_formed(token) or not isinstance(stored_hash, str) or not stored_hash:
        return False
    if not stored_hash.isascii():
        return False
    return hmac.compare_digest(hash_token(token), stored_hash)


def get_token_expiry(minutes: int | None = None, now: datetime | None = None) -> datetime:
    window = TOKEN_EXPIRY_MINUTES if minutes is None else int(minutes)
    return (now or utcnow()) + timedelta(minutes=window)


def is_expired(expires_at: datetime | None, now: datetime | None = None) -> bool:
    if expires_at is None:
        return True
    current = _as_naive_utc(now) if now else utcnow()
    return _as_naive_utc(expires_at) < current


def issue_token(minutes: int | None = None, now: datetime | None = None) -> IssuedToken:
    token = generate_token()
    return IssuedToken(
        token=token,
        token_hash=hash_token(token),
        expires_at=get_token_expiry(minutes, now),
    )
