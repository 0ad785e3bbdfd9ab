from __future__ import annotations

import base64
import hashlib
import hmac
import json
import os
import time
from typing import Any

from equipment_cabinet.services.errors import AuthorizationError

SESSION_TTL_SECONDS = 60 * 60 * 12
ROLE_SUPER_ADMIN = "super_admin"
ROLE_CITY_MANAGER = "city_manager"
MANAGER_ROLES = {ROLE_SUPER_ADMIN, ROLE_CITY_MANAGER}


def _require_session_secret() -> bytes:
    raw = (os.environ.get("SESSION_SIGNING_SECRET") or "").strip()
    if len(raw) < 32:
        raise RuntimeError("SESSION_SIGNING_SECRET must be set and at least 32 characters long.")
    return raw.encode("utf-8")


_SESSION_SECRET = _require_session_secret()


def _b64encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def _b64decode(encoded: str) -> bytes:
    return base64.urlsafe_b64decode(encoded + "=" * (-len(encoded) % 4))


def _sign(encoded: str) -> bytes:
    return hmac.new(_SESSION_SECRET, encoded.encode("ascii"), hashlib.sha256).digest()


def create_session(payload: dict[str, Any], ttl_seconds: int = SESSION_TTL_SECONDS) -> str:
    """Sign a manager session issued by the identity layer.

    Expected keys: ``managerName``, ``role`` and, for city managers, ``cityIDs``.
    """
    session_payload = dict(payload)
    session_payload["expiresAt"] = time.time() + ttl_seconds
    body = json.dumps(session_payload, ensure_ascii=True, separators=(",", ":")).encode("utf-8")
    encoded = _b64encode(body)
    return f"{encoded}.{_b64encode(_sign(encoded))}"


def get_session(token: str | None) -> dict[str, Any] | None:
    if not token:
        return None
    try:
        encoded, encoded_sig = token.split(".", 1)
        if not hmac.compare_digest(_sign(encoded), _b64decode(encoded_sig)):
            return None
        decoded_session = json.loads(_b64decode(encoded).decode("utf-8"))
    except (ValueError, UnicodeError, TypeError):
        return None

    if not isinstance(decoded_session, dict):
        return None
    try:
        expires_at = float(decoded_session.get("expiresAt") or 0.0)
    except (TypeError, ValueError):
        return None
    if time.time() >= expires_at:
        return None
    return decoded_session


class ManagerAuthorizer:
    """Decides whether a manager session may act on a city's requests."""

    def can_manage(self, session: dict[str, Any] | None, city_id: int) -> bool:
        if not session:
            return False
        role = str(session.get("role") or "").strip()
        if role not in MANAGER_ROLES:
            return False
        if role == ROLE_SUPER_ADMIN:
            return True
        try:
            allowed = {int(value) for value in session.get("cityIDs") or []}
        except (TypeError, ValueError):
            return False
        return int(city_id) in allowed

    def require(self, session: dict[str, Any] | None, city_id: int) -> str:
        if not self.can_manage(session, city_id):
            raise AuthorizationError("You are not allowed to manage this city.", cityID=city_id)
        return str(session.get("managerName") or "manager")
