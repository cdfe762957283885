"""Stateless CSRF tokens bound to a user id and issuance time.

Token layout: ``base64("{user_id}:{issued_at_ms}:{hex hmac-sha256}")`` where
the HMAC covers ``"{user_id}:{issued_at_ms}"``.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import logging
import time
from typing import Optional, Union

from tourney.config import settings
from tourney.core.outcome import Outcome

logger = logging.getLogger(__name__)

SAFE_METHODS = frozenset({"GET", "HEAD", "OPTIONS"})
MAX_CLOCK_SKEW_MS = 60 * 1000

UserId = Union[str, int]


def _now_ms() -> int:
    return int(time.time() * 1000)


def _sign(data: str, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), data.encode("utf-8"), hashlib.sha256).hexdigest()


def generate_csrf_token(user_id: UserId, now_ms: Optional[int] = None) -> str:
    """Issue a CSRF token for ``user_id``."""
    issued_at = _now_ms() if now_ms is None else now_ms
    data = f"{user_id}:{issued_at}"
    signature = _sign(data, settings.resolve_csrf_secret())
    return base64.b64encode(f"{data}:{signature}".encode("utf-8")).decode("ascii")


def check_csrf_token(
    token: Optional[str],
    expected_user_id: UserId,
    now_ms: Optional[int] = None,
) -> Outcome[str]:
    """Verify a CSRF token, reporting the failure reason."""
    if not token:
        return Outcome.failure("missing")

    try:
        decoded = base64.b64decode(token.encode("ascii"), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeError, ValueError):
        return Outcome.failure("malformed")

    # The user id is opaque and may itself contain ':'; split from the right.
    parts = decoded.rsplit(":", 2)
    if len(parts) != 3:
        return Outcome.failure("malformed")
    token_user_id, issued_raw, signature = parts

    if token_user_id != str(expected_user_id):
        return Outcome.failure("user_mismatch")

    try:
        issued_at = int(issued_raw)
    except ValueError:
        return Outcome.failure("malformed")

    now = _now_ms() if now_ms is None else now_ms
    age = now - issued_at
    if age > settings.CSRF_TOKEN_MAX_AGE_HOURS * 60 * 60 * 1000:
        return Outcome.failure("expired")
    if age < -MAX_CLOCK_SKEW_MS:
        return Outcome.failure("malformed")

    expected = _sign(f"{token_user_id}:{issued_raw}", settings.resolve_csrf_secret())
    if not hmac.compare_digest(signature.encode("utf-8"), expected.encode("utf-8")):
        return Outcome.failure("bad_signature")
    return Outcome.success(token_user_id)


def verify_csrf_token(token: Optional[str], expected_user_id: UserId, now_ms: Optional[int] = None) -> bool:
    """True when ``token`` was issued by us for ``expected_user_id`` within the validity window."""
    return check_csrf_token(token, expected_user_id, now_ms=now_ms).ok


def requires_csrf(method: str) -> bool:
    return method.upper() not in SAFE_METHODS
