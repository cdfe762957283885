"""Security utilities - JWT access tokens, refresh secrets, password hashing, RBAC"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict, Any, Iterable
import hashlib
import logging
import secrets

from jose import ExpiredSignatureError, JWTError, jwt
import bcrypt

from tourney.config import settings
from tourney.core.outcome import Outcome

logger = logging.getLogger(__name__)

ACCESS_TOKEN_CLAIMS = ("id", "email", "username", "is_host", "role", "email_verified")
REFRESH_TOKEN_BYTES = 32  # 256 bits

ROLE_PERMISSIONS: Dict[str, frozenset] = {
    "player": frozenset({
        "view_tournaments", "register_tournament", "manage_profile", "view_teams",
    }),
    "organizer": frozenset({
        "view_tournaments", "register_tournament", "manage_profile", "view_teams",
        "create_tournament", "manage_own_tournaments", "view_registrations",
    }),
    "owner": frozenset({
        "view_tournaments", "register_tournament", "manage_profile", "view_teams",
        "create_tournament", "manage_own_tournaments", "view_registrations",
        "manage_all_users", "assign_roles", "view_all_tournaments",
        "platform_settings", "view_analytics",
    }),
}


def utcnow() -> datetime:
    """Naive UTC timestamp, matching what the database columns hand back."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    """
    Verify a password against its hash

    Args:
        plain_password: Plain text password
        hashed_password: Hashed password

    Returns:
        bool: True if password matches
    """
    return bcrypt.checkpw(
        plain_password.encode('utf-8'),
        hashed_password.encode('utf-8')
    )


def get_password_hash(password: str) -> str:
    """
    Hash a password using bcrypt

    Args:
        password: Plain text password

    Returns:
        str: Hashed password
    """
    return bcrypt.hashpw(
        password.encode('utf-8'),
        bcrypt.gensalt(rounds=12)
    ).decode('utf-8')


# ============ Access tokens ============

def issue_access_token(claims: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """
    Sign a short-lived access token.

    Only the identity claims are copied into the token; ``role`` defaults to
    ``player`` and the boolean flags to False.

    Args:
        claims: User identity claims
        expires_delta: Token lifetime, defaults to ACCESS_TOKEN_EXPIRE_MINUTES

    Returns:
        str: Encoded JWT

    Raises:
        ConfigurationError: If JWT_SECRET is not configured
    """
    secret = settings.require_jwt_secret()
    now = datetime.now(timezone.utc)
    if expires_delta is None:
        expires_delta = timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode = {
        "id": str(claims["id"]),
        "email": claims.get("email"),
        "username": claims.get("username"),
        "is_host": bool(claims.get("is_host", False)),
        "role": claims.get("role") or "player",
        "email_verified": bool(claims.get("email_verified", False)),
        "typ": "access",
        "iat": now,
        "exp": now + expires_delta,
    }
    return jwt.encode(to_encode, secret, algorithm=settings.ALGORITHM)


def check_access_token(token: Optional[str]) -> Outcome[Dict[str, Any]]:
    """Verify an access token and report why it failed."""
    if not token:
        return Outcome.failure("missing")
    secret = settings.require_jwt_secret()
    try:
        payload = jwt.decode(token, secret, algorithms=[settings.ALGORITHM])
    except ExpiredSignatureError:
        return Outcome.failure("expired")
    except JWTError:
        return Outcome.failure("invalid")

    if payload.get("typ") != "access" or not payload.get("id"):
        return Outcome.failure("malformed")
    return Outcome.success({key: payload.get(key) for key in ACCESS_TOKEN_CLAIMS})


def verify_access_token(token: Optional[str]) -> Optional[Dict[str, Any]]:
    """
    Decode and verify an access token

    Args:
        token: JWT token string

    Returns:
        Optional[Dict]: Identity claims, or None if the token is missing,
        malformed, forged or expired
    """
    outcome = check_access_token(token)
    if not outcome.ok:
        if outcome.reason != "missing":
            logger.info("Access token rejected: %s", outcome.reason)
        return None
    return outcome.value


def access_token_from_request(request: Any) -> Optional[str]:
    """
    Pull the access token from a request.

    The httpOnly ``auth_token`` cookie wins; the Authorization header is a
    fallback for non-browser clients.
    """
    cookie_token = request.cookies.get("auth_token")
    if cookie_token:
        return cookie_token

    auth_header = request.headers.get("authorization") or ""
    if auth_header.startswith("Bearer "):
        return auth_header.split(" ", 1)[1].strip() or None
    return None


# ============ Refresh tokens ============

@dataclass(frozen=True)
class RefreshTokenPair:
    """Raw refresh secret for the client and the hash for the database."""
    raw_token: str
    token_hash: str


def hash_token(token: str) -> str:
    """SHA-256 hex digest used to store refresh tokens"""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def issue_refresh_token() -> RefreshTokenPair:
    """
    Generate a cryptographically random refresh token.

    Returns:
        RefreshTokenPair: the caller persists only ``token_hash``
    """
    raw = secrets.token_hex(REFRESH_TOKEN_BYTES)
    return RefreshTokenPair(raw_token=raw, token_hash=hash_token(raw))


def refresh_token_lifetime(remember_me: bool) -> timedelta:
    days = settings.REMEMBER_ME_EXPIRE_DAYS if remember_me else settings.REFRESH_TOKEN_EXPIRE_DAYS
    return timedelta(days=days)


# ============ Role-based access control ============

def has_permission(role: Optional[str], permission: str) -> bool:
    """Check if a role has a specific permission"""
    return permission in ROLE_PERMISSIONS.get(role or "player", frozenset())


def has_role(claims: Dict[str, Any], roles: Iterable[str]) -> bool:
    # Tokens minted before roles existed carry no role; treat as player.
    return (claims.get("role") or "player") in set(roles)


def is_owner(role: Optional[str]) -> bool:
    return role == "owner"


def is_email_verified(claims: Optional[Dict[str, Any]]) -> bool:
    if not claims:
        return False
    return bool(claims.get("email_verified", False))
