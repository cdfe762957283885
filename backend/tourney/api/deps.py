"""API dependencies - authentication, authorization and CSRF"""

from fastapi import Depends, Request
from sqlalchemy.orm import Session
from typing import Any, Callable, Dict
import logging

from tourney.config import settings
from tourney.core.database import get_db
from tourney.core.csrf import check_csrf_token, requires_csrf
from tourney.core.metrics import AUTH_REJECTIONS, CSRF_REJECTIONS
from tourney.core.security import (
    access_token_from_request,
    check_access_token,
    has_role,
    is_email_verified,
)
from tourney.core.exceptions import (
    AuthenticationError,
    AuthorizationError,
    CsrfError,
    EmailNotVerifiedError,
)
from tourney.models.user import User
from tourney.services.user_service import user_service

logger = logging.getLogger(__name__)


def get_current_claims(request: Request) -> Dict[str, Any]:
    """
    Verify the access token from the auth cookie or Bearer header

    Returns:
        Identity claims from the token

    Raises:
        AuthenticationError: Always with the same generic message
    """
    outcome = check_access_token(access_token_from_request(request))
    if not outcome.ok:
        AUTH_REJECTIONS.labels(outcome.reason).inc()
        if outcome.reason != "missing":
            logger.info("Access token rejected: %s path=%s", outcome.reason, request.url.path)
        raise AuthenticationError()
    return outcome.value


def get_current_user(
    claims: Dict[str, Any] = Depends(get_current_claims),
    db: Session = Depends(get_db)
) -> User:
    """
    Load the user behind the access token

    Raises:
        AuthenticationError: If the user no longer exists or is disabled
    """
    user = user_service.get_user_by_id(db, claims["id"])
    if not user or not user.is_active:
        raise AuthenticationError()
    return user


def require_roles(*roles: str) -> Callable[..., Dict[str, Any]]:
    """
    Dependency factory restricting a route to the given roles

    Example:
        @router.get("/", dependencies=[Depends(require_roles("owner"))])
    """
    allowed = ", ".join(roles)

    def _check(claims: Dict[str, Any] = Depends(get_current_claims)) -> Dict[str, Any]:
        if not has_role(claims, roles):
            raise AuthorizationError(f"Requires role: {allowed}")
        return claims

    return _check


def require_email_verified(claims: Dict[str, Any] = Depends(get_current_claims)) -> Dict[str, Any]:
    if not is_email_verified(claims):
        raise EmailNotVerifiedError()
    return claims


def require_csrf(
    request: Request,
    claims: Dict[str, Any] = Depends(get_current_claims),
) -> None:
    """
    CSRF guard for state-changing routes

    Safe methods pass through. Otherwise the X-CSRF-Token header must carry
    a token issued to the authenticated user. A valid CSRF token never
    replaces the access-token check; both must pass.

    Raises:
        CsrfError: If the header is missing or the token does not verify
    """
    if not requires_csrf(request.method):
        return

    token = request.headers.get(settings.CSRF_HEADER_NAME)
    outcome = check_csrf_token(token, claims["id"])
    if outcome.ok:
        return

    CSRF_REJECTIONS.labels(outcome.reason).inc()
    logger.warning(
        "CSRF check failed: %s user_id=%s method=%s path=%s",
        outcome.reason,
        claims["id"],
        request.method,
        request.url.path,
    )
    if outcome.reason == "missing":
        raise CsrfError("CSRF token required")
    raise CsrfError()
