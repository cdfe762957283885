"""Authentication routes"""

from fastapi import APIRouter, Depends, status, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from tourney.core.database import get_db
from tourney.config import settings
from tourney.core.csrf import generate_csrf_token
from tourney.core.metrics import REFRESH_OUTCOMES
from tourney.core.security import hash_token
from tourney.schemas.user import LoginRequest, SessionResponse, UserProfile, UserPublic
from tourney.services.user_service import user_service
from tourney.services.token_service import IssuedSession, token_service
from tourney.services.rate_limiter import rate_limiter
from tourney.api.cookies import (
    REFRESH_COOKIE,
    clear_session_cookies,
    set_csrf_cookie,
    set_session_cookies,
)
from tourney.api.deps import get_current_claims, get_current_user
from tourney.models.user import User
from tourney.core.exceptions import RateLimitExceededError, AuthenticationError

router = APIRouter()


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _session_body(session: IssuedSession) -> dict:
    return SessionResponse(
        data={
            "user": UserPublic.model_validate(session.user),
            "csrf_token": session.csrf_token,
        }
    ).model_dump()


@router.post("/login", response_model=SessionResponse, status_code=status.HTTP_200_OK)
def login(
    credentials: LoginRequest,
    request: Request,
    db: Session = Depends(get_db)
):
    """
    Login endpoint - authenticate user and set session cookies

    Args:
        credentials: Email, password and remember-me flag
        db: Database session

    Returns:
        Public profile and CSRF token
    """
    client_ip = _client_ip(request)
    per_min_key = f"login:min:{client_ip}:{credentials.email}"
    per_hour_key = f"login:hour:{client_ip}:{credentials.email}"
    per_min = rate_limiter.hit(per_min_key, settings.LOGIN_RATE_LIMIT_PER_MINUTE, 60)
    if not per_min.allowed:
        raise RateLimitExceededError("Too many login attempts. Please wait a minute.", per_min.retry_after)
    per_hour = rate_limiter.hit(per_hour_key, settings.LOGIN_RATE_LIMIT_PER_HOUR, 3600)
    if not per_hour.allowed:
        raise RateLimitExceededError("Too many login attempts. Please try again later.", per_hour.retry_after)

    user = user_service.authenticate_user(db, credentials.email, credentials.password)
    session = token_service.start_session(
        db,
        user,
        remember_me=credentials.remember_me,
        user_agent=request.headers.get("user-agent"),
        ip_address=client_ip,
    )

    response = JSONResponse(content=_session_body(session))
    set_session_cookies(response, session)
    return response


@router.post("/refresh", response_model=SessionResponse)
def refresh_session(
    request: Request,
    db: Session = Depends(get_db),
):
    """
    Exchange the refresh cookie for a new access/refresh/CSRF set

    A failed exchange answers 401 and clears the auth cookies; for the
    client that means "logged out".
    """
    client_ip = _client_ip(request)
    result = rate_limiter.hit(f"refresh:min:{client_ip}", settings.REFRESH_RATE_LIMIT_PER_MINUTE, 60)
    if not result.allowed:
        raise RateLimitExceededError("Too many refresh attempts. Slow down.", result.retry_after)

    raw_token = request.cookies.get(REFRESH_COOKIE)
    if not raw_token:
        REFRESH_OUTCOMES.labels("missing").inc()
        raise AuthenticationError()

    outcome = token_service.rotate_refresh_token(
        db,
        hash_token(raw_token),
        user_agent=request.headers.get("user-agent"),
        ip_address=client_ip,
    )
    REFRESH_OUTCOMES.labels(outcome.status).inc()

    if not outcome.ok:
        response = JSONResponse(
            status_code=status.HTTP_401_UNAUTHORIZED,
            content={"success": False, "error": "Authentication required"},
        )
        clear_session_cookies(response)
        return response

    response = JSONResponse(content=_session_body(outcome.session))
    set_session_cookies(response, outcome.session)
    return response


@router.post("/logout", status_code=status.HTTP_200_OK)
def logout(
    request: Request,
    response: Response,
    db: Session = Depends(get_db)
):
    """
    Logout endpoint - revoke the current refresh token and clear cookies

    Idempotent and usable with an expired access token.
    """
    revoked = token_service.revoke_refresh_token(db, request.cookies.get(REFRESH_COOKIE))
    clear_session_cookies(response)

    return {
        "success": True,
        "message": "Logged out successfully",
        "refresh_token_revoked": revoked
    }


@router.get("/me", response_model=UserProfile)
def get_current_user_info(
    current_user: User = Depends(get_current_user)
):
    """
    Get current user information with decrypted PII

    Args:
        current_user: Current authenticated user

    Returns:
        User profile
    """
    return user_service.build_profile(current_user)


@router.get("/csrf")
def reissue_csrf_token(
    response: Response,
    claims: dict = Depends(get_current_claims),
):
    """Issue a fresh CSRF token for the authenticated user"""
    token = generate_csrf_token(claims["id"])
    set_csrf_cookie(response, token)
    return {"success": True, "data": {"csrf_token": token}}
