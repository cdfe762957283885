"""Session cookie definitions"""

from fastapi import Response

from tourney.config import settings
from tourney.services.token_service import IssuedSession

AUTH_COOKIE = "auth_token"
REFRESH_COOKIE = "refresh_token"
CSRF_COOKIE = "csrf_token"


def _set(response: Response, name: str, value: str, max_age: int, http_only: bool) -> None:
    response.set_cookie(
        key=name,
        value=value,
        max_age=max_age,
        path="/",
        httponly=http_only,
        secure=settings.cookie_secure,
        samesite=settings.COOKIE_SAMESITE,
    )


def set_session_cookies(response: Response, session: IssuedSession) -> None:
    """Attach access, refresh and CSRF cookies.

    The CSRF cookie is deliberately readable by scripts so the client can
    echo it in the X-CSRF-Token header.
    """
    refresh_days = settings.REMEMBER_ME_EXPIRE_DAYS if session.remember_me else settings.REFRESH_TOKEN_EXPIRE_DAYS
    _set(response, AUTH_COOKIE, session.access_token, settings.ACCESS_TOKEN_EXPIRE_MINUTES * 60, True)
    _set(response, REFRESH_COOKIE, session.refresh_token, refresh_days * 24 * 60 * 60, True)
    _set(response, CSRF_COOKIE, session.csrf_token, settings.CSRF_TOKEN_MAX_AGE_HOURS * 60 * 60, False)


def clear_session_cookies(response: Response) -> None:
    for name in (AUTH_COOKIE, REFRESH_COOKIE, CSRF_COOKIE):
        response.delete_cookie(
            key=name,
            path="/",
            secure=settings.cookie_secure,
            httponly=name != CSRF_COOKIE,
            samesite=settings.COOKIE_SAMESITE,
        )


def set_csrf_cookie(response: Response, csrf_token: str) -> None:
    _set(response, CSRF_COOKIE, csrf_token, settings.CSRF_TOKEN_MAX_AGE_HOURS * 60 * 60, False)
