"""Pydantic schemas for API validation"""

from tourney.schemas.user import (
    UserRole,
    LoginRequest,
    UserCreate,
    UserPublic,
    UserProfile,
    ProfileUpdate,
    SessionData,
    SessionResponse,
)

__all__ = [
    "UserRole", "LoginRequest", "UserCreate", "UserPublic", "UserProfile",
    "ProfileUpdate", "SessionData", "SessionResponse",
]
