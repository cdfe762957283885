"""User and session schemas"""

from pydantic import BaseModel, Field, field_validator
from typing import Dict, Optional
from datetime import datetime
from enum import Enum


class UserRole(str, Enum):
    """User role enumeration"""
    PLAYER = "player"
    ORGANIZER = "organizer"
    OWNER = "owner"


class LoginRequest(BaseModel):
    """Login schema"""
    email: str = Field(..., min_length=3, max_length=255)
    password: str = Field(..., min_length=1)
    remember_me: bool = False

    @field_validator('email')
    @classmethod
    def normalize_email(cls, v):
        return v.strip().lower()


class UserCreate(BaseModel):
    """User creation schema"""
    email: str = Field(..., min_length=3, max_length=255)
    username: str = Field(..., min_length=3, max_length=50, pattern=r'^[a-zA-Z0-9_-]+$')
    password: str = Field(..., min_length=8)
    role: UserRole = UserRole.PLAYER
    is_host: bool = False
    email_verified: bool = False

    @field_validator('email')
    @classmethod
    def normalize_email(cls, v):
        if "@" not in v:
            raise ValueError('Invalid email address')
        return v.strip().lower()


class UserPublic(BaseModel):
    """Public profile returned with session responses"""
    id: str
    username: str
    email: str
    is_host: bool
    role: str

    class Config:
        from_attributes = True


class UserProfile(BaseModel):
    """Full profile with decrypted PII"""
    id: str
    username: str
    email: str
    is_host: bool
    role: str
    email_verified: bool
    phone_number: Optional[str] = None
    in_game_ids: Optional[Dict[str, str]] = None
    created_at: Optional[datetime] = None
    last_login: Optional[datetime] = None
    is_admin: bool = False


class ProfileUpdate(BaseModel):
    """Profile fields a user may change"""
    phone_number: Optional[str] = Field(None, max_length=20, pattern=r'^\+?[0-9 ()-]{6,20}$')
    in_game_ids: Optional[Dict[str, str]] = None

    @field_validator('in_game_ids')
    @classmethod
    def clean_in_game_ids(cls, v):
        if v is None:
            return v
        cleaned = {}
        for game, game_id in v.items():
            game = game.strip()
            game_id = str(game_id).strip()
            if not game or len(game) > 50 or len(game_id) > 100:
                raise ValueError('Invalid in-game id entry')
            if game_id:
                cleaned[game] = game_id
        return cleaned


class SessionData(BaseModel):
    user: UserPublic
    csrf_token: str


class SessionResponse(BaseModel):
    """Body of login and refresh responses"""
    success: bool = True
    data: SessionData
