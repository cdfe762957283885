"""User model"""

import uuid

from sqlalchemy import Column, Integer, String, Boolean, DateTime, Index, JSON
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship
from tourney.core.database import Base


def _new_id() -> str:
    return str(uuid.uuid4())


class User(Base):
    """User record; only the fields the security layer touches.

    ``phone_number`` and the values of ``in_game_ids`` hold encrypted blobs
    when PII encryption is configured.
    """

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=_new_id)
    email = Column(String(255), unique=True, nullable=False, index=True)
    username = Column(String(50), unique=True, nullable=False, index=True)
    password_hash = Column(String(255), nullable=False)
    role = Column(String(20), default="player", nullable=False, index=True)
    is_host = Column(Boolean, default=False, nullable=False)
    email_verified = Column(Boolean, default=False, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    phone_number = Column(String(255), nullable=True)
    in_game_ids = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    last_login = Column(DateTime(timezone=True))
    failed_login_attempts = Column(Integer, default=0)
    locked_until = Column(DateTime(timezone=True))

    refresh_tokens = relationship("RefreshToken", back_populates="user", cascade="all, delete-orphan")

    __table_args__ = (
        Index('idx_users_phone_number', 'phone_number'),
    )

    def __repr__(self):
        return f"<User(id={self.id}, username='{self.username}', role='{self.role}')>"

    def to_claims(self) -> dict:
        """Access-token claims for this user"""
        return {
            "id": self.id,
            "email": self.email,
            "username": self.username,
            "is_host": bool(self.is_host),
            "role": self.role or "player",
            "email_verified": bool(self.email_verified),
        }

