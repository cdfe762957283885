"""Security-related persistence models."""

import uuid

from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, Index
from sqlalchemy.sql import func
from sqlalchemy.orm import relationship

from tourney.core.database import Base


class RefreshToken(Base):
    """Refresh token record for rotation/revocation.

    Only the SHA-256 hash of the raw token is stored. ``session_id`` groups
    every record produced by rotations of one login session.
    """

    __tablename__ = "refresh_tokens"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), nullable=False)
    session_id = Column(String(64), nullable=False, index=True)
    token_hash = Column(String(64), unique=True, nullable=False, index=True)
    replaced_by_id = Column(String(36), nullable=True)
    remember_me = Column(Boolean, default=False, nullable=False)
    revoked = Column(Boolean, default=False, nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    user_agent = Column(String(512), nullable=True)
    ip_address = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    user = relationship("User", back_populates="refresh_tokens")

    __table_args__ = (
        Index("idx_refresh_tokens_user_session", "user_id", "session_id"),
        Index("idx_refresh_tokens_user_sessions", "user_id", "created_at", "expires_at"),
    )

    def __repr__(self):
        return f"<RefreshToken(id={self.id}, session_id='{self.session_id}', revoked={self.revoked})>"
