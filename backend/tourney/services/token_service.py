"""Refresh token rotation and revocation service."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional
import logging
import secrets

from sqlalchemy import or_, update
from sqlalchemy.orm import Session

from tourney.config import settings
from tourney.core.csrf import generate_csrf_token
from tourney.core.security import (
    hash_token,
    issue_access_token,
    issue_refresh_token,
    refresh_token_lifetime,
    utcnow,
)
from tourney.models.security import RefreshToken
from tourney.models.user import User

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class IssuedSession:
    """Credentials handed to the client after login or refresh."""
    user: User
    access_token: str
    refresh_token: str
    csrf_token: str
    refresh_expires_at: datetime
    remember_me: bool


@dataclass(frozen=True)
class RotationOutcome:
    """Result of a refresh attempt.

    ``status`` is one of ``rotated``, ``invalid``, ``expired`` or
    ``compromised``; only ``rotated`` carries a session.
    """
    status: str
    session: Optional[IssuedSession] = None

    @property
    def ok(self) -> bool:
        return self.status == "rotated"


class TokenService:
    """Manage refresh-token chain lifecycle."""

    @staticmethod
    def _naive_utc(dt: Optional[datetime]) -> Optional[datetime]:
        return dt.replace(tzinfo=None) if dt and dt.tzinfo else dt

    @staticmethod
    def _create_refresh_record(
        db: Session,
        *,
        user_id: str,
        session_id: str,
        token_hash: str,
        remember_me: bool,
        user_agent: Optional[str],
        ip_address: Optional[str],
    ) -> RefreshToken:
        record = RefreshToken(
            user_id=user_id,
            session_id=session_id,
            token_hash=token_hash,
            remember_me=remember_me,
            expires_at=utcnow() + refresh_token_lifetime(remember_me),
            user_agent=(user_agent or "unknown")[:512],
            ip_address=ip_address,
            revoked=False,
        )
        db.add(record)
        db.flush()
        return record

    @staticmethod
    def _build_session(user: User, raw_refresh: str, record: RefreshToken) -> IssuedSession:
        return IssuedSession(
            user=user,
            access_token=issue_access_token(user.to_claims()),
            refresh_token=raw_refresh,
            csrf_token=generate_csrf_token(user.id),
            refresh_expires_at=record.expires_at,
            remember_me=bool(record.remember_me),
        )

    @staticmethod
    def start_session(
        db: Session,
        user: User,
        *,
        remember_me: bool = False,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> IssuedSession:
        """Issue access/refresh/CSRF tokens for a fresh login and open a new chain."""
        pair = issue_refresh_token()
        record = TokenService._create_refresh_record(
            db,
            user_id=user.id,
            session_id=secrets.token_urlsafe(32),
            token_hash=pair.token_hash,
            remember_me=remember_me,
            user_agent=user_agent,
            ip_address=ip_address,
        )
        session = TokenService._build_session(user, pair.raw_token, record)
        db.commit()
        logger.info("Session started user_id=%s session_id=%s", user.id, record.session_id)
        return session

    @staticmethod
    def revoke_session(db: Session, session_id: str) -> int:
        """Revoke every live record of one login session."""
        result = db.execute(
            update(RefreshToken)
            .where(RefreshToken.session_id == session_id, RefreshToken.revoked == False)  # noqa: E712
            .values(revoked=True, revoked_at=utcnow())
        )
        db.commit()
        return result.rowcount or 0

    @staticmethod
    def revoke_all_for_user(db: Session, user_id: str) -> int:
        result = db.execute(
            update(RefreshToken)
            .where(RefreshToken.user_id == user_id, RefreshToken.revoked == False)  # noqa: E712
            .values(revoked=True, revoked_at=utcnow())
        )
        db.commit()
        return result.rowcount or 0

    @staticmethod
    def rotate_refresh_token(
        db: Session,
        old_hash: str,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> RotationOutcome:
        """
        Exchange a refresh token for a new credential set.

        The old record is revoked and its successor inserted in one
        transaction. The revoke is a compare-and-set on ``revoked = false`` so
        that of two concurrent rotations of the same token exactly one wins;
        the loser is handled as a replay.
        """
        record = db.query(RefreshToken).filter(RefreshToken.token_hash == old_hash).first()
        if not record:
            logger.warning("Unknown refresh token presented hash_prefix=%s", old_hash[:12])
            return RotationOutcome("compromised")

        if record.revoked:
            revoked = TokenService.revoke_session(db, record.session_id)
            logger.warning(
                "Revoked refresh token replayed; session revoked user_id=%s session_id=%s records=%s",
                record.user_id,
                record.session_id,
                revoked,
            )
            return RotationOutcome("compromised")

        now = utcnow()
        record_exp = TokenService._naive_utc(record.expires_at)
        if record_exp <= now:
            record.revoked = True
            record.revoked_at = now
            db.commit()
            return RotationOutcome("expired")

        user = db.query(User).filter(User.id == record.user_id).first()
        if not user or not user.is_active:
            TokenService.revoke_session(db, record.session_id)
            return RotationOutcome("invalid")

        pair = issue_refresh_token()
        try:
            new_record = RefreshToken(
                user_id=user.id,
                session_id=record.session_id,
                token_hash=pair.token_hash,
                remember_me=record.remember_me,
                expires_at=now + refresh_token_lifetime(bool(record.remember_me)),
                user_agent=(user_agent or record.user_agent or "unknown")[:512],
                ip_address=ip_address or record.ip_address,
                revoked=False,
            )
            db.add(new_record)
            db.flush()

            claimed = db.execute(
                update(RefreshToken)
                .where(RefreshToken.id == record.id, RefreshToken.revoked == False)  # noqa: E712
                .values(revoked=True, revoked_at=now, replaced_by_id=new_record.id)
                .execution_options(synchronize_session=False)
            )
            if claimed.rowcount != 1:
                db.rollback()
                revoked = TokenService.revoke_session(db, record.session_id)
                logger.warning(
                    "Concurrent rotation lost the race; session revoked user_id=%s session_id=%s records=%s",
                    user.id,
                    record.session_id,
                    revoked,
                )
                return RotationOutcome("compromised")

            session = TokenService._build_session(user, pair.raw_token, new_record)
            db.commit()
        except Exception:
            db.rollback()
            raise

        logger.info("Refresh token rotated user_id=%s session_id=%s", user.id, record.session_id)
        return RotationOutcome("rotated", session)

    @staticmethod
    def revoke_refresh_token(db: Session, raw_token: Optional[str]) -> bool:
        """Revoke the record behind ``raw_token``. Safe to call repeatedly."""
        if not raw_token:
            return False
        record = db.query(RefreshToken).filter(RefreshToken.token_hash == hash_token(raw_token)).first()
        if not record:
            return False
        if not record.revoked:
            record.revoked = True
            record.revoked_at = utcnow()
            db.commit()
        return True

    @staticmethod
    def purge_expired(db: Session, retention_days: Optional[int] = None) -> int:
        """Delete records expired or revoked longer than the retention window."""
        days = settings.REFRESH_TOKEN_RETENTION_DAYS if retention_days is None else retention_days
        cutoff = utcnow() - timedelta(days=days)
        removed = (
            db.query(RefreshToken)
            .filter(
                or_(
                    RefreshToken.expires_at < cutoff,
                    (RefreshToken.revoked == True) & (RefreshToken.revoked_at < cutoff),  # noqa: E712
                )
            )
            .delete(synchronize_session=False)
        )
        db.commit()
        logger.info("Purged %s expired/revoked refresh tokens", removed)
        return removed


token_service = TokenService()
