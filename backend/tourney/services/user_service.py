"""User service - user records, authentication and profile PII"""

from sqlalchemy.orm import Session
from typing import List, Optional
from datetime import timedelta
from tourney.config import settings
from tourney.models.user import User
from tourney.schemas.user import UserCreate, UserProfile, ProfileUpdate
from tourney.core.security import get_password_hash, is_owner, verify_password, utcnow
from tourney.core.encryption import (
    decrypt_user_pii,
    encrypt_in_game_ids,
    encrypt_phone_number,
)
from tourney.core.exceptions import (
    InvalidCredentialsError,
    AccountLockedError,
    ResourceAlreadyExistsError,
)
import logging

logger = logging.getLogger(__name__)


class UserService:
    """Service for user management"""

    @staticmethod
    def create_user(db: Session, user_data: UserCreate) -> User:
        """
        Create new user

        Args:
            db: Database session
            user_data: User creation data

        Returns:
            Created user
        """
        existing = (
            db.query(User)
            .filter((User.email == user_data.email) | (User.username == user_data.username))
            .first()
        )
        if existing:
            raise ResourceAlreadyExistsError("User")

        user = User(
            email=user_data.email,
            username=user_data.username,
            password_hash=get_password_hash(user_data.password),
            role=user_data.role.value,
            is_host=user_data.is_host,
            email_verified=user_data.email_verified,
        )

        db.add(user)
        db.commit()
        db.refresh(user)

        logger.info(f"Created user: {user.id} (role: {user.role})")
        return user

    @staticmethod
    def authenticate_user(db: Session, email: str, password: str) -> User:
        """
        Authenticate user with account lockout protection

        Args:
            db: Database session
            email: Email address
            password: Password

        Returns:
            Authenticated user
        """
        user = db.query(User).filter(User.email == email.strip().lower()).first()

        if not user or not user.is_active:
            raise InvalidCredentialsError()

        now = utcnow()
        locked_until = user.locked_until.replace(tzinfo=None) if user.locked_until else None
        if locked_until and locked_until > now:
            raise AccountLockedError(locked_until.isoformat())

        if not verify_password(password, user.password_hash):
            user.failed_login_attempts = (user.failed_login_attempts or 0) + 1

            if user.failed_login_attempts >= settings.MAX_FAILED_LOGIN_ATTEMPTS:
                user.locked_until = now + timedelta(minutes=settings.LOCKOUT_DURATION_MINUTES)
                user.failed_login_attempts = 0
                db.commit()
                logger.warning(f"Account locked for user: {user.id}")
                raise AccountLockedError(user.locked_until.isoformat())

            db.commit()
            raise InvalidCredentialsError()

        user.failed_login_attempts = 0
        user.locked_until = None
        user.last_login = now
        db.commit()

        logger.info(f"User authenticated: {user.id}")
        return user

    @staticmethod
    def get_user_by_id(db: Session, user_id: str) -> Optional[User]:
        """Get user by ID"""
        return db.query(User).filter(User.id == str(user_id)).first()

    @staticmethod
    def get_user_by_email(db: Session, email: str) -> Optional[User]:
        """Get user by email"""
        return db.query(User).filter(User.email == email.strip().lower()).first()

    @staticmethod
    def build_profile(user: User) -> UserProfile:
        """Profile with PII decrypted for the response"""
        data = decrypt_user_pii({
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "is_host": bool(user.is_host),
            "role": user.role,
            "email_verified": bool(user.email_verified),
            "phone_number": user.phone_number,
            "in_game_ids": user.in_game_ids,
            "created_at": user.created_at,
            "last_login": user.last_login,
        })
        data["is_admin"] = is_owner(user.role)
        return UserProfile(**data)

    @staticmethod
    def update_profile(db: Session, user: User, changes: ProfileUpdate) -> User:
        """
        Update profile PII; values are encrypted before they are stored

        Args:
            db: Database session
            user: User to update
            changes: Submitted fields

        Returns:
            Updated user
        """
        fields = changes.model_dump(exclude_unset=True)
        if "phone_number" in fields:
            user.phone_number = encrypt_phone_number(fields["phone_number"])
        if "in_game_ids" in fields:
            user.in_game_ids = encrypt_in_game_ids(fields["in_game_ids"])

        db.commit()
        db.refresh(user)
        logger.info(f"Profile updated for user: {user.id} fields={sorted(fields)}")
        return user

    @staticmethod
    def list_users(db: Session, role: Optional[str] = None) -> List[UserProfile]:
        """
        Get all users, optionally filtered by role

        Args:
            db: Database session
            role: Optional role filter

        Returns:
            List of user profiles
        """
        query = db.query(User)

        if role:
            query = query.filter(User.role == role)

        return [UserService.build_profile(user) for user in query.order_by(User.created_at).all()]


# Singleton instance
user_service = UserService()
