"""User profile and management routes"""

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session
from typing import List, Optional

from tourney.core.database import get_db
from tourney.core.exceptions import ResourceNotFoundError
from tourney.schemas.user import UserCreate, UserProfile, ProfileUpdate
from tourney.services.user_service import user_service
from tourney.services.token_service import token_service
from tourney.api.deps import get_current_user, require_csrf, require_email_verified, require_roles
from tourney.models.user import User

router = APIRouter()


@router.get("/profile", response_model=UserProfile)
def get_my_profile(
    current_user: User = Depends(get_current_user)
):
    """
    Get current user profile

    Args:
        current_user: Current authenticated user

    Returns:
        User profile with decrypted phone number and in-game IDs
    """
    return user_service.build_profile(current_user)


@router.patch("/profile", response_model=UserProfile, dependencies=[Depends(require_csrf)])
def update_my_profile(
    changes: ProfileUpdate,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db)
):
    """
    Update phone number and in-game IDs; both are stored encrypted

    Args:
        changes: Fields to update
        current_user: Current authenticated user
        db: Database session

    Returns:
        Updated profile
    """
    user = user_service.update_profile(db, current_user, changes)
    return user_service.build_profile(user)


@router.get("/", response_model=List[UserProfile], dependencies=[Depends(require_roles("owner"))])
def list_users(
    role: Optional[str] = None,
    db: Session = Depends(get_db)
):
    """
    Get all users (owner only)

    Args:
        role: Optional role filter
        db: Database session

    Returns:
        List of users
    """
    return user_service.list_users(db, role)


@router.post(
    "/",
    response_model=UserProfile,
    status_code=status.HTTP_201_CREATED,
    dependencies=[Depends(require_roles("owner")), Depends(require_email_verified), Depends(require_csrf)],
)
def create_user(
    user_data: UserCreate,
    db: Session = Depends(get_db)
):
    """Create new user (owner only)"""
    user = user_service.create_user(db, user_data)
    return user_service.build_profile(user)


@router.post(
    "/{user_id}/revoke-sessions",
    dependencies=[Depends(require_roles("owner")), Depends(require_email_verified), Depends(require_csrf)],
)
def revoke_user_sessions(
    user_id: str,
    db: Session = Depends(get_db)
):
    """
    Revoke every refresh token of a user (owner only)

    Access tokens already issued stay valid until they expire.
    """
    if not user_service.get_user_by_id(db, user_id):
        raise ResourceNotFoundError("User")
    revoked = token_service.revoke_all_for_user(db, user_id)
    return {
        "success": True,
        "message": f"Revoked {revoked} refresh tokens",
        "revoked": revoked,
    }
