"""Database models"""

from tourney.models.user import User
from tourney.models.security import RefreshToken

__all__ = ["User", "RefreshToken"]
