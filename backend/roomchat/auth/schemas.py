"""Pydantic schemas for caller identity.

The chat core never issues credentials. It consumes a verified token
(``TokenClaims``) and reads the caller's current standing from the user
directory (``CallerIdentity``).
"""
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class UserRole(str, Enum):
    """Role of a chat participant.

    Attributes:
        USER: Regular participant.
        MODERATOR: May ban/mute and delete any message.
        ADMIN: Moderator powers plus administrative tooling.
        SUPERADMIN: Highest role; same chat powers as ADMIN.
    """
    USER = "user"
    MODERATOR = "moderator"
    ADMIN = "admin"
    SUPERADMIN = "superadmin"

    @property
    def is_elevated(self) -> bool:
        return self is not UserRole.USER


class TokenClaims(BaseModel):
    """Claims extracted from a verified bearer token."""
    userId: str = Field(..., min_length=1, description="Authenticated user id")
    displayName: str = Field(default="user", description="Name derived from the token")
    role: UserRole = Field(default=UserRole.USER, description="Role granted by the account service")


class CallerIdentity(BaseModel):
    """Current standing of a user, re-read on every privileged check.

    Attributes:
        userId: Stable user identifier.
        displayName: Name shown next to messages.
        avatar: Optional avatar URL (opaque).
        role: Current role.
        isBanned: Banned users cannot write.
        isMuted: Muted users cannot write.
        lastSeen: When the user's last connection closed.
    """
    userId: str
    displayName: str = "user"
    avatar: Optional[str] = None
    role: UserRole = UserRole.USER
    isBanned: bool = False
    isMuted: bool = False
    lastSeen: Optional[datetime] = None
