"""UserDirectory - DuckDB-backed caller standing (role, ban/mute, lastSeen).

Accounts are created elsewhere; the directory keeps only what the chat core
needs and inserts a default row the first time a verified caller connects.
"""
import logging
from datetime import datetime, timezone
from typing import Optional

from roomchat.db import Database

from .schemas import CallerIdentity, TokenClaims, UserRole

logger = logging.getLogger(__name__)

_FLAG_COLUMNS = {"isBanned": "is_banned", "isMuted": "is_muted"}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


class UserDirectory:
    """Reads and updates caller identity rows."""

    def __init__(self, db: Database) -> None:
        self._db = db

    def ensure(self, claims: TokenClaims) -> CallerIdentity:
        """Insert the caller on first sight, or refresh role and name from the token.

        The account service owns roles, so a demoted or promoted token takes
        effect on the next connection. Ban/mute flags and the avatar are kept.
        """
        existing = self.find(claims.userId)
        if existing is None:
            logger.info("[Directory] First sight of user %s", claims.userId)
            return self.upsert(claims.userId, claims.displayName, claims.role)
        if existing.role == claims.role and existing.displayName == claims.displayName:
            return existing
        if existing.role != claims.role:
            logger.info(
                "[Directory] Role of %s changed: %s -> %s",
                claims.userId, existing.role.value, claims.role.value,
            )
        return self.upsert(claims.userId, claims.displayName, claims.role, existing.avatar)

    def upsert(
        self,
        user_id: str,
        display_name: str = "user",
        role: UserRole = UserRole.USER,
        avatar: Optional[str] = None,
    ) -> CallerIdentity:
        """Create or overwrite profile fields (moderation flags are kept)."""
        now = _utcnow()
        if self.find(user_id) is None:
            self._db.execute(
                """
                INSERT INTO users
                  (id, display_name, avatar, role, is_banned, is_muted, created_at, updated_at)
                VALUES (?, ?, ?, ?, FALSE, FALSE, ?, ?)
                """,
                [user_id, display_name, avatar, role.value, now, now],
            )
        else:
            self._db.execute(
                "UPDATE users SET display_name = ?, avatar = ?, role = ?, updated_at = ? WHERE id = ?",
                [display_name, avatar, role.value, now, user_id],
            )
        return self.get(user_id)

    def find(self, user_id: str) -> Optional[CallerIdentity]:
        row = self._db.fetchone(
            """
            SELECT id, display_name, avatar, role, is_banned, is_muted, last_seen
            FROM users WHERE id = ?
            """,
            [user_id],
        )
        if row is None:
            return None
        return CallerIdentity(
            userId=row[0],
            displayName=row[1],
            avatar=row[2],
            role=UserRole(row[3]),
            isBanned=bool(row[4]),
            isMuted=bool(row[5]),
            lastSeen=row[6],
        )

    def get(self, user_id: str) -> CallerIdentity:
        """Current identity, or a clean-standing default for unknown users."""
        return self.find(user_id) or CallerIdentity(userId=user_id)

    def set_flag(self, user_id: str, flag: str, value: bool) -> bool:
        """Persist a moderation flag. Returns False if the user is unknown."""
        column = _FLAG_COLUMNS[flag]
        row = self._db.fetchone(
            f"UPDATE users SET {column} = ?, updated_at = ? WHERE id = ? RETURNING id",
            [value, _utcnow(), user_id],
        )
        return row is not None

    def touch_last_seen(self, user_id: str) -> None:
        self._db.execute(
            "UPDATE users SET last_seen = ? WHERE id = ?",
            [_utcnow(), user_id],
        )
