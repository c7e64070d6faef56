"""Moderation gate: ban/mute enforcement and role-gated elevated actions.

Ban and mute are independent flags, each toggled directly by a moderator,
admin or superadmin. The caller's standing is read from the user directory
on every check, never cached on the connection, because it can change while
the connection is open.
"""
import logging
from enum import Enum
from typing import Tuple

from roomchat.auth import CallerIdentity, UserDirectory
from roomchat.errors import AuthorizationError, ModerationError, NotFoundError

from .schemas import EventType

logger = logging.getLogger(__name__)


class ModerationAction(str, Enum):
    BAN = "ban"
    UNBAN = "unban"
    MUTE = "mute"
    UNMUTE = "unmute"


# action -> (directory flag, new value, broadcast event)
_ACTIONS = {
    ModerationAction.BAN: ("isBanned", True, EventType.USER_BANNED),
    ModerationAction.UNBAN: ("isBanned", False, EventType.USER_UNBANNED),
    ModerationAction.MUTE: ("isMuted", True, EventType.USER_MUTED),
    ModerationAction.UNMUTE: ("isMuted", False, EventType.USER_UNMUTED),
}


class ModerationGate:
    """Checks write permission and applies elevated actions."""

    def __init__(self, directory: UserDirectory) -> None:
        self._directory = directory

    def identity(self, user_id: str) -> CallerIdentity:
        return self._directory.get(user_id)

    def ensure_can_write(self, user_id: str) -> CallerIdentity:
        """Reject banned or muted callers before anything is persisted."""
        caller = self.identity(user_id)
        if caller.isBanned:
            raise ModerationError("you are banned")
        if caller.isMuted:
            raise ModerationError("you are muted")
        return caller

    def is_moderator(self, user_id: str) -> bool:
        return self.identity(user_id).role.is_elevated

    def ensure_elevated(self, user_id: str) -> CallerIdentity:
        caller = self.identity(user_id)
        if not caller.role.is_elevated:
            raise AuthorizationError("insufficient role")
        return caller

    def apply(self, actor_id: str, action: ModerationAction, target_id: str) -> Tuple[EventType, dict]:
        """Persist a ban/unban/mute/unmute and return the event to broadcast.

        Raises:
            AuthorizationError: Actor is a plain user.
            NotFoundError: Target user is unknown to the directory.
        """
        self.ensure_elevated(actor_id)
        action = ModerationAction(action)
        flag, value, event = _ACTIONS[action]
        if not self._directory.set_flag(target_id, flag, value):
            raise NotFoundError("user not found")
        logger.info(f"[Moderation] {actor_id} applied {action.value} to {target_id}")
        return event, {"userId": target_id}
