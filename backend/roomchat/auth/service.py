"""Bearer token verification.

Tokens are minted by the external account service; this module only checks
the signature and extracts the caller's id. Accepted claim layouts:

    {"userId": "...", "email": "ann@example.com", "role": "moderator"}
    {"sub": "...", "name": "Ann"}
"""
import logging
import re
from typing import Optional

from jose import JWTError, jwt

from roomchat.errors import AuthenticationError

from .schemas import TokenClaims, UserRole

logger = logging.getLogger(__name__)

_BEARER_PREFIX = re.compile(r"^Bearer\s+", re.IGNORECASE)


class TokenVerifier:
    """Verifies HS-signed JWTs with the shared secret from roomchat.secrets.yaml."""

    def __init__(self, secret_key: str, algorithm: str = "HS256"):
        self.secret_key = secret_key
        self.algorithm = algorithm

    def verify(self, raw: Optional[str]) -> TokenClaims:
        """Verify a raw token (with or without the ``Bearer`` prefix).

        Raises:
            AuthenticationError: If the token is missing, malformed, expired
                or carries no user id.
        """
        if not raw:
            raise AuthenticationError("no token")
        token = _BEARER_PREFIX.sub("", str(raw).strip())

        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])
        except JWTError as e:
            logger.info(f"Token rejected: {e}")
            raise AuthenticationError("auth failed") from e

        user_id = payload.get("userId") or payload.get("sub")
        if not user_id:
            raise AuthenticationError("auth failed")

        try:
            role = UserRole(payload.get("role") or UserRole.USER.value)
        except ValueError:
            role = UserRole.USER

        return TokenClaims(
            userId=str(user_id),
            displayName=self._display_name(payload),
            role=role,
        )

    @staticmethod
    def _display_name(payload: dict) -> str:
        """Prefer an explicit name, else the local part of the email."""
        name = payload.get("name")
        if isinstance(name, str) and name.strip():
            return name.strip()[:120]
        email = payload.get("email")
        if isinstance(email, str) and "@" in email:
            return email.split("@")[0] or "user"
        return "user"
