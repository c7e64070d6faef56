"""Caller identity for the chat core.

Services:
    - TokenVerifier: verifies bearer tokens minted by the account service.
    - UserDirectory: role and moderation standing, re-read on every check.
"""
from .directory import UserDirectory
from .schemas import CallerIdentity, TokenClaims, UserRole
from .service import TokenVerifier

__all__ = [
    "CallerIdentity",
    "TokenClaims",
    "TokenVerifier",
    "UserDirectory",
    "UserRole",
]
