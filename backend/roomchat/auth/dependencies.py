"""FastAPI dependencies resolving the caller of a synchronous HTTP request."""
from typing import Optional

from fastapi import Header, Query

from roomchat.chat.service import ChatService

from .schemas import CallerIdentity


async def get_caller(
    authorization: Optional[str] = Header(None),
    token: Optional[str] = Query(None, description="Bearer token (alternative to the header)"),
) -> CallerIdentity:
    """Verify the bearer token and return the caller's current standing.

    Raises:
        AuthenticationError: Rendered as 401 by the app's exception handler.
    """
    service = ChatService.get_instance()
    claims = service.verifier.verify(authorization or token)
    return service.directory.ensure(claims)
