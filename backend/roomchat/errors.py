"""Error taxonomy shared by the realtime gateway and the HTTP routers.

Every error carries a machine-checkable ``kind`` and an HTTP-style
``status_code``. Services raise these; the WebSocket gateway turns them into
failed acknowledgments and the FastAPI exception handlers turn them into JSON
responses, so no operation failure ever crosses the connection boundary.
"""
import logging

from fastapi import Request, status
from fastapi.responses import JSONResponse

logger = logging.getLogger(__name__)


class ChatError(Exception):
    """Base class for all expected chat failures."""

    kind: str = "internal"
    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message: str = "unexpected error"

    def __init__(self, message: str = "") -> None:
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.message, "kind": self.kind}


class ValidationError(ChatError):
    """Malformed id or missing required field. Raised before any mutation."""
    kind = "validation"
    status_code = status.HTTP_400_BAD_REQUEST
    default_message = "invalid request"


class AuthenticationError(ChatError):
    """Missing or invalid bearer credential."""
    kind = "unauthenticated"
    status_code = status.HTTP_401_UNAUTHORIZED
    default_message = "authentication failed"


class AuthorizationError(ChatError):
    """Caller is not allowed to perform the operation."""
    kind = "forbidden"
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "insufficient role"


class ModerationError(ChatError):
    """Banned or muted caller attempted a write."""
    kind = "moderation"
    status_code = status.HTTP_403_FORBIDDEN
    default_message = "you are muted"


class NotFoundError(ChatError):
    kind = "not_found"
    status_code = status.HTTP_404_NOT_FOUND
    default_message = "message not found"


class TransientStoreError(ChatError):
    """The persistence layer is temporarily unavailable. Never retried here."""
    kind = "store_unavailable"
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR
    default_message = "storage temporarily unavailable"


# =============================================================================
# FastAPI exception handlers
# =============================================================================


async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    """Catch-all for unhandled exceptions.

    Prevents stack trace leakage; the full traceback goes to the log only.
    """
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"error": "internal server error", "kind": "internal"},
    )
