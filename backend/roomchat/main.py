"""Roomchat Backend Application.

This is the main entry point for the realtime chat core: authenticated
WebSocket connections join rooms, exchange messages (with replies,
reactions, read receipts and soft delete), and observe presence and
moderation events. Room history is also readable over HTTP.

Modules:
    - chat: WebSocket gateway, room fanout, message store and history
    - auth: bearer token verification and the user directory
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.requests import Request

from roomchat.chat.router import router as chat_router
from roomchat.chat.service import ChatService
from roomchat.config import get_config
from roomchat.errors import ChatError, chat_error_handler, unhandled_error_handler

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# httpx/httpcore log every connection made by the test client.
for _noisy in ("httpx", "httpcore", "duckdb"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    config = get_config()

    # `logging.level: "debug"` in roomchat.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    service = ChatService.get_instance(config)
    room = service.default_room()
    logger.info(
        f"Chat core ready: database={service.db.path}, default room={room.key!r}. "
        f"Serving on http://{config.server.host}:{config.server.port}"
    )

    yield  # Application runs here

    ChatService.reset_instance()
    logger.info("Application shutdown complete")


async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Render malformed query/path parameters with the chat error shape."""
    return JSONResponse(
        status_code=400,
        content={"error": "invalid request", "kind": "validation", "details": jsonable_encoder(exc.errors())},
    )


app = FastAPI(
    title="Roomchat API",
    description="Realtime chat core: rooms, messages, presence and moderation",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_config().server.allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.add_exception_handler(ChatError, chat_error_handler)
app.add_exception_handler(RequestValidationError, request_validation_handler)
app.add_exception_handler(Exception, unhandled_error_handler)

app.include_router(chat_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object indicating the server is running.
    """
    return {"status": "ok"}
