"""Chat Backend Application.

This is the main entry point for the real-time chat backend: presence,
authenticated socket sessions, room-based message delivery and unread
bookkeeping, plus the REST API the clients use alongside the socket.

Modules:
    - chat: WebSocket channel, rooms, chat and message REST endpoints
    - auth: JWT bearer tokens, current-user and presence endpoints
    - store: DuckDB persistence for users, chats and messages
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from app.auth.router import router as auth_router
from app.auth.router import users_router
from app.chat.router import router as chat_router
from app.chat.runtime import build_runtime, get_runtime, has_runtime, set_runtime
from app.config import get_config
from app.errors import ChatError
from app.store.service import ChatStore

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
for _noisy in ("httpx", "httpcore", "uvicorn.access"):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan manager for startup/shutdown events."""
    # Startup
    config = get_config()

    # Apply configured log level to root logger so that
    # `logging.level: "debug"` in chat.settings.yaml activates DEBUG output.
    configured_level = getattr(logging, config.logging.level.upper(), None)
    if configured_level is not None:
        logging.getLogger().setLevel(configured_level)
        logger.info("Root logger level set to %s", config.logging.level.upper())

    owns_runtime = not has_runtime()
    if owns_runtime:
        set_runtime(build_runtime(config))
    logger.info(
        "Chat backend listening on http://%s:%s", config.server.host, config.server.port
    )

    yield  # Application runs here

    # Shutdown
    if owns_runtime:
        get_runtime().close()
        set_runtime(None)
        ChatStore.reset_instance()
    logger.info("Application shutdown complete")


# Create FastAPI application with metadata
app = FastAPI(
    title="Chat API",
    description="Real-time chat delivery and presence backend",
    version="0.1.0",
    lifespan=lifespan,
)

_origins = get_config().server.allowed_origins
if _origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse({"error": exc.message}, status_code=exc.status_code)


# Register all routers
app.include_router(chat_router)
app.include_router(auth_router)
app.include_router(users_router)


@app.get("/health")
async def health() -> dict:
    """Health check endpoint.

    Returns:
        dict: Status object with the number of live sockets and online users.
    """
    if not has_runtime():
        return {"status": "ok", "connections": 0, "onlineUsers": 0}
    runtime = get_runtime()
    return {
        "status": "ok",
        "connections": runtime.manager.get_connection_count(),
        "onlineUsers": len(runtime.presence),
    }
