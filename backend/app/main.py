"""Secure Chat Relay backend application.

This is the main entry point for the real-time chat relay. Authenticated
users see who else is online and exchange direct messages in rooms with
ordered history and typing presence.

Modules:
    - chat: WebSocket session, presence and room relay
    - auth: credential verification and presence HTTP endpoints
    - storage: message history persistence (memory or DuckDB)
    - client: Python client for the WebSocket protocol
"""
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.auth.router import router as users_router
from app.chat.router import router as chat_router
from app.chat.service import ChatService
from app.config import AppConfig, get_config

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)

# Silence verbose third-party loggers.
for _noisy in (
    "websockets",
    "websockets.client",
    "websockets.server",
    "httpx",
    "httpcore",
):
    logging.getLogger(_noisy).setLevel(logging.WARNING)

logger = logging.getLogger(__name__)


def create_app(
    config: Optional[AppConfig] = None,
    chat_service: Optional[ChatService] = None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        config: Configuration to use. Defaults to :func:`get_config`.
        chat_service: Pre-built service (tests). Built from config otherwise.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager for startup/shutdown events."""
        # Startup
        cfg = config or get_config()

        configured_level = getattr(logging, cfg.logging.level.upper(), None)
        if configured_level is not None:
            logging.getLogger().setLevel(configured_level)
            logger.info("Root logger level set to %s", cfg.logging.level.upper())

        service = chat_service or ChatService.from_config(cfg)
        app.state.chat = service
        logger.info(
            f"Chat relay listening on ws://{cfg.server.host}:{cfg.server.port}/ws/chat"
        )

        yield  # Application runs here

        # Shutdown
        service.close()
        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Secure Chat Relay",
        description="Real-time presence, direct-message rooms and typing relay",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=(config or get_config()).server.allowed_origins,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    app.include_router(chat_router)
    app.include_router(users_router)

    @app.get("/health")
    async def health() -> dict:
        """Health check endpoint.

        Returns:
            dict: Status object indicating the server is running.
        """
        return {"status": "ok"}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    server = get_config().server
    uvicorn.run("app.main:app", host=server.host, port=server.port)
