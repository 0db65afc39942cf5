"""Aperture entry point.

  Settings -> Server (channels, hub, proactive jobs) -> App -> Uvicorn

The server starts and stops inside the Starlette lifespan, on the same
event loop as uvicorn.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from starlette.applications import Starlette

from aperture.api.rest import create_app
from aperture.config import Settings
from aperture.server import Server

logger = logging.getLogger(__name__)


def build_app(settings: Settings, server: Server | None = None) -> Starlette:
    """Build the Starlette app; the lifespan owns the server's start/stop."""
    server = server or Server(settings)

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        await server.start()
        app.state.server = server
        try:
            yield
        finally:
            await server.stop()

    return create_app(server, lifespan=lifespan)


def main() -> None:
    """Entry point: parse settings, build app, run server."""
    settings = Settings()

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    logger.info("Starting Aperture (data_dir=%s)", settings.data_dir)
    logger.info("Model: %s", settings.model)
    if not settings.anthropic_api_key and not settings.anthropic_auth_token:
        logger.warning(
            "Neither ANTHROPIC_API_KEY nor ANTHROPIC_AUTH_TOKEN is set; turns will fail"
        )

    uvicorn.run(
        build_app(settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level,
    )


if __name__ == "__main__":
    main()
