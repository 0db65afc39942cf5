"""Status API for Aperture.

Endpoints:
  GET /health  - Liveness check
  GET /status  - Channels, users, heartbeats, watchers, active sessions
"""

from __future__ import annotations

import logging
from typing import Any

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route

from aperture import __version__
from aperture.server import Server

logger = logging.getLogger(__name__)


def create_app(server: Server, lifespan: Any | None = None) -> Starlette:
    """Create the Starlette ASGI app with all routes."""

    async def health(request: Request) -> JSONResponse:
        """GET /health - Health check."""
        return JSONResponse({"status": "healthy", "version": __version__})

    async def status(request: Request) -> JSONResponse:
        """GET /status - Runtime overview."""
        try:
            return JSONResponse(server.status())
        except Exception as e:
            logger.error("Status error: %s", e)
            return JSONResponse({"error": str(e)}, status_code=500)

    routes = [
        Route("/health", health),
        Route("/status", status),
    ]
    return Starlette(routes=routes, lifespan=lifespan)
