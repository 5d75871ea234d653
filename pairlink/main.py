"""FastAPI application hosting the signaling relay and TURN credential issuer."""
from __future__ import annotations

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse, Response

from . import __version__
from .core.config import settings
from .routers import rtc

logger = logging.getLogger(__name__)

app = FastAPI(title="pairlink signaling", version=__version__)

if settings.cors_allow_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

app.include_router(rtc.router, tags=["rtc"])


@app.get("/", response_class=PlainTextResponse, tags=["meta"])
async def banner() -> PlainTextResponse:
    """Plain banner so a browser visit confirms the server is up."""

    return PlainTextResponse("Signaling server is running")


@app.head("/", tags=["meta"])
async def banner_head() -> Response:
    """Load balancers probe the banner with HEAD before routing WebSocket upgrades."""

    return Response(status_code=200)


@app.get("/api/health", tags=["meta"])
async def relay_health() -> dict[str, str]:
    """Report that the relay process is accepting requests."""

    return {"status": "ok"}


@app.head("/api/health", tags=["meta"])
async def relay_health_head() -> Response:
    """Status-only variant of the relay health check."""

    return Response(status_code=200)


@app.get("/robots.txt", response_class=PlainTextResponse, include_in_schema=False)
async def robots_txt() -> PlainTextResponse:
    """The relay has nothing to index."""

    return PlainTextResponse("User-agent: *\nDisallow: /")
