"""
KPR Bot API - FastAPI Application
=================================
HTTP surface of the KPR bot.

Features:
- Health check
- Outbound send-message endpoint (API key)
- Question answering endpoint (API key)
- Schema reload (API key)

Run with:
    uvicorn kprbot.api.main:app --host 0.0.0.0 --port 8080
"""

import os
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from kprbot import __version__
from kprbot.config import BotConfig
from kprbot.messaging import InMemoryTransport, MessagingTransport
from kprbot.services import BotServices, create_services

from .routers import chat, messages, system

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build services from the environment unless they were injected."""
    owned = False
    if app.state.services is None:
        app.state.services = create_services(BotConfig.from_env())
        owned = True
    if app.state.transport is None:
        logger.warning("No messaging transport attached; using in-memory transport")
        app.state.transport = InMemoryTransport()
    logger.info("KPR Bot API starting up...")

    yield

    logger.info("KPR Bot API shutting down...")
    if owned:
        app.state.services.close()
        app.state.services = None


def create_app(services: Optional[BotServices] = None,
               transport: Optional[MessagingTransport] = None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        services: Pre-built services (tests); built from the environment at startup otherwise
        transport: Messaging transport for send-message
    """
    app = FastAPI(
        title="KPR Bot API",
        description="KPR assistant: questions, outbound messages and schema management.",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    app.state.services = services
    app.state.transport = transport

    cors_origins = os.getenv("CORS_ORIGINS", "http://localhost").split(",")
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[o.strip() for o in cors_origins if o.strip()],
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-API-Key"],
    )

    app.include_router(system.router, tags=["System"])
    app.include_router(messages.router, prefix="/api", tags=["Messages"])
    app.include_router(chat.router, prefix="/api", tags=["Chat"])
    return app


app = create_app()
