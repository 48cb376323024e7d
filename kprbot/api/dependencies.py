# KPR Bot API - Dependencies
# ===========================
"""Shared FastAPI dependencies: services lookup and API-key check."""

import hmac
import logging
from typing import Optional

from fastapi import Header, HTTPException, Query, Request

from kprbot.messaging import MessagingTransport
from kprbot.services import BotServices

logger = logging.getLogger(__name__)


def get_services(request: Request) -> BotServices:
    services = getattr(request.app.state, "services", None)
    if services is None:
        raise HTTPException(status_code=503, detail="service not ready")
    return services


def get_transport(request: Request) -> MessagingTransport:
    transport = getattr(request.app.state, "transport", None)
    if transport is None:
        raise HTTPException(status_code=503, detail="transport not configured")
    return transport


def require_api_key(
    request: Request,
    x_api_key: Optional[str] = Header(None),
    api_key: Optional[str] = Query(None),
):
    """
    Accept the key from the X-API-Key header or the api_key query parameter.

    An unset server key rejects every request.
    """
    expected = get_services(request).config.api_key
    provided = x_api_key or api_key or ""
    if not expected or not hmac.compare_digest(provided.encode(), expected.encode()):
        logger.warning(f"Rejected request to {request.url.path}: invalid API key")
        raise HTTPException(status_code=401, detail="unauthorized")
