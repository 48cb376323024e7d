# KPR Bot API - System Router
# ============================
"""System endpoints for health and schema reload."""

import logging
from datetime import datetime

from fastapi import APIRouter, Depends, Request

from kprbot.services import BotServices

from ..dependencies import get_services, require_api_key
from ..models import SchemaReloadResponse

logger = logging.getLogger(__name__)

router = APIRouter()

SERVER_START_TIME = datetime.now()


def get_uptime() -> str:
    delta = datetime.now() - SERVER_START_TIME
    hours, remainder = divmod(int(delta.total_seconds()), 3600)
    minutes, seconds = divmod(remainder, 60)
    return f"{hours}h {minutes}m {seconds}s"


@router.get("/health")
async def health_check(request: Request):
    """
    Basic health check.

    No authentication required.
    """
    services = getattr(request.app.state, "services", None)
    transport = getattr(request.app.state, "transport", None)
    return {
        "status": "healthy" if services is not None else "starting",
        "llm": bool(services and services.llm),
        "transport_connected": bool(transport and transport.is_connected()),
        "uptime": get_uptime(),
        "timestamp": datetime.now().isoformat(),
    }


@router.post("/api/schema/reload", response_model=SchemaReloadResponse, dependencies=[Depends(require_api_key)])
def reload_schema(services: BotServices = Depends(get_services)):
    """Re-read the DDL source and swap in the new catalog."""
    catalog = services.registry.reload()
    logger.info(f"Schema reloaded via API: {len(catalog.tables)} tables")
    return SchemaReloadResponse(
        table_count=len(catalog.tables),
        tables_with_columns=len(catalog.columns),
    )
