# KPR Bot API - Messages Router
# ==============================
"""Outbound message endpoint used by other services to reach a customer."""

import logging

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from kprbot.engine.identity import mask_phone
from kprbot.messaging import MessagingTransport, TransportError

from ..dependencies import get_transport, require_api_key
from ..models import SendMessageRequest, SendMessageResponse

logger = logging.getLogger(__name__)

router = APIRouter()


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


@router.post("/send-message", dependencies=[Depends(require_api_key)])
async def send_message(request: Request, transport: MessagingTransport = Depends(get_transport)):
    """
    Send a text message to a phone number.

    Returns 400 for malformed JSON or a missing phone/message, and 500 when
    the transport cannot deliver.
    """
    try:
        body = await request.json()
        payload = SendMessageRequest.model_validate(body)
    except (ValueError, ValidationError):
        return _error(400, "invalid json")

    phone = payload.phone.strip()
    message = payload.message.strip()
    if not phone:
        return _error(400, "phone is required")
    if not message:
        return _error(400, "message is required")

    try:
        transport.send_message(phone, message)
    except TransportError as e:
        logger.error(f"Send to {mask_phone(phone)} failed: {e}")
        return _error(500, "failed to send message")

    return SendMessageResponse(status="sent", phone=phone)
