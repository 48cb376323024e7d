# KPR Bot API - Chat Router
# ==========================
"""Question answering over HTTP."""

import logging

from fastapi import APIRouter, Depends, HTTPException

from kprbot.services import BotServices

from ..dependencies import get_services, require_api_key
from ..models import AskRequest, AskResponse

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/ask", response_model=AskResponse, dependencies=[Depends(require_api_key)])
def ask(request: AskRequest, services: BotServices = Depends(get_services)):
    """
    Answer one question.

    With a phone the identity-scoped flow runs; without one the anonymous
    flow runs and sensitive tables stay unreachable.
    """
    text = request.text.strip()
    if not text:
        raise HTTPException(status_code=400, detail="text is required")

    composer = services.composer
    if request.phone and request.phone.strip():
        result = composer.answer_for_identity(request.phone.strip(), text)
    else:
        result = composer.answer(text)

    return AskResponse(
        answer=result.answer,
        data_intent=result.data_intent,
        table=result.table,
        row_count=result.row_count,
    )
