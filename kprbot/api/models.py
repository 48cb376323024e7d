# KPR Bot API - Request/Response Models
# ======================================
"""Pydantic models for the HTTP API."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field


class SendMessageRequest(BaseModel):
    phone: str = ""
    message: str = ""


class SendMessageResponse(BaseModel):
    status: str = "sent"
    phone: str


class AskRequest(BaseModel):
    """Question from an HTTP client; without a phone it is answered anonymously."""
    text: str = Field(..., min_length=1)
    phone: Optional[str] = None


class AskResponse(BaseModel):
    answer: str
    data_intent: bool
    table: Optional[str] = None
    row_count: int = 0


class SchemaReloadResponse(BaseModel):
    success: bool = True
    table_count: int
    tables_with_columns: int
    reloaded_at: str = Field(default_factory=lambda: datetime.now().isoformat())
