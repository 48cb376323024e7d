"""
KPR Bot Messaging Module
========================

Chat-network seam: outbound transport interface and inbound handler.
"""

from .transport import InMemoryTransport, MessagingTransport, TransportError, normalize_phone
from .handler import APOLOGY, BotHandler, InboundMessage

__all__ = [
    "APOLOGY",
    "BotHandler",
    "InboundMessage",
    "InMemoryTransport",
    "MessagingTransport",
    "TransportError",
    "normalize_phone",
]
