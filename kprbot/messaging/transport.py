# KPR Bot - Messaging Transport
# ==============================
"""
Outbound messaging interface. The chat-network client itself lives outside
this package; anything that can send a text to a phone number and report
its connection state can be plugged in.
"""

import re
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import List

from kprbot.engine.identity import mask_phone

logger = logging.getLogger(__name__)

_DEVICE_SUFFIX = re.compile(r'[:.]\d+$')
_NON_DIGIT = re.compile(r'\D')


class TransportError(Exception):
    """Raised when a message cannot be delivered."""
    pass


def normalize_phone(raw: str) -> str:
    """
    Reduce a chat address to bare digits.

    "62811222333:12@s.whatsapp.net" and "+62 811-222-333" both become
    digits only; the JID domain and device suffix are dropped.
    """
    value = (raw or "").strip()
    if "@" in value:
        value = value.split("@", 1)[0]
    value = _DEVICE_SUFFIX.sub("", value)
    return _NON_DIGIT.sub("", value)


class MessagingTransport(ABC):
    """Sends text messages to phone numbers."""

    @abstractmethod
    def send_message(self, phone: str, text: str):
        """
        Deliver one message.

        Raises:
            TransportError: If the transport is disconnected or delivery fails
        """
        pass

    @abstractmethod
    def is_connected(self) -> bool:
        pass


@dataclass
class SentMessage:
    phone: str
    text: str


class InMemoryTransport(MessagingTransport):
    """Keeps outbound messages in memory (tests, local runs)."""

    def __init__(self, connected: bool = True):
        self.connected = connected
        self.sent: List[SentMessage] = []
        self._lock = threading.Lock()

    def is_connected(self) -> bool:
        return self.connected

    def send_message(self, phone: str, text: str):
        if not self.connected:
            raise TransportError("transport is not connected")
        normalized = normalize_phone(phone)
        if not normalized:
            raise TransportError("invalid phone input")
        if normalized != phone:
            logger.debug(f"Normalized phone {mask_phone(phone)} -> {mask_phone(normalized)}")
        with self._lock:
            self.sent.append(SentMessage(phone=normalized, text=text))
        logger.info(f"Message queued for {mask_phone(normalized)} ({len(text)} chars)")
