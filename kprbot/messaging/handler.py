# KPR Bot - Inbound Message Handler
# ==================================
"""
Routes inbound chat messages to the answer composer and sends the reply
back through the transport.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from kprbot.engine.answer_composer import AnswerComposer
from kprbot.engine.identity import mask_phone

from .transport import MessagingTransport, TransportError, normalize_phone

logger = logging.getLogger(__name__)

APOLOGY = "Maaf, aku lagi kesulitan menjawab. Coba kirim ulang pertanyaannya sebentar lagi ya."


@dataclass
class InboundMessage:
    """One message received from the chat network."""
    sender: str
    text: str
    is_from_me: bool = False
    is_group: bool = False


class BotHandler:
    """
    Handles inbound messages.

    Own messages, group messages and empty messages are ignored. Any failure
    while answering produces a fixed apology rather than error text.
    """

    def __init__(self, composer: AnswerComposer, transport: MessagingTransport):
        self.composer = composer
        self.transport = transport

    def handle_message(self, message: InboundMessage) -> Optional[str]:
        """
        Answer one inbound message.

        Returns:
            The reply sent, or None when the message was ignored
        """
        if message.is_from_me or message.is_group:
            return None
        text = (message.text or "").strip()
        if not text:
            return None
        phone = normalize_phone(message.sender)
        if not phone:
            logger.warning("Inbound message without a usable sender; ignored")
            return None

        logger.info(f"Message from {mask_phone(phone)} ({len(text)} chars)")
        try:
            reply = self.composer.answer_for_identity(phone, text).answer
        except Exception as e:
            logger.error(f"Answering failed for {mask_phone(phone)}: {e}", exc_info=True)
            reply = APOLOGY

        self.send_reply(phone, reply)
        return reply

    def send_reply(self, phone: str, text: str):
        try:
            self.transport.send_message(phone, text)
        except TransportError as e:
            logger.error(f"Failed to send reply to {mask_phone(phone)}: {e}")
