# KPR Bot API Routers
from . import chat, messages, system

__all__ = ["chat", "messages", "system"]
