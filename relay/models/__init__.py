from .lark import (
    RECEIVE_MESSAGE_EVENT,
    LarkEventHeader,
    LarkMention,
    LarkMessage,
    LarkMessageEvent,
    LarkSender,
    LarkUserId,
)
from .turn import PromptMessage, Turn

__all__ = [
    "RECEIVE_MESSAGE_EVENT",
    "LarkEventHeader",
    "LarkMention",
    "LarkMessage",
    "LarkMessageEvent",
    "LarkSender",
    "LarkUserId",
    "PromptMessage",
    "Turn",
]
