from typing import List, Optional

from pydantic import BaseModel, Field


RECEIVE_MESSAGE_EVENT = "im.message.receive_v1"


class LarkEventHeader(BaseModel):
    """
    Header of a v2 event callback.
    """

    event_id: str = Field(..., description="Platform event id, stable across retries")
    event_type: str = Field(..., description="Event type, e.g. im.message.receive_v1")
    token: Optional[str] = Field(default=None, description="Verification token")
    app_id: Optional[str] = None
    create_time: Optional[str] = None


class LarkUserId(BaseModel):
    user_id: Optional[str] = None
    open_id: Optional[str] = None
    union_id: Optional[str] = None


class LarkSender(BaseModel):
    sender_id: LarkUserId
    sender_type: Optional[str] = None


class LarkMention(BaseModel):
    key: str = Field(..., description="Placeholder used in text, e.g. '@_user_1'")
    name: Optional[str] = None


class LarkMessage(BaseModel):
    message_id: str
    chat_id: str
    chat_type: str = Field(..., description="'p2p' or 'group'")
    message_type: str = Field(..., description="'text', 'image', 'post', ...")
    content: str = Field(..., description="JSON-encoded message body")
    mentions: List[LarkMention] = Field(default_factory=list)


class LarkMessageEvent(BaseModel):
    """
    Body of an im.message.receive_v1 event.
    """

    sender: LarkSender
    message: LarkMessage

    @property
    def sender_key(self) -> Optional[str]:
        # user_id is only present when the app may read it; open_id always is.
        ids = self.sender.sender_id
        return ids.user_id or ids.open_id


__all__ = [
    "RECEIVE_MESSAGE_EVENT",
    "LarkEventHeader",
    "LarkUserId",
    "LarkSender",
    "LarkMention",
    "LarkMessage",
    "LarkMessageEvent",
]
