"""Schemas related to chat messages and conversations."""

from __future__ import annotations

from datetime import datetime

from pydantic import Field, model_validator

from app.config import get_settings
from app.models.enums import MessageType
from app.schemas.common import CamelModel

settings = get_settings()


class MessageCreate(CamelModel):
    content: str | None = None
    type: MessageType = MessageType.TEXT
    voice_url: str | None = Field(default=None, max_length=512)
    duration: int | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def check_body(self) -> "MessageCreate":
        if self.type == MessageType.TEXT:
            text = (self.content or "").strip()
            if not text:
                raise ValueError("Text messages need content")
            if len(text) > settings.chat_message_max_length:
                raise ValueError("Message is too long")
            self.content = text
        elif not self.voice_url:
            raise ValueError("Voice messages need a voiceUrl")
        return self


class MessageRead(CamelModel):
    id: int
    room_id: str
    sender_id: str
    type: MessageType
    content: str | None = None
    voice_url: str | None = None
    duration: int | None = None
    sent_at: datetime
    is_delivered: bool
    is_read: bool
    read_at: datetime | None = None


class ConversationRead(CamelModel):
    room_id: str
    partner_id: str
    partner_name: str | None = None
    partner_profile_picture: str | None = None
    created_at: datetime
    last_activity: datetime
    unread_count: int = 0
    last_message: MessageRead | None = None
