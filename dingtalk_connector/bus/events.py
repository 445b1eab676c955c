"""Event and message types shared across the connector."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ConnectionStatus(str, Enum):
    """Connection lifecycle states."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


@dataclass
class StatusEvent:
    """Connection status change for one account."""
    account_id: str
    status: ConnectionStatus
    detail: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class SessionEvent:
    """Session title/status change published after the session store is updated."""
    account_id: str
    session_id: str
    title: Optional[str] = None
    status: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)


class TextPayload(BaseModel):
    content: str = ""


class RichTextPart(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: str = ""
    text: Optional[str] = None
    at_name: Optional[str] = Field(default=None, alias="atName")
    download_code: Optional[str] = Field(default=None, alias="downloadCode")


class MediaContent(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    download_code: Optional[str] = Field(default=None, alias="downloadCode")
    file_name: Optional[str] = Field(default=None, alias="fileName")
    recognition: Optional[str] = None
    rich_text: Optional[list[RichTextPart]] = Field(default=None, alias="richText")

    @field_validator("rich_text", mode="before")
    @classmethod
    def _rich_text_list(cls, v: Any) -> Any:
        return v if isinstance(v, list) else None


class InboundMessage(BaseModel):
    """
    A chatbot message delivered over Stream Mode.

    Field names follow the platform payload through aliases, so
    ``InboundMessage.model_validate(json.loads(frame.data))`` works directly.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    msg_id: Optional[str] = Field(default=None, alias="msgId")
    msgtype: str = "text"
    create_at: Optional[int] = Field(default=None, alias="createAt")
    conversation_type: str = Field(default="1", alias="conversationType")
    """Either "1" (private) or "2" (group)."""
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    conversation_title: Optional[str] = Field(default=None, alias="conversationTitle")
    sender_id: Optional[str] = Field(default=None, alias="senderId")
    sender_staff_id: Optional[str] = Field(default=None, alias="senderStaffId")
    sender_nick: Optional[str] = Field(default=None, alias="senderNick")
    chatbot_user_id: Optional[str] = Field(default=None, alias="chatbotUserId")
    session_webhook: str = Field(default="", alias="sessionWebhook")
    session_webhook_expired_time: Optional[int] = Field(default=None, alias="sessionWebhookExpiredTime")
    """Webhook expiry as epoch milliseconds."""
    text: Optional[TextPayload] = None
    content: Optional[MediaContent] = None

    @field_validator(
        "msg_id", "conversation_type", "conversation_id", "sender_id",
        "sender_staff_id", "chatbot_user_id", mode="before",
    )
    @classmethod
    def _id_as_str(cls, v: Any) -> Any:
        # 平台偶尔以数字下发这些字段
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(int(v))
        return v

    @field_validator("text", mode="before")
    @classmethod
    def _text_payload(cls, v: Any) -> Any:
        if isinstance(v, str):
            return {"content": v}
        return v if isinstance(v, (dict, TextPayload)) else None

    @field_validator("content", mode="before")
    @classmethod
    def _media_content(cls, v: Any) -> Any:
        # 卡片等类型的 content 是字符串，按未知类型处理
        return v if isinstance(v, (dict, MediaContent)) else None

    @property
    def is_group(self) -> bool:
        return self.conversation_type == "2"

    @property
    def sender(self) -> Optional[str]:
        """Staff id when present, else the platform sender id."""
        return self.sender_staff_id or self.sender_id

    @property
    def proactive_target(self) -> Optional[str]:
        """The id a proactive send would use to reach this conversation."""
        if self.is_group:
            return self.conversation_id
        return self.sender

    def webhook_expired(self, now_ms: float) -> bool:
        """Whether the reply channel has expired at ``now_ms``."""
        if not self.session_webhook_expired_time:
            return False
        return now_ms > self.session_webhook_expired_time
