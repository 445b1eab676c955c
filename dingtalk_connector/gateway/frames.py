"""Stream Mode frame decoding and acknowledgement.

Every frame received on the socket is acknowledged. Control frames are only
acknowledged; bot-message callbacks are acknowledged and then their ``data``
payload is parsed into an :class:`InboundMessage` and handed on. Frames that
are not acknowledged are never redelivered by this side.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional

from loguru import logger
from pydantic import ValidationError

from dingtalk_connector.bus.events import InboundMessage
from dingtalk_connector.gateway.handshake import BOT_MESSAGE_TOPIC


FRAME_TYPE_SYSTEM = "SYSTEM"
FRAME_TYPE_PING = "PING"
FRAME_TYPE_EVENT = "EVENT"
FRAME_TYPE_CALLBACK = "CALLBACK"

CONTROL_FRAME_TYPES = frozenset({FRAME_TYPE_SYSTEM, FRAME_TYPE_PING})


@dataclass
class StreamFrame:
    """Envelope ``{specVersion, type, headers: {messageId, topic}, data}``."""
    type: str
    headers: dict[str, Any] = field(default_factory=dict)
    data: str = ""
    spec_version: str = "1.0"

    @property
    def message_id(self) -> str:
        return str(self.headers.get("messageId", ""))

    @property
    def topic(self) -> str:
        return str(self.headers.get("topic", ""))

    @classmethod
    def parse(cls, raw: str) -> Optional["StreamFrame"]:
        """Decode a raw socket frame; returns None for malformed input."""
        try:
            obj = json.loads(raw)
        except (json.JSONDecodeError, TypeError):
            return None
        if not isinstance(obj, dict) or not isinstance(obj.get("type"), str):
            return None
        headers = obj.get("headers")
        data = obj.get("data", "")
        return cls(
            type=obj["type"],
            headers=headers if isinstance(headers, dict) else {},
            data=data if isinstance(data, str) else json.dumps(data, ensure_ascii=False),
            spec_version=str(obj.get("specVersion", "1.0")),
        )


def build_ack(message_id: str, topic: str) -> str:
    """Acknowledgement frame echoed back for every received frame."""
    return json.dumps({
        "code": 200,
        "headers": {
            "messageId": message_id,
            "topic": topic,
            "contentType": "application/json",
        },
        "message": "OK",
        "data": "",
    })


class FrameDispatcher:
    """
    Decode, acknowledge and route socket frames.

    Args:
        send: Coroutine writing a text frame to the socket.
        on_message: Called with every parsed bot message. It must not block;
            long work belongs in a task of its own.
        label: Log prefix.
    """

    def __init__(
        self,
        send: Callable[[str], Awaitable[None]],
        on_message: Callable[[InboundMessage], None],
        label: str = "dingtalk",
    ):
        self._send = send
        self._on_message = on_message
        self._label = label

    async def dispatch(self, raw: str) -> Optional[InboundMessage]:
        """
        Handle one raw frame.

        Returns:
            The parsed inbound message, or None if the frame carried none.
        """
        frame = StreamFrame.parse(raw)
        if frame is None:
            logger.warning(f"[{self._label}] Dropping malformed frame: {str(raw)[:100]}")
            return None

        await self._ack(frame)

        if frame.type in CONTROL_FRAME_TYPES:
            logger.debug(f"[{self._label}] Control frame {frame.type} topic={frame.topic}")
            return None

        if frame.type != FRAME_TYPE_CALLBACK or frame.topic != BOT_MESSAGE_TOPIC:
            logger.debug(f"[{self._label}] Ignoring frame type={frame.type} topic={frame.topic}")
            return None

        try:
            message = InboundMessage.model_validate(json.loads(frame.data))
        except (json.JSONDecodeError, ValidationError, TypeError) as e:
            logger.warning(f"[{self._label}] Dropping malformed message payload: {e}")
            return None

        self._on_message(message)
        return message

    async def _ack(self, frame: StreamFrame) -> None:
        try:
            await self._send(build_ack(frame.message_id, frame.topic))
        except Exception as e:
            # 连接已断开时 ack 失败，交由重连逻辑处理
            logger.warning(f"[{self._label}] Failed to ack frame {frame.message_id}: {e}")
