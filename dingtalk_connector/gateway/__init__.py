"""DingTalk gateway protocol: tokens, handshake, frames and HTTP endpoints."""

from dingtalk_connector.gateway.api import DingTalkAPI, extract_error_code
from dingtalk_connector.gateway.frames import FrameDispatcher, StreamFrame, build_ack
from dingtalk_connector.gateway.handshake import (
    BOT_MESSAGE_TOPIC,
    GatewayEndpoint,
    open_connection,
)
from dingtalk_connector.gateway.tokens import TokenCache, TokenGeneration

__all__ = [
    "BOT_MESSAGE_TOPIC",
    "DingTalkAPI",
    "FrameDispatcher",
    "GatewayEndpoint",
    "StreamFrame",
    "TokenCache",
    "TokenGeneration",
    "build_ack",
    "extract_error_code",
    "open_connection",
]
