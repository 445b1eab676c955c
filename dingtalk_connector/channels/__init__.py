"""DingTalk connection, inbound processing and delivery."""

from dingtalk_connector.channels.access import is_allowed
from dingtalk_connector.channels.cards import CardClient, CardInstance, CardStream
from dingtalk_connector.channels.connection import (
    ConnectionContext,
    DingTalkConnection,
    InboundStats,
)
from dingtalk_connector.channels.extractor import ContentExtractor, ExtractedContent
from dingtalk_connector.channels.manager import ConnectionManager
from dingtalk_connector.channels.pipeline import ReplyPipeline
from dingtalk_connector.channels.proactive import ProactiveSender, SendResult
from dingtalk_connector.channels.tools import TOOL_GUIDE, ConversationTools, conversation_target

__all__ = [
    "is_allowed",
    "CardClient",
    "CardInstance",
    "CardStream",
    "ConnectionContext",
    "DingTalkConnection",
    "InboundStats",
    "ContentExtractor",
    "ExtractedContent",
    "ConnectionManager",
    "ReplyPipeline",
    "ProactiveSender",
    "SendResult",
    "TOOL_GUIDE",
    "ConversationTools",
    "conversation_target",
]
