"""Messages, events and notification signals."""

from dingtalk_connector.bus.events import (
    ConnectionStatus,
    InboundMessage,
    SessionEvent,
    StatusEvent,
)
from dingtalk_connector.bus.signals import Signal

__all__ = [
    "ConnectionStatus",
    "InboundMessage",
    "SessionEvent",
    "StatusEvent",
    "Signal",
]
