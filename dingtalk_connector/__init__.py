"""dingtalk-connector - DingTalk Stream Mode connector for coding-agent CLIs."""

__version__ = "0.1.0"
__logo__ = "🤖"

from dingtalk_connector.bus.events import ConnectionStatus, InboundMessage, SessionEvent, StatusEvent
from dingtalk_connector.config.schema import Config, DingTalkAccountConfig
from dingtalk_connector.runtime import Runtime

__all__ = [
    "__version__",
    "__logo__",
    "ConnectionStatus",
    "InboundMessage",
    "SessionEvent",
    "StatusEvent",
    "Config",
    "DingTalkAccountConfig",
    "Runtime",
]
