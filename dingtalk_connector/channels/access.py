"""访问控制。

私聊按 dm_policy 检查 sender（staffId 优先），群聊按 group_policy 检查
conversationId。策略未设置时视为 open。

在去重之后调用：被拒绝的重复消息不会反复计数。
"""

from loguru import logger

from dingtalk_connector.bus.events import InboundMessage
from dingtalk_connector.config.schema import DingTalkAccountConfig


def is_allowed(message: InboundMessage, config: DingTalkAccountConfig) -> bool:
    """检查消息是否被账号的访问策略放行。无副作用。

    Args:
        message: 入站消息
        config: 账号配置

    Returns:
        是否放行
    """
    allowed = config.allow_from or []

    if message.is_group:
        if (config.group_policy or "open") == "allowlist":
            if not message.conversation_id or message.conversation_id not in allowed:
                logger.debug(f"Group {message.conversation_id} blocked by group_policy=allowlist")
                return False
        return True

    if (config.dm_policy or "open") == "allowlist":
        uid = message.sender
        if not uid or uid not in allowed:
            logger.debug(f"User {uid} blocked by dm_policy=allowlist")
            return False
    return True
