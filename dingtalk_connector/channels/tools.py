"""会话工具。

Agent 在生成回复的过程中可以请求对当前对话执行动作：

- ``send_file``：把本机文件发回当前对话（私聊发给发送者，群聊发到群）
- ``send_message``：立即通过会话 webhook 发一条进度消息

工具调用来自 runner 的 ``tool`` 事件；CLI runner 用独占一行的
``[[send_file: /path]]`` / ``[[send_message: 内容]]`` 指令表达。
"""

from pathlib import Path
from typing import Any, Awaitable, Callable

from loguru import logger

from dingtalk_connector.bus.events import InboundMessage
from dingtalk_connector.channels.proactive import ProactiveSender
from dingtalk_connector.config.schema import DingTalkAccountConfig


TOOL_GUIDE = """## 会话工具
需要把本机文件发给用户时，在回复中单独写一行：
[[send_file: 文件的完整本地路径]]
执行长任务需要先告知用户进度时，单独写一行：
[[send_message: 进度内容]]
指令行不会出现在最终回复里，最终回复请勿重复已发送的内容。"""

ReplyFn = Callable[[InboundMessage, DingTalkAccountConfig, str], Awaitable[bool]]


def conversation_target(message: InboundMessage) -> str:
    """当前对话的主动推送目标，带显式类型前缀。"""
    if message.is_group:
        return f"group:{message.conversation_id or ''}"
    return f"user:{message.sender or ''}"


class ConversationTools:
    """
    绑定到一条入站消息的工具集。

    Args:
        message: 当前入站消息
        account: 账号配置
        reply: webhook 回复函数，成功返回 True
        proactive: 主动推送发送器，``send_file`` 通过它上传并发送
    """

    def __init__(
        self,
        message: InboundMessage,
        account: DingTalkAccountConfig,
        reply: ReplyFn,
        proactive: ProactiveSender,
    ):
        self.message = message
        self.account = account
        self.reply = reply
        self.proactive = proactive
        self.calls: list[tuple[str, str]] = []

    @property
    def label(self) -> str:
        return f"dingtalk:{self.account.account_id}"

    async def run(self, name: str, arguments: dict[str, Any]) -> str:
        """执行一次工具调用，返回给 agent 的结果文本。工具失败不抛异常。"""
        logger.info(f"[{self.label}] Tool {name}({str(arguments)[:120]})")
        if name == "send_file":
            result = await self.send_file(str(arguments.get("file_path") or ""))
        elif name == "send_message":
            result = await self.send_message(str(arguments.get("text") or ""))
        else:
            result = f"未知工具: {name}"
        logger.info(f"[{self.label}] Tool {name} -> {result[:150]}")
        self.calls.append((name, result))
        return result

    async def send_message(self, text: str) -> str:
        text = text.strip()
        if not text:
            return "消息内容为空"
        if await self.reply(self.message, self.account, text):
            return "消息已发送"
        return "消息发送失败"

    async def send_file(self, file_path: str) -> str:
        path = Path(file_path).expanduser() if file_path else None
        if path is None or not path.is_file():
            return f"文件不存在: {file_path}"

        result = await self.proactive.send_media(
            self.account.account_id,
            path,
            targets=[conversation_target(self.message)],
        )
        if result.ok:
            return f"文件已发送: {path.name}"
        return f"发送失败: {result.error}"
