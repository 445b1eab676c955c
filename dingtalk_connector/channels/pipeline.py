"""回复流水线。

对每条通过去重和访问控制的消息：

1. 找到（或懒创建）账号关联的会话，记录 user_prompt
2. 把用户消息追加进短期历史
3. 拼装系统上下文：人设 + 价值观 + 关系 + 操作规程 + 回复规范 + 记忆 + 当前时间
4. 调用 agent runner（claude 带历史与 resume token，codex 用拼平的对话）
5. 追加助手回复到历史并持久化到会话
6. 第 1 轮和第 3 轮异步更新会话标题
7. 按账号配置用 Markdown 或 AI Card 发送回复

``/myid`` 等内置命令直接回复身份信息，不经过 runner。
"""

import asyncio
import time
import uuid
from datetime import datetime
from typing import Callable, Optional

import httpx
from loguru import logger

from dingtalk_connector.bus.events import InboundMessage, SessionEvent
from dingtalk_connector.bus.signals import Signal
from dingtalk_connector.channels.cards import CardClient, CardStream
from dingtalk_connector.channels.proactive import ProactiveSender
from dingtalk_connector.channels.tools import TOOL_GUIDE, ConversationTools
from dingtalk_connector.config.schema import DingTalkAccountConfig
from dingtalk_connector.engine.runner import AgentRunner, RunRequest, collect
from dingtalk_connector.errors import CardError, DingTalkError, ReplyAbortedError, RunnerError
from dingtalk_connector.gateway.api import DingTalkAPI
from dingtalk_connector.session.history import HistoryStore
from dingtalk_connector.session.manager import SessionMetadata, SessionStore
from dingtalk_connector.session.memory import MemoryProvider


TITLE_PREFIX = "[钉钉]"

MYID_COMMANDS = frozenset({"/myid", "/我的id", "/我的ID"})

APOLOGY_TEXT = "抱歉，处理您的消息时遇到了问题，请稍后再试。"

DEFAULT_PERSONA = "你是 {name}，一个智能助手，请简洁有用地回答问题。"

OUTPUT_RULES = """## 回复规范（必须遵守）
- 直接给出结果，不要叙述你的思考过程或执行步骤
- 调用工具时保持沉默，只在工具全部完成后给出一句话结论
- 禁止把工具调用的中间状态、路径、API 返回值等细节写进最终回复
- 如果任务失败，简短说明原因即可，无需描述每个步骤"""

TITLE_PROMPT = (
    "请根据以下对话内容，生成一个简短的中文标题（不超过12字，不加引号，不加标点），"
    "直接输出标题，不输出其他内容：\n\n{context}"
)


def is_myid_command(text: str) -> bool:
    return text.strip() in MYID_COMMANDS


def build_identity_reply(message: InboundMessage) -> str:
    """``/myid`` 的回复：staffId，群聊时附带 conversationId。"""
    staff_id = message.sender or "（未知）"
    lines = [
        "**你的钉钉 ID 信息**",
        "",
        f"- **staffId**（填入 owner_staff_ids）：`{staff_id}`",
    ]
    if message.is_group:
        lines.append(f"- **群 conversationId**（群推送用）：`{message.conversation_id or '（未知）'}`")
    lines.extend(["", "复制上方 ID 填入账号配置的 owner_staff_ids，即可接收主动推送。"])
    return "\n".join(lines)


def build_system_context(
    account: DingTalkAccountConfig,
    memory_context: str = "",
    now: Optional[datetime] = None,
    tools_guide: str = "",
) -> str:
    """拼装系统上下文。空字段跳过。"""
    sections = [account.persona.strip() or DEFAULT_PERSONA.format(name=account.name)]
    if account.core_values.strip():
        sections.append(f"## 核心价值观\n{account.core_values.strip()}")
    if account.relationship.strip():
        sections.append(f"## 与用户的关系\n{account.relationship.strip()}")
    if account.guidelines.strip():
        sections.append(f"## 操作规程\n{account.guidelines.strip()}")
    sections.append(OUTPUT_RULES)
    if tools_guide:
        sections.append(tools_guide)
    if memory_context.strip():
        sections.append(memory_context.strip())
    now = now or datetime.now().astimezone()
    sections.append(f"## 当前时间\n消息发送时间：{now.strftime('%Y-%m-%d %H:%M:%S')}（时区：{now.tzname() or 'local'}）")
    return "\n\n".join(sections)


class ReplyPipeline:
    """
    Turns one inbound message into one delivered reply.

    Shared by every connection; per-account state (history, linked session,
    resume token, title progress) is keyed by account id.

    Args:
        api: HTTP wrapper used for webhook replies.
        runners: ``provider -> AgentRunner``.
        histories: Per-account short-term history.
        session_signal: Published after every session title update.
        session_store: Optional host session collaborator.
        memory: Optional memory collaborator.
        cards: Card client; required for card-mode accounts.
        proactive: Enables the ``send_file`` / ``send_message`` conversation tools.
        clock: Epoch seconds; used for webhook expiry checks.
    """

    def __init__(
        self,
        api: DingTalkAPI,
        runners: dict[str, AgentRunner],
        histories: HistoryStore,
        session_signal: Signal[SessionEvent],
        session_store: Optional[SessionStore] = None,
        memory: Optional[MemoryProvider] = None,
        cards: Optional[CardClient] = None,
        proactive: Optional[ProactiveSender] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.api = api
        self.runners = runners
        self.histories = histories
        self.session_signal = session_signal
        self.session_store = session_store
        self.memory = memory
        self.cards = cards
        self.proactive = proactive
        self._clock = clock
        self._session_ids: dict[str, str] = {}
        self._resume_tokens: dict[str, str] = {}
        self._titled: dict[str, int] = {}
        self._background_tasks: set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Reply channel
    # ------------------------------------------------------------------

    def webhook_expired(self, message: InboundMessage) -> bool:
        return message.webhook_expired(self._clock() * 1000)

    async def reply_markdown(
        self,
        message: InboundMessage,
        account: DingTalkAccountConfig,
        text: str,
    ) -> bool:
        """通过会话 webhook 回复。webhook 过期或发送失败时返回 False。"""
        if not message.session_webhook:
            logger.warning(f"[dingtalk:{account.account_id}] Message has no sessionWebhook, reply dropped")
            return False
        if self.webhook_expired(message):
            logger.warning(f"[dingtalk:{account.account_id}] sessionWebhook expired, reply dropped")
            return False
        try:
            await self.api.reply_markdown(message.session_webhook, account.name, text)
            return True
        except (DingTalkError, httpx.HTTPError) as e:
            logger.error(f"[dingtalk:{account.account_id}] Reply failed: {e}")
            return False

    async def reply_identity(self, message: InboundMessage, account: DingTalkAccountConfig) -> None:
        await self.reply_markdown(message, account, build_identity_reply(message))

    async def send_apology(self, message: InboundMessage, account: DingTalkAccountConfig) -> None:
        if self.webhook_expired(message):
            return
        await self.reply_markdown(message, account, APOLOGY_TEXT)

    # ------------------------------------------------------------------
    # Main flow
    # ------------------------------------------------------------------

    async def handle(self, message: InboundMessage, account: DingTalkAccountConfig, user_text: str) -> str:
        """
        Generate and deliver a reply.

        Returns:
            The reply text.

        Raises:
            RunnerError: Reply generation failed. The caller turns this into
                an apology.
        """
        account_id = account.account_id
        history = self.histories.get(account_id)
        session_id = self._session_for(account)

        self._record(session_id, {"type": "user_prompt", "prompt": user_text})

        prior = history.turns()
        history.append("user", user_text)

        memory_context = ""
        if self.memory is not None:
            try:
                memory_context = self.memory.build_context(user_text)
            except Exception as e:
                logger.warning(f"[dingtalk:{account_id}] Memory context unavailable: {e}")

        request = RunRequest(
            system_context=build_system_context(
                account,
                memory_context,
                tools_guide=TOOL_GUIDE if self.proactive is not None else "",
            ),
            user_text=user_text,
            history=prior,
            provider=account.provider,
            model=account.model,
            cwd=account.default_cwd,
            session_token=self._resume_tokens.get(account_id) if account.provider == "claude" else None,
        )

        reply, delivered = await self._generate(message, account, request)

        history.append("assistant", reply)
        self._persist_reply(account, session_id, user_text, reply)
        if session_id:
            self._spawn(self._update_title(account, session_id))

        if not delivered:
            await self.reply_markdown(message, account, reply)
        return reply

    async def _generate(
        self,
        message: InboundMessage,
        account: DingTalkAccountConfig,
        request: RunRequest,
    ) -> tuple[str, bool]:
        """Run the agent. Returns ``(reply, delivered_by_card)``.

        Raises:
            ReplyAbortedError: Generation failed after a card was shown; the
                card already carries the apology.
            RunnerError: Generation failed otherwise.
        """
        runner = self.runners.get(request.provider)
        if runner is None:
            raise RunnerError(f"No runner for provider {request.provider}")

        card_stream: Optional[CardStream] = None
        if account.use_card and self.cards is not None:
            try:
                card = await self.cards.create(account, message)
                card_stream = CardStream(self.cards, account, card)
            except CardError as e:
                logger.warning(f"[dingtalk:{account.account_id}] Card mode failed, falling back to markdown: {e}")

        tools = None
        if self.proactive is not None:
            tools = ConversationTools(message, account, self.reply_markdown, self.proactive)

        try:
            result = await collect(
                runner,
                request,
                on_delta=card_stream.update if card_stream is not None else None,
                on_tool=tools.run if tools is not None else None,
            )
            delivered = False
            if card_stream is not None:
                delivered = await card_stream.finish(result.text)
                if not delivered:
                    logger.warning(f"[dingtalk:{account.account_id}] Card stream failed, falling back to markdown")
        except Exception as e:
            # 卡片已展示时把道歉写进卡片，避免停在“正在思考”
            if card_stream is not None and await card_stream.finish(APOLOGY_TEXT):
                raise ReplyAbortedError(str(e)) from e
            raise
        finally:
            # 异常或取消时停止对卡片的后续写入
            if card_stream is not None:
                card_stream.cancel()

        if result.session_token and request.provider == "claude":
            self._resume_tokens[account.account_id] = result.session_token
        return result.text, delivered

    # ------------------------------------------------------------------
    # Session
    # ------------------------------------------------------------------

    def _session_for(self, account: DingTalkAccountConfig) -> Optional[str]:
        if self.session_store is None:
            return None
        session_id = self._session_ids.get(account.account_id)
        if session_id:
            return session_id
        try:
            session_id = self.session_store.create_session(SessionMetadata(
                title=f"{TITLE_PREFIX} {account.name}",
                account_id=account.account_id,
                provider=account.provider,
                model=account.model,
                cwd=account.default_cwd,
            ))
        except Exception as e:
            logger.error(f"[dingtalk:{account.account_id}] Failed to create session: {e}")
            return None
        self._session_ids[account.account_id] = session_id
        return session_id

    def session_id_for(self, account_id: str) -> Optional[str]:
        return self._session_ids.get(account_id)

    def _record(self, session_id: Optional[str], entry: dict) -> None:
        if self.session_store is None or not session_id:
            return
        try:
            self.session_store.record_message(session_id, entry)
        except Exception as e:
            logger.warning(f"Failed to record message in session {session_id}: {e}")

    def _persist_reply(
        self,
        account: DingTalkAccountConfig,
        session_id: Optional[str],
        user_text: str,
        reply: str,
    ) -> None:
        self._record(session_id, {
            "type": "assistant",
            "uuid": uuid.uuid4().hex,
            "message": {
                "role": "assistant",
                "content": [{"type": "text", "text": reply}],
                "model": account.model,
            },
        })
        if self.memory is not None:
            stamp = datetime.now().strftime("%H:%M:%S")
            try:
                self.memory.append_entry(
                    f"\n## {TITLE_PREFIX} {stamp}\n**我**: {user_text}\n**{account.name}**: {reply}\n"
                )
            except Exception as e:
                logger.warning(f"[dingtalk:{account.account_id}] Failed to append memory: {e}")

    async def _update_title(self, account: DingTalkAccountConfig, session_id: str) -> None:
        """第 1 轮和第 3 轮更新会话标题。"""
        history = self.histories.get(account.account_id)
        turns = history.turn_count
        prev_count = self._titled.get(session_id, 0)
        if not (turns == 1 or (turns == 3 and prev_count < 2)):
            return
        self._titled[session_id] = prev_count + 1

        recent = history.turns()[-6:]
        context = "\n".join(
            f"{'用户' if t.role == 'user' else '助手'}：{t.content[:200]}" for t in recent
        )
        fallback = (recent[0].content if recent else "对话")[:30].strip() or "对话"

        title = ""
        runner = self.runners.get(account.provider)
        try:
            if runner is None:
                raise RunnerError(f"No runner for provider {account.provider}")
            result = await collect(runner, RunRequest(
                system_context="",
                user_text=TITLE_PROMPT.format(context=context),
                provider=account.provider,
                model=account.model,
                cwd=account.default_cwd,
            ))
            title = result.text.strip().splitlines()[0].strip() if result.text.strip() else ""
        except Exception as e:
            logger.warning(f"[dingtalk:{account.account_id}] Title generation failed: {e}")
            if prev_count > 0:
                return

        if not title or title == "New Session" or len(title) > 30:
            title = fallback

        full_title = f"{TITLE_PREFIX} {title}"
        if self.session_store is not None:
            try:
                self.session_store.update_session(session_id, title=full_title)
            except Exception as e:
                logger.warning(f"Failed to update session title {session_id}: {e}")
                return
        logger.info(f"[dingtalk:{account.account_id}] Session title updated (turn {turns}): {title}")
        self.session_signal.publish(SessionEvent(
            account_id=account.account_id,
            session_id=session_id,
            title=full_title,
        ))

    # ------------------------------------------------------------------
    # Background tasks
    # ------------------------------------------------------------------

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def drain(self) -> None:
        """等待所有后台任务（标题更新）完成。"""
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)
