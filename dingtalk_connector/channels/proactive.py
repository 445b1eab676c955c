"""主动推送。

接收者解析顺序：显式 targets → 账号配置的 owner_staff_ids → 该账号所有
“最近联系过”的会话。都没有时返回“无接收者”错误。

每个接收者：处于高风险期则跳过；权限类错误记录高风险；发送成功清除风险。
只有全部接收者都失败时整体才算失败。
"""

import asyncio
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Protocol

import httpx
from loguru import logger

from dingtalk_connector.channels.media import MediaType, build_media_message, prepare_media
from dingtalk_connector.config.schema import DingTalkAccountConfig
from dingtalk_connector.errors import DingTalkAPIError, DingTalkError, MediaError, NoTargetError
from dingtalk_connector.gateway.api import DingTalkAPI
from dingtalk_connector.stores.last_seen import LastSeenStore
from dingtalk_connector.stores.peers import PeerRegistry
from dingtalk_connector.stores.risk import RiskStore, is_permission_error


MARKDOWN_HINT = re.compile(r"^[#*>-]|[*_`#\[\]]")
TITLE_LEADING = re.compile(r"^[#*\s>-]+")

NO_TARGET_MESSAGE = (
    "未指定接收者，也未配置 owner_staff_ids，且该 Bot 尚未收到过任何消息。"
    "请先让对方发一条消息，或在配置中填写 owner_staff_ids。"
)


def is_markdown_text(text: str) -> bool:
    return bool(MARKDOWN_HINT.search(text)) or "\n" in text


def derive_title(text: str, title: Optional[str], fallback: str) -> str:
    """Markdown 取首行（去掉标记，最多 20 字）；否则用显式标题或账号名。"""
    base = title or fallback
    if is_markdown_text(text):
        first = TITLE_LEADING.sub("", text.split("\n")[0])[:20]
        return first or base
    return base


def build_text_message(text: str, title: str) -> tuple[str, dict]:
    if is_markdown_text(text):
        return "sampleMarkdown", {"title": title, "text": text}
    return "sampleText", {"content": text}


def strip_target_prefix(target: str) -> tuple[str, Optional[bool]]:
    """``user:`` / ``group:`` 前缀 → ``(id, is_group)``；无前缀时 is_group 为 None。"""
    if target.startswith("user:"):
        return target[5:], False
    if target.startswith("group:"):
        return target[6:], True
    return target, None


@dataclass
class SendResult:
    ok: bool
    error: Optional[str] = None
    errors: list[str] = field(default_factory=list)
    """每个失败或被跳过的接收者一条"""
    delivered: list[str] = field(default_factory=list)


class AccountDirectory(Protocol):
    def get_config(self, account_id: str) -> Optional[DingTalkAccountConfig]: ...

    def account_ids(self) -> list[str]: ...


class ProactiveSender:
    """
    主动推送发送器。

    Args:
        api: 钉钉 HTTP 接口
        directory: 已连接账号的配置来源（连接池）
        last_seen: 最近联系人
        risk: 风险记录
        peers: 原始大小写 id 注册表
    """

    def __init__(
        self,
        api: DingTalkAPI,
        directory: AccountDirectory,
        last_seen: LastSeenStore,
        risk: RiskStore,
        peers: Optional[PeerRegistry] = None,
    ):
        self.api = api
        self.directory = directory
        self.last_seen = last_seen
        self.risk = risk
        self.peers = peers or PeerRegistry()

    def resolve_targets(self, account: DingTalkAccountConfig, targets: Optional[list[str]] = None) -> list[str]:
        """
        Raises:
            NoTargetError: 没有任何可用接收者
        """
        if targets:
            return list(targets)
        if account.owner_staff_ids:
            return list(account.owner_staff_ids)
        seen = self.last_seen.targets(account.account_id)
        if not seen:
            raise NoTargetError(NO_TARGET_MESSAGE)
        resolved = [f"{'group' if e.is_group else 'user'}:{e.target}" for e in seen]
        logger.info(
            f"[dingtalk:{account.account_id}] Proactive: auto-targeting {len(resolved)} last-seen conversation(s)"
        )
        return resolved

    def parse_target(self, target: str) -> tuple[str, bool]:
        raw_id, explicit_group = strip_target_prefix(target.strip())
        target_id = self.peers.resolve(raw_id)
        if explicit_group is None:
            return target_id, target_id.startswith("cid")
        return target_id, explicit_group

    async def send(
        self,
        account_id: str,
        text: str,
        targets: Optional[list[str]] = None,
        title: Optional[str] = None,
    ) -> SendResult:
        """发送文本或 Markdown。"""
        account = self.directory.get_config(account_id)
        if account is None:
            return SendResult(ok=False, error=f"钉钉 Bot ({account_id}) 未连接")
        try:
            raw_targets = self.resolve_targets(account, targets)
        except NoTargetError as e:
            return SendResult(ok=False, error=str(e))

        msg_key, msg_param = build_text_message(text, derive_title(text, title, account.name))
        return await self._deliver(account, raw_targets, msg_key, msg_param)

    async def send_media(
        self,
        account_id: str,
        file_path: str | Path,
        targets: Optional[list[str]] = None,
        media_type: Optional[MediaType] = None,
    ) -> SendResult:
        """上传本地文件并发送。超限时先压缩。"""
        account = self.directory.get_config(account_id)
        if account is None:
            return SendResult(ok=False, error=f"钉钉 Bot ({account_id}) 未连接")
        try:
            raw_targets = self.resolve_targets(account, targets)
        except NoTargetError as e:
            return SendResult(ok=False, error=str(e))

        try:
            prepared = await asyncio.to_thread(prepare_media, Path(file_path), media_type)
        except MediaError as e:
            return SendResult(ok=False, error=str(e))

        try:
            try:
                media_id = await self.api.upload_media(account, prepared.path, prepared.media_type)
            except (MediaError, DingTalkError, httpx.HTTPError) as e:
                logger.error(f"[dingtalk:{account_id}] Media upload failed: {e}")
                return SendResult(ok=False, error=f"媒体上传失败，请检查应用权限（oapi.dingtalk.com/media/upload）: {e}")
            msg_key, msg_param = build_media_message(prepared.media_type, media_id, prepared.path)
            return await self._deliver(account, raw_targets, msg_key, msg_param)
        finally:
            prepared.cleanup()

    async def broadcast(
        self,
        text: str,
        targets: Optional[list[str]] = None,
        title: Optional[str] = None,
    ) -> dict[str, SendResult]:
        """向每个已连接账号发送同一条消息。"""
        results: dict[str, SendResult] = {}
        for account_id in self.directory.account_ids():
            results[account_id] = await self.send(account_id, text, targets=targets, title=title)
            if not results[account_id].ok:
                logger.error(f"[dingtalk:{account_id}] Broadcast failed: {results[account_id].error}")
        return results

    async def _deliver(
        self,
        account: DingTalkAccountConfig,
        raw_targets: list[str],
        msg_key: str,
        msg_param: dict,
    ) -> SendResult:
        account_id = account.account_id
        errors: list[str] = []
        delivered: list[str] = []

        for target in raw_targets:
            target_id, is_group = self.parse_target(target)

            entry = self.risk.get(account_id, target_id)
            if entry is not None and entry.level == "high":
                logger.warning(f"[dingtalk:{account_id}] Skipping high-risk target {target_id}: {entry.reason}")
                errors.append(f"{target_id}: skipped (high-risk: {entry.reason})")
                continue

            try:
                await self.api.send_robot_message(account, target_id, is_group, msg_key, msg_param)
            except DingTalkAPIError as e:
                if is_permission_error(e.code):
                    self.risk.record(account_id, target_id, e.code or "permission-error")
                logger.error(f"[dingtalk:{account_id}] Proactive send failed for {target}: {e}")
                errors.append(f"{target}: {e}")
                continue
            except (DingTalkError, httpx.HTTPError) as e:
                logger.error(f"[dingtalk:{account_id}] Proactive send failed for {target}: {e}")
                errors.append(f"{target}: {e}")
                continue

            self.risk.clear(account_id, target_id)
            delivered.append(target_id)
            logger.info(f"[dingtalk:{account_id}] Proactive send OK -> {'group' if is_group else 'user'} {target_id}")

        if len(errors) == len(raw_targets):
            return SendResult(ok=False, error="; ".join(errors), errors=errors)
        return SendResult(ok=True, errors=errors, delivered=delivered)
