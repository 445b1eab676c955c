"""入站消息内容提取。

把 text / voice / picture / file / video / richText 等消息统一成
``(text, attachment_paths)``，需要时下载媒体到本地。所有失败都降级为
占位文本，提取总是返回一个文本结果。
"""

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Protocol

from loguru import logger

from dingtalk_connector.bus.events import InboundMessage
from dingtalk_connector.config.schema import DingTalkAccountConfig


# 群聊中 @机器人 的前缀
MENTION_PREFIX = re.compile(r"^@\S+\s*")


class MediaDownloader(Protocol):
    async def download_media(self, account: DingTalkAccountConfig, download_code: str) -> Path: ...


@dataclass
class ExtractedContent:
    text: str
    attachment_paths: list[str] = field(default_factory=list)

    def with_path_notes(self) -> str:
        """Text with one ``文件路径: <path>`` line per attachment, for the agent to open."""
        if not self.attachment_paths:
            return self.text
        notes = "\n".join(f"文件路径: {p}" for p in self.attachment_paths)
        return f"{self.text}\n\n{notes}"


class ContentExtractor:
    """消息内容提取器。

    Args:
        downloader: 提供 ``download_media(account, download_code)`` 的对象，
            通常是 :class:`~dingtalk_connector.gateway.api.DingTalkAPI`
    """

    def __init__(self, downloader: MediaDownloader):
        self.downloader = downloader

    async def extract(self, message: InboundMessage, account: DingTalkAccountConfig) -> ExtractedContent:
        msgtype = message.msgtype
        content = message.content

        if msgtype == "text":
            raw = message.text.content if message.text else ""
            clean = MENTION_PREFIX.sub("", raw, count=1).strip()
            return ExtractedContent(text=clean or "[空消息]")

        if msgtype in ("voice", "audio"):
            asr = content.recognition if content else None
            path = await self._try_download(account, content.download_code if content else None, "voice")
            if path:
                return ExtractedContent(
                    text=f"[语音] {asr}" if asr else "用户发来了一条语音消息",
                    attachment_paths=[path],
                )
            return ExtractedContent(text=f"[语音] {asr}" if asr else "[语音消息（无识别文本）]")

        if msgtype in ("picture", "image"):
            path = await self._try_download(account, content.download_code if content else None, "picture")
            if path:
                return ExtractedContent(text="用户发来了一张图片", attachment_paths=[path])
            return ExtractedContent(text="[图片消息]")

        if msgtype == "file":
            file_name = (content.file_name if content else None) or "未知文件"
            path = await self._try_download(
                account, content.download_code if content else None, f"file({file_name})"
            )
            if path:
                return ExtractedContent(text=f"用户发来了一个文件：{file_name}", attachment_paths=[path])
            return ExtractedContent(text=f"[文件: {file_name}]")

        if msgtype == "video":
            path = await self._try_download(account, content.download_code if content else None, "video")
            if path:
                return ExtractedContent(text="用户发来了一段视频", attachment_paths=[path])
            return ExtractedContent(text="[视频消息]")

        if msgtype == "richText" and content and content.rich_text:
            parts: list[str] = []
            paths: list[str] = []
            for part in content.rich_text:
                if part.type == "text" and part.text:
                    parts.append(part.text)
                elif part.type == "picture":
                    path = await self._try_download(account, part.download_code, "richText.picture")
                    if path:
                        paths.append(path)
                    else:
                        parts.append("[图片下载失败]")
                # at 片段跳过
            return ExtractedContent(text="".join(parts).strip() or "[富文本消息]", attachment_paths=paths)

        raw = message.text.content if message.text else ""
        return ExtractedContent(text=raw.strip() or f"[{msgtype} 消息]")

    async def _try_download(
        self,
        account: DingTalkAccountConfig,
        download_code: Optional[str],
        label: str,
    ) -> Optional[str]:
        if not download_code:
            logger.warning(f"[dingtalk:{account.account_id}] {label}: missing downloadCode")
            return None
        if not account.effective_robot_code:
            logger.warning(f"[dingtalk:{account.account_id}] {label}: robotCode is empty")
            return None
        try:
            path = await self.downloader.download_media(account, download_code)
            return str(path)
        except Exception as e:
            logger.error(f"[dingtalk:{account.account_id}] {label} download failed: {e}")
            return None
