"""DingTalk open-platform HTTP calls used by the connector.

Covers session-webhook replies, robot messages (private batch send and group
send), legacy media upload and robot message-file download. Card endpoints
live with the card streaming client.
"""

import asyncio
import json
import mimetypes
import time
from pathlib import Path
from typing import Any, Optional

import httpx
from loguru import logger

from dingtalk_connector.config.schema import DingTalkAccountConfig
from dingtalk_connector.errors import DingTalkAPIError, MediaError
from dingtalk_connector.gateway.tokens import (
    DINGTALK_API,
    DINGTALK_OAPI,
    TokenCache,
    TokenGeneration,
)
from dingtalk_connector.utils.helpers import get_media_dir


def extract_error_code(data: Any) -> Optional[str]:
    """Pull ``code`` (or ``subCode``) out of an error body."""
    if not isinstance(data, dict):
        return None
    for field in ("code", "subCode"):
        value = data.get(field)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


class DingTalkAPI:
    """
    Thin async wrapper over the DingTalk HTTP endpoints.

    Args:
        http: Shared client; its timeout applies to every call.
        tokens: Shared token cache.
        media_dir: Where downloaded media is saved.
    """

    def __init__(
        self,
        http: httpx.AsyncClient,
        tokens: TokenCache,
        media_dir: Optional[Path] = None,
    ):
        self.http = http
        self.tokens = tokens
        self._media_dir = media_dir

    @property
    def media_dir(self) -> Path:
        if self._media_dir is None:
            self._media_dir = get_media_dir()
        self._media_dir.mkdir(parents=True, exist_ok=True)
        return self._media_dir

    async def token(
        self,
        account: DingTalkAccountConfig,
        generation: TokenGeneration = TokenGeneration.V2,
    ) -> str:
        return await self.tokens.get_token(
            account.account_id, account.app_key, account.app_secret, generation
        )

    # ------------------------------------------------------------------
    # Session webhook
    # ------------------------------------------------------------------

    async def reply_markdown(self, webhook: str, title: str, text: str) -> None:
        """Reply through a message's session webhook.

        Raises:
            DingTalkAPIError: The webhook rejected the reply.
        """
        resp = await self.http.post(
            webhook,
            json={"msgtype": "markdown", "markdown": {"title": title, "text": text}},
        )
        if resp.status_code >= 400:
            raise DingTalkAPIError(
                f"Webhook reply failed: HTTP {resp.status_code} {resp.text[:200]}",
                status=resp.status_code,
            )

    # ------------------------------------------------------------------
    # Robot messages (proactive)
    # ------------------------------------------------------------------

    async def send_robot_message(
        self,
        account: DingTalkAccountConfig,
        target_id: str,
        is_group: bool,
        msg_key: str,
        msg_param: dict[str, Any],
    ) -> None:
        """
        Send a robot message to a user (batch send) or a group.

        Raises:
            DingTalkAPIError: Non-2xx response; ``code`` carries the platform
                error code used to classify permission failures.
        """
        token = await self.token(account)
        payload: dict[str, Any] = {
            "robotCode": account.effective_robot_code,
            "msgKey": msg_key,
            "msgParam": json.dumps(msg_param, ensure_ascii=False),
        }
        if is_group:
            url = f"{DINGTALK_API}/v1.0/robot/groupMessages/send"
            payload["openConversationId"] = target_id
        else:
            url = f"{DINGTALK_API}/v1.0/robot/oToMessages/batchSend"
            payload["userIds"] = [target_id]

        resp = await self.http.post(
            url,
            json=payload,
            headers={"x-acs-dingtalk-access-token": token},
        )
        if resp.status_code >= 400:
            try:
                body = resp.json()
            except ValueError:
                body = None
            code = extract_error_code(body)
            raise DingTalkAPIError(
                f"HTTP {resp.status_code} code={code or '?'}: {resp.text[:200]}",
                status=resp.status_code,
                code=code,
                body=body,
            )

    # ------------------------------------------------------------------
    # Media
    # ------------------------------------------------------------------

    async def upload_media(self, account: DingTalkAccountConfig, file_path: Path, media_type: str) -> str:
        """
        Upload a local file through the legacy media API (V1 token).

        Returns:
            The media id.

        Raises:
            MediaError: Upload rejected or the file could not be read.
        """
        token = await self.token(account, TokenGeneration.V1)
        content_type = mimetypes.guess_type(file_path.name)[0] or "application/octet-stream"
        try:
            data = await asyncio.to_thread(file_path.read_bytes)
        except OSError as e:
            raise MediaError(f"Cannot read {file_path}: {e}") from e

        resp = await self.http.post(
            f"{DINGTALK_OAPI}/media/upload",
            params={"access_token": token, "type": media_type},
            files={"media": (file_path.name, data, content_type)},
        )
        try:
            body = resp.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        media_id = body.get("media_id")
        if resp.status_code >= 400 or body.get("errcode") != 0 or not media_id:
            raise MediaError(f"Media upload failed: HTTP {resp.status_code} {str(body)[:200]}")

        logger.info(f"Media uploaded: {file_path.name} -> {media_id}")
        return media_id

    async def download_media(self, account: DingTalkAccountConfig, download_code: str) -> Path:
        """
        Download a message attachment into the media directory.

        Two steps: resolve the download code to a URL, then fetch the bytes.

        Raises:
            MediaError: Either step failed.
        """
        token = await self.token(account)
        info = await self.http.post(
            f"{DINGTALK_API}/v1.0/robot/messageFiles/download",
            json={"downloadCode": download_code, "robotCode": account.effective_robot_code},
            headers={"x-acs-dingtalk-access-token": token},
        )
        if info.status_code >= 400:
            raise MediaError(f"Download info failed: HTTP {info.status_code} {info.text[:200]}")

        try:
            url = info.json().get("downloadUrl")
        except (ValueError, AttributeError):
            url = None
        if not url:
            raise MediaError(f"Download info returned no downloadUrl: {info.text[:200]}")

        resp = await self.http.get(url)
        if resp.status_code >= 400:
            raise MediaError(f"Media fetch failed: HTTP {resp.status_code}")

        content_type = resp.headers.get("content-type", "application/octet-stream")
        ext = _extension_for(content_type)
        path = self.media_dir / f"dingtalk-{account.account_id}-{int(time.time() * 1000)}{ext}"
        await asyncio.to_thread(path.write_bytes, resp.content)
        logger.info(f"Media saved to {path} ({len(resp.content) / 1024:.1f}KB)")
        return path


def _extension_for(content_type: str) -> str:
    mime = content_type.split(";")[0].strip().lower()
    if mime in ("image/jpeg", "image/jpg"):
        return ".jpg"
    ext = mimetypes.guess_extension(mime)
    return ext or ".bin"
