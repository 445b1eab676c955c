"""AI Card 流式输出。

先 createAndDeliver 创建卡片（初始内容“正在思考”），之后反复 PUT
/v1.0/card/streaming 覆盖卡片内容字段，实现打字机效果。每次推送的都是
累积后的完整文本（isFull=true），最后一次带 isFinalize=true。
"""

import time
import uuid
from dataclasses import dataclass
from typing import Callable, Optional

import httpx
from loguru import logger

from dingtalk_connector.bus.events import InboundMessage
from dingtalk_connector.config.schema import DingTalkAccountConfig
from dingtalk_connector.errors import CardError, DingTalkError
from dingtalk_connector.gateway.api import DingTalkAPI
from dingtalk_connector.gateway.tokens import DINGTALK_API


CARD_INITIAL_TEXT = "🤔 正在思考…"
CARD_THROTTLE_SECONDS = 0.5


# AI Card 状态常量
class AICardStatus:
    PROCESSING = "1"
    INPUTING = "2"
    FINISHED = "3"
    FAILED = "5"


def is_card_in_terminal_state(state: str) -> bool:
    """检查 Card 是否处于终态。"""
    return state in (AICardStatus.FINISHED, AICardStatus.FAILED)


@dataclass
class CardInstance:
    """一张已投放的卡片。"""
    out_track_id: str
    card_instance_id: str
    template_key: str
    state: str = AICardStatus.PROCESSING


def open_space_for(message: InboundMessage, robot_code: str) -> tuple[str, dict]:
    """卡片投放空间：群聊投到群，私聊投到机器人单聊。"""
    if message.is_group and message.conversation_id:
        return (
            f"dtv1.card//IM_GROUP.{message.conversation_id}",
            {"imGroupOpenSpaceModel": {"supportForward": True}},
        )
    return (
        f"dtv1.card//IM_ROBOT.{message.chatbot_user_id or robot_code}",
        {"imRobotOpenSpaceModel": {"spaceType": "IM_ROBOT"}},
    )


class CardClient:
    """Card API 客户端。"""

    def __init__(self, api: DingTalkAPI):
        self.api = api

    async def create(
        self,
        account: DingTalkAccountConfig,
        message: InboundMessage,
        initial_text: str = CARD_INITIAL_TEXT,
    ) -> CardInstance:
        """创建并投放卡片。

        Raises:
            CardError: 创建失败或响应中没有 cardInstanceId
        """
        robot_code = account.effective_robot_code
        template_key = account.card_template_key or "msgContent"
        out_track_id = uuid.uuid4().hex
        open_space_id, space_model = open_space_for(message, robot_code)

        body = {
            "cardTemplateId": account.card_template_id,
            "outTrackId": out_track_id,
            "openSpaceId": open_space_id,
            **space_model,
            "cardData": {"cardParamMap": {template_key: initial_text}},
            "userIdType": 0,
            "robotCode": robot_code,
            "pullStrategy": False,
        }

        try:
            token = await self.api.token(account)
            resp = await self.api.http.post(
                f"{DINGTALK_API}/v1.0/card/instances/createAndDeliver",
                json=body,
                headers={"x-acs-dingtalk-access-token": token},
            )
        except (httpx.HTTPError, DingTalkError) as e:
            raise CardError(f"Card create failed: {e}") from e

        if resp.status_code >= 400:
            raise CardError(f"Card create failed HTTP {resp.status_code}: {resp.text[:200]}")
        try:
            result = (resp.json() or {}).get("result") or {}
        except (ValueError, AttributeError):
            result = {}
        card_instance_id = result.get("cardInstanceId") if isinstance(result, dict) else None
        if not card_instance_id:
            raise CardError("Card create: missing cardInstanceId")

        logger.debug(f"[dingtalk:{account.account_id}] Created AI Card: {out_track_id}")
        return CardInstance(
            out_track_id=out_track_id,
            card_instance_id=card_instance_id,
            template_key=template_key,
        )

    async def push(
        self,
        account: DingTalkAccountConfig,
        card: CardInstance,
        text: str,
        is_final: bool,
    ) -> None:
        """覆盖卡片内容。

        Raises:
            CardError: 推送失败
        """
        body = {
            "outTrackId": card.out_track_id,
            "guid": card.card_instance_id,
            "key": card.template_key,
            "content": text,
            "isFull": True,
            "isFinalize": is_final,
            "isError": False,
        }
        try:
            token = await self.api.token(account)
            resp = await self.api.http.put(
                f"{DINGTALK_API}/v1.0/card/streaming",
                json=body,
                headers={"x-acs-dingtalk-access-token": token},
            )
        except (httpx.HTTPError, DingTalkError) as e:
            raise CardError(f"Card stream update failed: {e}") from e
        if resp.status_code >= 400:
            raise CardError(f"Card stream update failed: HTTP {resp.status_code} {resp.text[:200]}")


class CardStream:
    """单张卡片的节流推送器。

    ``update`` 最多每 ``interval`` 秒推送一次；``finish`` 总会推送。
    任何一次推送失败后卡片进入 FAILED，不再推送，由调用方降级为普通回复。
    """

    def __init__(
        self,
        client: CardClient,
        account: DingTalkAccountConfig,
        card: CardInstance,
        interval: float = CARD_THROTTLE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.account = account
        self.card = card
        self.interval = interval
        self._clock = clock
        self._last_push: Optional[float] = None
        self.push_count = 0

    @property
    def failed(self) -> bool:
        return self.card.state == AICardStatus.FAILED

    async def update(self, text: str) -> bool:
        """推送中间内容。被节流或卡片已终结时返回 False。"""
        if is_card_in_terminal_state(self.card.state):
            return False
        now = self._clock()
        if self._last_push is not None and now - self._last_push < self.interval:
            return False
        self._last_push = now
        if await self._push(text, is_final=False):
            self.card.state = AICardStatus.INPUTING
            return True
        return False

    async def finish(self, text: str) -> bool:
        """推送最终内容。返回是否成功。"""
        if is_card_in_terminal_state(self.card.state):
            return False
        if await self._push(text, is_final=True):
            self.card.state = AICardStatus.FINISHED
            return True
        return False

    def cancel(self) -> None:
        """停止后续推送。"""
        if not is_card_in_terminal_state(self.card.state):
            self.card.state = AICardStatus.FAILED

    async def _push(self, text: str, is_final: bool) -> bool:
        try:
            await self.client.push(self.account, self.card, text, is_final)
        except CardError as e:
            logger.error(f"[dingtalk:{self.account.account_id}] {e}")
            self.card.state = AICardStatus.FAILED
            return False
        self.push_count += 1
        return True
