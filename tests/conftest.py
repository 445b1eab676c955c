"""Shared fixtures for dingtalk-connector tests."""

import asyncio
from typing import AsyncIterator

import pytest

from dingtalk_connector.bus.events import InboundMessage
from dingtalk_connector.config.schema import DingTalkAccountConfig
from dingtalk_connector.engine.runner import RunnerEvent, RunRequest


class FakeClock:
    """Manually advanced clock, in seconds."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeSocket:
    """WebSocket stand-in that yields queued frames until closed."""

    def __init__(self, frames=(), close_after: bool = False):
        self.queue: asyncio.Queue = asyncio.Queue()
        for frame in frames:
            self.queue.put_nowait(frame)
        if close_after:
            self.queue.put_nowait(None)
        self.sent: list[str] = []
        self.closed = False

    async def send(self, message: str) -> None:
        self.sent.append(message)

    async def close(self) -> None:
        self.closed = True
        self.queue.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self.queue.get()
        if item is None:
            raise StopAsyncIteration
        return item


class ScriptedRunner:
    """Runner that replays a fixed list of events and records requests."""

    def __init__(self, events: list[RunnerEvent]):
        self.events = events
        self.requests: list[RunRequest] = []

    async def stream(self, request: RunRequest) -> AsyncIterator[RunnerEvent]:
        self.requests.append(request)
        for event in self.events:
            yield event


def build_account(**overrides) -> DingTalkAccountConfig:
    data = {
        "account_id": "a1",
        "name": "小助手",
        "app_key": "ding-key",
        "app_secret": "ding-secret",
    }
    data.update(overrides)
    return DingTalkAccountConfig(**data)


def build_message(**overrides) -> InboundMessage:
    data = {
        "msgId": "msg-1",
        "msgtype": "text",
        "conversationType": "1",
        "conversationId": "cidPrivate==",
        "senderId": "$:LWCP_v1:$sender",
        "senderStaffId": "staff-1",
        "senderNick": "张三",
        "chatbotUserId": "$:LWCP_v1:$bot",
        "sessionWebhook": "https://oapi.dingtalk.com/robot/sendBySession?session=abc",
        "text": {"content": "你好"},
    }
    data.update(overrides)
    return InboundMessage.model_validate(data)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def account() -> DingTalkAccountConfig:
    return build_account()


@pytest.fixture
def message() -> InboundMessage:
    return build_message()
