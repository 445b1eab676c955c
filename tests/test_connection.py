"""Tests for the Stream connection lifecycle, inbound processing and the pool."""

import asyncio
import json
from pathlib import Path

import pytest
from conftest import FakeSocket, build_account

from dingtalk_connector.bus.events import ConnectionStatus, StatusEvent
from dingtalk_connector.bus.signals import Signal
from dingtalk_connector.channels.connection import ConnectionContext, DingTalkConnection
from dingtalk_connector.channels.extractor import ContentExtractor
from dingtalk_connector.channels.manager import ConnectionManager
from dingtalk_connector.errors import HandshakeError, NotConnectedError, ReplyAbortedError, RunnerError
from dingtalk_connector.gateway.handshake import BOT_MESSAGE_TOPIC, GatewayEndpoint
from dingtalk_connector.stores.dedup import DedupStore
from dingtalk_connector.stores.last_seen import LastSeenStore
from dingtalk_connector.stores.peers import PeerRegistry


class FakePipeline:
    def __init__(self, fail_on: str | None = None, expired: bool = False, error: type = RunnerError):
        self.fail_on = fail_on
        self.error = error
        self.expired = expired
        self.handled: list[str] = []
        self.identity: list = []
        self.apologies: list = []

    def webhook_expired(self, message) -> bool:
        return self.expired

    async def reply_identity(self, message, account) -> None:
        self.identity.append(message)

    async def send_apology(self, message, account) -> None:
        self.apologies.append(message)

    async def handle(self, message, account, text: str) -> str:
        if text == self.fail_on:
            raise self.error("runner exploded")
        self.handled.append(text)
        return "ok"


class NoDownloads:
    async def download_media(self, account, download_code: str) -> Path:
        raise AssertionError("no downloads expected")


class Harness:
    """Connection context wired to fakes."""

    def __init__(self, sockets=None, handshake_failures: int = 0, fail_forever_after_first: bool = False,
                 pipeline: FakePipeline | None = None):
        self.sockets = list(sockets or [])
        self.opened: list[FakeSocket] = []
        self.handshakes = 0
        self.handshake_failures = handshake_failures
        self.fail_forever_after_first = fail_forever_after_first
        self.sleeps: list[float] = []
        self.events: list[StatusEvent] = []
        self.pipeline = pipeline or FakePipeline()

        status_signal: Signal[StatusEvent] = Signal("status")
        status_signal.subscribe(self.events.append)
        self.ctx = ConnectionContext(
            handshake=self.handshake,
            dedup=DedupStore(),
            last_seen=LastSeenStore(),
            peers=PeerRegistry(),
            extractor=ContentExtractor(NoDownloads()),
            pipeline=self.pipeline,
            status_signal=status_signal,
            ws_connect=self.ws_connect,
            rand=lambda a, b: 0.0,
            sleep=self.sleep,
        )

    async def handshake(self, account) -> GatewayEndpoint:
        self.handshakes += 1
        if self.handshakes <= self.handshake_failures:
            raise HandshakeError("网关连接失败 [InvalidAuthentication]", code="InvalidAuthentication")
        if self.fail_forever_after_first and self.handshakes > 1:
            raise HandshakeError("gateway down")
        return GatewayEndpoint(endpoint="wss://stream.example/connect", ticket=f"t{self.handshakes}")

    async def ws_connect(self, url: str) -> FakeSocket:
        sock = self.sockets.pop(0) if self.sockets else FakeSocket()
        self.opened.append(sock)
        return sock

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)

    def statuses(self) -> list[ConnectionStatus]:
        return [e.status for e in self.events]


async def settle(rounds: int = 50) -> None:
    for _ in range(rounds):
        await asyncio.sleep(0)


def bot_frame(msg_id: str, text: str, frame_id: str | None = None, **fields) -> str:
    data = {
        "msgId": msg_id,
        "msgtype": "text",
        "conversationType": "1",
        "conversationId": "cidPrivateAbC==",
        "senderId": "$:LWCP_v1:$sender",
        "senderStaffId": "staff-1",
        "sessionWebhook": "https://oapi.dingtalk.com/robot/sendBySession?session=abc",
        "text": {"content": text},
    }
    data.update(fields)
    return json.dumps({
        "specVersion": "1.0",
        "type": "CALLBACK",
        "headers": {"messageId": frame_id or f"frame-{msg_id}", "topic": BOT_MESSAGE_TOPIC},
        "data": json.dumps(data),
    })


def run_inbound(frames, account=None, pipeline=None):
    """Connect, feed frames, wait for processing, stop."""
    account = account or build_account()

    async def main():
        harness = Harness(pipeline=pipeline)
        sock = FakeSocket(frames)
        harness.sockets.append(sock)
        conn = DingTalkConnection(account, harness.ctx)
        await conn.start()
        await settle()
        await conn.wait_idle()
        await conn.stop()
        return harness, conn, sock

    return asyncio.run(main())


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

class TestLifecycle:
    def test_start_and_stop(self):
        async def main():
            harness = Harness()
            conn = DingTalkConnection(build_account(), harness.ctx)
            await conn.start()
            connected = conn.status
            await conn.stop()
            return harness, conn, connected

        harness, conn, connected = asyncio.run(main())
        assert connected == ConnectionStatus.CONNECTED
        assert conn.status == ConnectionStatus.DISCONNECTED
        assert harness.statuses() == [
            ConnectionStatus.CONNECTING,
            ConnectionStatus.CONNECTED,
            ConnectionStatus.DISCONNECTED,
        ]
        assert harness.opened[0].closed
        assert harness.sleeps == []

    def test_first_connect_failure_is_raised(self):
        async def main():
            harness = Harness(handshake_failures=1)
            conn = DingTalkConnection(build_account(), harness.ctx)
            with pytest.raises(HandshakeError):
                await conn.start()
            await settle()
            return harness, conn

        harness, conn = asyncio.run(main())
        assert conn.status == ConnectionStatus.ERROR
        assert not conn.has_pending_reconnect
        assert harness.sleeps == []
        assert harness.handshakes == 1

    def test_update_config_requires_same_account(self):
        conn = DingTalkConnection(build_account(), Harness().ctx)
        conn.update_config(build_account(name="新名字"))
        assert conn.config.name == "新名字"
        with pytest.raises(ValueError):
            conn.update_config(build_account(account_id="other"))


class TestReconnect:
    def test_reconnects_after_socket_close(self):
        async def main():
            harness = Harness(sockets=[FakeSocket(close_after=True), FakeSocket()])
            conn = DingTalkConnection(build_account(), harness.ctx)
            await conn.start()
            await settle()
            status = conn.status
            attempts = conn.reconnect_attempts
            await conn.stop()
            return harness, status, attempts

        harness, status, attempts = asyncio.run(main())
        assert status == ConnectionStatus.CONNECTED
        assert attempts == 0
        assert harness.sleeps == [1.0]
        assert harness.handshakes == 2
        assert ConnectionStatus.ERROR in harness.statuses()

    def test_gives_up_after_max_attempts(self):
        account = build_account(max_connection_attempts=3, initial_reconnect_delay=1000)

        async def main():
            harness = Harness(sockets=[FakeSocket(close_after=True)], fail_forever_after_first=True)
            conn = DingTalkConnection(account, harness.ctx)
            await conn.start()
            await settle(200)
            return harness, conn

        harness, conn = asyncio.run(main())
        assert harness.sleeps == [1.0, 2.0, 4.0]
        assert harness.handshakes == 4
        assert conn.status == ConnectionStatus.ERROR
        assert "已达最大重连次数 (3)" in conn.detail
        assert not conn.has_pending_reconnect

    def test_stop_cancels_pending_reconnect(self):
        async def main():
            harness = Harness(sockets=[FakeSocket(close_after=True)], fail_forever_after_first=True)

            async def never_wake(seconds: float) -> None:
                harness.sleeps.append(seconds)
                await asyncio.Event().wait()

            harness.ctx.sleep = never_wake
            conn = DingTalkConnection(build_account(), harness.ctx)
            await conn.start()
            await settle()
            pending = conn.has_pending_reconnect
            await conn.stop()
            await settle()
            return harness, conn, pending

        harness, conn, pending = asyncio.run(main())
        assert pending
        assert not conn.has_pending_reconnect
        assert conn.status == ConnectionStatus.DISCONNECTED
        assert harness.handshakes == 1


# ---------------------------------------------------------------------------
# Inbound processing
# ---------------------------------------------------------------------------

class TestInbound:
    def test_message_acked_and_handled(self):
        harness, conn, sock = run_inbound([bot_frame("m1", "@Bot hello")])

        assert harness.pipeline.handled == ["hello"]
        ack = json.loads(sock.sent[0])
        assert ack["headers"]["messageId"] == "frame-m1"
        assert conn.stats.received == 1
        assert conn.stats.processed == 1

    def test_registers_peer_and_last_seen(self):
        harness, _, _ = run_inbound([bot_frame("m1", "hi")])
        assert harness.ctx.peers.resolve("cidprivateabc==") == "cidPrivateAbC=="
        targets = harness.ctx.last_seen.targets("a1")
        assert [(t.target, t.is_group) for t in targets] == [("staff-1", False)]

    def test_group_last_seen_uses_conversation(self):
        frame = bot_frame("m1", "hi", conversationType="2", conversationId="cidGroup==")
        harness, _, _ = run_inbound([frame])
        targets = harness.ctx.last_seen.targets("a1")
        assert [(t.target, t.is_group) for t in targets] == [("cidGroup==", True)]

    def test_duplicate_redelivery_skipped(self):
        frames = [bot_frame("m1", "hi", frame_id="f1"), bot_frame("m1", "hi", frame_id="f2")]
        harness, conn, sock = run_inbound(frames)

        assert harness.pipeline.handled == ["hi"]
        assert len(sock.sent) == 2
        assert conn.stats.received == 2
        assert conn.stats.skipped == 1

    def test_blocked_message_releases_inflight(self):
        account = build_account(dm_policy="allowlist", allow_from=[])
        harness, conn, _ = run_inbound([bot_frame("m1", "hi")], account=account)

        key = DedupStore.make_key("a1", "m1")
        assert harness.pipeline.handled == []
        assert not harness.ctx.dedup.is_inflight(key)
        assert harness.ctx.dedup.is_duplicate(key)
        assert conn.stats.processed == 0

    def test_expired_webhook_skipped(self):
        pipeline = FakePipeline(expired=True)
        harness, _, _ = run_inbound([bot_frame("m1", "hi")], pipeline=pipeline)
        assert pipeline.handled == []
        assert not harness.ctx.dedup.is_inflight("a1:m1")

    def test_myid_bypasses_runner(self):
        harness, conn, _ = run_inbound([bot_frame("m1", "/myid")])
        assert len(harness.pipeline.identity) == 1
        assert harness.pipeline.handled == []
        assert conn.stats.processed == 0

    def test_generation_failure_sends_apology(self):
        pipeline = FakePipeline(fail_on="boom")
        harness, _, _ = run_inbound([bot_frame("m1", "boom"), bot_frame("m2", "fine")], pipeline=pipeline)
        assert len(pipeline.apologies) == 1
        assert pipeline.handled == ["fine"]
        assert not harness.ctx.dedup.is_inflight("a1:m1")

    def test_apology_not_repeated_when_card_shows_it(self):
        pipeline = FakePipeline(fail_on="boom", error=ReplyAbortedError)
        harness, _, _ = run_inbound([bot_frame("m1", "boom")], pipeline=pipeline)
        assert pipeline.apologies == []
        assert not harness.ctx.dedup.is_inflight("a1:m1")

    def test_non_object_content_uses_type_placeholder(self):
        frame = bot_frame("m1", "", msgtype="interactiveCard", content="some card json")
        harness, conn, _ = run_inbound([frame])
        assert harness.pipeline.handled == ["[interactiveCard 消息]"]
        assert conn.stats.processed == 1

    def test_numeric_conversation_type_accepted(self):
        frames = [
            bot_frame("m1", "hello", conversationType=1),
            bot_frame("m2", "群里好", conversationType=2, conversationId="cidGroup=="),
        ]
        harness, _, _ = run_inbound(frames)
        assert sorted(harness.pipeline.handled) == sorted(["hello", "群里好"])
        groups = {t.target: t.is_group for t in harness.ctx.last_seen.targets("a1")}
        assert groups == {"staff-1": False, "cidGroup==": True}

    def test_control_frames_only_acked(self):
        ping = json.dumps({"type": "SYSTEM", "headers": {"messageId": "p1", "topic": "ping"}, "data": "{}"})
        harness, conn, sock = run_inbound([ping])
        assert len(sock.sent) == 1
        assert conn.stats.received == 0


# ---------------------------------------------------------------------------
# ConnectionManager
# ---------------------------------------------------------------------------

class TestConnectionManager:
    def test_start_replaces_existing(self):
        async def main():
            harness = Harness()
            pool = ConnectionManager(harness.ctx)
            first = await pool.start(build_account())
            second = await pool.start(build_account(name="v2"))
            ids = pool.account_ids()
            await pool.stop_all()
            return harness, first, second, ids

        harness, first, second, ids = asyncio.run(main())
        assert ids == ["a1"]
        assert first is not second
        assert first.status == ConnectionStatus.DISCONNECTED
        assert harness.opened[0].closed

    def test_failed_start_removed_from_pool(self):
        async def main():
            harness = Harness(handshake_failures=1)
            pool = ConnectionManager(harness.ctx)
            with pytest.raises(HandshakeError):
                await pool.start(build_account())
            return pool

        pool = asyncio.run(main())
        assert pool.get("a1") is None
        assert pool.get_status("a1") == ConnectionStatus.DISCONNECTED

    def test_start_all_isolates_failures(self):
        async def main():
            harness = Harness(handshake_failures=1)
            pool = ConnectionManager(harness.ctx)
            outcome = await pool.start_all([build_account(account_id="bad"), build_account(account_id="good")])
            status = pool.get_status("good")
            await pool.stop_all()
            return outcome, status

        outcome, status = asyncio.run(main())
        assert isinstance(outcome["bad"], HandshakeError)
        assert outcome["good"] is None
        assert status == ConnectionStatus.CONNECTED

    def test_update_config(self):
        async def main():
            harness = Harness()
            pool = ConnectionManager(harness.ctx)
            await pool.start(build_account())
            pool.update_config(build_account(dm_policy="allowlist"))
            policy = pool.get_config("a1").dm_policy
            with pytest.raises(NotConnectedError):
                pool.update_config(build_account(account_id="ghost"))
            await pool.stop_all()
            return policy

        assert asyncio.run(main()) == "allowlist"

    def test_stop_unknown_account_publishes_disconnected(self):
        async def main():
            harness = Harness()
            pool = ConnectionManager(harness.ctx)
            await pool.stop("ghost")
            return harness

        harness = asyncio.run(main())
        assert [(e.account_id, e.status) for e in harness.events] == [
            ("ghost", ConnectionStatus.DISCONNECTED),
        ]
