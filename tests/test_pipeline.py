"""Tests for the reply pipeline."""

import asyncio
import json
from datetime import datetime, timezone

import httpx
import pytest
from conftest import FakeClock, ScriptedRunner, build_account, build_message

from dingtalk_connector.bus.events import SessionEvent
from dingtalk_connector.bus.signals import Signal
from dingtalk_connector.channels.cards import CardClient
from dingtalk_connector.channels.proactive import SendResult
from dingtalk_connector.channels.tools import TOOL_GUIDE
from dingtalk_connector.channels.pipeline import (
    APOLOGY_TEXT,
    OUTPUT_RULES,
    TITLE_PROMPT,
    ReplyPipeline,
    build_identity_reply,
    build_system_context,
    is_myid_command,
)
from dingtalk_connector.engine.runner import RunnerEvent, RunRequest
from dingtalk_connector.errors import ReplyAbortedError, RunnerError
from dingtalk_connector.gateway.api import DingTalkAPI
from dingtalk_connector.gateway.tokens import TokenCache
from dingtalk_connector.session.history import HistoryStore
from dingtalk_connector.session.manager import JsonSessionStore


WEBHOOK_HOST = "oapi.dingtalk.com"
TITLE_MARK = TITLE_PROMPT.split("{context}")[0]


class DingTalkServer:
    """Fake DingTalk endpoints for webhook replies and AI cards."""

    def __init__(self, card_create_status: int = 200, card_stream_status: int = 200):
        self.card_create_status = card_create_status
        self.card_stream_status = card_stream_status
        self.webhook_replies: list[dict] = []
        self.card_creates: list[dict] = []
        self.card_pushes: list[dict] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/v1.0/oauth2/accessToken":
            return httpx.Response(200, json={"accessToken": "tok", "expireIn": 7200})
        body = json.loads(request.content)
        if path == "/robot/sendBySession":
            self.webhook_replies.append(body)
            return httpx.Response(200, json={"errcode": 0})
        if path == "/v1.0/card/instances/createAndDeliver":
            self.card_creates.append(body)
            if self.card_create_status >= 400:
                return httpx.Response(self.card_create_status, json={"code": "InternalError"})
            return httpx.Response(200, json={"result": {"cardInstanceId": "card-1"}})
        if path == "/v1.0/card/streaming":
            self.card_pushes.append(body)
            return httpx.Response(self.card_stream_status, json={})
        return httpx.Response(404)


class TitleAwareRunner(ScriptedRunner):
    """Replies with ``reply_events`` and answers title prompts with ``title``."""

    def __init__(self, events: list[RunnerEvent], title: str = "周报讨论"):
        super().__init__(events)
        self.title = title
        self.title_requests: list[RunRequest] = []

    async def stream(self, request: RunRequest):
        if request.user_text.startswith(TITLE_MARK):
            self.title_requests.append(request)
            yield RunnerEvent(kind="success", text=self.title)
            return
        async for event in super().stream(request):
            yield event


def reply_events(text: str, token: str = "sess-1") -> list[RunnerEvent]:
    half = len(text) // 2
    return [
        RunnerEvent(kind="delta", text=text[:half]),
        RunnerEvent(kind="delta", text=text[half:]),
        RunnerEvent(kind="success", text=text, session_token=token),
    ]


def run_pipeline(server, scenario, runner=None, session_store=None, memory=None, clock=None, proactive=None):
    runner = runner or TitleAwareRunner(reply_events("你好，我是小助手"))
    session_signal: Signal[SessionEvent] = Signal("session")
    events: list[SessionEvent] = []
    session_signal.subscribe(events.append)

    async def main():
        async with httpx.AsyncClient(transport=httpx.MockTransport(server)) as http:
            api = DingTalkAPI(http, TokenCache(http))
            pipeline = ReplyPipeline(
                api=api,
                runners={"claude": runner, "codex": runner},
                histories=HistoryStore(),
                session_signal=session_signal,
                session_store=session_store,
                memory=memory,
                cards=CardClient(api),
                proactive=proactive,
                clock=clock or FakeClock(),
            )
            result = await scenario(pipeline)
            await pipeline.drain()
            return pipeline, result

    pipeline, result = asyncio.run(main())
    return pipeline, result, events


# ---------------------------------------------------------------------------
# System context / commands
# ---------------------------------------------------------------------------

class TestSystemContext:
    def test_default_persona_and_rules(self):
        now = datetime(2025, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        context = build_system_context(build_account(), now=now)
        assert context.startswith("你是 小助手")
        assert OUTPUT_RULES in context
        assert "2025-01-02 03:04:05" in context
        assert "核心价值观" not in context

    def test_sections_in_order(self):
        account = build_account(
            persona="你是老王。",
            core_values="诚实",
            relationship="同事",
            guidelines="先查文档",
        )
        context = build_system_context(account, memory_context="<memory>\n记得周五开会\n</memory>")
        order = [context.index(s) for s in ("你是老王", "诚实", "同事", "先查文档", "回复规范", "<memory>", "当前时间")]
        assert order == sorted(order)

    def test_myid_commands(self):
        assert is_myid_command(" /myid ")
        assert is_myid_command("/我的ID")
        assert not is_myid_command("/myid please")

    def test_identity_reply_group(self):
        msg = build_message(conversationType="2", conversationId="cidGroup==")
        reply = build_identity_reply(msg)
        assert "`staff-1`" in reply
        assert "`cidGroup==`" in reply

    def test_identity_reply_private(self):
        reply = build_identity_reply(build_message())
        assert "conversationId" not in reply


# ---------------------------------------------------------------------------
# Markdown replies
# ---------------------------------------------------------------------------

class TestMarkdownReply:
    def test_reply_via_webhook(self):
        server = DingTalkServer()
        account = build_account()

        pipeline, reply, _ = run_pipeline(
            server, lambda p: p.handle(build_message(), account, "你好"),
        )

        assert reply == "你好，我是小助手"
        assert server.webhook_replies == [
            {"msgtype": "markdown", "markdown": {"title": "小助手", "text": "你好，我是小助手"}}
        ]
        history = pipeline.histories.get("a1")
        assert [t.role for t in history.turns()] == ["user", "assistant"]

    def test_expired_webhook_dropped(self):
        server = DingTalkServer()
        clock = FakeClock()
        msg = build_message(sessionWebhookExpiredTime=int(clock.now * 1000) - 1)

        _, delivered, _ = run_pipeline(
            server, lambda p: p.reply_markdown(msg, build_account(), "hi"), clock=clock,
        )

        assert delivered is False
        assert server.webhook_replies == []

    def test_apology(self):
        server = DingTalkServer()
        run_pipeline(server, lambda p: p.send_apology(build_message(), build_account()))
        assert server.webhook_replies[0]["markdown"]["text"] == APOLOGY_TEXT

    def test_runner_error_propagates(self):
        server = DingTalkServer()
        runner = ScriptedRunner([RunnerEvent(kind="error", text="quota exceeded")])

        with pytest.raises(RunnerError):
            run_pipeline(server, lambda p: p.handle(build_message(), build_account(), "hi"), runner=runner)
        assert server.webhook_replies == []

    def test_empty_reply_placeholder(self):
        server = DingTalkServer()
        runner = ScriptedRunner([RunnerEvent(kind="success", text="   ")])
        _, reply, _ = run_pipeline(
            server, lambda p: p.handle(build_message(), build_account(), "hi"), runner=runner,
        )
        assert reply == "抱歉，无法生成回复。"


# ---------------------------------------------------------------------------
# History and resume tokens
# ---------------------------------------------------------------------------

class TestHistory:
    def test_prior_history_and_resume_token(self):
        server = DingTalkServer()
        runner = TitleAwareRunner(reply_events("好的"))
        account = build_account()

        async def two_turns(p):
            await p.handle(build_message(msgId="m1"), account, "第一句")
            await p.handle(build_message(msgId="m2"), account, "第二句")

        run_pipeline(server, two_turns, runner=runner)

        first, second = runner.requests
        assert first.history == []
        assert first.session_token is None
        assert [t.content for t in second.history] == ["第一句", "好的"]
        assert second.user_text == "第二句"
        assert second.session_token == "sess-1"

    def test_codex_never_resumes(self):
        server = DingTalkServer()
        runner = TitleAwareRunner(reply_events("好的", token="thread-1"))
        account = build_account(provider="codex")

        async def two_turns(p):
            await p.handle(build_message(msgId="m1"), account, "一")
            await p.handle(build_message(msgId="m2"), account, "二")

        run_pipeline(server, two_turns, runner=runner)

        assert all(r.provider == "codex" for r in runner.requests)
        assert runner.requests[1].session_token is None


# ---------------------------------------------------------------------------
# Sessions, titles and memory
# ---------------------------------------------------------------------------

class FakeMemory:
    def __init__(self, context: str = ""):
        self.context = context
        self.entries: list[str] = []

    def build_context(self, prompt: str) -> str:
        return self.context

    def append_entry(self, content: str) -> None:
        self.entries.append(content)


class TestSessions:
    def test_session_recorded_and_titled(self, tmp_path):
        server = DingTalkServer()
        store = JsonSessionStore(tmp_path)
        runner = TitleAwareRunner(reply_events("你好"), title="打招呼")

        pipeline, _, events = run_pipeline(
            server,
            lambda p: p.handle(build_message(), build_account(), "hi"),
            runner=runner,
            session_store=store,
        )

        session_id = pipeline.session_id_for("a1")
        assert session_id
        messages = store.get_messages(session_id)
        assert [m["type"] for m in messages] == ["user_prompt", "assistant"]
        assert messages[1]["message"]["content"][0]["text"] == "你好"

        assert store.get_session(session_id).title == "[钉钉] 打招呼"
        assert len(events) == 1
        assert events[0].title == "[钉钉] 打招呼"
        assert "用户：hi" in runner.title_requests[0].user_text

    def test_session_reused_and_title_only_on_first_and_third_turn(self, tmp_path):
        server = DingTalkServer()
        store = JsonSessionStore(tmp_path)
        runner = TitleAwareRunner(reply_events("嗯"))
        account = build_account()

        async def turns(p):
            for i in range(4):
                await p.handle(build_message(msgId=f"m{i}"), account, f"第{i}句")
                await p.drain()

        _, _, events = run_pipeline(server, turns, runner=runner, session_store=store)

        assert len(store.list_sessions()) == 1
        assert len(runner.title_requests) == 2
        assert len(events) == 2

    def test_bad_title_falls_back_to_first_message(self, tmp_path):
        server = DingTalkServer()
        store = JsonSessionStore(tmp_path)
        runner = TitleAwareRunner(reply_events("好"), title="New Session")

        pipeline, _, _ = run_pipeline(
            server,
            lambda p: p.handle(build_message(), build_account(), "帮我写一份周报"),
            runner=runner,
            session_store=store,
        )

        title = store.get_session(pipeline.session_id_for("a1")).title
        assert title == "[钉钉] 帮我写一份周报"

    def test_memory_injected_and_appended(self):
        server = DingTalkServer()
        memory = FakeMemory("<memory>\n## 长期记忆\n喜欢简短回答\n</memory>")
        runner = TitleAwareRunner(reply_events("收到"))

        run_pipeline(
            server,
            lambda p: p.handle(build_message(), build_account(), "今天做什么"),
            runner=runner,
            memory=memory,
        )

        assert "喜欢简短回答" in runner.requests[0].system_context
        assert len(memory.entries) == 1
        assert "今天做什么" in memory.entries[0]
        assert "收到" in memory.entries[0]


# ---------------------------------------------------------------------------
# AI Card
# ---------------------------------------------------------------------------

class TestCardReply:
    def card_account(self, **overrides):
        return build_account(message_type="card", card_template_id="tpl.schema", **overrides)

    def test_streams_into_card(self):
        server = DingTalkServer()

        run_pipeline(server, lambda p: p.handle(build_message(), self.card_account(), "hi"))

        assert len(server.card_creates) == 1
        create = server.card_creates[0]
        assert create["cardTemplateId"] == "tpl.schema"
        assert create["openSpaceId"] == "dtv1.card//IM_ROBOT.$:LWCP_v1:$bot"
        assert create["cardData"]["cardParamMap"]["msgContent"] == "🤔 正在思考…"

        final = server.card_pushes[-1]
        assert final["isFinalize"] is True
        assert final["content"] == "你好，我是小助手"
        assert final["guid"] == "card-1"
        assert server.webhook_replies == []

    def test_group_card_space(self):
        server = DingTalkServer()
        msg = build_message(conversationType="2", conversationId="cidGroup==")
        run_pipeline(server, lambda p: p.handle(msg, self.card_account(), "hi"))
        create = server.card_creates[0]
        assert create["openSpaceId"] == "dtv1.card//IM_GROUP.cidGroup=="
        assert "imGroupOpenSpaceModel" in create

    def test_create_failure_falls_back_to_markdown(self):
        server = DingTalkServer(card_create_status=500)

        run_pipeline(server, lambda p: p.handle(build_message(), self.card_account(), "hi"))

        assert server.card_pushes == []
        assert len(server.webhook_replies) == 1
        assert server.webhook_replies[0]["markdown"]["text"] == "你好，我是小助手"

    def test_stream_failure_falls_back_to_markdown(self):
        server = DingTalkServer(card_stream_status=500)

        run_pipeline(server, lambda p: p.handle(build_message(), self.card_account(), "hi"))

        assert len(server.card_pushes) == 1
        assert server.webhook_replies[0]["markdown"]["text"] == "你好，我是小助手"

    def test_card_without_template_uses_markdown(self):
        server = DingTalkServer()
        account = build_account(message_type="card")
        run_pipeline(server, lambda p: p.handle(build_message(), account, "hi"))
        assert server.card_creates == []
        assert len(server.webhook_replies) == 1

    def test_runner_failure_finalizes_card_with_apology(self):
        server = DingTalkServer()
        runner = ScriptedRunner([
            RunnerEvent(kind="delta", text="正在"),
            RunnerEvent(kind="error", text="quota exceeded"),
        ])

        with pytest.raises(ReplyAbortedError):
            run_pipeline(server, lambda p: p.handle(build_message(), self.card_account(), "hi"), runner=runner)

        final = server.card_pushes[-1]
        assert final["isFinalize"] is True
        assert final["content"] == APOLOGY_TEXT
        assert server.webhook_replies == []

    def test_runner_failure_after_card_failure_is_plain_error(self):
        server = DingTalkServer(card_stream_status=500)
        runner = ScriptedRunner([
            RunnerEvent(kind="delta", text="正在"),
            RunnerEvent(kind="error", text="quota exceeded"),
        ])

        with pytest.raises(RunnerError) as excinfo:
            run_pipeline(server, lambda p: p.handle(build_message(), self.card_account(), "hi"), runner=runner)

        assert not isinstance(excinfo.value, ReplyAbortedError)
        assert len(server.card_pushes) == 1


# ---------------------------------------------------------------------------
# Conversation tools
# ---------------------------------------------------------------------------

class RecordingProactive:
    def __init__(self):
        self.media: list[tuple[str, str, list[str]]] = []

    async def send_media(self, account_id, file_path, targets=None, media_type=None) -> SendResult:
        self.media.append((account_id, str(file_path), targets))
        return SendResult(ok=True, delivered=[targets[0]])


class TestConversationTools:
    def test_guide_only_with_proactive(self):
        runner = TitleAwareRunner(reply_events("好"))
        run_pipeline(DingTalkServer(), lambda p: p.handle(build_message(), build_account(), "hi"), runner=runner)
        assert TOOL_GUIDE not in runner.requests[0].system_context

        runner = TitleAwareRunner(reply_events("好"))
        run_pipeline(
            DingTalkServer(),
            lambda p: p.handle(build_message(), build_account(), "hi"),
            runner=runner,
            proactive=RecordingProactive(),
        )
        assert TOOL_GUIDE in runner.requests[0].system_context

    def test_runner_sends_progress_and_file(self, tmp_path):
        shot = tmp_path / "shot.png"
        shot.write_bytes(b"\x89PNG")
        server = DingTalkServer()
        proactive = RecordingProactive()
        runner = TitleAwareRunner([
            RunnerEvent(kind="tool", tool="send_message", arguments={"text": "📸 正在截图…"}),
            RunnerEvent(kind="tool", tool="send_file", arguments={"file_path": str(shot)}),
            RunnerEvent(kind="success", text="截图已发送"),
        ])
        msg = build_message(conversationType="2", conversationId="cidGroup==")

        _, reply, _ = run_pipeline(
            server, lambda p: p.handle(msg, build_account(), "截个图"), runner=runner, proactive=proactive,
        )

        assert reply == "截图已发送"
        assert proactive.media == [("a1", str(shot), ["group:cidGroup=="])]
        texts = [r["markdown"]["text"] for r in server.webhook_replies]
        assert texts == ["📸 正在截图…", "截图已发送"]

    def test_tools_ignored_without_proactive(self, tmp_path):
        server = DingTalkServer()
        runner = TitleAwareRunner([
            RunnerEvent(kind="tool", tool="send_message", arguments={"text": "进度"}),
            RunnerEvent(kind="success", text="完成"),
        ])
        run_pipeline(server, lambda p: p.handle(build_message(), build_account(), "hi"), runner=runner)
        assert [r["markdown"]["text"] for r in server.webhook_replies] == ["完成"]
