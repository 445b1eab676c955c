"""Process-level wiring.

``Runtime`` owns everything shared between connections: the HTTP client,
token cache, dedup/last-seen/risk/peer stores, notification signals, agent
runners, session and memory collaborators, the connection pool and the
proactive sender. Everything is created here and closed in ``aclose``;
nothing is persisted across restarts except what the session and memory
collaborators write themselves.
"""

from pathlib import Path
from typing import Optional

import httpx
from loguru import logger

from dingtalk_connector.bus.events import SessionEvent, StatusEvent
from dingtalk_connector.bus.signals import Signal
from dingtalk_connector.channels.cards import CardClient
from dingtalk_connector.channels.connection import ConnectionContext, SocketFactory, default_ws_connect
from dingtalk_connector.channels.extractor import ContentExtractor
from dingtalk_connector.channels.manager import ConnectionManager
from dingtalk_connector.channels.pipeline import ReplyPipeline
from dingtalk_connector.channels.proactive import ProactiveSender
from dingtalk_connector.config.schema import Config, DingTalkAccountConfig
from dingtalk_connector.engine.cli_runner import ClaudeCliRunner, CodexCliRunner
from dingtalk_connector.engine.runner import AgentRunner
from dingtalk_connector.gateway.api import DingTalkAPI
from dingtalk_connector.gateway.handshake import GatewayEndpoint, open_connection
from dingtalk_connector.gateway.tokens import TokenCache
from dingtalk_connector.session.history import HistoryStore
from dingtalk_connector.session.manager import JsonSessionStore, SessionStore
from dingtalk_connector.session.memory import MemoryProvider, WorkspaceMemory
from dingtalk_connector.stores.dedup import DedupStore
from dingtalk_connector.stores.last_seen import LastSeenStore
from dingtalk_connector.stores.peers import PeerRegistry
from dingtalk_connector.stores.risk import RiskStore
from dingtalk_connector.utils.helpers import get_sessions_dir


CONNECT_TIMEOUT_SECONDS = 10.0


def build_http_client(config: Config) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=httpx.Timeout(config.http_timeout, connect=CONNECT_TIMEOUT_SECONDS))


class Runtime:
    """
    Shared state and collaborators for every DingTalk connection.

    Args:
        config: Root configuration.
        http: Injected HTTP client; created from ``config.http_timeout`` when omitted.
        runners: ``provider -> AgentRunner``; CLI runners by default.
        session_store: Host session store; a JSON store under the data dir by default.
        memory: Memory collaborator; workspace files by default.
        ws_connect: Socket factory, replaceable in tests.
    """

    def __init__(
        self,
        config: Config,
        http: Optional[httpx.AsyncClient] = None,
        runners: Optional[dict[str, AgentRunner]] = None,
        session_store: Optional[SessionStore] = None,
        memory: Optional[MemoryProvider] = None,
        ws_connect: SocketFactory = default_ws_connect,
        media_dir: Optional[Path] = None,
    ):
        self.config = config
        self._owns_http = http is None
        self.http = http or build_http_client(config)

        self.tokens = TokenCache(self.http)
        self.api = DingTalkAPI(self.http, self.tokens, media_dir=media_dir)

        self.dedup = DedupStore()
        self.last_seen = LastSeenStore()
        self.risk = RiskStore()
        self.peers = PeerRegistry()
        self.histories = HistoryStore()

        self.status_signal: Signal[StatusEvent] = Signal("status")
        self.session_signal: Signal[SessionEvent] = Signal("session")

        workspace = Path(config.get_workspace()).expanduser()
        if runners is None:
            timeout = config.runner.timeout
            runners = {
                "claude": ClaudeCliRunner(config.runner.claude_path, workspace, timeout),
                "codex": CodexCliRunner(config.runner.codex_path, workspace, timeout),
            }
        self.runners = runners
        self.session_store = session_store if session_store is not None else JsonSessionStore(get_sessions_dir())
        self.memory = memory if memory is not None else WorkspaceMemory(workspace)

        self.pipeline = ReplyPipeline(
            api=self.api,
            runners=self.runners,
            histories=self.histories,
            session_signal=self.session_signal,
            session_store=self.session_store,
            memory=self.memory,
            cards=CardClient(self.api),
        )
        self.pool = ConnectionManager(ConnectionContext(
            handshake=self._handshake,
            dedup=self.dedup,
            last_seen=self.last_seen,
            peers=self.peers,
            extractor=ContentExtractor(self.api),
            pipeline=self.pipeline,
            status_signal=self.status_signal,
            ws_connect=ws_connect,
        ))
        self.proactive = ProactiveSender(
            api=self.api,
            directory=self.pool,
            last_seen=self.last_seen,
            risk=self.risk,
            peers=self.peers,
        )
        self.pipeline.proactive = self.proactive

    async def _handshake(self, account: DingTalkAccountConfig) -> GatewayEndpoint:
        return await open_connection(self.http, account.app_key, account.app_secret)

    async def aclose(self) -> None:
        await self.pool.stop_all()
        await self.pipeline.drain()
        if self._owns_http:
            await self.http.aclose()
        logger.debug("Runtime closed")

    async def __aenter__(self) -> "Runtime":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()
