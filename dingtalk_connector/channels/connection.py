"""钉钉 Stream Mode 连接。

每个账号一条连接，状态机::

    disconnected -(start)-> connecting -(握手+WebSocket 打开)-> connected
    connected -(socket 关闭，非手动停止)-> error -(退避定时器)-> connecting

只有手动 ``stop`` 回到 disconnected。首次连接失败直接抛给调用方；重连失败
按指数退避重试，超过最大次数后停在 error，不再安排定时器。

入站消息处理顺序：ack → 注册 peer id → 记录最近联系人 → 计数 → 去重 →
访问控制 → webhook 过期检查 → 内容提取 → /myid → 回复流水线。
"""

import asyncio
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional, Protocol

import websockets
from loguru import logger
from websockets.exceptions import ConnectionClosed, WebSocketException

from dingtalk_connector.bus.events import ConnectionStatus, InboundMessage, StatusEvent
from dingtalk_connector.bus.signals import Signal
from dingtalk_connector.channels.access import is_allowed
from dingtalk_connector.channels.extractor import ContentExtractor, ExtractedContent
from dingtalk_connector.channels.pipeline import ReplyPipeline, is_myid_command
from dingtalk_connector.config.schema import DingTalkAccountConfig
from dingtalk_connector.engine.backoff import compute_reconnect_delay
from dingtalk_connector.errors import NotConnectedError, ReplyAbortedError
from dingtalk_connector.gateway.frames import FrameDispatcher
from dingtalk_connector.gateway.handshake import GatewayEndpoint
from dingtalk_connector.stores.dedup import DedupStore
from dingtalk_connector.stores.last_seen import LastSeenStore
from dingtalk_connector.stores.peers import PeerRegistry


WS_PING_INTERVAL = 20


class StreamSocket(Protocol):
    """The subset of a websockets client connection used here."""

    async def send(self, message: str) -> None: ...

    async def close(self) -> None: ...

    def __aiter__(self) -> Any: ...


Handshake = Callable[[DingTalkAccountConfig], Awaitable[GatewayEndpoint]]
SocketFactory = Callable[[str], Awaitable[StreamSocket]]


async def default_ws_connect(url: str) -> StreamSocket:
    return await websockets.connect(url, ping_interval=WS_PING_INTERVAL, max_size=None)


@dataclass
class ConnectionContext:
    """Collaborators shared by every connection in the process."""
    handshake: Handshake
    dedup: DedupStore
    last_seen: LastSeenStore
    peers: PeerRegistry
    extractor: ContentExtractor
    pipeline: ReplyPipeline
    status_signal: Signal[StatusEvent]
    ws_connect: SocketFactory = default_ws_connect
    rand: Callable[[float, float], float] = random.uniform
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep


@dataclass
class InboundStats:
    received: int = 0
    processed: int = 0
    skipped: int = 0


class DingTalkConnection:
    """单个账号的 Stream 连接。"""

    def __init__(self, config: DingTalkAccountConfig, ctx: ConnectionContext):
        self._config = config
        self.ctx = ctx
        self.stats = InboundStats()

        self._status = ConnectionStatus.DISCONNECTED
        self._detail: Optional[str] = None
        self._ws: Optional[StreamSocket] = None
        self._reader_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._background_tasks: set[asyncio.Task] = set()
        self._stopped = True
        self._ever_connected = False
        self.reconnect_attempts = 0

        self._dispatcher = FrameDispatcher(
            send=self._send_frame,
            on_message=self._on_message,
            label=self.label,
        )

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def account_id(self) -> str:
        return self._config.account_id

    @property
    def label(self) -> str:
        return f"dingtalk:{self._config.account_id}"

    @property
    def config(self) -> DingTalkAccountConfig:
        return self._config

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    @property
    def detail(self) -> Optional[str]:
        return self._detail

    @property
    def has_pending_reconnect(self) -> bool:
        return self._reconnect_task is not None and not self._reconnect_task.done()

    def update_config(self, config: DingTalkAccountConfig) -> None:
        """整体替换配置快照，不重连。后续消息使用新配置。"""
        if config.account_id != self._config.account_id:
            raise ValueError(f"account_id mismatch: {config.account_id} != {self._config.account_id}")
        self._config = config
        logger.info(f"[{self.label}] Config updated")

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """建立首次连接。

        Raises:
            HandshakeError: 网关握手失败
            WebSocketException / OSError: WebSocket 打不开
        """
        self._stopped = False
        self._ever_connected = False
        self.reconnect_attempts = 0
        try:
            await self._connect()
        except Exception as e:
            self._stopped = True
            self._cancel_reconnect()
            self._set_status(ConnectionStatus.ERROR, str(e))
            raise

    async def stop(self) -> None:
        """手动停止：取消重连定时器、关闭 socket、取消进行中的处理任务。"""
        self._stopped = True
        self._cancel_reconnect()

        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except (WebSocketException, OSError) as e:
                logger.debug(f"[{self.label}] Error closing socket: {e}")

        reader, self._reader_task = self._reader_task, None
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            await asyncio.gather(reader, return_exceptions=True)

        if self._background_tasks:
            tasks = list(self._background_tasks)
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        self._set_status(ConnectionStatus.DISCONNECTED)
        logger.info(f"[{self.label}] Stopped")

    async def _connect(self) -> None:
        self._set_status(ConnectionStatus.CONNECTING)
        endpoint = await self.ctx.handshake(self._config)
        logger.debug(f"[{self.label}] Gateway OK, opening socket")
        ws = await self.ctx.ws_connect(endpoint.url)

        if self._stopped:
            # 握手期间被手动停止
            await ws.close()
            return

        self._ws = ws
        self._ever_connected = True
        self.reconnect_attempts = 0
        self._set_status(ConnectionStatus.CONNECTED)
        logger.info(f"[{self.label}] Connected")
        self._reader_task = asyncio.create_task(self._read_loop(ws))

    async def _read_loop(self, ws: StreamSocket) -> None:
        detail = "socket closed"
        try:
            async for raw in ws:
                if isinstance(raw, bytes):
                    raw = raw.decode("utf-8", errors="replace")
                await self._dispatcher.dispatch(raw)
        except ConnectionClosed as e:
            detail = f"code={e.rcvd.code if e.rcvd else 'none'}"
        except (WebSocketException, OSError) as e:
            detail = str(e)
        finally:
            if self._ws is ws:
                self._ws = None

        logger.info(f"[{self.label}] WebSocket closed ({detail})")
        if not self._stopped and self._ever_connected:
            self._set_status(ConnectionStatus.ERROR, f"连接断开 ({detail})，正在重连…")
            self._schedule_reconnect()

    # ------------------------------------------------------------------
    # Reconnect
    # ------------------------------------------------------------------

    def _schedule_reconnect(self) -> None:
        if self._stopped:
            return

        cfg = self._config
        if self.reconnect_attempts >= cfg.max_connection_attempts:
            self._set_status(
                ConnectionStatus.ERROR,
                f"已达最大重连次数 ({cfg.max_connection_attempts})，请手动重新连接",
            )
            logger.error(f"[{self.label}] Giving up after {self.reconnect_attempts} reconnect attempts")
            return

        delay = compute_reconnect_delay(
            self.reconnect_attempts,
            cfg.initial_reconnect_delay,
            cfg.max_reconnect_delay,
            cfg.reconnect_jitter,
            rand=self.ctx.rand,
        )
        self.reconnect_attempts += 1
        logger.info(
            f"[{self.label}] Reconnect attempt {self.reconnect_attempts}/{cfg.max_connection_attempts} "
            f"in {delay:.0f}ms"
        )
        self._reconnect_task = asyncio.create_task(self._reconnect_after(delay))

    async def _reconnect_after(self, delay_ms: float) -> None:
        await self.ctx.sleep(delay_ms / 1000)
        if self._stopped:
            return
        try:
            await self._connect()
        except Exception as e:
            logger.error(f"[{self.label}] Reconnect failed: {e}")
            if not self._stopped:
                self._set_status(ConnectionStatus.ERROR, str(e))
                self._schedule_reconnect()

    def _cancel_reconnect(self) -> None:
        task, self._reconnect_task = self._reconnect_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def _send_frame(self, raw: str) -> None:
        if self._ws is None:
            raise NotConnectedError("socket is not open")
        await self._ws.send(raw)

    def _on_message(self, message: InboundMessage) -> None:
        """同步部分：登记、计数、去重。通过的消息交给后台任务处理。"""
        account_id = self._config.account_id

        if message.conversation_id:
            self.ctx.peers.register(message.conversation_id)
        if message.sender:
            self.ctx.peers.register(message.sender)

        target = message.proactive_target
        if target:
            self.ctx.last_seen.record(account_id, target, message.is_group)

        self.stats.received += 1

        key = DedupStore.make_key(account_id, message.msg_id) if message.msg_id else None
        if key is not None and not self.ctx.dedup.should_process(key):
            self.stats.skipped += 1
            logger.info(f"[{self.label}] Duplicate skipped: {message.msg_id}")
            return

        task = asyncio.create_task(self._process(message, key))
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _process(self, message: InboundMessage, key: Optional[str]) -> None:
        account = self._config
        pipeline = self.ctx.pipeline
        try:
            if not is_allowed(message, account):
                return

            if pipeline.webhook_expired(message):
                logger.warning(f"[{self.label}] sessionWebhook expired, skipping message")
                return

            try:
                extracted = await self.ctx.extractor.extract(message, account)
            except Exception as e:
                logger.error(f"[{self.label}] Content extraction error: {e}")
                extracted = ExtractedContent(text="[消息处理失败]")

            text = extracted.with_path_notes()
            if not text:
                return
            logger.info(f"[{self.label}] Message ({message.msgtype}): {text[:100]}")

            if is_myid_command(extracted.text):
                await pipeline.reply_identity(message, account)
                return

            self.stats.processed += 1
            logger.debug(
                f"[{self.label}] Processing (rcv={self.stats.received} "
                f"proc={self.stats.processed} skip={self.stats.skipped})"
            )
            try:
                await pipeline.handle(message, account, text)
            except asyncio.CancelledError:
                raise
            except ReplyAbortedError as e:
                logger.error(f"[{self.label}] Reply generation error (apology shown in card): {e}")
            except Exception as e:
                logger.error(f"[{self.label}] Reply generation error: {e}")
                await pipeline.send_apology(message, account)
        finally:
            if key is not None:
                self.ctx.dedup.release(key)

    async def wait_idle(self) -> None:
        """等待当前所有入站处理任务结束。"""
        if self._background_tasks:
            await asyncio.gather(*list(self._background_tasks), return_exceptions=True)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def _set_status(self, status: ConnectionStatus, detail: Optional[str] = None) -> None:
        self._status = status
        self._detail = detail
        self.ctx.status_signal.publish(StatusEvent(
            account_id=self._config.account_id,
            status=status,
            detail=detail,
        ))

    def __repr__(self) -> str:
        return f"<DingTalkConnection {self.account_id} status={self._status.value}>"
