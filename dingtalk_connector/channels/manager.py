"""连接池。

每个账号至多一条活动连接。``start`` 会先停掉同账号的旧连接再新建；首次
连接失败时把账号移出连接池并把异常抛给调用方。
"""

import asyncio
from typing import Optional

from loguru import logger

from dingtalk_connector.bus.events import ConnectionStatus, StatusEvent
from dingtalk_connector.channels.connection import ConnectionContext, DingTalkConnection
from dingtalk_connector.config.schema import DingTalkAccountConfig
from dingtalk_connector.errors import NotConnectedError


class ConnectionManager:
    """连接管理器 - 管理所有账号连接的生命周期。

    Attributes:
        ctx: 所有连接共享的协作者
        _connections: account_id -> 连接
    """

    def __init__(self, ctx: ConnectionContext):
        self.ctx = ctx
        self._connections: dict[str, DingTalkConnection] = {}

    def get(self, account_id: str) -> Optional[DingTalkConnection]:
        return self._connections.get(account_id)

    def get_config(self, account_id: str) -> Optional[DingTalkAccountConfig]:
        conn = self._connections.get(account_id)
        return conn.config if conn else None

    def account_ids(self) -> list[str]:
        return list(self._connections)

    def get_status(self, account_id: str) -> ConnectionStatus:
        """最近一次已知状态。不在连接池中视为 disconnected。"""
        conn = self._connections.get(account_id)
        return conn.status if conn else ConnectionStatus.DISCONNECTED

    async def start(self, config: DingTalkAccountConfig) -> DingTalkConnection:
        """启动账号连接。

        Raises:
            HandshakeError: 首次握手失败（账号已移出连接池）
        """
        account_id = config.account_id
        if account_id in self._connections:
            logger.info(f"[dingtalk:{account_id}] Replacing existing connection")
            await self.stop(account_id)

        conn = DingTalkConnection(config, self.ctx)
        self._connections[account_id] = conn
        try:
            await conn.start()
        except Exception as e:
            if self._connections.get(account_id) is conn:
                del self._connections[account_id]
            logger.error(f"[dingtalk:{account_id}] Failed to start: {e}")
            raise
        return conn

    async def stop(self, account_id: str) -> None:
        """停止账号连接。账号不在连接池中时同样发布 disconnected。"""
        conn = self._connections.pop(account_id, None)
        if conn is None:
            self.ctx.status_signal.publish(StatusEvent(
                account_id=account_id,
                status=ConnectionStatus.DISCONNECTED,
            ))
            return
        await conn.stop()

    def update_config(self, config: DingTalkAccountConfig) -> None:
        """替换账号配置快照而不重连。

        Raises:
            NotConnectedError: 账号不在连接池中
        """
        conn = self._connections.get(config.account_id)
        if conn is None:
            raise NotConnectedError(f"钉钉 Bot ({config.account_id}) 未连接")
        conn.update_config(config)

    async def start_all(self, accounts: list[DingTalkAccountConfig]) -> dict[str, Optional[Exception]]:
        """并发启动多个账号。一个账号失败不影响其他账号。

        Returns:
            account_id -> 启动异常（成功为 None）
        """
        results = await asyncio.gather(
            *(self.start(account) for account in accounts),
            return_exceptions=True,
        )
        outcome: dict[str, Optional[Exception]] = {}
        for account, result in zip(accounts, results):
            outcome[account.account_id] = result if isinstance(result, Exception) else None
        return outcome

    async def stop_all(self) -> None:
        for account_id in list(self._connections):
            try:
                await self.stop(account_id)
            except Exception as e:
                logger.error(f"[dingtalk:{account_id}] Error stopping connection: {e}")

    def __repr__(self) -> str:
        statuses = {aid: conn.status.value for aid, conn in self._connections.items()}
        return f"<ConnectionManager connections={statuses}>"
