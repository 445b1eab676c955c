"""Stream Mode gateway handshake.

Exchanges app credentials for a one-time WebSocket endpoint and ticket. No
retries here; the connection decides whether a failure is fatal.
"""

from dataclasses import dataclass
from typing import Optional
from urllib.parse import urlencode

import httpx
from loguru import logger

from dingtalk_connector.errors import HandshakeError
from dingtalk_connector.gateway.tokens import DINGTALK_API
from dingtalk_connector.utils.helpers import get_local_ip


BOT_MESSAGE_TOPIC = "/v1.0/im/bot/messages/get"
USER_AGENT = "dingtalk-connector-python/0.1.0"

STREAM_MODE_HINT = "请确认钉钉应用已开启「机器人」能力并选择「Stream 模式」。"


@dataclass
class GatewayEndpoint:
    endpoint: str
    ticket: str

    @property
    def url(self) -> str:
        """WebSocket URL with the ticket appended as a query parameter."""
        sep = "&" if "?" in self.endpoint else "?"
        return f"{self.endpoint}{sep}{urlencode({'ticket': self.ticket})}"


async def open_connection(
    http: httpx.AsyncClient,
    client_id: str,
    client_secret: str,
    local_ip: Optional[str] = None,
) -> GatewayEndpoint:
    """
    Request a WebSocket endpoint from the gateway.

    Raises:
        HandshakeError: Non-2xx status, non-JSON body, an embedded error code,
            or a body without an endpoint.
    """
    payload = {
        "clientId": client_id,
        "clientSecret": client_secret,
        "subscriptions": [{"type": "CALLBACK", "topic": BOT_MESSAGE_TOPIC}],
        "ua": USER_AGENT,
        "localIp": local_ip or get_local_ip(),
    }

    try:
        resp = await http.post(f"{DINGTALK_API}/v1.0/gateway/connections/open", json=payload)
    except httpx.HTTPError as e:
        raise HandshakeError(f"网关请求失败: {e}") from e

    try:
        body = resp.json()
    except ValueError:
        raise HandshakeError(
            f"网关返回非 JSON 响应 (HTTP {resp.status_code}): {resp.text[:200]}",
            status=resp.status_code,
        )

    if not isinstance(body, dict):
        raise HandshakeError(f"网关返回格式错误 (HTTP {resp.status_code})", status=resp.status_code)

    if resp.status_code >= 400 or body.get("code") or not body.get("endpoint"):
        code = body.get("code") or str(resp.status_code)
        message = body.get("message") or body.get("errmsg") or resp.text[:200]
        raise HandshakeError(
            f"网关连接失败 [{code}]: {message}\n提示：{STREAM_MODE_HINT}",
            code=str(code),
            status=resp.status_code,
        )

    logger.debug(f"Gateway OK, endpoint={body['endpoint']}")
    return GatewayEndpoint(endpoint=body["endpoint"], ticket=body.get("ticket", ""))
