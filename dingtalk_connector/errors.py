"""Exception hierarchy for dingtalk-connector."""

from typing import Any, Optional


class DingTalkError(Exception):
    """钉钉连接器错误基类。"""
    pass


class HandshakeError(DingTalkError):
    """网关握手失败（获取 endpoint/ticket 失败）。"""

    def __init__(self, message: str, code: Optional[str] = None, status: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.status = status


class TokenError(DingTalkError):
    """Access Token 获取失败。"""
    pass


class DingTalkAPIError(DingTalkError):
    """钉钉开放平台接口返回错误。"""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        code: Optional[str] = None,
        body: Any = None,
    ):
        super().__init__(message)
        self.status = status
        self.code = code
        self.body = body


class MediaError(DingTalkError):
    """媒体上传/下载/压缩失败。"""
    pass


class CardError(DingTalkError):
    """AI Card 创建或流式更新失败。"""
    pass


class NoTargetError(DingTalkError):
    """主动推送没有可用的接收者。"""
    pass


class NotConnectedError(DingTalkError):
    """账号没有处于连接池中。"""
    pass


class RunnerError(DingTalkError):
    """Agent runner 执行失败。"""
    pass


class RunnerTimeoutError(RunnerError):
    """Agent runner 超时。"""
    pass


class ReplyAbortedError(RunnerError):
    """回复生成失败，且已在卡片中告知用户。"""
    pass
