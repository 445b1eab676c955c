"""配置 schema for dingtalk-connector。

参考: https://open.dingtalk.com/document/orgapp/the-application-robot-in-the-enterprise-sends-a-single-chat-message
"""

from pathlib import Path
from typing import Literal, Optional

from pydantic import BaseModel, Field
from pydantic_settings import BaseSettings


AccessPolicy = Literal["open", "allowlist"]


# ============================================================================
# 账号配置
# ============================================================================

class DingTalkAccountConfig(BaseModel):
    """单个钉钉机器人账号的配置快照。

    每个连接持有一份不可变快照，可以整体替换而无需重连。
    """
    model_config = {"extra": "ignore", "frozen": True}

    platform: Literal["dingtalk"] = "dingtalk"
    """平台标签，宿主应用用它区分不同平台的配置变体"""

    account_id: str
    name: str = "DingTalk Bot"

    # 凭证
    app_key: str = ""
    app_secret: str = ""
    robot_code: str = ""  # Card API / 媒体下载使用，默认与 app_key 相同
    corp_id: str = ""
    agent_id: str = ""

    # 身份 / 人设
    persona: str = ""
    core_values: str = ""
    relationship: str = ""
    guidelines: str = ""

    # 回复生成
    provider: Literal["claude", "codex"] = "claude"
    model: str = ""
    default_cwd: str = ""

    # 回复方式
    message_type: Literal["markdown", "card"] = "markdown"
    card_template_id: str = ""  # AI Card 模板 ID（流式输出需要）
    card_template_key: str = "msgContent"  # AI Card 内容字段名

    # 访问控制
    dm_policy: AccessPolicy = "open"
    group_policy: AccessPolicy = "open"
    allow_from: list[str] = Field(default_factory=list)
    """dm_policy=allowlist 时为 staffId，group_policy=allowlist 时为 conversationId"""

    # 重连参数
    max_connection_attempts: int = Field(default=10, ge=0)
    initial_reconnect_delay: int = Field(default=1000, ge=0)
    """毫秒"""
    max_reconnect_delay: int = Field(default=60_000, ge=0)
    """毫秒"""
    reconnect_jitter: float = Field(default=0.3, ge=0.0, le=1.0)

    # 主动推送的默认接收者
    owner_staff_ids: list[str] = Field(default_factory=list)

    @property
    def effective_robot_code(self) -> str:
        return self.robot_code or self.app_key

    @property
    def use_card(self) -> bool:
        return self.message_type == "card" and bool(self.card_template_id)


# ============================================================================
# Runner 配置
# ============================================================================

class RunnerConfig(BaseModel):
    """Agent runner 配置（claude / codex 命令行）。"""
    model_config = {"extra": "ignore"}

    claude_path: str = "claude"
    codex_path: str = "codex"
    timeout: int = 300
    workspace: str = ""


# ============================================================================
# 主配置
# ============================================================================

class Config(BaseSettings):
    """dingtalk-connector 主配置。"""

    model_config = {
        "env_prefix": "DINGTALK_CONNECTOR_",
        "env_nested_delimiter": "__",
        "extra": "ignore",
    }

    accounts: list[DingTalkAccountConfig] = Field(default_factory=list)

    runner: RunnerConfig = Field(default_factory=RunnerConfig)

    http_timeout: float = 30.0
    """出站 HTTP 请求的总超时（秒）"""

    # 日志
    log_level: str = "INFO"
    log_file: str = ""

    def get_account(self, account_id: str) -> Optional[DingTalkAccountConfig]:
        for account in self.accounts:
            if account.account_id == account_id:
                return account
        return None

    def get_workspace(self) -> str:
        """获取 workspace 路径，默认为 ~/.dingtalk-connector/workspace"""
        if self.runner.workspace:
            return self.runner.workspace
        return str(Path.home() / ".dingtalk-connector" / "workspace")
