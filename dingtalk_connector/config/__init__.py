"""Configuration module."""

from dingtalk_connector.config.schema import Config, DingTalkAccountConfig, RunnerConfig
from dingtalk_connector.config.loader import (
    get_config_path,
    load_config,
    save_config,
)

__all__ = [
    "Config",
    "DingTalkAccountConfig",
    "RunnerConfig",
    "get_config_path",
    "load_config",
    "save_config",
]
