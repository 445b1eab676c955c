"""Configuration loader for dingtalk-connector."""

import json
from pathlib import Path
from typing import Optional

from pydantic import ValidationError
from loguru import logger

from dingtalk_connector.config.schema import Config
from dingtalk_connector.utils.helpers import get_home_dir


def get_config_path() -> Path:
    """Get the configuration file path."""
    return get_home_dir() / "config.json"


def load_config(config_path: Optional[Path] = None, auto_create: bool = True) -> Config:
    """
    Load configuration from file.

    Args:
        config_path: Optional path to config file. If not provided,
                     uses the default path.
        auto_create: If True, create default config file when not exists.

    Returns:
        Config object.
    """
    if config_path is None:
        config_path = get_config_path()

    if config_path.exists():
        try:
            with open(config_path, "r", encoding="utf-8") as f:
                data = json.load(f)
            accounts = data.get("accounts", [])
            # 只接受 dingtalk 平台的账号，其它平台的变体由各自的连接器处理
            data["accounts"] = [
                a for a in accounts
                if isinstance(a, dict) and a.get("platform", "dingtalk") == "dingtalk"
            ]
            skipped = len(accounts) - len(data["accounts"])
            if skipped:
                logger.warning(f"Ignored {skipped} non-dingtalk account(s) in {config_path}")
            config = Config(**data)
            logger.info(f"Loaded config from {config_path}")
            return config
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning(f"Invalid config file: {e}. Using defaults.")
    else:
        logger.info("No config file found. Creating default config.")
        config = Config()
        if auto_create:
            _create_default_config(config_path)
        return config

    return Config()


def _create_default_config(config_path: Path) -> None:
    """创建默认配置文件。"""
    config_path.parent.mkdir(parents=True, exist_ok=True)

    default_config = {
        "accounts": [
            {
                "platform": "dingtalk",
                "account_id": "default",
                "name": "DingTalk Bot",
                "app_key": "",
                "app_secret": "",
                "robot_code": "",
                "provider": "claude",
                "message_type": "markdown",
                "card_template_id": "",
                "card_template_key": "msgContent",
                "dm_policy": "open",
                "group_policy": "open",
                "allow_from": [],
                "max_connection_attempts": 10,
                "initial_reconnect_delay": 1000,
                "max_reconnect_delay": 60000,
                "reconnect_jitter": 0.3,
                "owner_staff_ids": []
            }
        ],
        "runner": {
            "claude_path": "claude",
            "codex_path": "codex",
            "timeout": 300,
            "workspace": str(get_home_dir() / "workspace")
        },
        "http_timeout": 30.0,
        "log_level": "INFO",
        "log_file": ""
    }

    with open(config_path, "w", encoding="utf-8") as f:
        json.dump(default_config, f, indent=2, ensure_ascii=False)

    logger.info(f"Created default config at {config_path}")


def save_config(config: Config, config_path: Optional[Path] = None) -> None:
    """
    Save configuration to file.

    Args:
        config: Config object to save.
        config_path: Optional path to config file. If not provided,
                     uses the default path.
    """
    if config_path is None:
        config_path = get_config_path()

    config_path.parent.mkdir(parents=True, exist_ok=True)

    with open(config_path, "w", encoding="utf-8") as f:
        json.dump(config.model_dump(), f, indent=2, ensure_ascii=False)

    logger.info(f"Saved config to {config_path}")
