"""Utilities module."""

from dingtalk_connector.utils.helpers import (
    get_home_dir,
    get_data_dir,
    get_sessions_dir,
    get_media_dir,
    get_local_ip,
)

__all__ = [
    "get_home_dir",
    "get_data_dir",
    "get_sessions_dir",
    "get_media_dir",
    "get_local_ip",
]
