"""Utility functions for dingtalk-connector."""

import socket
from pathlib import Path


def get_home_dir() -> Path:
    """Get the dingtalk-connector home directory."""
    return Path.home() / ".dingtalk-connector"


def get_data_dir() -> Path:
    """Get the data directory."""
    data_dir = get_home_dir() / "data"
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir


def get_sessions_dir() -> Path:
    """Get the sessions directory."""
    sessions = get_data_dir() / "sessions"
    sessions.mkdir(parents=True, exist_ok=True)
    return sessions


def get_media_dir() -> Path:
    """Get the media directory."""
    media = get_data_dir() / "media"
    media.mkdir(parents=True, exist_ok=True)
    return media


def get_local_ip() -> str:
    """Best-effort local IPv4 address, reported to the gateway on handshake."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        # UDP connect sends nothing; it only selects the outbound interface
        sock.connect(("8.8.8.8", 80))
        return sock.getsockname()[0]
    except OSError:
        return "127.0.0.1"
    finally:
        sock.close()
