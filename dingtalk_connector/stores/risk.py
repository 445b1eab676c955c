"""Proactive-send risk registry.

A target whose proactive send failed with a permission-class error is marked
high risk for seven days and skipped by the proactive sender during that time.
A later successful send clears the entry.
"""

import time
from dataclasses import dataclass
from typing import Callable, Literal, Optional

from loguru import logger


PROACTIVE_RISK_TTL_SECONDS = 7 * 24 * 60 * 60

RiskLevel = Literal["low", "medium", "high"]

# 权限类错误码：机器人无权向该目标发消息
PERMISSION_ERROR_CODES = frozenset({
    "invalidParameter.userIds.invalid",
    "invalidParameter.userIds.empty",
    "invalidParameter.openConversationId.invalid",
    "invalidParameter.robotCode.empty",
})


def is_permission_error(code: Optional[str]) -> bool:
    """Whether an API error code means the bot lacks send rights to the target."""
    if not code:
        return False
    return code.startswith("Forbidden.AccessDenied") or code in PERMISSION_ERROR_CODES


@dataclass
class RiskEntry:
    level: RiskLevel
    reason: str
    observed_at: float


class RiskStore:
    """(account_id, target) -> RiskEntry with a fixed TTL."""

    def __init__(
        self,
        ttl: float = PROACTIVE_RISK_TTL_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl = ttl
        self._clock = clock
        self._entries: dict[str, RiskEntry] = {}

    @staticmethod
    def _key(account_id: str, target: str) -> str:
        return f"{account_id}:{target.strip()}"

    def record(self, account_id: str, target: str, reason: str, level: RiskLevel = "high") -> None:
        if not account_id or not target.strip():
            return
        self._entries[self._key(account_id, target)] = RiskEntry(
            level=level,
            reason=reason,
            observed_at=self._clock(),
        )
        logger.warning(f"Proactive risk recorded for {account_id}:{target} ({reason})")

    def get(self, account_id: str, target: str) -> Optional[RiskEntry]:
        """Return the live entry for the target, dropping it once expired."""
        if not account_id or not target.strip():
            return None
        key = self._key(account_id, target)
        entry = self._entries.get(key)
        if entry is None:
            return None
        if self._clock() - entry.observed_at > self.ttl:
            del self._entries[key]
            return None
        return entry

    def is_high_risk(self, account_id: str, target: str) -> bool:
        entry = self.get(account_id, target)
        return entry is not None and entry.level == "high"

    def clear(self, account_id: str, target: str) -> None:
        self._entries.pop(self._key(account_id, target), None)
