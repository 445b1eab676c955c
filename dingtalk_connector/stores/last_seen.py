"""Per-account record of conversations that have talked to the bot.

Used as the default audience for proactive sends when neither explicit
targets nor owner ids are available.
"""

import time
from dataclasses import dataclass
from typing import Callable


@dataclass
class LastSeenEntry:
    target: str
    """Staff id (private) or conversation id (group)."""
    is_group: bool
    last_seen_at: float


class LastSeenStore:
    """account_id -> {target -> LastSeenEntry}"""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._entries: dict[str, dict[str, LastSeenEntry]] = {}

    def record(self, account_id: str, target: str, is_group: bool) -> None:
        if not account_id or not target:
            return
        by_account = self._entries.setdefault(account_id, {})
        by_account[target] = LastSeenEntry(target=target, is_group=is_group, last_seen_at=self._clock())

    def targets(self, account_id: str) -> list[LastSeenEntry]:
        """All targets seen for the account, newest first."""
        by_account = self._entries.get(account_id)
        if not by_account:
            return []
        return sorted(by_account.values(), key=lambda e: e.last_seen_at, reverse=True)
