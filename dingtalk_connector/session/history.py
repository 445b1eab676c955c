"""Per-account short-term conversation history."""

from collections import deque
from typing import Literal

from dingtalk_connector.engine.runner import HistoryTurn


MAX_TURNS = 10
"""Kept user/assistant pairs per account"""


class ConversationHistory:
    """Bounded ring of the last ``max_turns`` user/assistant pairs."""

    def __init__(self, max_turns: int = MAX_TURNS):
        self.max_turns = max_turns
        self._turns: deque[HistoryTurn] = deque(maxlen=max_turns * 2)

    def append(self, role: Literal["user", "assistant"], content: str) -> None:
        self._turns.append(HistoryTurn(role=role, content=content))

    def turns(self) -> list[HistoryTurn]:
        return list(self._turns)

    @property
    def turn_count(self) -> int:
        """Completed exchanges currently held (user + assistant = 1)."""
        return len(self._turns) // 2

    def clear(self) -> None:
        self._turns.clear()

    def __len__(self) -> int:
        return len(self._turns)


class HistoryStore:
    """account_id -> ConversationHistory"""

    def __init__(self, max_turns: int = MAX_TURNS):
        self.max_turns = max_turns
        self._by_account: dict[str, ConversationHistory] = {}

    def get(self, account_id: str) -> ConversationHistory:
        history = self._by_account.get(account_id)
        if history is None:
            history = ConversationHistory(self.max_turns)
            self._by_account[account_id] = history
        return history
