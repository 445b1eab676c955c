"""Case-preserving registry of peer ids.

DingTalk conversation ids are case-sensitive base64 strings. Callers of the
proactive API may hand back ids that were lowercased somewhere along the way,
so the original spelling of every id seen inbound is remembered.
"""


class PeerRegistry:

    def __init__(self) -> None:
        self._by_lower: dict[str, str] = {}

    def register(self, original_id: str) -> None:
        if original_id:
            self._by_lower[original_id.lower()] = original_id

    def resolve(self, peer_id: str) -> str:
        if not peer_id:
            return peer_id
        return self._by_lower.get(peer_id.lower(), peer_id)
