"""Process-wide keyed stores shared by every connection."""

from dingtalk_connector.stores.dedup import DedupStore
from dingtalk_connector.stores.last_seen import LastSeenEntry, LastSeenStore
from dingtalk_connector.stores.peers import PeerRegistry
from dingtalk_connector.stores.risk import RiskEntry, RiskStore, is_permission_error

__all__ = [
    "DedupStore",
    "LastSeenEntry",
    "LastSeenStore",
    "PeerRegistry",
    "RiskEntry",
    "RiskStore",
    "is_permission_error",
]
