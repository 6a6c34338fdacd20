"""
Presence registry: which live connection currently represents an identity.
"""

import threading
from typing import Any, Dict, List, Optional


class PresenceRegistry:
    """
    Maps identity id -> the single live connection handle.

    The last registration for an identity wins. Superseded connections are
    not closed or tracked. All access goes through one lock so each
    connection event is a single atomic mutation.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._connections: Dict[str, Any] = {}

    def register(self, identity_id: str, connection: Any):
        """Point identity_id at connection, replacing any previous handle"""
        with self._lock:
            self._connections[identity_id] = connection

    def unregister(self, connection: Any) -> List[str]:
        """
        Drop every identity whose current handle is exactly this connection.

        A stale connection closing after being superseded removes nothing.

        Returns:
            Identity ids that went offline
        """
        with self._lock:
            removed = [uid for uid, conn in self._connections.items() if conn is connection]
            for uid in removed:
                del self._connections[uid]
        return removed

    def lookup(self, identity_id: str) -> Optional[Any]:
        """Current connection for identity_id, or None if offline"""
        with self._lock:
            return self._connections.get(identity_id)

    def is_online(self, identity_id: str) -> bool:
        return self.lookup(identity_id) is not None

    def online_identities(self) -> List[str]:
        with self._lock:
            return list(self._connections.keys())

    def __len__(self) -> int:
        with self._lock:
            return len(self._connections)
