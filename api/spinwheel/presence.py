import logging
import threading
from typing import Dict, Set

logger = logging.getLogger(__name__)


class PresenceTracker:
    """
    Which end users currently hold at least one live socket.

    Process-local only: after a restart everybody is offline until they
    reconnect, and separate workers each see their own users. Connection
    ids must be unique per socket; registering the same id twice is not
    detected.
    """

    def __init__(self):
        self._connections: Dict[str, Set[str]] = {}
        self._lock = threading.Lock()

    def register(self, user_id, conn_id: str) -> bool:
        """Add a connection. Returns True when the user just came online."""
        key = str(user_id)
        with self._lock:
            conns = self._connections.setdefault(key, set())
            conns.add(conn_id)
            came_online = len(conns) == 1
        if came_online:
            logger.info("User %s online", key)
        return came_online

    def unregister(self, user_id, conn_id: str) -> bool:
        """Drop a connection. Returns True when the user just went offline."""
        key = str(user_id)
        with self._lock:
            conns = self._connections.get(key)
            if conns is None:
                return False
            conns.discard(conn_id)
            went_offline = not conns
            if went_offline:
                del self._connections[key]
        if went_offline:
            logger.info("User %s offline", key)
        return went_offline

    def is_online(self, user_id) -> bool:
        with self._lock:
            return str(user_id) in self._connections

    def count(self) -> int:
        with self._lock:
            return len(self._connections)
