import threading
from typing import Protocol


class Tracked(Protocol):
    """
    anything the registry can hold: an identifier, a monotonic
    timestamp of the last time the peer showed signs of life, and a
    way to close it once evicted.
    """

    @property
    def connection_id(self) -> "str": ...

    @property
    def last_activity(self) -> "float": ...

    async def close(self, code: "int" = 1000, reason: "str" = "closed") -> "None": ...


class ConnectionRegistry:
    """
    ConnectionRegistry: Is a thread-safe, bounded set of live
    realtime connections.

    Registering past max_connections evicts the connection that has
    been idle the longest (oldest last_activity) and hands it back to
    the caller, who is responsible for closing it.
    """

    def __init__(self, max_connections: "int" = 1000) -> "None":
        self._lock: "threading.Lock" = threading.Lock()
        self._max = max_connections
        self._connections: "dict[str, Tracked]" = {}

    def __len__(self) -> "int":
        with self._lock:
            return len(self._connections)

    def __contains__(self, connection: "Tracked") -> "bool":
        with self._lock:
            return connection.connection_id in self._connections

    def register(self, connection: "Tracked") -> "Tracked | None":
        """
        adds a connection. Returns the evicted connection when the
        bound was exceeded, otherwise None.
        """
        with self._lock:
            self._connections[connection.connection_id] = connection
            if len(self._connections) <= self._max:
                return None

            candidates = [
                c
                for c in self._connections.values()
                if c.connection_id != connection.connection_id
            ]
            if not candidates:
                return None
            evicted = min(candidates, key=lambda c: c.last_activity)
            del self._connections[evicted.connection_id]
            return evicted

    def unregister(self, connection: "Tracked") -> "bool":
        """
        removes a connection. Returns False if it was not registered.
        """
        with self._lock:
            return self._connections.pop(connection.connection_id, None) is not None
