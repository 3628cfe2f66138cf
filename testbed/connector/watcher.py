"""
Connection watcher.

Records every connection handle opened while the watcher is running so
the harness can close exactly those handles when a scope ends.
"""

import logging

from testbed import db
from testbed.db import Connection, ConnectionRegistry

logger = logging.getLogger(__name__)


class ConnectionWatcher:
    """
    Tracks connection handles opened between ``start()`` and ``stop()``.

    Handles that were already open at ``start()`` form the baseline and
    are not recorded.  A baseline handle that is closed during the scope
    leaves the baseline, so reopening it is recorded.  Watchers are
    independent and may be nested.
    """

    def __init__(self, connection_registry: ConnectionRegistry | None = None):
        self._registry = connection_registry or db.registry
        self._baseline: set[Connection] = set()
        self.connections: list[Connection] = []

    def start(self) -> None:
        self._baseline = set(self._registry.active())
        self._registry.subscribe(self)
        self.debug("watching new connections")

    def stop(self) -> None:
        self._registry.unsubscribe(self)
        self.debug("no longer watching new connections")

    def connection_opened(self, connection: Connection) -> None:
        if connection in self._baseline:
            return
        self.debug("Connection opened!")
        if connection not in self.connections:
            self.connections.append(connection)

    def connection_closed(self, connection: Connection) -> None:
        self._baseline.discard(connection)

    def close_all(self) -> None:
        """Close every recorded handle and forget them."""
        count = len(self.connections)
        self.debug(f"closing all ({count}) connections")
        for connection in self.connections:
            connection.close()
        self.connections = []

    def debug(self, message: str) -> None:
        logger.debug("[%s] %s", type(self).__name__, message)
