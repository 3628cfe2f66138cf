"""
Transaction forcer.

Wraps every connection opened during a test in a transaction that is
rolled back when the test ends.  Handles to the same database with the
same options share one transaction, so data written through one of them
is visible through the others.
"""

import sqlalchemy as sa

from testbed.connector.watcher import ConnectionWatcher
from testbed.db import Connection, ConnectionRegistry
from testbed.exceptions import CollisionError


class TransactionForcer(ConnectionWatcher):
    """
    Begins a transaction on each newly observed connection.

    Args:
        ignore_colliding_dsn: When two handles point at the same DSN with
            different options, reuse the first-seen connection instead of
            raising ``CollisionError``.
    """

    def __init__(
        self,
        ignore_colliding_dsn: bool = False,
        connection_registry: ConnectionRegistry | None = None,
    ):
        super().__init__(connection_registry)
        self.ignore_colliding_dsn = ignore_colliding_dsn
        # key -> (owner handle, pinned connection, transaction)
        self._transactions: dict[
            str, tuple[Connection, sa.engine.Connection, sa.engine.Transaction]
        ] = {}
        # dsn -> key of the first handle seen for that dsn
        self._dsn_keys: dict[str, str] = {}

    def start(self) -> None:
        super().start()
        for connection in self._registry.active():
            self._force(connection)

    def connection_opened(self, connection: Connection) -> None:
        super().connection_opened(connection)
        self._force(connection)

    def _owner_for(self, key: str) -> Connection | None:
        """The live handle that owns the transaction for ``key``."""
        entry = self._transactions.get(key)
        if entry is None:
            return None
        owner, pinned, _ = entry
        if owner.is_active and owner.connection is pinned:
            return owner
        return None

    def _force(self, connection: Connection) -> None:
        key = connection.key
        owner = self._owner_for(key)
        if owner is not None:
            if owner is not connection:
                self.debug(f"Reusing connection for {connection.safe_dsn}")
                connection.adopt(owner)
            return

        first_key = self._dsn_keys.setdefault(connection.dsn, key)
        if first_key != key:
            if not self.ignore_colliding_dsn:
                raise CollisionError(connection.safe_dsn)
            first_owner = self._owner_for(first_key)
            if first_owner is not None:
                self.debug(f"Ignoring colliding DSN, reusing connection for {connection.safe_dsn}")
                connection.adopt(first_owner)
                return

        pinned = connection.connection
        if pinned.in_transaction():
            transaction = pinned.get_transaction()
        else:
            transaction = pinned.begin()
        self._transactions[key] = (connection, pinned, transaction)
        self.debug(f"Transaction started for: {connection.safe_dsn}")

    def rollback_all(self) -> None:
        """
        Roll back every forced transaction and forget them.

        Transactions whose connection was closed, or which already ended,
        are skipped.  Calling this twice is harmless.
        """
        for connection, pinned, transaction in self._transactions.values():
            if pinned.closed or not transaction.is_active:
                self.debug(f"Skipping closed connection {connection.safe_dsn}")
                continue
            transaction.rollback()
            self.debug(f"Transaction cancelled; all changes reverted for {connection.safe_dsn}")
        self._transactions = {}
        self._dsn_keys = {}
