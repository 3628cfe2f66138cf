"""
Tracked database connections.

``SQLAlchemy`` is a drop-in replacement for the Flask-SQLAlchemy
extension.  Every engine it creates gets exactly one ``Connection``
handle, and the ORM session runs all of its work for that engine on the
handle's pinned ``sqlalchemy.Connection``.  Opening and closing handles is
published on the process-wide ``registry`` so watchers can track the
connections a test touches and wrap them in transactions.

Usage in an application's ``extensions.py``::

    from testbed.db import SQLAlchemy

    db = SQLAlchemy()

ORM sessions join an already running transaction with a SAVEPOINT
(``join_transaction_mode="create_savepoint"``), so an application
``commit()`` inside a harness-managed transaction only releases a
savepoint and the outer transaction can still be rolled back.
"""

import json
import logging
import weakref

import sqlalchemy as sa
from flask import Flask, current_app
from flask_sqlalchemy import SQLAlchemy as _FlaskSQLAlchemy
from flask_sqlalchemy.session import Session as _FlaskSession
from sqlalchemy import event, orm

logger = logging.getLogger(__name__)

# Engine options that never change which database a connection talks to.
_TRIVIAL_OPTIONS = frozenset({"url", "echo", "echo_pool"})


class ConnectionRegistry:
    """
    Publishes connection open/close events to subscribed listeners.

    Listeners implement ``connection_opened(connection)`` and, optionally,
    ``connection_closed(connection)``.  They are notified synchronously,
    in subscription order.
    """

    def __init__(self):
        self._listeners: list = []
        self._open: list["Connection"] = []

    def subscribe(self, listener) -> None:
        if listener not in self._listeners:
            self._listeners.append(listener)

    def unsubscribe(self, listener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def active(self) -> list["Connection"]:
        """Handles that are currently open, in the order they were opened."""
        return list(self._open)

    def notify_opened(self, connection: "Connection") -> None:
        if connection not in self._open:
            self._open.append(connection)
        for listener in list(self._listeners):
            listener.connection_opened(connection)

    def notify_closed(self, connection: "Connection") -> None:
        if connection in self._open:
            self._open.remove(connection)
        for listener in list(self._listeners):
            callback = getattr(listener, "connection_closed", None)
            if callback is not None:
                callback(connection)


# Process-wide registry used by every Connection unless told otherwise.
registry = ConnectionRegistry()


class Connection:
    """
    A database connection handle bound to one engine.

    The handle pins at most one ``sqlalchemy.Connection`` at a time.  It
    may instead *adopt* the pinned connection of another handle, in which
    case both share the same transaction and only the owner really closes
    it.

    Attributes:
        engine:  The SQLAlchemy engine the handle connects through.
        name:    Bind key the engine was configured under (``default`` for
                 the main database).
        options: Engine options other than the URL and echo flags.
    """

    def __init__(
        self,
        engine: sa.engine.Engine,
        name: str = "default",
        options: dict | None = None,
        connection_registry: ConnectionRegistry | None = None,
    ):
        self.engine = engine
        self.name = name
        self.options = {
            key: value
            for key, value in (options or {}).items()
            if key not in _TRIVIAL_OPTIONS
        }
        self._registry = connection_registry or registry
        self._connection: sa.engine.Connection | None = None
        self._owner = True

    def __repr__(self) -> str:
        return f"<Connection {self.name} {self.safe_dsn}>"

    # -- Identity -----------------------------------------------------------

    @property
    def dsn(self) -> str:
        """Full database URL, password included."""
        return self.engine.url.render_as_string(hide_password=False)

    @property
    def safe_dsn(self) -> str:
        """Database URL suitable for log output."""
        return self.engine.url.render_as_string(hide_password=True)

    @property
    def key(self) -> str:
        """Canonical (dsn, options) identity used to share transactions."""
        return json.dumps([self.dsn, self.options], sort_keys=True, default=repr)

    # -- State --------------------------------------------------------------

    @property
    def connection(self) -> sa.engine.Connection | None:
        """The pinned SQLAlchemy connection, or None while closed."""
        return self._connection

    @property
    def is_active(self) -> bool:
        return self._connection is not None and not self._connection.closed

    # -- Operations -----------------------------------------------------------

    def open(self) -> sa.engine.Connection:
        """
        Return the pinned connection, connecting first if needed.

        Listeners are notified after the connection exists and before it
        is returned, so a listener may begin a transaction on it or
        replace it with a shared one via ``adopt()``.
        """
        if self.is_active:
            return self._connection

        self._connection = self.engine.connect()
        self._owner = True
        logger.debug("Opened connection %s (%s)", self.name, self.safe_dsn)
        self._registry.notify_opened(self)
        return self._connection

    def adopt(self, other: "Connection") -> None:
        """Share the pinned connection (and its transaction) of ``other``."""
        if other is self or other.connection is self._connection:
            return
        if self._owner and self.is_active:
            self._connection.close()
        self._connection = other.connection
        self._owner = False
        logger.debug("Connection %s now shares %s", self.name, other.name)

    def close(self) -> None:
        """Close the handle.  Closing a closed handle does nothing."""
        if self._connection is None:
            return
        if self._owner and not self._connection.closed:
            self._connection.close()
        self._connection = None
        self._owner = True
        logger.debug("Closed connection %s (%s)", self.name, self.safe_dsn)
        self._registry.notify_closed(self)


# =========================================================================
# Flask-SQLAlchemy integration
# =========================================================================


class Session(_FlaskSession):
    """Flask-SQLAlchemy session that works on the tracked connections."""

    def get_bind(self, mapper=None, clause=None, bind=None, **kwargs):
        bind = super().get_bind(mapper=mapper, clause=clause, bind=bind, **kwargs)
        if isinstance(bind, sa.engine.Engine):
            return self._db.connection_for(bind).open()
        return bind


def _enable_sqlite_savepoints(engine: sa.engine.Engine) -> None:
    """
    Let pysqlite handle SAVEPOINT inside an outer transaction.

    The driver's own transaction handling is switched off and BEGIN is
    emitted explicitly whenever SQLAlchemy starts a transaction.
    """

    @event.listens_for(engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):  # pylint: disable=unused-argument
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _emit_begin(conn):
        conn.exec_driver_sql("BEGIN")


class SQLAlchemy(_FlaskSQLAlchemy):
    """
    Flask-SQLAlchemy extension whose engines are tracked by ``registry``.

    Accepts the same arguments as ``flask_sqlalchemy.SQLAlchemy``.  The
    session class and join mode default to the tracked ``Session`` and
    ``create_savepoint``.
    """

    def __init__(self, app: Flask | None = None, *, session_options: dict | None = None, **kwargs):
        session_options = dict(session_options or {})
        session_options.setdefault("class_", Session)
        session_options.setdefault("join_transaction_mode", "create_savepoint")
        # Populated by _make_engine(), which init_app() may call right away.
        self._app_connections: weakref.WeakKeyDictionary[Flask, dict[str | None, Connection]] = (
            weakref.WeakKeyDictionary()
        )
        super().__init__(app, session_options=session_options, **kwargs)

    def _make_engine(self, bind_key, options, app):
        engine = super()._make_engine(bind_key, options, app)
        if engine.dialect.name == "sqlite":
            _enable_sqlite_savepoints(engine)
        connections = self._app_connections.setdefault(app, {})
        connections[bind_key] = Connection(
            engine, name=bind_key or "default", options=options
        )
        return engine

    def connections(self) -> dict[str | None, Connection]:
        """Connection handles of the current app, keyed by bind key."""
        app = current_app._get_current_object()  # pylint: disable=protected-access
        return dict(self._app_connections.get(app, {}))

    def connection(self, bind_key: str | None = None) -> Connection:
        """
        Return the connection handle for a bind key of the current app.

        Raises:
            KeyError: If the bind key is not configured.
        """
        connections = self.connections()
        if bind_key not in connections:
            raise KeyError(f"Bind key '{bind_key}' is not in 'SQLALCHEMY_BINDS' config.")
        return connections[bind_key]

    def connection_for(self, engine: sa.engine.Engine) -> Connection:
        """Return the handle that wraps ``engine``."""
        for connection in self.connections().values():
            if connection.engine is engine:
                return connection
        raise RuntimeError(f"Engine {engine!r} was not created by this extension.")

    def open_session(self, bind_key: str | None = None) -> orm.Session:
        """
        Plain ORM session on the pinned connection of ``bind_key``.

        Used by fixtures to write data outside the application's scoped
        session.  The caller is responsible for closing it.
        """
        return orm.Session(
            bind=self.connection(bind_key).open(),
            join_transaction_mode="create_savepoint",
        )
