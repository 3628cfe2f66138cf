"""
Fixtures and the fixtures store.

A fixture is an object that knows how to put a known piece of state into
place (``load``) and take it away again (``unload``).  A test declares
the fixtures it needs as a mapping of name to definition; a
``FixturesStore`` instantiates them, dependencies first, and runs their
hooks in a fixed order.

A definition is one of:

    - a ``Fixture`` subclass,
    - the name a fixture class was registered under with ``register()``
      or ``@fixture_type(...)``,
    - a dict ``{"class": <class or registered name>, **attributes}``
      whose other keys are set as attributes on the new instance.

Example::

    class UserFixture(ActiveFixture):
        model_class = User
        rows = {"admin": {"email": "admin@example.com", "name": "Admin"}}

    class PostFixture(ActiveFixture):
        model_class = Post
        depends = [UserFixture]

    store = FixturesStore({"posts": PostFixture})
    store.unload_fixtures()
    store.load_fixtures()
"""

import inspect
import json
import logging
import runpy
from collections.abc import Mapping
from pathlib import Path

import sqlalchemy as sa
from flask import current_app

from testbed.db import SQLAlchemy
from testbed.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

# -- Fixture type registry -------------------------------------------------
_FIXTURE_TYPES: dict[str, type] = {}


def register(name: str, fixture_class: type) -> type:
    """Make ``fixture_class`` addressable by ``name`` in definitions."""
    _FIXTURE_TYPES[name] = fixture_class
    return fixture_class


def fixture_type(name: str):
    """Class decorator form of ``register()``."""

    def decorator(fixture_class: type) -> type:
        return register(name, fixture_class)

    return decorator


def resolve_definition(definition, name: str) -> tuple[type, dict]:
    """
    Turn a fixture definition into ``(fixture class, attributes)``.

    Raises:
        ConfigurationError: Naming the fixture when the definition cannot
                            be resolved to a ``Fixture`` subclass.
    """
    attributes: dict = {}
    target = definition
    if isinstance(definition, Mapping):
        attributes = dict(definition)
        target = attributes.pop("class", None)
        if target is None:
            raise ConfigurationError(
                f"Fixture '{name}' definition has no 'class' entry.", field=name
            )

    if isinstance(target, str):
        if target not in _FIXTURE_TYPES:
            raise ConfigurationError(
                f"Fixture '{name}' refers to unknown fixture type '{target}'.",
                field=name,
            )
        target = _FIXTURE_TYPES[target]

    if not (isinstance(target, type) and issubclass(target, Fixture)):
        raise ConfigurationError(
            f"Fixture '{name}' must be a Fixture subclass, got {target!r}.",
            field=name,
        )
    return target, attributes


def _class_key(fixture_class: type) -> str:
    return f"{fixture_class.__module__}.{fixture_class.__qualname__}"


# =========================================================================
# Fixture types
# =========================================================================


class Fixture:
    """
    Base fixture: lifecycle hooks and declared dependencies.

    Attributes:
        depends: Fixture classes (or registered names) that must be
                 loaded before this one.
    """

    depends: list = []

    def __init__(self, **attributes):
        for key, value in attributes.items():
            if not hasattr(self, key):
                raise ConfigurationError(
                    f"{type(self).__name__} has no attribute '{key}'.", field=key
                )
            setattr(self, key, value)

    def before_load(self) -> None:
        pass

    def load(self) -> None:
        pass

    def after_load(self) -> None:
        pass

    def before_unload(self) -> None:
        pass

    def unload(self) -> None:
        pass

    def after_unload(self) -> None:
        pass


class _DataMixin:
    """Rows declared inline (``rows``) or in a ``data_file``."""

    rows: dict | None = None
    data_file: str | None = None

    def get_rows(self) -> dict:
        """
        Return the declared rows keyed by alias.

        ``data_file`` may be a ``.json`` file or a ``.py`` file defining
        ``DATA``; relative paths are resolved against the module that
        defines the fixture class.
        """
        if self.rows is not None:
            return dict(self.rows)
        if self.data_file is None:
            return {}

        path = Path(self.data_file)
        if not path.is_absolute():
            path = Path(inspect.getfile(type(self))).parent / path
        if not path.is_file():
            raise ConfigurationError(
                f"Data file '{path}' of {type(self).__name__} does not exist.",
                field="data_file",
            )
        if path.suffix == ".json":
            return json.loads(path.read_text(encoding="utf-8"))
        namespace = runpy.run_path(str(path))
        if "DATA" not in namespace:
            raise ConfigurationError(
                f"Data file '{path}' must define DATA.", field="data_file"
            )
        return dict(namespace["DATA"])


class ArrayFixture(_DataMixin, Fixture):
    """Plain data fixture; nothing is written anywhere."""

    def __init__(self, **attributes):
        self.data: dict = {}
        super().__init__(**attributes)

    def load(self) -> None:
        self.data = self.get_rows()

    def unload(self) -> None:
        self.data = {}

    def __getitem__(self, alias):
        return self.data[alias]

    def __iter__(self):
        return iter(self.data)

    def __len__(self) -> int:
        return len(self.data)


class DbFixture(Fixture):
    """
    Fixture that writes through a tracked database extension.

    ``db`` defaults to the current application's ``sqlalchemy``
    extension, which must be a ``testbed.db.SQLAlchemy``.
    """

    db: SQLAlchemy | None = None
    bind_key: str | None = None

    def __init__(self, **attributes):
        super().__init__(**attributes)
        if self.db is None:
            self.db = current_app.extensions.get("sqlalchemy")
        if not isinstance(self.db, SQLAlchemy):
            raise ConfigurationError(
                f"{type(self).__name__} needs the application to use "
                "testbed.db.SQLAlchemy as its database extension.",
                field="db",
            )


class ActiveFixture(_DataMixin, DbFixture):
    """
    Table-backed fixture.

    Rows are inserted into the table of ``model_class`` (or the table
    named ``table_name``).  After loading, ``data[alias]`` holds each row
    including the primary key the database assigned, and
    ``get_model(alias)`` returns the matching ORM instance.
    """

    model_class: type | None = None
    table_name: str | None = None

    def __init__(self, **attributes):
        self.data: dict = {}
        self._models: dict = {}
        self._table: sa.Table | None = None
        super().__init__(**attributes)
        if self.model_class is None and self.table_name is None:
            raise ConfigurationError(
                f"Either 'model_class' or 'table_name' must be set for "
                f"{type(self).__name__}.",
                field="model_class",
            )

    @property
    def table(self) -> sa.Table:
        if self._table is None:
            if self.model_class is not None:
                self._table = self.model_class.__table__
            else:
                # Reflect through the engine; reflecting on the pinned
                # connection would leave a transaction open on it.
                self._table = sa.Table(
                    self.table_name,
                    sa.MetaData(),
                    autoload_with=self.db.connection(self._bind_key()).engine,
                )
        return self._table

    def _bind_key(self) -> str | None:
        if self.bind_key is not None or self.model_class is None:
            return self.bind_key
        return self.model_class.__table__.metadata.info.get("bind_key")

    def load(self) -> None:
        self.reset_table()
        self.data = {}
        table = self.table
        primary_key = list(table.primary_key.columns)
        with self.db.open_session(self._bind_key()) as session:
            for alias, row in self.get_rows().items():
                result = session.execute(sa.insert(table).values(**row))
                keys = {
                    column.name: value
                    for column, value in zip(primary_key, result.inserted_primary_key)
                }
                self.data[alias] = {**row, **keys}
            session.commit()
        logger.debug("Loaded %d rows into %s", len(self.data), table.name)

    def unload(self) -> None:
        self.reset_table()
        self.data = {}
        self._models = {}

    def reset_table(self) -> None:
        """Delete every row of the fixture's table."""
        with self.db.open_session(self._bind_key()) as session:
            session.execute(sa.delete(self.table))
            session.commit()

    def get_model(self, alias):
        """
        Return the ORM instance for ``alias``, or None if it is unknown.

        Raises:
            ConfigurationError: If the fixture has no ``model_class``.
        """
        if alias not in self.data:
            return None
        model = self._models.get(alias)
        # Each request removes the scoped ORM session; a model cached
        # before that is detached and must be fetched again.
        if model is not None and model in self.db.session:
            return model
        if self.model_class is None:
            raise ConfigurationError(
                f"{type(self).__name__} has no 'model_class' to build models from.",
                field="model_class",
            )
        identity = tuple(
            self.data[alias][column.name] for column in self.table.primary_key.columns
        )
        model = self.db.session.get(
            self.model_class, identity[0] if len(identity) == 1 else identity
        )
        self._models[alias] = model
        return model

    def __getitem__(self, alias):
        return self.data[alias]

    def __iter__(self):
        return iter(self.data)

    def __len__(self) -> int:
        return len(self.data)


# =========================================================================
# Store
# =========================================================================


class FixturesStore:
    """
    Ordered collection of fixtures loaded and unloaded together.

    Args:
        definitions: Mapping of fixture name to definition.
    """

    def __init__(self, definitions: Mapping):
        self.definitions = dict(definitions)
        self._fixtures: dict[str, Fixture] | None = None

    def get_fixtures(self) -> dict[str, Fixture]:
        """
        Return fixture name -> instance, dependencies first.

        Dependencies not named in the definitions appear under their
        dotted class name.
        """
        if self._fixtures is None:
            self._fixtures = self._create_fixtures()
        return dict(self._fixtures)

    def _create_fixtures(self) -> dict[str, Fixture]:
        resolved: dict[str, tuple[type, dict]] = {}
        aliases: dict[type, str] = {}
        for name, definition in self.definitions.items():
            resolved[name] = resolve_definition(definition, name)
            aliases[resolved[name][0]] = name

        instances: dict[str, Fixture | None] = {}
        stack: list = [resolved[name] for name in reversed(list(resolved))]
        while stack:
            item = stack.pop()
            if isinstance(item, Fixture):
                # Dependencies are in place; move the fixture behind them.
                name = aliases.get(type(item), _class_key(type(item)))
                instances.pop(name, None)
                instances[name] = item
                continue

            fixture_class, attributes = item
            name = aliases.get(fixture_class, _class_key(fixture_class))
            if name in instances:
                continue
            instances[name] = None
            fixture = fixture_class(**attributes)
            stack.append(fixture)
            for dependency in fixture.depends:
                dependency_class, dependency_attributes = resolve_definition(
                    dependency, str(dependency)
                )
                dependency_name = aliases.get(dependency_class)
                if dependency_name is not None:
                    stack.append(resolved[dependency_name])
                else:
                    stack.append((dependency_class, dependency_attributes))

        return {name: fixture for name, fixture in instances.items() if fixture is not None}

    def load_fixtures(self) -> None:
        """Run ``before_load`` and ``load`` in order, ``after_load`` reversed."""
        fixtures = list(self.get_fixtures().values())
        for fixture in fixtures:
            fixture.before_load()
        for fixture in fixtures:
            fixture.load()
        for fixture in reversed(fixtures):
            fixture.after_load()

    def unload_fixtures(self) -> None:
        """Run ``before_unload`` in order, ``unload`` and ``after_unload`` reversed."""
        fixtures = list(self.get_fixtures().values())
        for fixture in fixtures:
            fixture.before_unload()
        for fixture in reversed(fixtures):
            fixture.unload()
        for fixture in reversed(fixtures):
            fixture.after_unload()
