"""
Tests for fixture resolution and the load/unload hook order.

These fixtures do not touch a database; table-backed fixtures are
covered by the harness lifecycle tests.
"""

import json

import pytest

from testbed.exceptions import ConfigurationError
from testbed.fixtures import ArrayFixture, Fixture, FixturesStore, register

EVENTS: list[str] = []


@pytest.fixture(autouse=True)
def clear_events():
    EVENTS.clear()
    yield
    EVENTS.clear()


class RecordingFixture(Fixture):
    """Appends ``<label>.<hook>`` to EVENTS for every hook."""

    label = "base"

    def before_load(self):
        EVENTS.append(f"{self.label}.before_load")

    def load(self):
        EVENTS.append(f"{self.label}.load")

    def after_load(self):
        EVENTS.append(f"{self.label}.after_load")

    def before_unload(self):
        EVENTS.append(f"{self.label}.before_unload")

    def unload(self):
        EVENTS.append(f"{self.label}.unload")

    def after_unload(self):
        EVENTS.append(f"{self.label}.after_unload")


class First(RecordingFixture):
    label = "first"


class Second(RecordingFixture):
    label = "second"


class Dependent(RecordingFixture):
    label = "dependent"
    depends = [First]


class Broken(RecordingFixture):
    label = "broken"

    def load(self):
        raise RuntimeError("cannot load")


register("tests.second", Second)


class TestFixturesStore:
    """Resolution of definitions and ordering of hooks."""

    def test_load_order(self):
        """before_load and load run in order, after_load reversed."""
        store = FixturesStore({"first": First, "second": Second})
        store.load_fixtures()
        assert EVENTS == [
            "first.before_load",
            "second.before_load",
            "first.load",
            "second.load",
            "second.after_load",
            "first.after_load",
        ]

    def test_unload_order(self):
        """before_unload runs in order, unload and after_unload reversed."""
        store = FixturesStore({"first": First, "second": Second})
        store.unload_fixtures()
        assert EVENTS == [
            "first.before_unload",
            "second.before_unload",
            "second.unload",
            "first.unload",
            "second.after_unload",
            "first.after_unload",
        ]

    def test_dependencies_come_first(self):
        """Dependencies are created before the fixtures needing them."""
        store = FixturesStore({"dependent": Dependent})
        fixtures = store.get_fixtures()
        assert list(fixtures) == [f"{First.__module__}.First", "dependent"]
        assert isinstance(fixtures["dependent"], Dependent)

    def test_dependency_uses_its_declared_name(self):
        """A dependency that is also declared keeps its name."""
        store = FixturesStore({"dependent": Dependent, "first": {"class": First, "label": "named"}})
        fixtures = store.get_fixtures()
        assert list(fixtures) == ["first", "dependent"]
        assert fixtures["first"].label == "named"

    def test_fixtures_are_created_once(self):
        """get_fixtures() returns the same instances each call."""
        store = FixturesStore({"first": First})
        assert store.get_fixtures()["first"] is store.get_fixtures()["first"]

    def test_registered_name_and_dict_definition(self):
        """Registered type names work alone and in dict definitions."""
        store = FixturesStore(
            {"plain": "tests.second", "custom": {"class": "tests.second", "label": "custom"}}
        )
        fixtures = store.get_fixtures()
        assert isinstance(fixtures["plain"], Second)
        assert fixtures["custom"].label == "custom"

    def test_unknown_type_names_the_fixture(self):
        """An unknown type name is reported with the fixture name."""
        store = FixturesStore({"ghosts": "tests.ghosts"})
        with pytest.raises(ConfigurationError) as excinfo:
            store.get_fixtures()
        assert excinfo.value.field == "ghosts"
        assert "ghosts" in str(excinfo.value)

    def test_not_a_fixture_class(self):
        """A class that is not a Fixture is rejected."""
        store = FixturesStore({"wrong": dict})
        with pytest.raises(ConfigurationError):
            store.get_fixtures()

    def test_unknown_attribute_rejected(self):
        """Definitions may only set attributes the fixture has."""
        store = FixturesStore({"first": {"class": First, "colour": "red"}})
        with pytest.raises(ConfigurationError) as excinfo:
            store.get_fixtures()
        assert "colour" in str(excinfo.value)

    def test_failed_load_aborts_without_unloading(self):
        """A failing load stops the store and unloads nothing."""
        store = FixturesStore({"first": First, "broken": Broken, "second": Second})
        with pytest.raises(RuntimeError, match="cannot load"):
            store.load_fixtures()
        assert "second.load" not in EVENTS
        assert not any(event.endswith("unload") for event in EVENTS)


class TestArrayFixture:
    """Data fixtures without a database."""

    def test_inline_rows(self):
        """Rows given inline are loaded and cleared on unload."""
        fixture = ArrayFixture(rows={"one": {"value": 1}})
        fixture.load()
        assert fixture["one"] == {"value": 1}
        assert list(fixture) == ["one"]
        assert len(fixture) == 1
        fixture.unload()
        assert len(fixture) == 0

    def test_json_data_file(self, tmp_path):
        """Rows can come from a JSON file."""
        path = tmp_path / "rows.json"
        path.write_text(json.dumps({"a": {"n": 1}, "b": {"n": 2}}), encoding="utf-8")
        fixture = ArrayFixture(data_file=str(path))
        fixture.load()
        assert fixture.data == {"a": {"n": 1}, "b": {"n": 2}}

    def test_python_data_file(self, tmp_path):
        """Rows can come from a Python file defining DATA."""
        path = tmp_path / "rows.py"
        path.write_text("DATA = {'x': {'n': 3}}\n", encoding="utf-8")
        fixture = ArrayFixture(data_file=str(path))
        fixture.load()
        assert fixture["x"] == {"n": 3}

    def test_missing_data_file(self, tmp_path):
        """A missing data file is a configuration error."""
        fixture = ArrayFixture(data_file=str(tmp_path / "missing.json"))
        with pytest.raises(ConfigurationError):
            fixture.load()
