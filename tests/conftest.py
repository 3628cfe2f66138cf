"""
Pytest configuration and shared fixtures.

Every test session gets its own pair of SQLite database files (the main
database and the ``audit`` bind) and the harness is pointed at the
sample application in ``sample_app/``.  The ``harness`` fixture itself
comes from the testbed pytest plugin; tests that need non-default
options build their own harness with ``start_harness``.
"""

import os
from pathlib import Path

import pytest
import sqlalchemy as sa

from testbed.module import Harness

TESTS_DIR = Path(__file__).parent
CONFIG_FILE = TESTS_DIR / "sample_app" / "harness_config.py"
COLLISION_CONFIG_FILE = TESTS_DIR / "sample_app" / "collision_config.py"


@pytest.fixture(scope="session", autouse=True)
def sample_databases(tmp_path_factory):
    """
    Point the sample application at fresh database files.

    The URLs are exported as environment variables because the harness
    config file reads them each time it boots the app.
    """
    directory = tmp_path_factory.mktemp("databases")
    urls = {
        "SAMPLE_DATABASE_URL": f"sqlite:///{directory / 'sample.db'}",
        "SAMPLE_AUDIT_DATABASE_URL": f"sqlite:///{directory / 'audit.db'}",
    }
    previous = {key: os.environ.get(key) for key in urls}
    os.environ.update(urls)

    yield urls

    for key, value in previous.items():
        if value is None:
            os.environ.pop(key, None)
        else:
            os.environ[key] = value


@pytest.fixture(scope="session")
def testbed_options(sample_databases):  # pylint: disable=redefined-outer-name,unused-argument
    """Options for the plugin's session-wide harness."""
    return {"configFile": str(CONFIG_FILE)}


@pytest.fixture(scope="function")
def start_harness(sample_databases):  # pylint: disable=redefined-outer-name,unused-argument
    """
    Build, initialise and start a harness with extra options.

    Every harness started through this fixture is torn down after the
    test, even if the test fails halfway.

    Usage::

        def test_something(start_harness):
            harness = start_harness(transaction=False)
    """
    started: list[tuple[Harness, object]] = []

    def start(test=None, **options) -> Harness:
        harness = Harness({"configFile": str(CONFIG_FILE), **options})
        harness.initialize()
        started.append((harness, test))
        harness.before(test)
        return harness

    yield start

    for harness, test in reversed(started):
        harness.after(test)


@pytest.fixture(scope="function")
def count_rows(sample_databases):  # pylint: disable=redefined-outer-name
    """
    Count the committed rows of a table from outside the harness.

    Uses an engine of its own, so rows written inside a forced
    transaction are not visible.
    """

    def count(table: str, database: str = "SAMPLE_DATABASE_URL") -> int:
        engine = sa.create_engine(sample_databases[database])
        try:
            with engine.connect() as connection:
                return connection.execute(
                    sa.text(f"SELECT COUNT(*) FROM {table}")
                ).scalar_one()
        finally:
            engine.dispose()

    return count


@pytest.fixture(scope="function")
def execute_sql(sample_databases):  # pylint: disable=redefined-outer-name
    """Run and commit a statement from outside the harness."""

    def execute(statement: str, database: str = "SAMPLE_DATABASE_URL") -> None:
        engine = sa.create_engine(sample_databases[database])
        try:
            with engine.begin() as connection:
                connection.execute(sa.text(statement))
        finally:
            engine.dispose()

    return execute
