"""
pytest plugin for the testbed harness.

Installed through the ``pytest11`` entry point, so it is active as soon
as the package is installed.  Point it at the application either with
the ``testbed_config_file`` ini option::

    [tool.pytest.ini_options]
    testbed_config_file = "tests/harness_config.py"

or by overriding the session-scoped ``testbed_options`` fixture in
``conftest.py``.  Tests then request the ``harness`` fixture::

    class TestHomePage:
        def _fixtures(self):
            return {"users": UserFixture}

        def test_home(self, harness):
            harness.am_on_page("/")
            harness.see_response_code_is(200)

When a test fails, the last lines the application logged are attached to
the report under ``testbed log``.
"""

import pytest

from testbed.module import Harness

harness_key = pytest.StashKey[Harness]()


def pytest_addoption(parser):
    parser.addini(
        "testbed_config_file",
        help="Application config file booted by the testbed harness.",
        default="",
    )


@pytest.fixture(scope="session")
def testbed_options(pytestconfig) -> dict:
    """Harness options for the session; override in conftest.py."""
    options = {}
    config_file = pytestconfig.getini("testbed_config_file")
    if config_file:
        options["configFile"] = str(pytestconfig.rootpath / config_file)
    return options


@pytest.fixture(scope="session")
def testbed(testbed_options):
    """The session-wide, initialised ``Harness``."""
    harness = Harness(testbed_options)
    harness.initialize()
    yield harness
    harness.after_suite()


@pytest.fixture
def harness(request, testbed):
    """Run one test inside the harness lifecycle."""
    test = request.instance if request.instance is not None else request.module
    request.node.stash[harness_key] = testbed
    try:
        testbed.before(test)
        yield testbed
    finally:
        testbed.after(test)


@pytest.hookimpl(wrapper=True)
def pytest_runtest_makereport(item, call):  # pylint: disable=unused-argument
    report = yield
    if report.when == "call" and report.failed:
        harness = item.stash.get(harness_key, None)
        if harness is not None:
            log = harness.failed(item)
            if log:
                report.sections.append(("testbed log", log))
    return report
