"""
Test harness for Flask applications.

The harness boots the application under test once per test, drives
simulated requests against it, wraps every database connection the test
opens in a transaction that is rolled back afterwards, and loads and
unloads fixtures around the test body.

Usage::

    from testbed import Harness

    harness = Harness({"configFile": "tests/harness_config.py"})
    harness.initialize()
    harness.before(test)
    try:
        harness.am_on_page("/")
        harness.see_response_code_is(200)
    finally:
        harness.after(test)

Most suites use the bundled pytest plugin instead, which provides the
``harness`` fixture.
"""

from testbed.exceptions import (
    CollisionError,
    ConfigurationError,
    HarnessError,
    TransportError,
)
from testbed.module import Harness

__all__ = [
    "CollisionError",
    "ConfigurationError",
    "Harness",
    "HarnessError",
    "TransportError",
]

__version__ = "1.0.0"
