"""
Exception hierarchy for the testbed harness.

Every failure the harness raises on its own behalf derives from
``HarnessError`` so a test suite can tell harness problems apart from
failures of the application under test.  Assertion helpers on the
``Harness`` raise plain ``AssertionError`` so pytest reports them as
ordinary test failures.
"""


class HarnessError(Exception):
    """A module-level failure: fixture not loaded, user not found, etc."""


class ConfigurationError(HarnessError):
    """
    The harness or the application it boots is misconfigured.

    Attributes:
        field: Name of the offending option, fixture or component, when
               one can be pointed at.
    """

    def __init__(self, message: str, field: str | None = None):
        super().__init__(message)
        self.field = field


class CollisionError(ConfigurationError):
    """Two connections share a DSN but were opened with different options."""

    def __init__(self, dsn: str):
        super().__init__(
            f"Connection with DSN '{dsn}' was opened with different "
            "options than an earlier connection to the same database. "
            "Set 'ignoreCollidingDSN' to reuse the first connection.",
            field="ignoreCollidingDSN",
        )
        self.dsn = dsn


class TransportError(HarnessError):
    """An exception escaped the application while serving a request."""
