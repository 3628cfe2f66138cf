"""
Log capture for the application under test.

``Logger`` is a ``logging.Handler`` attached to the root logger while an
application is booted.  It keeps the most recent application log lines
so they can be attached to the report of a failed test, and echoes new
lines to the ``testbed`` debug log after every request.
"""

import logging
from collections import deque

logger = logging.getLogger(__name__)

# SQL statement logging is far too chatty for a failure report.
_SKIPPED_LOGGERS = ("sqlalchemy.engine",)


class Logger(logging.Handler):
    """
    Bounded buffer of the latest application log lines.

    Args:
        max_log_items: How many lines to keep for the failure report.
        level:         Minimum level recorded.
    """

    def __init__(self, max_log_items: int = 5, level: int = logging.INFO):
        super().__init__(level=level)
        self.setFormatter(logging.Formatter("[%(name)s] %(message)s"))
        self._recent: deque[str] = deque(maxlen=max_log_items)
        self._pending: list[str] = []
        self._target: logging.Logger | None = None
        self._previous_level: int | None = None

    # -- logging.Handler -------------------------------------------------------

    def emit(self, record: logging.LogRecord) -> None:
        if record.name.startswith(_SKIPPED_LOGGERS):
            return
        try:
            line = self.format(record)
        except Exception:  # pylint: disable=broad-exception-caught
            self.handleError(record)
            return
        self._recent.append(line)
        self._pending.append(line)

    def echo_pending(self) -> None:
        """Echo lines logged since the previous echo to the debug log."""
        self.acquire()
        try:
            pending, self._pending = self._pending, []
        finally:
            self.release()
        for line in pending:
            logger.debug("%s", line)

    # -- Attachment ------------------------------------------------------------

    def attach(self, target: logging.Logger | None = None) -> None:
        """
        Start capturing records that reach ``target`` (the root logger).

        The target's level is lowered to this handler's level while
        attached so INFO records are not filtered out before they arrive.
        """
        if self._target is not None:
            return
        self._target = target or logging.getLogger()
        self._previous_level = self._target.level
        if self._target.getEffectiveLevel() > self.level:
            self._target.setLevel(self.level)
        self._target.addHandler(self)

    def detach(self) -> None:
        if self._target is None:
            return
        self.echo_pending()
        self._target.removeHandler(self)
        self._target.setLevel(self._previous_level)
        self._target = None
        self._previous_level = None

    # -- Buffer ----------------------------------------------------------------

    def get_and_clear_log(self) -> str:
        """Return the buffered lines, one per line, and empty the buffer."""
        lines = list(self._recent)
        self._recent.clear()
        self._pending = []
        return "".join(f"{line}\n" for line in lines)
